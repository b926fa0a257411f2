"""模型调用层：一次尝试对应一次 OpenAI 兼容接口请求"""

from typing import Any, Dict, List, Optional, Protocol, Tuple

import openai
from openai import AsyncOpenAI

from .errors import EmptyResponseError, ErrorKind, ProviderError

_CREDENTIAL_STATUS_CODES = (401, 402, 403, 429)


class CompletionTransport(Protocol):
    async def complete(self, base_url: str, api_key: str, model: str,
                       messages: List[Dict[str, Any]]) -> str:
        ...


class OpenAITransport:
    """
    基于 AsyncOpenAI 的实现。客户端按 (base_url, api_key) 缓存复用。

    取消请求通过取消所在的 asyncio 任务完成。
    """

    def __init__(self, temperature: float = 0.2, max_tokens: int = 500, timeout: Optional[float] = None):
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._clients: Dict[Tuple[str, str], AsyncOpenAI] = {}

    def _client(self, base_url: str, api_key: str) -> AsyncOpenAI:
        key = (base_url, api_key)
        client = self._clients.get(key)
        if client is None:
            kwargs: Dict[str, Any] = {"api_key": api_key, "base_url": base_url or None}
            if self.timeout is not None:
                kwargs["timeout"] = self.timeout
            client = AsyncOpenAI(**kwargs)
            self._clients[key] = client
        return client

    async def complete(self, base_url: str, api_key: str, model: str,
                       messages: List[Dict[str, Any]]) -> str:
        client = self._client(base_url, api_key)
        try:
            response = await client.chat.completions.create(
                model=model,
                messages=messages,
                response_format={"type": "json_object"},
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError, openai.RateLimitError) as e:
            raise ProviderError(str(e), kind=ErrorKind.CREDENTIALS, status_code=e.status_code) from e
        except openai.APIStatusError as e:
            kind = ErrorKind.CREDENTIALS if e.status_code in _CREDENTIAL_STATUS_CODES else None
            raise ProviderError(str(e), kind=kind, status_code=e.status_code) from e
        except openai.APIError as e:
            raise ProviderError(str(e)) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise EmptyResponseError()
        return content

    async def close(self):
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
