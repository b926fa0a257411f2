"""规划模块：调用视觉模型决策下一步，负责模型池轮询、失败分类与重试"""

import asyncio
import base64
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from .cancellation import CancelToken
from .config import AgentConfig
from .errors import (
    ErrorKind,
    NoModelAvailableError,
    PoolExhaustedError,
    TaskAborted,
)
from .models import AIResponse, Action, ModelPoolEntry
from .parser import parse_ai_response
from .pool import ALL_TARGET, ModelPool
from .transport import CompletionTransport, OpenAITransport

logger = logging.getLogger(__name__)

MAX_KEY_ERROR_ROUNDS = 3

_ABORT_PATTERNS = ("aborted", "aborterror", "task_aborted", "request aborted")
_CREDENTIAL_PATTERNS = (
    "401",
    "unauthorized",
    "invalid api key",
    "api key invalid",
    "authentication",
    "auth",
    "quota",
    "rate limit",
    "insufficient_quota",
    "billing",
)
_JSON_PATTERNS = ("json", "unterminated string", "unexpected token", "invalid json")
_FORMAT_PATTERNS = ("action_format_error",)


def classify_error(error: BaseException) -> ErrorKind:
    """
    优先使用异常自带的类型化分类；来自外部、未分类的异常再按错误描述匹配。
    """
    if isinstance(error, TaskAborted):
        return ErrorKind.ABORTED
    kind = getattr(error, "kind", None)
    if isinstance(kind, ErrorKind):
        return kind

    message = str(error).lower()
    for patterns, kind in (
        (_ABORT_PATTERNS, ErrorKind.ABORTED),
        (_CREDENTIAL_PATTERNS, ErrorKind.CREDENTIALS),
        (_JSON_PATTERNS, ErrorKind.MALFORMED_JSON),
        (_FORMAT_PATTERNS, ErrorKind.ACTION_FORMAT),
    ):
        if any(p in message for p in patterns):
            return kind
    return ErrorKind.OTHER


def build_system_prompt(scale: int = 1000) -> str:
    return (
        "你是一个电脑操作智能体。你将看到当前屏幕截图和用户任务，并决定下一步唯一的操作。\n"
        "可用操作（action 字段）：\n"
        "- click / double_click / right_click / move：需要 x, y\n"
        "- long_press：需要 x, y，可选 hold_seconds（秒）\n"
        "- drag：需要 x, y, end_x, end_y\n"
        "- type：需要 text\n"
        "- enter：按回车提交输入\n"
        "- press：需要 keys，例如 [\"ctrl\", \"c\"]\n"
        "- scroll：需要 scroll_amount，正数向上，负数向下\n"
        "- wait：需要 duration（毫秒）\n"
        "- shell：需要 command，可选 work_dir、timeout（毫秒）、shell、capture_output\n"
        "- task_complete：任务已完成\n"
        "你必须且只能输出一个 JSON 对象，不要 markdown 代码块，不要额外解释，格式如下：\n"
        "{\n"
        "  \"thought\": \"根据截图判断上一步是否成功，说明为什么选择此操作\",\n"
        "  \"action\": {\"action\": \"click\", \"x\": 500, \"y\": 300}\n"
        "}\n"
        "【坐标系】\n"
        f"截图坐标系为 {scale}x{scale}，左上角 (0,0)，右下角 ({scale},{scale})；x、y 必须是数字，不要数组。\n"
        "【极其重要的规则】\n"
        "1. 必须依据当前截图中的可见证据确认上一步是否成功，不能凭假设继续。\n"
        "2. 截图与预期不一致时不要假装成功，返回修正动作或 wait。\n"
        "3. 需要提交输入框内容时优先使用 enter。\n"
        "4. 除非任务明确要求，禁止关闭任何窗口或程序（关闭按钮、Alt+F4 等）。\n"
        "5. shell 只执行安全命令（dir、ls、git、node 等），shell 的执行结果会在下一轮反馈给你；"
        "以 cd 开头的命令会更新后续 shell 的工作目录。\n"
        "6. 任务完成后返回 task_complete。"
    )


class Planner:
    """规划模块：一次 analyze_screenshot 产出一个已校验的 AIResponse"""

    def __init__(
        self,
        config: AgentConfig,
        transport: Optional[CompletionTransport] = None,
        pool: Optional[ModelPool] = None,
        key_error_backoff: Tuple[float, ...] = (5.0, 10.0),
        json_retry_delay: float = 0.8,
        format_retry_delay: float = 0.5,
    ):
        self.config = config
        self.pool = pool if pool is not None else ModelPool.from_config(config.api)
        self.transport = transport or OpenAITransport()
        self.system_prompt = build_system_prompt(config.settings.coordinate_scale)
        self.key_error_backoff = key_error_backoff
        self.json_retry_delay = json_retry_delay
        self.format_retry_delay = format_retry_delay
        self._inflight: Set[asyncio.Future] = set()

    def build_messages(self, image: bytes, task: str, previous_actions: Sequence[Action]) -> List[Dict[str, Any]]:
        encoded = base64.b64encode(image).decode("ascii")
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": self.system_prompt},
            {
                "role": "user",
                "content": [
                    {
                        "type": "text",
                        "text": f"用户任务: {task}\n\n请分析当前屏幕截图并决定下一步操作，必须返回 JSON。",
                    },
                    {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{encoded}"}},
                ],
            },
        ]

        context_length = max(0, int(self.config.settings.action_context_length or 0))
        if previous_actions and context_length > 0:
            recent = [a.to_dict() for a in list(previous_actions)[-context_length:]]
            messages.append({
                "role": "assistant",
                "content": f"之前的操作: {json.dumps(recent, ensure_ascii=False)}",
            })
        return messages

    async def analyze_screenshot(
        self,
        image: bytes,
        task: str,
        previous_actions: Sequence[Action] = (),
        target: str = ALL_TARGET,
        token: Optional[CancelToken] = None,
    ) -> AIResponse:
        """
        分析截图并返回下一步动作。

        - 鉴权/限额错误：记录失败条目并切换；整个池都失败算一轮，
          前两轮分别等待后清空重来，第三轮抛出 PoolExhaustedError；
        - JSON 损坏：原样重试；
        - 动作字段错误：在下一次请求中附带纠正提示后重试；
        - 其他错误：直接抛出。
        """
        token = token or CancelToken()
        token.raise_if_cancelled()

        target = target or ALL_TARGET
        target_pool = self.pool.for_target(target)
        if not target_pool:
            raise NoModelAvailableError(target)

        messages = self.build_messages(image, task, previous_actions)
        max_attempts = max(6, len(target_pool) * 3)
        failed_entries: Set[str] = set()
        key_error_round = 0
        format_feedback = ""
        last_error: Optional[Exception] = None

        for attempt in range(max_attempts):
            token.raise_if_cancelled()
            entry = self.pool.next_entry(target)
            try:
                return await self._attempt(entry, messages, format_feedback, token)
            except Exception as e:
                if token.cancelled:
                    raise TaskAborted() from e
                kind = classify_error(e)
                if kind is ErrorKind.ABORTED:
                    raise TaskAborted() from e

                last_error = e
                logger.error("AI 分析错误 (尝试 %d/%d, %s/%s): %s",
                             attempt + 1, max_attempts, entry.provider_name, entry.model, e)

                if kind is ErrorKind.CREDENTIALS:
                    failed_entries.add(entry.entry_id)
                    if len(failed_entries) >= len(target_pool):
                        key_error_round += 1
                        if key_error_round >= MAX_KEY_ERROR_ROUNDS:
                            raise PoolExhaustedError(target, key_error_round) from e
                        wait = self.key_error_backoff[min(key_error_round, len(self.key_error_backoff)) - 1]
                        logger.warning("模型池(%s)第 %d 轮全部报错，等待 %.0f 秒后重试...",
                                       target, key_error_round, wait)
                        await token.sleep(wait)
                        failed_entries.clear()
                    continue

                if kind is ErrorKind.MALFORMED_JSON:
                    if attempt < max_attempts - 1:
                        logger.warning("AI 返回 JSON 格式异常，正在重试...")
                        await token.sleep(self.json_retry_delay)
                        continue
                    break

                if kind is ErrorKind.ACTION_FORMAT:
                    if attempt < max_attempts - 1:
                        format_feedback = f"上一条动作格式错误：{e}"
                        logger.warning("AI 返回动作字段不完整，要求其重新生成...")
                        await token.sleep(self.format_retry_delay)
                        continue
                    break

                raise

        raise last_error

    async def _attempt(self, entry: ModelPoolEntry, messages: List[Dict[str, Any]],
                       format_feedback: str, token: CancelToken) -> AIResponse:
        request_messages = list(messages)
        if format_feedback:
            request_messages.append({
                "role": "user",
                "content": [{
                    "type": "text",
                    "text": f"{format_feedback}\n请仅返回一个合法 JSON，对缺失字段进行修正，不要输出解释。",
                }],
            })

        request = asyncio.ensure_future(
            self.transport.complete(entry.base_url, entry.api_key, entry.model, request_messages)
        )
        self._inflight.add(request)
        try:
            content = await token.guard(request)
        finally:
            self._inflight.discard(request)

        logger.info("AI 原始响应: %s%s", content[:1000], "..." if len(content) > 1000 else "")
        return parse_ai_response(content)

    def cancel_pending_requests(self):
        """取消所有进行中的请求"""
        for request in list(self._inflight):
            request.cancel()
        self._inflight.clear()
