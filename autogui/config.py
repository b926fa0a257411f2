"""配置定义：模型提供商、运行参数，以及从环境变量 / .env 构造配置"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv

from .errors import ConfigurationError

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o"


@dataclass
class ApiModelConfig:
    id: str
    enabled: bool = True


@dataclass
class ApiProviderConfig:
    """一个 OpenAI 兼容的服务商，可配置多个 key 与多个模型"""
    id: str
    name: str
    base_url: str
    api_keys: List[str] = field(default_factory=list)
    models: List[ApiModelConfig] = field(default_factory=list)
    enabled: bool = True


@dataclass
class ApiConfig:
    """providers 为空或全部不可用时，回退到 base_url/api_key/model 这一组旧式配置"""
    base_url: str = DEFAULT_BASE_URL
    api_key: Union[str, List[str]] = ""
    model: str = DEFAULT_MODEL
    provider: Optional[str] = None
    providers: List[ApiProviderConfig] = field(default_factory=list)


@dataclass
class Settings:
    screenshot_interval: int = 2000  # 毫秒
    max_iterations: int = 50
    coordinate_scale: int = 1000
    action_context_length: int = 8
    retry_delay: int = 3000  # 推理失败后的等待（毫秒）
    work_dir: Optional[str] = None
    allowed_directories: Optional[List[str]] = None
    debug_screenshot_dir: Optional[str] = None


@dataclass
class AgentConfig:
    api: ApiConfig = field(default_factory=ApiConfig)
    settings: Settings = field(default_factory=Settings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentConfig":
        """
        从 config.json 结构的字典构造配置。
        """
        api_data = dict(data.get("api") or {})
        providers = []
        for item in api_data.pop("providers", None) or []:
            models = [
                ApiModelConfig(id=str(m.get("id", "")), enabled=bool(m.get("enabled", True)))
                for m in item.get("models") or []
                if isinstance(m, dict)
            ]
            providers.append(ApiProviderConfig(
                id=str(item.get("id", "")),
                name=str(item.get("name") or item.get("id") or "Provider"),
                base_url=str(item.get("base_url", "")),
                api_keys=[str(k) for k in item.get("api_keys") or []],
                models=models,
                enabled=bool(item.get("enabled", True)),
            ))

        api = ApiConfig(
            base_url=str(api_data.get("base_url", DEFAULT_BASE_URL)),
            api_key=api_data.get("api_key", ""),
            model=str(api_data.get("model", DEFAULT_MODEL)),
            provider=api_data.get("provider"),
            providers=providers,
        )

        settings_data = data.get("settings") or {}
        known = Settings.__dataclass_fields__.keys()
        unknown = set(settings_data) - set(known)
        if unknown:
            raise ConfigurationError(f"未知的 settings 字段: {', '.join(sorted(unknown))}")
        settings = Settings(**settings_data)
        _check_settings(settings)
        return cls(api=api, settings=settings)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "AgentConfig":
        """
        加载 .env 后从环境变量构造配置。

        OPENAI_API_KEY 支持逗号分隔的多个 key。
        """
        load_dotenv(dotenv_path)

        keys = [k.strip() for k in os.getenv("OPENAI_API_KEY", "").split(",") if k.strip()]
        api = ApiConfig(
            base_url=os.getenv("OPENAI_BASE_URL", DEFAULT_BASE_URL),
            api_key=keys,
            model=os.getenv("OPENAI_MODEL", DEFAULT_MODEL),
            provider=os.getenv("OPENAI_PROVIDER"),
        )

        settings = Settings(
            screenshot_interval=_env_int("AUTOGUI_SCREENSHOT_INTERVAL", 2000),
            max_iterations=_env_int("AUTOGUI_MAX_ITERATIONS", 50),
            coordinate_scale=_env_int("AUTOGUI_COORDINATE_SCALE", 1000),
            action_context_length=_env_int("AUTOGUI_ACTION_CONTEXT_LENGTH", 8),
            work_dir=os.getenv("AUTOGUI_WORK_DIR") or None,
        )
        _check_settings(settings)
        return cls(api=api, settings=settings)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"环境变量 {name} 必须是整数，当前值: {raw!r}") from None


def _check_settings(settings: Settings):
    if settings.coordinate_scale <= 0:
        raise ConfigurationError("coordinate_scale 必须大于 0")
    if settings.max_iterations < 0:
        raise ConfigurationError("max_iterations 不能为负数")
