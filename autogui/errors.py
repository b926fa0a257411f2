"""异常定义"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """推理失败的分类，按处理优先级排列"""
    ABORTED = "aborted"
    CREDENTIALS = "credentials"
    MALFORMED_JSON = "malformed_json"
    ACTION_FORMAT = "action_format"
    OTHER = "other"


class AutoGUIError(Exception):
    kind: Optional[ErrorKind] = None


class ConfigurationError(AutoGUIError):
    """配置无效，例如模型池为空"""


class TaskAborted(AutoGUIError):
    """任务被协作式取消，不属于失败"""
    kind = ErrorKind.ABORTED

    def __init__(self, message: str = "TASK_ABORTED"):
        super().__init__(message)


class InferenceError(AutoGUIError):
    pass


class PoolExhaustedError(InferenceError):
    """模型池所有条目连续多轮触发鉴权/限额错误，调用方不应自动重试整个任务"""

    def __init__(self, target: str, rounds: int):
        super().__init__(
            f"API_KEY_POOL_EXHAUSTED: 模型池({target})连续 {rounds} 轮全部触发限额/鉴权错误"
        )
        self.target = target
        self.rounds = rounds


class NoModelAvailableError(InferenceError, ConfigurationError):
    def __init__(self, target: str):
        super().__init__(f"没有可用的模型池: {target}")
        self.target = target


class ResponseParseError(InferenceError):
    """模型输出无法解析为 JSON"""
    kind = ErrorKind.MALFORMED_JSON


class ActionFormatError(InferenceError):
    """JSON 合法但动作字段缺失或无效"""
    kind = ErrorKind.ACTION_FORMAT

    def __init__(self, field: str, message: Optional[str] = None):
        super().__init__(message or f"ACTION_FORMAT_ERROR: 缺少或无效字段 {field}")
        self.field = field


class ProviderError(InferenceError):
    """模型服务返回的错误，kind 为空时按错误描述匹配分类"""

    def __init__(self, message: str, kind: Optional[ErrorKind] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class EmptyResponseError(InferenceError):
    def __init__(self, message: str = "AI 返回空响应"):
        super().__init__(message)


class ShellPolicyError(AutoGUIError):
    """命令或工作目录违反执行策略"""


class CommandBlockedError(ShellPolicyError):
    def __init__(self, command: str):
        super().__init__(f"命令被阻止：{command}")
        self.command = command


class DirectoryNotAllowedError(ShellPolicyError):
    def __init__(self, work_dir: str, allowed):
        super().__init__(f"工作目录不允许：{work_dir}，允许的目录：{', '.join(allowed)}")
        self.work_dir = work_dir


class CommandTimeoutError(AutoGUIError):
    def __init__(self, command: str, timeout_ms: float):
        super().__init__(f"命令执行超时（>{int(timeout_ms)}ms），已终止：{command}")
        self.command = command
        self.timeout_ms = timeout_ms
