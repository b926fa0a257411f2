"""数据模型定义"""

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union


ACTION_TYPES = (
    "click",
    "double_click",
    "right_click",
    "long_press",
    "type",
    "enter",
    "press",
    "scroll",
    "drag",
    "move",
    "wait",
    "task_complete",
    "shell",
)

# 每种动作必须提供的字段，其余字段忽略
REQUIRED_FIELDS: Dict[str, tuple] = {
    "click": ("x", "y"),
    "double_click": ("x", "y"),
    "right_click": ("x", "y"),
    "move": ("x", "y"),
    "long_press": ("x", "y"),
    "drag": ("x", "y", "end_x", "end_y"),
    "type": ("text",),
    "press": ("keys",),
    "scroll": ("scroll_amount",),
    "wait": ("duration",),
    "shell": ("command",),
    "enter": (),
    "task_complete": (),
}


@dataclass
class Action:
    """单个可执行动作，坐标位于 0..N 的归一化坐标系"""
    action: str
    x: Optional[float] = None
    y: Optional[float] = None
    end_x: Optional[float] = None
    end_y: Optional[float] = None
    text: Optional[str] = None
    keys: Optional[List[str]] = None
    duration: Optional[float] = None  # 毫秒
    hold_seconds: Optional[float] = None
    scroll_amount: Optional[float] = None
    # shell 动作专用
    command: Optional[str] = None
    shell: Optional[str] = None
    timeout: Optional[float] = None  # 毫秒
    work_dir: Optional[str] = None
    capture_output: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        """只保留已设置的字段，用于写入提示词中的历史记录"""
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}


@dataclass
class AIResponse:
    """模型的一次决策"""
    thought: str
    action: Action
    recovered: bool = False  # 是否经过字段级兜底解析


@dataclass(frozen=True)
class ModelPoolEntry:
    """一个 (provider, model, key) 组合"""
    entry_id: str
    provider_id: str
    provider_name: str
    base_url: str
    model: str
    api_key: str

    @property
    def target(self) -> str:
        return f"{self.provider_id}::{self.model}"


@dataclass
class ShellResult:
    """单次 shell 命令的执行结果"""
    stdout: str
    stderr: str
    exit_code: int
    duration: int  # 毫秒
    command: str


@dataclass
class ScreenSize:
    width: int
    height: int


class RunStatus(str, Enum):
    COMPLETED = "completed"
    STOPPED = "stopped"
    MAX_ITERATIONS = "max_iterations"
    ERROR = "error"


@dataclass
class RunResult:
    """一次任务运行的最终结果"""
    status: RunStatus
    iterations: int
    error: Optional[str] = None


Hook = Callable[[], Union[None, Awaitable[None]]]


@dataclass
class RunHooks:
    """截图前后的回调（例如隐藏/恢复前端窗口）"""
    before_capture: Optional[Hook] = None
    after_capture: Optional[Hook] = None


@dataclass
class RunOptions:
    model_target: str = "all"
