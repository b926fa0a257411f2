"""AutoGUI 电脑操作智能体包

包含各个模块：
- models: 数据模型
- errors: 异常定义
- config: 配置
- parser: 模型输出解析与动作校验
- pool / transport / planner: 模型池、模型调用与规划
- shell: 命令执行
- memory: 记忆模块
- perception: 感知模块
- controller: 执行模块
- core: 核心 Agent 类
"""

from .models import Action, AIResponse, ModelPoolEntry, RunHooks, RunOptions, RunResult, RunStatus, ScreenSize, ShellResult
from .errors import (
    ActionFormatError,
    AutoGUIError,
    CommandBlockedError,
    CommandTimeoutError,
    ConfigurationError,
    DirectoryNotAllowedError,
    PoolExhaustedError,
    ResponseParseError,
    TaskAborted,
)
from .config import AgentConfig, ApiConfig, ApiModelConfig, ApiProviderConfig, Settings
from .cancellation import CancelToken
from .parser import parse_ai_response
from .pool import ModelPool, build_model_pool
from .transport import OpenAITransport
from .planner import Planner
from .shell import ShellExecutor
from .memory import Memory
from .perception import CoordinateMapper, PageCapture
from .controller import Controller
from .core import Agent

__all__ = [
    "Action",
    "AIResponse",
    "ModelPoolEntry",
    "RunHooks",
    "RunOptions",
    "RunResult",
    "RunStatus",
    "ScreenSize",
    "ShellResult",
    "ActionFormatError",
    "AutoGUIError",
    "CommandBlockedError",
    "CommandTimeoutError",
    "ConfigurationError",
    "DirectoryNotAllowedError",
    "PoolExhaustedError",
    "ResponseParseError",
    "TaskAborted",
    "AgentConfig",
    "ApiConfig",
    "ApiModelConfig",
    "ApiProviderConfig",
    "Settings",
    "CancelToken",
    "parse_ai_response",
    "ModelPool",
    "build_model_pool",
    "OpenAITransport",
    "Planner",
    "ShellExecutor",
    "Memory",
    "CoordinateMapper",
    "PageCapture",
    "Controller",
    "Agent",
]
