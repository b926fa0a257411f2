"""记忆模块：保存单次运行的动作历史、上一次 shell 结果，并检测重复动作"""

import logging
from typing import List, Optional

from .models import Action

logger = logging.getLogger(__name__)

REPEAT_THRESHOLD = 3


def _fmt(value) -> str:
    if value is None:
        return "na"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_action_signature(action: Action) -> str:
    """动作签名：动作类型 + 区分性字段，用于判断是否重复"""
    kind = action.action
    if kind in ("click", "double_click", "right_click", "move"):
        return f"{kind}:{_fmt(action.x)},{_fmt(action.y)}"
    if kind == "long_press":
        hold = action.hold_seconds if action.hold_seconds is not None else 1
        return f"{kind}:{_fmt(action.x)},{_fmt(action.y)}:{float(hold):.2f}"
    if kind == "drag":
        return f"{kind}:{_fmt(action.x)},{_fmt(action.y)}->{_fmt(action.end_x)},{_fmt(action.end_y)}"
    if kind == "type":
        return f"{kind}:{action.text or ''}"
    if kind == "press":
        return f"{kind}:{'+'.join(action.keys or [])}"
    if kind == "scroll":
        return f"{kind}:{_fmt(action.scroll_amount or 0)}"
    if kind == "wait":
        return f"{kind}:{_fmt(action.duration if action.duration is not None else 1000)}"
    if kind == "shell":
        return f"{kind}:{action.command or ''}"
    return kind


class Memory:
    """记忆模块：由控制循环独占，每次运行开始时重置"""

    def __init__(self):
        self.history: List[Action] = []
        self.last_shell_result: Optional[str] = None
        self.last_signature = ""
        self.repeat_count = 0
        self.warning = ""

    def reset(self):
        self.history.clear()
        self.last_shell_result = None
        self.last_signature = ""
        self.repeat_count = 0
        self.warning = ""

    def record(self, action: Action):
        """记录已执行的动作（归一化坐标）"""
        self.history.append(action)

    def recent(self, last_n: int) -> List[Action]:
        if last_n <= 0:
            return []
        return self.history[-last_n:]

    def update_repetition(self, action: Action) -> str:
        """
        更新连续相同动作计数，返回需要注入下一轮提示词的警告（无则为空串）。

        计数不设上限；达到阈值后每一轮都会给出警告，出现不同动作时清除。
        """
        signature = build_action_signature(action)
        if not signature:
            self.last_signature = ""
            self.repeat_count = 0
            self.warning = ""
            return self.warning

        if signature == self.last_signature:
            self.repeat_count += 1
        else:
            self.last_signature = signature
            self.repeat_count = 1

        if self.repeat_count >= REPEAT_THRESHOLD:
            brief = signature if len(signature) <= 120 else signature[:120] + "..."
            self.warning = (
                f"【系统提醒】你已连续 {self.repeat_count} 次输出相同动作（{brief}），可能陷入了死循环。"
                "下一步必须先根据当前截图确认上一步是否真的成功；若未成功，请换一种方式"
                "（换目标控件、先聚焦窗口、改用快捷键等），不要原地重复同一动作。"
            )
            logger.warning("[loop-detect] 检测到连续重复动作 %d 次: %s", self.repeat_count, brief)
        else:
            self.warning = ""
        return self.warning

    def format_history(self, last_n: int = 5) -> str:
        """格式化最近的动作，用于日志"""
        if not self.history:
            return "(无历史)"
        start = max(0, len(self.history) - last_n)
        lines = []
        for index, action in enumerate(self.history[start:], start=start + 1):
            lines.append(f"Step {index}: {build_action_signature(action)}")
        return "\n".join(lines)
