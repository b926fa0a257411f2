"""执行模块：在 Playwright 页面上执行动作，shell 动作交给 ShellExecutor"""

import asyncio
import logging
from typing import List, Optional, Protocol

from playwright.async_api import Page

from .errors import ActionFormatError
from .models import Action, ShellResult
from .shell import ShellExecutor, format_shell_result

logger = logging.getLogger(__name__)

# 模型常用的按键名 -> Playwright 按键名
KEY_MAP = {
    "ctrl": "Control",
    "control": "Control",
    "alt": "Alt",
    "option": "Alt",
    "shift": "Shift",
    "win": "Meta",
    "meta": "Meta",
    "cmd": "Meta",
    "command": "Meta",
    "super": "Meta",
    "enter": "Enter",
    "return": "Enter",
    "newline": "Enter",
    "linebreak": "Enter",
    "submit": "Enter",
    "send": "Enter",
    "space": "Space",
    "tab": "Tab",
    "escape": "Escape",
    "esc": "Escape",
    "backspace": "Backspace",
    "delete": "Delete",
    "del": "Delete",
    "insert": "Insert",
    "up": "ArrowUp",
    "down": "ArrowDown",
    "left": "ArrowLeft",
    "right": "ArrowRight",
    "home": "Home",
    "end": "End",
    "pageup": "PageUp",
    "pagedown": "PageDown",
    "pgup": "PageUp",
    "pgdn": "PageDown",
    "capslock": "CapsLock",
    "numlock": "NumLock",
    "scrolllock": "ScrollLock",
    "printscreen": "PrintScreen",
    "prtsc": "PrintScreen",
    "pause": "Pause",
    "menu": "ContextMenu",
    "contextmenu": "ContextMenu",
}
KEY_MAP.update({f"f{i}": f"F{i}" for i in range(1, 13)})

SCROLL_STEP_PIXELS = 100
MAX_SCROLL_STEPS = 10


class ActionDriver(Protocol):
    async def execute(self, action: Action) -> None:
        ...


def map_key(key: str) -> Optional[str]:
    key = key.strip()
    if len(key) == 1:
        return key
    return KEY_MAP.get(key.lower())


class Controller:
    """
    执行模块：动作中的坐标已经是物理像素坐标。

    执行失败直接抛出，由控制循环记录。
    """

    def __init__(self, page: Page, shell_executor: Optional[ShellExecutor] = None):
        self.page = page
        self.shell_executor = shell_executor or ShellExecutor()
        self.last_shell_result: Optional[ShellResult] = None

    async def execute(self, action: Action) -> None:
        kind = action.action
        logger.info("执行动作: %s", action.to_dict())

        if kind == "click":
            await self._click(action)
        elif kind == "double_click":
            x, y = self._point(action)
            await self.page.mouse.dblclick(x, y)
        elif kind == "right_click":
            x, y = self._point(action)
            await self.page.mouse.click(x, y, button="right")
        elif kind == "long_press":
            await self._long_press(action)
        elif kind == "type":
            await self._type(action.text or "")
        elif kind == "enter":
            await self.page.keyboard.press("Enter")
        elif kind == "press":
            await self._press(action.keys or [])
        elif kind == "scroll":
            await self._scroll(action.scroll_amount or 0)
        elif kind == "drag":
            await self._drag(action)
        elif kind == "move":
            x, y = self._point(action)
            await self.page.mouse.move(x, y)
        elif kind == "wait":
            await asyncio.sleep((action.duration if action.duration is not None else 1000) / 1000)
        elif kind == "task_complete":
            logger.info("✓ 任务完成")
        elif kind == "shell":
            self.last_shell_result = await self._shell(action)
        else:
            logger.warning("❌ 未知 action: %s", kind)

    @staticmethod
    def _point(action: Action):
        if action.x is None or action.y is None:
            raise ActionFormatError("x", f"ACTION_FORMAT_ERROR: {action.action} 需要 x 和 y")
        return action.x, action.y

    async def _click(self, action: Action):
        x, y = self._point(action)
        await self.page.mouse.move(x, y)
        await self.page.mouse.click(x, y)
        logger.info("✓ 点击 (%s, %s)", x, y)

    async def _long_press(self, action: Action):
        x, y = self._point(action)
        hold = max(0.1, float(action.hold_seconds or 1))
        await self.page.mouse.move(x, y)
        await self.page.mouse.down()
        try:
            await asyncio.sleep(hold)
        finally:
            await self.page.mouse.up()
        logger.info("✓ 长按 (%s, %s) %.2fs", x, y, hold)

    async def _type(self, text: str):
        """多行文本按行输入，换行处按回车"""
        segments = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
        for i, segment in enumerate(segments):
            if segment:
                await self.page.keyboard.type(segment)
            if i < len(segments) - 1:
                await self.page.keyboard.press("Enter")
        logger.info("✓ 输入 '%s'", text)

    async def _press(self, keys: List[str]):
        mapped = [map_key(k) for k in keys]
        valid = [k for k in mapped if k]
        dropped = [k for k, m in zip(keys, mapped) if not m]
        if dropped:
            logger.warning("❌ 忽略无法识别的按键: %s", dropped)
        if not valid:
            logger.warning("❌ 没有可识别的按键: %s", keys)
            return
        combo = "+".join(valid)
        await self.page.keyboard.press(combo)
        logger.info("✓ 按键 %s", combo)

    async def _scroll(self, amount: float):
        """正数向上，负数向下"""
        steps = min(abs(int(amount)), MAX_SCROLL_STEPS)
        direction = -1 if amount > 0 else 1
        for _ in range(steps):
            await self.page.mouse.wheel(0, direction * SCROLL_STEP_PIXELS)
        logger.info("✓ 滚动 %s", amount)

    async def _drag(self, action: Action):
        x, y = self._point(action)
        if action.end_x is None or action.end_y is None:
            raise ActionFormatError("end_x", "ACTION_FORMAT_ERROR: drag 需要 end_x 和 end_y")
        await self.page.mouse.move(x, y)
        await self.page.mouse.down()
        await self.page.mouse.move(action.end_x, action.end_y, steps=10)
        await self.page.mouse.up()
        logger.info("✓ 拖拽 (%s, %s) -> (%s, %s)", x, y, action.end_x, action.end_y)

    async def _shell(self, action: Action) -> ShellResult:
        if not action.command:
            raise ActionFormatError("command", "ACTION_FORMAT_ERROR: shell 动作需要 command")
        return await self.shell_executor.execute(
            action.command,
            shell=action.shell,
            work_dir=action.work_dir,
            timeout=action.timeout,
            capture_output=action.capture_output is not False,
        )

    def get_last_shell_result_formatted(self) -> Optional[str]:
        if self.last_shell_result is None:
            return None
        return format_shell_result(self.last_shell_result)
