"""感知模块：截图服务接口、归一化坐标映射，以及基于 Playwright 页面的截图实现"""

import io
import math
from typing import Protocol, Tuple

from PIL import Image
from playwright.async_api import Page

from .models import ScreenSize


class CaptureService(Protocol):
    async def get_size(self) -> ScreenSize:
        ...

    async def capture(self) -> bytes:
        ...


class CoordinateMapper:
    """把 0..scale 的归一化坐标映射为物理像素坐标"""

    def __init__(self, scale: int = 1000):
        self.scale = scale

    def map(self, x: float, y: float, size: ScreenSize) -> Tuple[int, int]:
        return (
            _round_half_up(x * size.width / self.scale),
            _round_half_up(y * size.height / self.scale),
        )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class PageCapture:
    """
    把 Playwright 页面当作操作表面：截图后缩放为 scale x scale 的 PNG，
    与模型使用的归一化坐标系一一对应。
    """

    def __init__(self, page: Page, scale: int = 1000):
        self.page = page
        self.scale = scale

    async def get_size(self) -> ScreenSize:
        viewport = self.page.viewport_size
        if viewport:
            return ScreenSize(width=viewport["width"], height=viewport["height"])
        size = await self.page.evaluate("() => ({width: window.innerWidth, height: window.innerHeight})")
        return ScreenSize(width=int(size["width"]), height=int(size["height"]))

    async def capture(self) -> bytes:
        raw = await self.page.screenshot(type="png")
        image = Image.open(io.BytesIO(raw)).convert("RGB")
        resized = image.resize((self.scale, self.scale))
        buffer = io.BytesIO()
        resized.save(buffer, format="PNG")
        return buffer.getvalue()
