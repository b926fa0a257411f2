import io

import pytest
from PIL import Image

from conftest import FakePage
from autogui.models import ScreenSize
from autogui.perception import CoordinateMapper, PageCapture


@pytest.mark.parametrize("point, size, expected", [
    ((500, 300), ScreenSize(1920, 1080), (960, 324)),
    ((500, 300), ScreenSize(2000, 1000), (1000, 300)),
    ((0, 0), ScreenSize(1920, 1080), (0, 0)),
    ((1000, 1000), ScreenSize(1920, 1080), (1920, 1080)),
    ((1, 1), ScreenSize(1500, 1500), (2, 2)),
])
def test_coordinate_mapping(point, size, expected):
    assert CoordinateMapper(1000).map(*point, size) == expected


def test_custom_scale():
    assert CoordinateMapper(100).map(50, 25, ScreenSize(800, 600)) == (400, 150)


async def test_page_size_from_viewport():
    capture = PageCapture(FakePage(1280, 720))
    assert await capture.get_size() == ScreenSize(1280, 720)


async def test_page_size_falls_back_to_window():
    page = FakePage(800, 600)
    page.viewport_size = None
    page.evaluate = lambda expression: _async_value({"width": 1024, "height": 768})
    assert await PageCapture(page).get_size() == ScreenSize(1024, 768)


async def test_capture_is_resized_to_scale():
    data = await PageCapture(FakePage(1280, 720), scale=200).capture()
    image = Image.open(io.BytesIO(data))
    assert image.format == "PNG"
    assert image.size == (200, 200)


async def _async_value(value):
    return value
