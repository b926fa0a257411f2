import logging
import sys

import pytest

from conftest import FakePage
from autogui.controller import Controller, map_key
from autogui.errors import ActionFormatError, CommandBlockedError
from autogui.models import Action
from autogui.shell import ShellExecutor


@pytest.fixture
def page():
    return FakePage()


@pytest.fixture
def controller(page, tmp_path):
    return Controller(page, ShellExecutor(allowed_directories=[str(tmp_path)]))


async def test_click_moves_then_clicks(controller, page):
    await controller.execute(Action("click", x=10, y=20))
    assert page.log == [("move", 10, 20), ("click", 10, 20, "left")]


async def test_double_and_right_click(controller, page):
    await controller.execute(Action("double_click", x=1, y=2))
    await controller.execute(Action("right_click", x=3, y=4))
    assert page.log == [("dblclick", 1, 2), ("click", 3, 4, "right")]


async def test_long_press_releases_button(controller, page):
    await controller.execute(Action("long_press", x=5, y=6, hold_seconds=0.1))
    assert page.log == [("move", 5, 6), ("down",), ("up",)]


async def test_drag(controller, page):
    await controller.execute(Action("drag", x=1, y=2, end_x=30, end_y=40))
    assert page.log == [("move", 1, 2), ("down",), ("move", 30, 40), ("up",)]


async def test_multiline_type_presses_enter(controller, page):
    await controller.execute(Action("type", text="第一行\n第二行"))
    assert page.log == [("type", "第一行"), ("press", "Enter"), ("type", "第二行")]


async def test_key_combination(controller, page):
    await controller.execute(Action("press", keys=["ctrl", "shift", "t"]))
    await controller.execute(Action("enter"))
    assert page.log == [("press", "Control+Shift+t"), ("press", "Enter")]


async def test_unrecognised_keys_are_skipped(controller, page):
    await controller.execute(Action("press", keys=["hyperdrive"]))
    assert page.log == []


async def test_lock_and_system_keys(controller, page):
    await controller.execute(Action("press", keys=["ctrl", "capslock"]))
    await controller.execute(Action("press", keys=["PrintScreen"]))
    assert page.log == [("press", "Control+CapsLock"), ("press", "PrintScreen")]


async def test_dropped_keys_are_logged(controller, page, caplog):
    with caplog.at_level(logging.WARNING, logger="autogui.controller"):
        await controller.execute(Action("press", keys=["ctrl", "hyperdrive", "a"]))
    assert page.log == [("press", "Control+a")]
    assert any("hyperdrive" in r.getMessage() for r in caplog.records)


async def test_scroll_direction_and_cap(controller, page):
    await controller.execute(Action("scroll", scroll_amount=2))
    assert page.log == [("wheel", 0, -100), ("wheel", 0, -100)]
    page.log.clear()
    await controller.execute(Action("scroll", scroll_amount=-50))
    assert page.log == [("wheel", 0, 100)] * 10


async def test_wait_and_task_complete_do_not_touch_page(controller, page):
    await controller.execute(Action("wait", duration=0))
    await controller.execute(Action("task_complete"))
    assert page.log == []


async def test_missing_coordinates_raise(controller):
    with pytest.raises(ActionFormatError):
        await controller.execute(Action("click"))


async def test_shell_policy_errors_propagate(controller):
    with pytest.raises(CommandBlockedError):
        await controller.execute(Action("shell", command="shutdown -h now"))
    assert controller.get_last_shell_result_formatted() is None


@pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh")
async def test_shell_result_is_kept(controller, tmp_path):
    await controller.execute(Action("shell", command="echo hi", shell="/bin/sh", work_dir=str(tmp_path)))
    text = controller.get_last_shell_result_formatted()
    assert "命令：echo hi" in text
    assert "hi" in controller.last_shell_result.stdout


@pytest.mark.parametrize("key, expected", [
    ("ctrl", "Control"),
    ("CMD", "Meta"),
    ("win", "Meta"),
    ("esc", "Escape"),
    ("f5", "F5"),
    ("a", "a"),
    ("unknown", None),
])
def test_map_key(key, expected):
    assert map_key(key) == expected
