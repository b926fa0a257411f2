import asyncio
import io
import json
from types import SimpleNamespace

import pytest
from PIL import Image

from autogui.cancellation import CancelToken
from autogui.config import AgentConfig, ApiConfig, ApiModelConfig, ApiProviderConfig, Settings
from autogui.models import ScreenSize, ShellResult
from autogui.shell import format_shell_result


def make_config(keys=("k1", "k2"), models=("m1",), **settings) -> AgentConfig:
    settings.setdefault("screenshot_interval", 0)
    settings.setdefault("retry_delay", 3000)
    provider = ApiProviderConfig(
        id="p1",
        name="Provider One",
        base_url="https://example.invalid/v1",
        api_keys=list(keys),
        models=[ApiModelConfig(id=m) for m in models],
    )
    return AgentConfig(api=ApiConfig(providers=[provider]), settings=Settings(**settings))


def reply(action: str, thought: str = "", **fields) -> str:
    return json.dumps({"thought": thought, "action": dict(action=action, **fields)})


class FakeTransport:
    """按顺序返回预设回复；最后一个回复会一直重复"""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    async def complete(self, base_url, api_key, model, messages):
        self.calls.append(SimpleNamespace(base_url=base_url, api_key=api_key, model=model, messages=messages))
        item = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return await item()
        return item

    def prompt(self, index: int) -> str:
        return self.calls[index].messages[1]["content"][0]["text"]


class FakeCapture:
    def __init__(self, width=2000, height=1000):
        self.size = ScreenSize(width, height)
        self.captures = 0

    async def get_size(self):
        return self.size

    async def capture(self):
        self.captures += 1
        return b"\x89PNG fake"


class FakeDriver:
    def __init__(self, fail_times=0, shell_output="ok", shell_exit_codes=()):
        self.executed = []
        self.fail_times = fail_times
        self.shell_output = shell_output
        self.shell_exit_codes = list(shell_exit_codes)
        self.last_shell_result = None

    async def execute(self, action):
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("driver failed")
        self.executed.append(action)
        if action.action == "shell":
            exit_code = self.shell_exit_codes.pop(0) if self.shell_exit_codes else 0
            self.last_shell_result = ShellResult(self.shell_output, "", exit_code, 0, action.command)

    def get_last_shell_result_formatted(self):
        if self.last_shell_result is None:
            return None
        return format_shell_result(self.last_shell_result)


class FakeMouse:
    def __init__(self, log):
        self.log = log

    async def click(self, x, y, button="left", click_count=1):
        self.log.append(("click", x, y, button))

    async def dblclick(self, x, y):
        self.log.append(("dblclick", x, y))

    async def move(self, x, y, steps=1):
        self.log.append(("move", x, y))

    async def down(self):
        self.log.append(("down",))

    async def up(self):
        self.log.append(("up",))

    async def wheel(self, delta_x, delta_y):
        self.log.append(("wheel", delta_x, delta_y))


class FakeKeyboard:
    def __init__(self, log):
        self.log = log

    async def type(self, text):
        self.log.append(("type", text))

    async def press(self, key):
        self.log.append(("press", key))


class FakePage:
    def __init__(self, width=1280, height=720):
        self.log = []
        self.mouse = FakeMouse(self.log)
        self.keyboard = FakeKeyboard(self.log)
        self.viewport_size = {"width": width, "height": height}

    async def screenshot(self, type="png"):
        buffer = io.BytesIO()
        Image.new("RGB", (self.viewport_size["width"], self.viewport_size["height"]), "white").save(buffer, format="PNG")
        return buffer.getvalue()

    async def evaluate(self, expression):
        return dict(self.viewport_size)


@pytest.fixture
def sleeps(monkeypatch):
    """记录所有可取消等待的时长而不真正等待"""
    recorded = []

    async def fake_sleep(self, seconds):
        self.raise_if_cancelled()
        recorded.append(seconds)
        await asyncio.sleep(0)

    monkeypatch.setattr(CancelToken, "sleep", fake_sleep)
    return recorded
