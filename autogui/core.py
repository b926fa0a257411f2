"""电脑操作智能体核心类：截图 → 推理 → 执行 → 等待 的控制循环"""

import dataclasses
import inspect
import logging
import os
import re
import time
from pathlib import Path
from typing import Optional

from playwright.async_api import Page

from .cancellation import CancelToken
from .config import AgentConfig
from .controller import ActionDriver, Controller
from .errors import ConfigurationError, PoolExhaustedError, TaskAborted
from .memory import Memory
from .models import Action, RunHooks, RunOptions, RunResult, RunStatus, ScreenSize
from .perception import CaptureService, CoordinateMapper, PageCapture
from .planner import Planner
from .shell import ShellExecutor

logger = logging.getLogger(__name__)

POOL_EXHAUSTED_MESSAGE = "API 次数已用完（所有 API Key 均触发限额/鉴权错误），请稍后重试或更换模型/Key"

_CD_PATTERN = re.compile(r"^(?:cd|chdir)(?:\s+/d)?\s+([^\s&;|]+)", re.I)


def resolve_work_dir(command: str, current: Optional[str]) -> Optional[str]:
    """
    若命令以 cd/chdir 开头，返回切换后的目录；否则返回 current。

    相对路径基于 current 解析，current 未知时保持不变。
    """
    match = _CD_PATTERN.match(command.strip())
    if not match:
        return current
    target = os.path.expanduser(match.group(1).replace('"', "").replace("'", ""))
    if os.path.isabs(target):
        return os.path.normpath(target)
    if current is None:
        return current
    return os.path.normpath(os.path.join(current, target))


async def _call_hook(hook):
    if hook is None:
        return
    result = hook()
    if inspect.isawaitable(result):
        await result


class Agent:
    """电脑操作智能体"""

    def __init__(
        self,
        config: AgentConfig,
        capture: CaptureService,
        driver: ActionDriver,
        planner: Optional[Planner] = None,
        mapper: Optional[CoordinateMapper] = None,
    ):
        self.config = config
        self.capture = capture
        self.driver = driver
        self.planner = planner or Planner(config)
        if len(self.planner.pool) == 0:
            raise ConfigurationError("没有可用的模型配置，请检查 providers 或 api_key/base_url/model")
        self.mapper = mapper or CoordinateMapper(config.settings.coordinate_scale)
        self.memory = Memory()
        # 会话工作目录跨多次运行保留
        self.work_dir: Optional[str] = config.settings.work_dir
        self._token: Optional[CancelToken] = None

    @classmethod
    def for_page(
        cls,
        page: Page,
        config: AgentConfig,
        planner: Optional[Planner] = None,
        shell_executor: Optional[ShellExecutor] = None,
    ) -> "Agent":
        """以一个 Playwright 页面作为操作表面"""
        if shell_executor is None:
            shell_executor = ShellExecutor(allowed_directories=config.settings.allowed_directories)
        return cls(
            config,
            PageCapture(page, config.settings.coordinate_scale),
            Controller(page, shell_executor),
            planner=planner,
        )

    async def run(self, task: str, hooks: Optional[RunHooks] = None,
                  options: Optional[RunOptions] = None) -> RunResult:
        """
        执行任务的主循环。
        """
        hooks = hooks or RunHooks()
        options = options or RunOptions()
        settings = self.config.settings
        token = CancelToken()
        self._token = token
        self.memory.reset()
        iterations = 0

        logger.info("开始执行任务: %s", task)
        try:
            size = await token.guard(self.capture.get_size())
            logger.info("屏幕尺寸: %dx%d", size.width, size.height)

            for iteration in range(settings.max_iterations):
                if token.cancelled:
                    logger.info("任务被中断")
                    return RunResult(RunStatus.STOPPED, iterations)

                iterations = iteration + 1
                logger.info("%s 迭代 %d/%d %s", "=" * 20, iterations, settings.max_iterations, "=" * 20)

                # 1. 感知
                screenshot = await self._capture(hooks, token)
                self._save_debug_screenshot(screenshot, iteration)

                # 2. 规划
                try:
                    response = await self.planner.analyze_screenshot(
                        screenshot,
                        self._build_prompt(task),
                        self.memory.history,
                        options.model_target,
                        token,
                    )
                except TaskAborted:
                    raise
                except PoolExhaustedError as e:
                    logger.error("模型池耗尽: %s", e)
                    return RunResult(RunStatus.ERROR, iterations, POOL_EXHAUSTED_MESSAGE)
                except ConfigurationError as e:
                    logger.error("模型配置错误: %s", e)
                    return RunResult(RunStatus.ERROR, iterations, str(e))
                except Exception as e:
                    logger.error("AI 分析失败，等待后重试: %s", e)
                    await token.sleep(settings.retry_delay / 1000)
                    continue

                if token.cancelled:
                    logger.info("任务被中断（丢弃本轮 AI 返回动作）")
                    return RunResult(RunStatus.STOPPED, iterations)

                logger.info("思考: %s", response.thought)
                logger.info("动作: %s%s", response.action.to_dict(), " (兜底解析)" if response.recovered else "")

                # 3. 判断是否完成
                if response.action.action == "task_complete":
                    logger.info("✓✓✓ 任务完成 ✓✓✓")
                    return RunResult(RunStatus.COMPLETED, iterations)

                # 4. 检查死循环
                self.memory.update_repetition(response.action)

                # 5. 执行
                await self._execute(response.action, size, token)
                if token.cancelled:
                    logger.info("任务被中断")
                    return RunResult(RunStatus.STOPPED, iterations)

                if iterations < settings.max_iterations:
                    await token.sleep(settings.screenshot_interval / 1000)

            logger.warning("达到最大迭代次数，任务可能未完成")
            return RunResult(RunStatus.MAX_ITERATIONS, iterations)
        except TaskAborted:
            logger.info("任务被中断")
            return RunResult(RunStatus.STOPPED, iterations)
        except Exception as e:
            logger.exception("任务执行出错")
            return RunResult(RunStatus.ERROR, iterations, str(e) or type(e).__name__)
        finally:
            self._token = None
            logger.info("Agent 执行结束（共 %d 轮）\n%s", iterations, self.memory.format_history())

    def stop(self):
        """中断当前运行，并取消进行中的模型请求；可重复调用"""
        if self._token is not None:
            self._token.cancel()
        self.planner.cancel_pending_requests()

    async def _capture(self, hooks: RunHooks, token: CancelToken) -> bytes:
        token.raise_if_cancelled()
        await _call_hook(hooks.before_capture)
        try:
            return await token.guard(self.capture.capture())
        finally:
            await _call_hook(hooks.after_capture)

    def _build_prompt(self, task: str) -> str:
        prompt = task
        if self.memory.last_shell_result:
            prompt += (
                f"\n\n[上一步执行结果]\n{self.memory.last_shell_result}\n\n"
                "请基于上述结果和当前屏幕截图，决定下一步操作。"
            )
        if self.memory.warning:
            prompt += f"\n\n{self.memory.warning}"
        return prompt

    def _map_action(self, action: Action, size: ScreenSize) -> Action:
        mapped = dataclasses.replace(action)
        if action.x is not None and action.y is not None:
            mapped.x, mapped.y = self.mapper.map(action.x, action.y, size)
        if action.end_x is not None and action.end_y is not None:
            mapped.end_x, mapped.end_y = self.mapper.map(action.end_x, action.end_y, size)
        return mapped

    async def _execute(self, action: Action, size: ScreenSize, token: CancelToken):
        mapped = self._map_action(action, size)
        token.raise_if_cancelled()
        if mapped.action == "shell" and not mapped.work_dir and self.work_dir:
            mapped.work_dir = self.work_dir

        try:
            await self.driver.execute(mapped)
        except Exception as e:
            logger.error("执行操作失败: %s", e)
            if action.action == "shell":
                self.memory.last_shell_result = f"命令：{action.command}\n执行失败：{e}"
            return

        self.memory.record(action)
        if action.action != "shell":
            return

        formatter = getattr(self.driver, "get_last_shell_result_formatted", None)
        if formatter is not None:
            self.memory.last_shell_result = formatter()
        last_result = getattr(self.driver, "last_shell_result", None)
        if last_result is not None and last_result.exit_code != 0:
            logger.info("[shell] 命令退出码 %d，工作目录保持不变", last_result.exit_code)
            return
        if action.command:
            new_dir = resolve_work_dir(action.command, self.work_dir)
            if new_dir != self.work_dir:
                self.work_dir = new_dir
                logger.info("[shell] 工作目录更新：%s", self.work_dir)

    def _save_debug_screenshot(self, screenshot: bytes, iteration: int):
        directory = self.config.settings.debug_screenshot_dir
        if not directory:
            return
        try:
            path = Path(directory)
            path.mkdir(parents=True, exist_ok=True)
            (path / f"screenshot_{int(time.time() * 1000)}_{iteration}.png").write_bytes(screenshot)
        except OSError as e:
            logger.debug("保存调试截图失败: %s", e)
