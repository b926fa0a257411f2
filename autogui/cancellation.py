"""协作式取消：贯穿截图、推理、执行与等待的取消令牌"""

import asyncio
import inspect
from typing import Awaitable, TypeVar

from .errors import TaskAborted

T = TypeVar("T")


class CancelToken:
    """单次运行的取消令牌，每个挂起点前后都应检查"""

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        self._event.set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise TaskAborted()

    async def sleep(self, seconds: float):
        """可被取消的等待，取消时抛出 TaskAborted"""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise TaskAborted()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """
        等待 awaitable 完成；若期间令牌被取消，则取消该任务并抛出 TaskAborted。
        """
        if self._event.is_set():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise TaskAborted()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if self._event.is_set():
            # 等任务真正结束并取回其异常，避免 "exception was never retrieved"
            await asyncio.gather(task, return_exceptions=True)
            raise TaskAborted()
        if task.cancelled():
            # 请求被 cancel_pending_requests 之类的外部调用取消
            raise TaskAborted("request aborted")
        return task.result()
