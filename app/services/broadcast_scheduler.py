"""
app.services.broadcast_scheduler
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

直播列表广播的防抖调度器（尾沿防抖）。

观众进出、开播、下播往往成簇出现。每次 ``schedule()`` 都会取消并重启计时器，
只有在安静期结束后才真正执行一次广播回调，突发事件最终只触发一次全量推送。

计时器用 ``loop.call_later`` 实现：计时器回调与 ``schedule()`` 都运行在同一个
事件循环里，互相之间不会交错，因此“取消旧计时器”和“计时器触发”不存在竞态。
计时器触发后只负责把广播作为独立任务启动，正在进行的广播不会被后续的
``schedule()`` 取消。
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from app.core.logging import get_logger

logger = get_logger(__name__)


class BroadcastScheduler:
    """取消并重启式的防抖调度器。

    Attributes:
        delay: 安静期长度（秒）。
        emitted: 已执行的广播次数。
    """

    def __init__(self, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        self.delay = delay
        self._callback = callback
        self._timer: asyncio.TimerHandle | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        self._closed = False
        self.emitted = 0

    @property
    def pending(self) -> bool:
        """是否有尚未触发的计时器。"""
        return self._timer is not None

    def schedule(self) -> None:
        """请求一次广播；已有计时器时重新计时。"""
        if self._closed:
            logger.debug("调度器已关闭，忽略广播请求")
            return
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        task = asyncio.get_running_loop().create_task(self._run())
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run(self) -> None:
        self.emitted += 1
        try:
            await self._callback()
        except Exception:
            logger.exception("防抖广播执行失败")

    async def close(self) -> None:
        """取消未触发的计时器，并等待进行中的广播结束。"""
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
