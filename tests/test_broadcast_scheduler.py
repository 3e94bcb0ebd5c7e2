"""
tests.test_broadcast_scheduler
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

BroadcastScheduler 防抖行为测试。
"""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from app.services.broadcast_scheduler import BroadcastScheduler


class TestBroadcastScheduler:

    @pytest.mark.asyncio
    async def test_burst_collapses_to_one_call(self) -> None:
        """窗口内的多次 schedule 只触发一次回调。"""
        callback = AsyncMock()
        scheduler = BroadcastScheduler(0.02, callback)

        for _ in range(10):
            scheduler.schedule()
        assert scheduler.pending is True

        await asyncio.sleep(0.1)

        callback.assert_awaited_once()
        assert scheduler.emitted == 1
        assert scheduler.pending is False

    @pytest.mark.asyncio
    async def test_reschedule_restarts_timer(self) -> None:
        """尾沿防抖：重新计时后，原计时器到点时不会触发。"""
        callback = AsyncMock()
        scheduler = BroadcastScheduler(0.05, callback)

        scheduler.schedule()
        await asyncio.sleep(0.03)
        scheduler.schedule()
        await asyncio.sleep(0.03)
        callback.assert_not_awaited()

        await asyncio.sleep(0.06)
        callback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_separate_bursts(self) -> None:
        callback = AsyncMock()
        scheduler = BroadcastScheduler(0.01, callback)

        scheduler.schedule()
        await asyncio.sleep(0.05)
        scheduler.schedule()
        await asyncio.sleep(0.05)

        assert callback.await_count == 2

    @pytest.mark.asyncio
    async def test_callback_failure_is_contained(self) -> None:
        """回调异常只记录日志，后续广播照常执行。"""
        callback = AsyncMock(side_effect=[RuntimeError("boom"), None])
        scheduler = BroadcastScheduler(0.01, callback)

        scheduler.schedule()
        await asyncio.sleep(0.05)
        scheduler.schedule()
        await asyncio.sleep(0.05)

        assert callback.await_count == 2

    @pytest.mark.asyncio
    async def test_close_cancels_pending(self) -> None:
        callback = AsyncMock()
        scheduler = BroadcastScheduler(0.01, callback)

        scheduler.schedule()
        await scheduler.close()
        scheduler.schedule()
        await asyncio.sleep(0.05)

        callback.assert_not_awaited()
        assert scheduler.pending is False
