"""
playroom.services.presence
~~~~~~~~~~~~~~~~~~~~~~~~~~

在线检测与后台维护循环。

- ``PresenceTracker``：记录每个 (房间, 参与者) 的最后心跳时间，
  超过宽限期未心跳即视为掉线。
- ``RoomMaintenance``：后台协程，按固定间隔
    1. 刷新所有会话（推送 free_trial → metered 迁移），
    2. 对掉线参与者触发 ``on_presence_timeout``（下麦 + 结算），
    3. 定期重试未结算的会话。
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from playroom.core.logging import get_logger

if TYPE_CHECKING:
    from playroom.services.live_system import RoomSystem

logger = get_logger(__name__)


class PresenceTracker:
    """心跳登记表。"""

    def __init__(self, grace_seconds: float, clock: Callable[[], datetime]) -> None:
        self.grace = timedelta(seconds=grace_seconds)
        self.clock = clock
        self._last_seen: dict[tuple[str, str], datetime] = {}

    def touch(self, room_id: str, participant_id: str) -> None:
        self._last_seen[(room_id, participant_id)] = self.clock()

    def forget(self, room_id: str, participant_id: str) -> None:
        self._last_seen.pop((room_id, participant_id), None)

    def forget_room(self, room_id: str) -> None:
        for key in [k for k in self._last_seen if k[0] == room_id]:
            del self._last_seen[key]

    def last_seen(self, room_id: str, participant_id: str) -> datetime | None:
        return self._last_seen.get((room_id, participant_id))

    def expired(self, now: datetime | None = None) -> list[tuple[str, str]]:
        """返回超过宽限期未心跳的 (room_id, participant_id) 列表。"""
        now = now or self.clock()
        return [key for key, seen in self._last_seen.items() if now - seen > self.grace]


class RoomMaintenance:
    """房间后台维护循环（在 lifespan 中启动/停止）。"""

    def __init__(
        self,
        system: RoomSystem,
        interval: float,
        reconcile_interval: float,
    ) -> None:
        self._system = system
        self._interval = interval
        self._reconcile_interval = reconcile_interval
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._since_reconcile = 0.0

    async def run_once(self) -> None:
        """执行一轮维护。单轮内的异常只记录日志，下一轮重新计算。"""
        try:
            await self._system.tick_all()
            await self._system.expire_stale()
        except Exception as e:
            logger.error("房间维护循环异常: %s", e, exc_info=True)

        self._since_reconcile += self._interval
        if self._since_reconcile >= self._reconcile_interval:
            self._since_reconcile = 0.0
            try:
                done = await self._system.reconcile_unsettled()
                if done:
                    logger.info("对账完成 | processed=%d", done)
            except Exception as e:
                logger.error("对账异常: %s", e, exc_info=True)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.debug("房间维护循环已启动 | interval=%.1fs", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
