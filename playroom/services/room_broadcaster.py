"""
playroom.services.room_broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间事件推送 —— 维护某个房间的 WebSocket 订阅者，推送 ``RoomEvent``。

推送是尽力而为、至多一次的通知：发送失败只移除断开的连接，
从不影响席位或会话状态。订阅者重连后先收到一份席位快照，不做补发。
"""
from __future__ import annotations

import asyncio

from fastapi import WebSocket

from playroom.core.logging import get_logger
from playroom.schemas.room_interactions import RoomEvent

logger = get_logger(__name__)


class RoomBroadcaster:
    """某个房间的订阅者集合。

    Attributes:
        room_id: 所属房间。
        subscribers: WebSocket → 参与者 ID（匿名订阅者为 None）。
    """

    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        self.subscribers: dict[WebSocket, str | None] = {}

    async def connect(self, websocket: WebSocket, participant_id: str | None = None) -> None:
        await websocket.accept()
        self.subscribers[websocket] = participant_id

    def disconnect(self, websocket: WebSocket) -> None:
        self.subscribers.pop(websocket, None)

    @property
    def online_count(self) -> int:
        return len(self.subscribers)

    async def send_snapshot(self, websocket: WebSocket, event: RoomEvent) -> None:
        """只向单个订阅者发送事件（连接建立时的初始快照）。"""
        await websocket.send_text(event.model_dump_json())

    async def publish(self, event: RoomEvent) -> None:
        """向房间内所有订阅者推送事件。发送失败的连接被移除，异常不向调用方传播。"""
        if not self.subscribers:
            return
        message = event.model_dump_json()
        targets = list(self.subscribers)
        results = await asyncio.gather(
            *(ws.send_text(message) for ws in targets),
            return_exceptions=True,
        )
        dropped = 0
        for ws, result in zip(targets, results):
            if isinstance(result, Exception):
                self.subscribers.pop(ws, None)
                dropped += 1
        if dropped:
            logger.warning(
                "事件推送失败，已移除断开的连接 | room=%s | event=%s | dropped=%d",
                self.room_id, event.event, dropped,
            )
