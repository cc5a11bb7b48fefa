"""
playroom.api.room_ws
~~~~~~~~~~~~~~~~~~~~

WebSocket 房间订阅接口。

提供 ``/ws/rooms/{room_id}?participant_id=...`` 端点：

  - 连接建立后立即推送一条 ``occupancy_changed`` 快照；
  - 之后房间内的席位变化与会话状态变化以 ``RoomEvent`` JSON 推送；
  - 客户端发送 ``ping`` 视为在线心跳，服务端回复 ``pong``；
    心跳过快会收到 ``[SYSTEM:...]`` 提示并被忽略。
"""
from __future__ import annotations

import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from playroom.core.errors import RoomNotFoundError
from playroom.core.logging import get_logger, request_id_ctx_var
from playroom.core.rate_limit import WebSocketRateLimiter
from playroom.core.settings import settings
from playroom.schemas.room_interactions import RoomEvent
from playroom.services.live_system import RoomSystem

logger = get_logger(__name__)

router: APIRouter = APIRouter()

PING = "ping"
PONG = "pong"


@router.websocket("/ws/rooms/{room_id}")
async def websocket_room_endpoint(
    websocket: WebSocket,
    room_id: str,
    participant_id: str | None = None,
) -> None:
    """WebSocket 房间订阅端点。

    匿名订阅者（不带 ``participant_id``）只接收事件，``ping`` 不会登记心跳。

    Args:
        websocket: FastAPI WebSocket 连接对象。
        room_id: 房间唯一标识。
        participant_id: 参与者 ID，用于心跳登记。
    """
    ws_req_id = f"ws-{uuid.uuid4().hex[:8]}"
    token = request_id_ctx_var.set(ws_req_id)

    try:
        system: RoomSystem = websocket.app.state.room_system
        try:
            room = system.get_room(room_id)
        except RoomNotFoundError:
            logger.warning("订阅不存在的房间 | room=%s", room_id)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await room.broadcaster.connect(websocket, participant_id)
        logger.info(
            "订阅者进入房间 | room=%s | participant=%s | 在线: %d",
            room_id, participant_id, room.online_count,
        )

        ws_limiter = WebSocketRateLimiter(interval_seconds=settings.WS_RATE_LIMIT_INTERVAL)
        client_id = id(websocket)

        try:
            snapshot = RoomEvent(
                room_id=room_id,
                event="occupancy_changed",
                payload=system.get_occupancy(room_id).model_dump(mode="json"),
            )
            await room.broadcaster.send_snapshot(websocket, snapshot)

            while True:
                message: str = await websocket.receive_text()
                if message.strip().lower() != PING:
                    continue
                if not ws_limiter.is_allowed(client_id):
                    await websocket.send_text("[SYSTEM:心跳过于频繁，请降低发送频率]")
                    continue
                if participant_id:
                    try:
                        system.heartbeat(room_id, participant_id)
                    except RoomNotFoundError:
                        # 房间已关闭
                        break
                await websocket.send_text(PONG)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error("WebSocket 接收异常: %s | room=%s", e, room_id, exc_info=True)
        finally:
            room.broadcaster.disconnect(websocket)
            ws_limiter.remove_client(client_id)
            logger.info("订阅者退出房间 | room=%s | 在线: %d", room_id, room.online_count)

    finally:
        request_id_ctx_var.reset(token)
