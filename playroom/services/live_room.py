"""
playroom.services.live_room
~~~~~~~~~~~~~~~~~~~~~~~~~~~

互动房间领域模型 —— 封装一个完整的付费房间实体。

每个 ``LiveRoom`` 拥有独立的计费登记（``RoomBilling``）、
上麦席位（``CameraSlotAllocator``）、订阅者广播器（``RoomBroadcaster``）
和一把串行化写操作的 ``asyncio.Lock``，房间之间互不干扰。
"""
from __future__ import annotations

import asyncio
from collections.abc import Iterable

from playroom.schemas.room_interactions import (
    ParticipantRole,
    RoomEvent,
    RoomInfoData,
    RoomPolicy,
)
from playroom.services.billing import RoomBilling, RoomBillingSession
from playroom.services.camera_slots import CameraSlotAllocator
from playroom.services.payments import PaymentGateway
from playroom.services.room_broadcaster import RoomBroadcaster


class LiveRoom:
    """一个完整的付费互动房间。

    Attributes:
        room_id: 房间唯一标识。
        host_id: 房主创作者 ID（可为空）。
        creator_ids: 本房间的创作者（房主 + 联合创作者），角色只由此推导。
        policy: 计费与容量配置。
        billing: 本房间的计费会话登记。
        slots: 本房间的上麦席位分配器。
        broadcaster: 本房间的订阅者广播器。
        lock: 串行化本房间所有写操作。
    """

    def __init__(
        self,
        room_id: str,
        policy: RoomPolicy,
        gateway: PaymentGateway,
        host_id: str | None = None,
        creator_ids: Iterable[str] = (),
    ) -> None:
        self.room_id = room_id
        self.host_id = host_id
        self.creator_ids = frozenset(creator_ids) | ({host_id} if host_id else set())
        self.policy = policy
        self.billing = RoomBilling(room_id, policy, gateway)
        self.slots = CameraSlotAllocator(
            room_id,
            creator_capacity=policy.creator_slots,
            fan_capacity=policy.fan_slots,
            is_billing_active=self.billing.is_active,
        )
        self.broadcaster = RoomBroadcaster(room_id)
        self.lock = asyncio.Lock()

    @property
    def online_count(self) -> int:
        """当前在线订阅者数。"""
        return self.broadcaster.online_count

    def role_of(self, participant_id: str) -> ParticipantRole:
        """参与者在本房间的角色。进行中的会话优先，否则按创作者名单判断。"""
        session = self.billing.active_session(participant_id)
        if session is not None:
            return session.role
        return "creator" if participant_id in self.creator_ids else "fan"

    async def publish_occupancy(self) -> None:
        occupancy = self.slots.get_occupancy()
        await self.broadcaster.publish(
            RoomEvent(
                room_id=self.room_id,
                event="occupancy_changed",
                payload=occupancy.model_dump(mode="json"),
            ),
        )

    async def publish_session_state(self, session: RoomBillingSession) -> None:
        await self.broadcaster.publish(
            RoomEvent(
                room_id=self.room_id,
                event="session_state_changed",
                payload=session.snapshot().model_dump(mode="json"),
            ),
        )

    def info(self) -> RoomInfoData:
        """返回房间摘要信息。"""
        occupancy = self.slots.get_occupancy()
        return RoomInfoData(
            room_id=self.room_id,
            host_id=self.host_id,
            policy=self.policy,
            active_sessions=len(self.billing.active_sessions()),
            online_count=self.online_count,
            creator_occupied=occupancy.creator_occupied,
            fan_occupied=occupancy.fan_occupied,
        )
