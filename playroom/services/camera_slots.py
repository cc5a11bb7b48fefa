"""
playroom.services.camera_slots
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

上麦席位分配器 —— 每个房间两个固定容量的席位池（创作者 / 粉丝）。

不变量:
  - 每个席位最多一个占用者；
  - 同一参与者在两个池中合计最多占用一个席位；
  - 已占用数不超过池容量；
  - 重复申请已持有的席位是空操作，返回原席位。

所有方法都是同步的：检查与占用之间没有 ``await``，
在单事件循环内天然是一次原子的 check-and-set。广播由调用方在操作完成后进行。
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from playroom.core.errors import NotEligibleError, PoolFullError
from playroom.core.logging import get_logger
from playroom.schemas.room_interactions import (
    CameraSlotData,
    OccupancyData,
    ParticipantRole,
    SlotPoolName,
)

logger = get_logger(__name__)


@dataclass
class CameraSlot:
    pool: SlotPoolName
    slot_index: int
    occupant_id: str | None = None
    occupied_since: datetime | None = None

    @property
    def is_empty(self) -> bool:
        return self.occupant_id is None

    def snapshot(self) -> CameraSlotData:
        return CameraSlotData(
            pool=self.pool,
            slot_index=self.slot_index,
            occupant_id=self.occupant_id,
            occupied_since=self.occupied_since,
        )


class CameraSlotPool:
    """固定容量的席位池。"""

    def __init__(self, name: SlotPoolName, capacity: int) -> None:
        self.name: SlotPoolName = name
        self.capacity = capacity
        self.slots: list[CameraSlot] = [CameraSlot(name, i) for i in range(capacity)]

    @property
    def occupied_count(self) -> int:
        return sum(1 for s in self.slots if not s.is_empty)

    def find(self, participant_id: str) -> CameraSlot | None:
        for slot in self.slots:
            if slot.occupant_id == participant_id:
                return slot
        return None

    def claim(self, participant_id: str, now: datetime) -> CameraSlot | None:
        """占用编号最小的空席位；没有空位返回 None。"""
        for slot in self.slots:
            if slot.is_empty:
                slot.occupant_id = participant_id
                slot.occupied_since = now
                return slot
        return None

    def snapshot(self) -> list[CameraSlotData]:
        return [s.snapshot() for s in self.slots]


class CameraSlotAllocator:
    """某个房间的上麦席位分配器。

    Attributes:
        room_id: 房间唯一标识。
        creator_pool: 创作者席位池。
        fan_pool: 粉丝席位池。
    """

    def __init__(
        self,
        room_id: str,
        creator_capacity: int,
        fan_capacity: int,
        is_billing_active: Callable[[str], bool],
    ) -> None:
        self.room_id = room_id
        self.creator_pool = CameraSlotPool("creator", creator_capacity)
        self.fan_pool = CameraSlotPool("fan", fan_capacity)
        self._is_billing_active = is_billing_active

    def _pool_for(self, role: ParticipantRole) -> CameraSlotPool:
        return self.creator_pool if role == "creator" else self.fan_pool

    def find(self, participant_id: str) -> CameraSlot | None:
        return self.creator_pool.find(participant_id) or self.fan_pool.find(participant_id)

    def join_camera(
        self, participant_id: str, role: ParticipantRole, now: datetime,
    ) -> tuple[CameraSlot, bool]:
        """申请上麦。

        Returns:
            ``(slot, claimed)``；``claimed`` 为 False 表示参与者已在麦上（幂等返回）。

        Raises:
            NotEligibleError: 粉丝未持有有效计费会话。
            PoolFullError: 目标池没有空位。
        """
        held = self.find(participant_id)
        if held is not None:
            return held, False

        if role != "creator" and not self._is_billing_active(participant_id):
            raise NotEligibleError(self.room_id, participant_id)

        pool = self._pool_for(role)
        slot = pool.claim(participant_id, now)
        if slot is None:
            logger.info(
                "席位已满 | room=%s | pool=%s | participant=%s",
                self.room_id, pool.name, participant_id,
            )
            raise PoolFullError(self.room_id, pool.name)

        logger.info(
            "上麦成功 | room=%s | pool=%s | slot=%d | participant=%s | occupied=%d/%d",
            self.room_id, pool.name, slot.slot_index, participant_id,
            pool.occupied_count, pool.capacity,
        )
        return slot, True

    def leave_camera(self, participant_id: str) -> CameraSlotData | None:
        """释放该参与者的席位；未持有席位时返回 None（不是错误）。"""
        slot = self.find(participant_id)
        if slot is None:
            return None
        released = slot.snapshot()
        slot.occupant_id = None
        slot.occupied_since = None
        logger.info(
            "下麦 | room=%s | pool=%s | slot=%d | participant=%s",
            self.room_id, slot.pool, slot.slot_index, participant_id,
        )
        return released

    def clear(self) -> list[CameraSlotData]:
        """清空所有席位（房间关闭时），返回被释放的席位。"""
        released: list[CameraSlotData] = []
        for pool in (self.creator_pool, self.fan_pool):
            for slot in pool.slots:
                if not slot.is_empty:
                    released.append(slot.snapshot())
                    slot.occupant_id = None
                    slot.occupied_since = None
        return released

    def get_occupancy(self) -> OccupancyData:
        return OccupancyData(
            room_id=self.room_id,
            creator_slots=self.creator_pool.snapshot(),
            fan_slots=self.fan_pool.snapshot(),
        )
