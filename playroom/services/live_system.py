"""
playroom.services.live_system
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间系统（全局单例）—— 管理所有付费互动房间的生命周期，
并作为计费、上麦、打赏/购买操作的统一入口。

并发模型:
  - 同一房间的写操作（入场、离场结算、上麦、下麦、打赏、购买、关房）
    全部在 ``room.lock`` 内串行执行；
  - 读操作（席位快照、会话查询时的惰性重算）不加锁；
  - 事件广播在释放锁之后进行，广播失败不影响已完成的状态变更。

在 FastAPI lifespan 中初始化并挂载于 ``app.state.room_system``。
"""
from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from uuid import uuid4

from playroom.core.errors import (
    InvalidPurchaseError,
    NotEligibleError,
    RoomAlreadyExistsError,
    RoomNotFoundError,
    SessionNotFoundError,
)
from playroom.core.logging import get_logger
from playroom.core.settings import Settings, settings as default_settings
from playroom.schemas.room_interactions import (
    CameraSlotData,
    LeaveRoomData,
    LedgerEntry,
    OccupancyData,
    PurchaseKind,
    RoomInfoData,
    RoomPolicy,
    SessionData,
    SettlementData,
)
from playroom.services.live_room import LiveRoom
from playroom.services.payments import PaymentGateway
from playroom.services.presence import PresenceTracker
from playroom.services.purchases import price_purchase

logger = get_logger(__name__)


class RoomSystem:
    """房间系统。

    - ``on_room_created`` / ``on_room_destroyed`` → 外部房间生命周期通知
    - ``join`` / ``leave`` / ``session``          → 计费会话
    - ``join_camera`` / ``leave_camera`` / ``get_occupancy`` → 上麦席位
    - ``tip`` / ``purchase``                      → 房间内消费
    - ``on_presence_timeout`` / ``heartbeat``     → 在线检测

    Attributes:
        gateway: 共享的支付网关。
        presence: 心跳登记。
        config: 提供默认房间配置的 Settings。
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        config: Settings | None = None,
    ) -> None:
        self.gateway = gateway
        self.config = config or default_settings
        self.presence = PresenceTracker(
            grace_seconds=self.config.PRESENCE_GRACE_SECONDS,
            clock=gateway.clock,
        )
        self._rooms: dict[str, LiveRoom] = {}

    # ── 房间生命周期 ──────────────────────────────────────────────────

    def on_room_created(
        self,
        room_id: str,
        *,
        creator_slots: int | None = None,
        fan_slots: int | None = None,
        host_id: str | None = None,
        creator_ids: Iterable[str] = (),
        entry_fee: int | None = None,
        free_trial_seconds: int | None = None,
        per_minute_rate: int | None = None,
    ) -> LiveRoom:
        """登记新房间。未指定的配置项取全局默认值。

        ``host_id`` 与 ``creator_ids`` 组成本房间的创作者名单，
        入场和上麦时的角色只由名单推导，不接受调用方声明。
        """
        if room_id in self._rooms:
            raise RoomAlreadyExistsError(room_id)

        cfg = self.config
        policy = RoomPolicy(
            entry_fee=cfg.DEFAULT_ENTRY_FEE if entry_fee is None else entry_fee,
            free_trial_seconds=(
                cfg.DEFAULT_FREE_TRIAL_SECONDS if free_trial_seconds is None else free_trial_seconds
            ),
            per_minute_rate=cfg.DEFAULT_PER_MINUTE_RATE if per_minute_rate is None else per_minute_rate,
            creator_slots=cfg.DEFAULT_CREATOR_SLOTS if creator_slots is None else creator_slots,
            fan_slots=cfg.DEFAULT_FAN_SLOTS if fan_slots is None else fan_slots,
        )
        room = LiveRoom(
            room_id, policy, self.gateway, host_id=host_id, creator_ids=creator_ids,
        )
        self._rooms[room_id] = room
        logger.info(
            "房间已创建 | room=%s | host=%s | slots=%d+%d | entry=%d | trial=%ds | rate=%d",
            room_id, host_id, policy.creator_slots, policy.fan_slots,
            policy.entry_fee, policy.free_trial_seconds, policy.per_minute_rate,
        )
        return room

    async def on_room_destroyed(self, room_id: str) -> list[SettlementData]:
        """关闭房间：强制结算所有会话并清空所有席位。"""
        room = self.get_room(room_id)
        # 先摘除，关闭过程中的新请求直接得到 RoomNotFound
        del self._rooms[room_id]

        async with room.lock:
            released = room.slots.clear()
            sessions = room.billing.active_sessions()
            settlements = [await room.billing.settle(s) for s in sessions]
        self.presence.forget_room(room_id)

        if released:
            await room.publish_occupancy()
        for session in sessions:
            await room.publish_session_state(session)

        logger.info(
            "房间已关闭 | room=%s | settled=%d | released_slots=%d",
            room_id, len(settlements), len(released),
        )
        return settlements

    def get_room(self, room_id: str) -> LiveRoom:
        room = self._rooms.get(room_id)
        if room is None:
            raise RoomNotFoundError(room_id)
        return room

    def list_rooms(self) -> list[RoomInfoData]:
        """列出所有活跃房间的摘要信息。"""
        return [room.info() for room in self._rooms.values()]

    # ── 计费会话 ──────────────────────────────────────────────────────

    async def join(
        self,
        room_id: str,
        participant_id: str,
        idempotency_key: str | None = None,
    ) -> SessionData:
        """入场；重复入场返回已有会话。创作者名单内的参与者免费入场。"""
        room = self.get_room(room_id)
        async with room.lock:
            existed = room.billing.active_session(participant_id) is not None
            session = await room.billing.join(
                participant_id, room.role_of(participant_id), idempotency_key,
            )
            snapshot = session.snapshot()
        self.presence.touch(room_id, participant_id)

        if not existed:
            await room.publish_session_state(session)
        return snapshot

    def session(
        self, room_id: str, participant_id: str, now: datetime | None = None,
    ) -> SessionData:
        """查询会话并惰性重算（不加锁，纯计算）。"""
        room = self.get_room(room_id)
        session = room.billing.active_session(participant_id)
        if session is None:
            raise SessionNotFoundError(room_id, participant_id)
        room.billing.tick(session, now or self.gateway.clock())
        return session.snapshot()

    async def leave(self, room_id: str, participant_id: str) -> LeaveRoomData:
        """离场：释放席位并结算会话。

        Raises:
            SessionNotFoundError: 参与者在该房间没有进行中的会话。
        """
        room = self.get_room(room_id)
        async with room.lock:
            session = room.billing.active_session(participant_id)
            released = room.slots.leave_camera(participant_id)
            settlement = await room.billing.settle(session) if session is not None else None
        self.presence.forget(room_id, participant_id)

        if released is not None:
            await room.publish_occupancy()
        if session is None:
            raise SessionNotFoundError(room_id, participant_id)
        await room.publish_session_state(session)
        return LeaveRoomData(settlement=settlement, released_slot=released)

    async def tick_all(self, now: datetime | None = None) -> int:
        """刷新所有房间的会话，推送 free_trial → metered 迁移事件。"""
        now = now or self.gateway.clock()
        transitions = 0
        for room in list(self._rooms.values()):
            for session in room.billing.tick_all(now):
                transitions += 1
                await room.publish_session_state(session)
        return transitions

    # ── 上麦席位 ──────────────────────────────────────────────────────

    async def join_camera(self, room_id: str, participant_id: str) -> CameraSlotData:
        """申请上麦；已在麦上时返回原席位。席位池由参与者在本房间的角色决定。

        Raises:
            NotEligibleError: 粉丝未入场或会话已结束。
            PoolFullError: 目标池没有空位。
        """
        room = self.get_room(room_id)
        async with room.lock:
            slot, claimed = room.slots.join_camera(
                participant_id, room.role_of(participant_id), self.gateway.clock(),
            )
            snapshot = slot.snapshot()
        # 没有会话的创作者也要登记心跳，掉线后席位才能被回收
        self.presence.touch(room_id, participant_id)

        if claimed:
            await room.publish_occupancy()
        return snapshot

    async def leave_camera(self, room_id: str, participant_id: str) -> CameraSlotData | None:
        """下麦；未在麦上时为空操作。"""
        room = self.get_room(room_id)
        async with room.lock:
            released = room.slots.leave_camera(participant_id)

        if released is not None:
            await room.publish_occupancy()
        return released

    def get_occupancy(self, room_id: str) -> OccupancyData:
        return self.get_room(room_id).slots.get_occupancy()

    # ── 在线检测 ──────────────────────────────────────────────────────

    def heartbeat(self, room_id: str, participant_id: str) -> None:
        self.get_room(room_id)
        self.presence.touch(room_id, participant_id)

    async def on_presence_timeout(self, room_id: str, participant_id: str) -> None:
        """参与者掉线超时：代为下麦并结算。房间或会话已不存在时静默忽略。"""
        room = self._rooms.get(room_id)
        if room is None:
            self.presence.forget(room_id, participant_id)
            return
        logger.info("心跳超时，强制离场 | room=%s | participant=%s", room_id, participant_id)
        try:
            await self.leave(room_id, participant_id)
        except SessionNotFoundError:
            pass

    async def expire_stale(self, now: datetime | None = None) -> int:
        """处理所有心跳超时的参与者，返回处理数量。"""
        expired = self.presence.expired(now)
        for room_id, participant_id in expired:
            await self.on_presence_timeout(room_id, participant_id)
        return len(expired)

    # ── 打赏 / 购买 ───────────────────────────────────────────────────

    def _require_active(self, room: LiveRoom, participant_id: str) -> None:
        if not room.billing.is_active(participant_id):
            raise NotEligibleError(room.room_id, participant_id)

    def _creator_share(self, amount: int) -> int:
        return amount * self.config.TIP_CREATOR_SHARE_PERCENT // 100

    async def tip(
        self,
        room_id: str,
        participant_id: str,
        creator_id: str,
        amount: int,
        idempotency_key: str | None = None,
    ) -> LedgerEntry:
        """打赏创作者，按分成比例入账给创作者。"""
        if amount <= 0:
            raise InvalidPurchaseError("Tip amount must be positive")
        if creator_id == participant_id:
            raise InvalidPurchaseError("You cannot tip yourself")

        room = self.get_room(room_id)
        key = idempotency_key or f"tip:{room_id}:{participant_id}:{uuid4().hex}"
        share = self._creator_share(amount)
        async with room.lock:
            self._require_active(room, participant_id)
            entry = LedgerEntry(
                room_id=room_id,
                participant_id=participant_id,
                type="tip",
                amount=amount,
                timestamp=self.gateway.clock(),
                idempotency_key=key,
                metadata={"creator_id": creator_id, "creator_share": share},
            )
            await self.gateway.charge(entry)
            await self.gateway.credit(creator_id, share, f"{key}:payout")

        logger.info(
            "打赏成功 | room=%s | from=%s | to=%s | amount=%d | share=%d",
            room_id, participant_id, creator_id, amount, share,
        )
        return entry

    async def purchase(
        self,
        room_id: str,
        participant_id: str,
        kind: PurchaseKind,
        option: str | None = None,
        text: str | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerEntry:
        """房间内购买（档位题卡、自定义请求、观众投票），金额由服务端定价。"""
        amount, metadata = price_purchase(kind, option, text)
        room = self.get_room(room_id)
        key = idempotency_key or f"purchase:{room_id}:{participant_id}:{uuid4().hex}"
        share = self._creator_share(amount) if room.host_id else 0
        if room.host_id:
            metadata = {**metadata, "creator_id": room.host_id, "creator_share": share}

        async with room.lock:
            self._require_active(room, participant_id)
            entry = LedgerEntry(
                room_id=room_id,
                participant_id=participant_id,
                type="purchase",
                amount=amount,
                timestamp=self.gateway.clock(),
                idempotency_key=key,
                metadata=metadata,
            )
            await self.gateway.charge(entry)
            if room.host_id:
                await self.gateway.credit(room.host_id, share, f"{key}:payout")

        logger.info(
            "购买成功 | room=%s | participant=%s | kind=%s | amount=%d",
            room_id, participant_id, kind, amount,
        )
        return entry

    # ── 对账 ──────────────────────────────────────────────────────────

    async def reconcile_unsettled(self) -> int:
        """重试补写流水与未结算会话，返回成功处理的条数。"""
        return await self.gateway.reconcile()
