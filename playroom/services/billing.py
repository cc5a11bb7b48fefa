"""
playroom.services.billing
~~~~~~~~~~~~~~~~~~~~~~~~~

房间计费会话 —— 入场费 + 免费体验 + 按整分钟计时收费。

状态机::

    not_joined ──扣入场费成功──▶ free_trial ──elapsed ≥ 体验时长──▶ metered
         free_trial / metered ──离场 / 掉线 / 房间关闭──▶ ended

- ``accrued_cost = entry_fee + floor(max(0, elapsed - free_trial) / 60) * rate``，
  每次都由 ``elapsed_seconds`` 重新推导，不做增量累加。
- ``elapsed_seconds`` 与 ``accrued_cost`` 只增不减；``ended`` 之后会话不可变。
- 创作者免入场费和计时费（会话照常存在，便于统一的在场管理）。

``RoomBilling`` 不自带锁，调用方（``RoomSystem``）负责按房间串行化写操作。
"""
from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from playroom.core.logging import get_logger
from playroom.core.errors import SettlementFailedError
from playroom.schemas.room_interactions import (
    LedgerEntry,
    ParticipantRole,
    RoomPolicy,
    SessionData,
    SessionState,
    SettlementData,
)
from playroom.services.payments import PaymentGateway

logger = get_logger(__name__)

_SECONDS_PER_MINUTE = 60


def compute_accrued_cost(
    entry_fee: int,
    free_trial_seconds: int,
    per_minute_rate: int,
    elapsed_seconds: int,
) -> int:
    """根据在场时长推导累计费用（不足一分钟的部分向下取整）。"""
    billable_seconds = max(0, elapsed_seconds - free_trial_seconds)
    return entry_fee + (billable_seconds // _SECONDS_PER_MINUTE) * per_minute_rate


class RoomBillingSession:
    """单个参与者在单个房间内的一次付费在场。

    只能通过 ``RoomBilling`` 的操作推进状态，外部不要直接修改字段。

    Attributes:
        session_id: 会话唯一标识（每次入场新建）。
        state: 当前状态。
        joined_at: 扣费成功、进入体验期的时间。
        elapsed_seconds: 已在场秒数（单调不减）。
        accrued_cost: 累计费用，含入场费（分）。
        unsettled: 结算写入失败，等待对账。
        settlement: 结束后冻结的结算结果。
        client_key: 入场时客户端提供的幂等键。
    """

    def __init__(
        self,
        room_id: str,
        participant_id: str,
        role: ParticipantRole,
        policy: RoomPolicy,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id or uuid4().hex
        self.room_id = room_id
        self.participant_id = participant_id
        self.role: ParticipantRole = role

        exempt = role == "creator"
        self.entry_fee = 0 if exempt else policy.entry_fee
        self.per_minute_rate = 0 if exempt else policy.per_minute_rate
        self.free_trial_seconds = policy.free_trial_seconds

        self.state = SessionState.NOT_JOINED
        self.joined_at: datetime | None = None
        self.ended_at: datetime | None = None
        self.elapsed_seconds = 0
        self.accrued_cost = 0
        self.unsettled = False
        self.settlement: SettlementData | None = None
        self.client_key: str | None = None

    @property
    def metered_cost(self) -> int:
        return self.accrued_cost - self.entry_fee

    def start(self, now: datetime) -> None:
        if self.state is not SessionState.NOT_JOINED:
            raise RuntimeError(f"session {self.session_id} already started")
        self.state = SessionState.FREE_TRIAL
        self.joined_at = now
        self.accrued_cost = self.entry_fee
        self.tick(now)

    def tick(self, now: datetime) -> bool:
        """按 ``now`` 重新推导时长与费用。返回本次是否发生了状态迁移。"""
        if not self.state.is_active or self.joined_at is None:
            return False

        observed = int((now - self.joined_at).total_seconds())
        # 时钟回拨时保持上一次的值
        self.elapsed_seconds = max(self.elapsed_seconds, observed)
        self.accrued_cost = max(
            self.accrued_cost,
            compute_accrued_cost(
                self.entry_fee,
                self.free_trial_seconds,
                self.per_minute_rate,
                self.elapsed_seconds,
            ),
        )

        if (
            self.state is SessionState.FREE_TRIAL
            and self.elapsed_seconds >= self.free_trial_seconds
        ):
            self.state = SessionState.METERED
            return True
        return False

    def end(self, now: datetime) -> None:
        self.tick(now)
        self.state = SessionState.ENDED
        self.ended_at = now

    def metered_ledger_entry(self) -> LedgerEntry | None:
        """结束后计时部分对应的流水；没有计时费用时返回 None。"""
        if self.ended_at is None or self.metered_cost <= 0:
            return None
        return LedgerEntry(
            room_id=self.room_id,
            participant_id=self.participant_id,
            type="metered",
            amount=self.metered_cost,
            timestamp=self.ended_at,
            idempotency_key=f"metered:{self.session_id}",
            metadata={
                "session_id": self.session_id,
                "elapsed_seconds": self.elapsed_seconds,
            },
        )

    def mark_settled(self) -> None:
        self.unsettled = False
        if self.settlement is not None and not self.settlement.settled:
            self.settlement = self.settlement.model_copy(update={"settled": True})

    def snapshot(self) -> SessionData:
        return SessionData(
            session_id=self.session_id,
            room_id=self.room_id,
            participant_id=self.participant_id,
            role=self.role,
            state=self.state,
            joined_at=self.joined_at,
            elapsed_seconds=self.elapsed_seconds,
            accrued_cost=self.accrued_cost,
            unsettled=self.unsettled,
        )


class RoomBilling:
    """某个房间内所有计费会话的登记处。

    Attributes:
        room_id: 房间唯一标识。
        policy: 房间计费配置。
        gateway: 共享的支付网关。
        history: 已结束的会话（按结束顺序）。
    """

    def __init__(self, room_id: str, policy: RoomPolicy, gateway: PaymentGateway) -> None:
        self.room_id = room_id
        self.policy = policy
        self.gateway = gateway
        self.history: list[RoomBillingSession] = []
        self._active: dict[str, RoomBillingSession] = {}
        # 已结束会话用过的客户端幂等键，按 (participant_id, key) 记录
        self._spent_keys: set[tuple[str, str]] = set()

    def active_session(self, participant_id: str) -> RoomBillingSession | None:
        return self._active.get(participant_id)

    def active_sessions(self) -> list[RoomBillingSession]:
        return list(self._active.values())

    def is_active(self, participant_id: str) -> bool:
        """上麦资格判断：持有 free_trial / metered 状态的会话。"""
        session = self._active.get(participant_id)
        return session is not None and session.state.is_active

    async def join(
        self,
        participant_id: str,
        role: ParticipantRole,
        idempotency_key: str | None = None,
    ) -> RoomBillingSession:
        """入场。已有进行中的会话时直接返回（幂等）。

        Raises:
            InsufficientFundsError: 余额不足，不创建会话。
            PaymentFailedError: 钱包调用失败。
        """
        existing = self._active.get(participant_id)
        if existing is not None:
            logger.info(
                "重复入场，返回已有会话 | room=%s | participant=%s | session=%s",
                self.room_id, participant_id, existing.session_id,
            )
            return existing

        session = RoomBillingSession(self.room_id, participant_id, role, self.policy)
        now = self.gateway.clock()

        if session.entry_fee > 0:
            key = self._entry_key(participant_id, session, idempotency_key)
            await self.gateway.charge(
                LedgerEntry(
                    room_id=self.room_id,
                    participant_id=participant_id,
                    type="entry_fee",
                    amount=session.entry_fee,
                    timestamp=now,
                    idempotency_key=key,
                    metadata={"session_id": session.session_id},
                ),
            )

        session.client_key = idempotency_key
        session.start(now)
        self._active[participant_id] = session
        logger.info(
            "入场成功 | room=%s | participant=%s | role=%s | session=%s | entry_fee=%d",
            self.room_id, participant_id, role, session.session_id, session.entry_fee,
        )
        return session

    def _entry_key(
        self,
        participant_id: str,
        session: RoomBillingSession,
        idempotency_key: str | None,
    ) -> str:
        """入场费的钱包幂等键。

        客户端幂等键只在它所属的会话结束前有效：同一个键用于离场后的
        新入场时，按新会话重新生成，保证每个会话都收取一次入场费。
        """
        if idempotency_key and (participant_id, idempotency_key) not in self._spent_keys:
            return f"entry:{self.room_id}:{participant_id}:{idempotency_key}"
        return f"entry:{self.room_id}:{participant_id}:{session.session_id}"

    def _advance(self, session: RoomBillingSession, now: datetime) -> bool:
        if not session.tick(now):
            return False
        logger.info(
            "免费体验结束，开始计时收费 | room=%s | participant=%s | session=%s",
            self.room_id, session.participant_id, session.session_id,
        )
        return True

    def tick(self, session: RoomBillingSession, now: datetime) -> RoomBillingSession:
        """纯重算，不产生钱包/账本调用。"""
        self._advance(session, now)
        return session

    def tick_all(self, now: datetime) -> list[RoomBillingSession]:
        """刷新所有进行中的会话，返回本轮发生状态迁移的会话。"""
        return [s for s in list(self._active.values()) if self._advance(s, now)]

    async def settle(self, session: RoomBillingSession) -> SettlementData:
        """结束会话并结算计时部分。重复调用返回同一结果，不会重复扣款。

        结算写入失败时会话依旧结束，标记 ``unsettled`` 并进入对账队列。
        """
        if session.settlement is not None:
            return session.settlement

        now = self.gateway.clock()
        session.end(now)
        session.settlement = SettlementData(
            session_id=session.session_id,
            room_id=session.room_id,
            participant_id=session.participant_id,
            entry_fee=session.entry_fee,
            metered_cost=session.metered_cost,
            total_cost=session.accrued_cost,
            elapsed_seconds=session.elapsed_seconds,
            ended_at=now,
            settled=False,
        )
        if self._active.get(session.participant_id) is session:
            del self._active[session.participant_id]
        if session.client_key:
            self._spent_keys.add((session.participant_id, session.client_key))
        self.history.append(session)

        entry = session.metered_ledger_entry()
        try:
            if entry is not None:
                await self.gateway.settle_charge(entry)
        except SettlementFailedError as e:
            session.unsettled = True
            self.gateway.enqueue_unsettled(session)
            logger.error(
                "结算失败，已加入对账队列 | room=%s | session=%s | amount=%d | reason=%s",
                self.room_id, session.session_id, session.metered_cost, e.reason,
            )
        else:
            session.mark_settled()

        logger.info(
            "会话已结束 | room=%s | participant=%s | elapsed=%ds | total=%d | settled=%s",
            self.room_id, session.participant_id, session.elapsed_seconds,
            session.accrued_cost, session.settlement.settled,
        )
        return session.settlement
