"""
playroom.services.payments
~~~~~~~~~~~~~~~~~~~~~~~~~~

支付网关 —— 把钱包扣款/入账与账本写入组合成带幂等键的远程事务。

- 准入类扣款（入场费、打赏、购买）失败时同步抛出领域错误。
- 扣款成功但账本写入失败时，流水进入待补写队列，不回滚用户操作。
- 计时结算失败的会话进入对账队列，由 ``reconcile()`` 用原幂等键重试。
"""
from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from playroom.clients.ledger import LedgerClient
from playroom.clients.wallet import DebitResult, WalletClient
from playroom.core.errors import (
    InsufficientFundsError,
    PaymentFailedError,
    SettlementFailedError,
)
from playroom.core.logging import get_logger
from playroom.schemas.room_interactions import LedgerEntry

if TYPE_CHECKING:
    from playroom.services.billing import RoomBillingSession

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PaymentGateway:
    """钱包 + 账本的组合调用入口（全局共享，跨房间）。

    Attributes:
        wallet: 外部钱包客户端。
        ledger: 外部账本客户端。
        clock: 时间源，测试中可替换。
    """

    def __init__(
        self,
        wallet: WalletClient,
        ledger: LedgerClient,
        clock: Clock = utc_now,
    ) -> None:
        self.wallet = wallet
        self.ledger = ledger
        self.clock = clock
        self._pending_entries: list[LedgerEntry] = []
        self._unsettled: dict[str, RoomBillingSession] = {}

    # ── 准入扣款 ──────────────────────────────────────────────────────

    async def charge(self, entry: LedgerEntry) -> None:
        """按流水描述扣款并记账。

        Raises:
            InsufficientFundsError: 余额不足，未扣款。
            PaymentFailedError: 钱包调用异常（不自动重试）。
        """
        try:
            result = await self.wallet.debit(
                entry.participant_id, entry.amount, entry.idempotency_key,
            )
        except Exception as e:
            logger.error(
                "钱包扣款异常 | participant=%s | key=%s | err=%s",
                entry.participant_id, entry.idempotency_key, e, exc_info=True,
            )
            raise PaymentFailedError(entry.participant_id) from e

        if result is DebitResult.INSUFFICIENT_FUNDS:
            logger.info(
                "余额不足 | participant=%s | amount=%d | type=%s",
                entry.participant_id, entry.amount, entry.type,
            )
            raise InsufficientFundsError(entry.participant_id, entry.amount)

        await self.record(entry)

    async def credit(self, participant_id: str, amount: int, idempotency_key: str) -> None:
        """创作者分成入账。失败只记录日志，不影响付款方的操作结果。"""
        if amount <= 0:
            return
        try:
            await self.wallet.credit(participant_id, amount, idempotency_key)
        except Exception as e:
            logger.error(
                "创作者入账失败 | participant=%s | amount=%d | key=%s | err=%s",
                participant_id, amount, idempotency_key, e, exc_info=True,
            )

    async def record(self, entry: LedgerEntry) -> None:
        """写入账本；失败时放入待补写队列。"""
        try:
            await self.ledger.record(entry)
        except Exception as e:
            logger.warning(
                "流水写入失败，已加入补写队列 | key=%s | err=%s",
                entry.idempotency_key, e, exc_info=True,
            )
            self._pending_entries.append(entry)

    # ── 结算 ──────────────────────────────────────────────────────────

    async def settle_charge(self, entry: LedgerEntry) -> None:
        """结算计时费用：扣款 + 记账，两步都按幂等键去重，可安全重试。

        Raises:
            SettlementFailedError: 任意一步失败（含余额不足）。
        """
        session_ref = entry.metadata.get("session_id", entry.idempotency_key)
        try:
            result = await self.wallet.debit(
                entry.participant_id, entry.amount, entry.idempotency_key,
            )
        except Exception as e:
            raise SettlementFailedError(session_ref, reason=f"wallet: {e}") from e
        if result is DebitResult.INSUFFICIENT_FUNDS:
            raise SettlementFailedError(session_ref, reason="insufficient_funds")

        try:
            await self.ledger.record(entry)
        except Exception as e:
            raise SettlementFailedError(session_ref, reason=f"ledger: {e}") from e

    def enqueue_unsettled(self, session: RoomBillingSession) -> None:
        self._unsettled[session.session_id] = session

    @property
    def unsettled_sessions(self) -> list[RoomBillingSession]:
        return list(self._unsettled.values())

    @property
    def pending_entries(self) -> list[LedgerEntry]:
        return list(self._pending_entries)

    async def reconcile(self) -> int:
        """重试补写流水与未结算会话，返回本轮成功处理的条数。"""
        done = 0

        pending, self._pending_entries = self._pending_entries, []
        for entry in pending:
            try:
                await self.ledger.record(entry)
                done += 1
            except Exception as e:
                logger.warning("补写流水仍失败 | key=%s | err=%s", entry.idempotency_key, e)
                self._pending_entries.append(entry)

        for session_id, session in list(self._unsettled.items()):
            entry = session.metered_ledger_entry()
            if entry is None:
                session.mark_settled()
                del self._unsettled[session_id]
                continue
            try:
                await self.settle_charge(entry)
            except SettlementFailedError as e:
                logger.warning(
                    "对账重试失败 | session=%s | reason=%s", session_id, e.reason,
                )
                continue
            session.mark_settled()
            del self._unsettled[session_id]
            done += 1
            logger.info(
                "对账成功 | session=%s | amount=%d", session_id, entry.amount,
            )
        return done
