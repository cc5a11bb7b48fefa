"""
playroom.clients.wallet
~~~~~~~~~~~~~~~~~~~~~~~

钱包客户端 —— 外部钱包/资料存储的调用边界。

核心逻辑从不直接读写余额，只发起扣款/入账请求:

  - ``debit(participant_id, amount, idempotency_key)`` → ``DebitResult``
  - ``credit(participant_id, amount, idempotency_key)``

同一幂等键的扣款最多生效一次；余额不足的尝试不占用幂等键，
充值后可用同一个键重试。
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from playroom.core.logging import get_logger

logger = get_logger(__name__)

_WALLETS_COLLECTION = "wallets"
_OPERATIONS_COLLECTION = "wallet_operations"


class DebitResult(str, Enum):
    OK = "ok"
    INSUFFICIENT_FUNDS = "insufficient_funds"


class WalletClient(ABC):
    """钱包服务接口。实现必须保证按幂等键去重。"""

    @abstractmethod
    async def debit(
        self, participant_id: str, amount: int, idempotency_key: str,
    ) -> DebitResult:
        """从参与者钱包扣款。余额不足时返回 ``INSUFFICIENT_FUNDS``，不抛异常。"""
        ...

    @abstractmethod
    async def credit(
        self, participant_id: str, amount: int, idempotency_key: str,
    ) -> None:
        """向参与者钱包入账（创作者分成）。"""
        ...


class InMemoryWallet(WalletClient):
    """进程内钱包，用于开发环境与测试。

    Attributes:
        balances: 参与者 ID → 余额（分）。
    """

    def __init__(self, balances: dict[str, int] | None = None) -> None:
        self.balances: dict[str, int] = dict(balances or {})
        self._applied_keys: set[str] = set()

    def balance(self, participant_id: str) -> int:
        return self.balances.get(participant_id, 0)

    def top_up(self, participant_id: str, amount: int) -> None:
        self.balances[participant_id] = self.balance(participant_id) + amount

    async def debit(
        self, participant_id: str, amount: int, idempotency_key: str,
    ) -> DebitResult:
        if idempotency_key in self._applied_keys:
            return DebitResult.OK
        if self.balance(participant_id) < amount:
            return DebitResult.INSUFFICIENT_FUNDS
        self.balances[participant_id] = self.balance(participant_id) - amount
        self._applied_keys.add(idempotency_key)
        return DebitResult.OK

    async def credit(
        self, participant_id: str, amount: int, idempotency_key: str,
    ) -> None:
        if idempotency_key in self._applied_keys:
            return
        self.top_up(participant_id, amount)
        self._applied_keys.add(idempotency_key)


class MongoWallet(WalletClient):
    """基于 MongoDB 的钱包实现。

    - ``wallets``：每个参与者一个文档 ``{participant_id, balance}``
    - ``wallet_operations``：每个幂等键一个文档，``idempotency_key`` 唯一索引

    扣款先占用幂等键，再做带余额条件的原子 ``$inc``；余额不足时释放幂等键。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._wallets = db[_WALLETS_COLLECTION]
        self._operations = db[_OPERATIONS_COLLECTION]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        await self._wallets.create_index("participant_id", unique=True, name="uniq_participant")
        await self._operations.create_index("idempotency_key", unique=True, name="uniq_idem_key")
        self._indexes_created = True
        logger.debug("wallet 索引已就绪")

    async def _claim_key(
        self, participant_id: str, amount: int, idempotency_key: str, kind: str,
    ) -> bool:
        """占用幂等键。返回 False 表示该操作已处理过。"""
        try:
            await self._operations.insert_one({
                "idempotency_key": idempotency_key,
                "participant_id": participant_id,
                "amount": amount,
                "kind": kind,
                "created_at": datetime.now(timezone.utc),
            })
        except DuplicateKeyError:
            return False
        return True

    async def debit(
        self, participant_id: str, amount: int, idempotency_key: str,
    ) -> DebitResult:
        await self._ensure_indexes()
        if not await self._claim_key(participant_id, amount, idempotency_key, "debit"):
            logger.debug("重复扣款请求已忽略 | key=%s", idempotency_key)
            return DebitResult.OK

        updated = await self._wallets.find_one_and_update(
            {"participant_id": participant_id, "balance": {"$gte": amount}},
            {"$inc": {"balance": -amount}},
        )
        if updated is None:
            await self._operations.delete_one({"idempotency_key": idempotency_key})
            return DebitResult.INSUFFICIENT_FUNDS
        return DebitResult.OK

    async def credit(
        self, participant_id: str, amount: int, idempotency_key: str,
    ) -> None:
        await self._ensure_indexes()
        if not await self._claim_key(participant_id, amount, idempotency_key, "credit"):
            return
        await self._wallets.update_one(
            {"participant_id": participant_id},
            {"$inc": {"balance": amount}},
            upsert=True,
        )
