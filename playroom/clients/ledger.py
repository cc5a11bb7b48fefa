"""
playroom.clients.ledger
~~~~~~~~~~~~~~~~~~~~~~~

交易流水客户端 —— 仅追加写入的外部账本。

入场费、计时结算、打赏、房间内购买都会写一条 ``LedgerEntry``。
``idempotency_key`` 相同的流水只会被记录一次，对账重试因此是安全的。
"""
from __future__ import annotations

from abc import ABC, abstractmethod

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from playroom.core.logging import get_logger
from playroom.schemas.room_interactions import LedgerEntry

logger = get_logger(__name__)

_COLLECTION_NAME = "room_transactions"


class LedgerClient(ABC):
    """账本接口。"""

    @abstractmethod
    async def record(self, entry: LedgerEntry) -> bool:
        """追加一条流水。返回 False 表示同一幂等键已存在（未重复写入）。"""
        ...

    @abstractmethod
    async def entries_for(
        self, room_id: str, participant_id: str | None = None,
    ) -> list[LedgerEntry]:
        """按时间正序返回某房间（可选限定参与者）的流水。"""
        ...


class InMemoryLedger(LedgerClient):
    """进程内账本，用于开发环境与测试。"""

    def __init__(self) -> None:
        self.entries: list[LedgerEntry] = []
        self._keys: set[str] = set()

    async def record(self, entry: LedgerEntry) -> bool:
        if entry.idempotency_key in self._keys:
            return False
        self._keys.add(entry.idempotency_key)
        self.entries.append(entry)
        return True

    async def entries_for(
        self, room_id: str, participant_id: str | None = None,
    ) -> list[LedgerEntry]:
        return [
            e for e in self.entries
            if e.room_id == room_id
            and (participant_id is None or e.participant_id == participant_id)
        ]


class MongoLedger(LedgerClient):
    """基于 MongoDB ``room_transactions`` 集合的账本。

    每条流水一个文档（扁平设计），``idempotency_key`` 唯一索引去重。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        if self._indexes_created:
            return
        await self._collection.create_index(
            "idempotency_key", unique=True, name="uniq_idem_key",
        )
        # 复合索引：按房间 + 参与者分区，按时间排序
        await self._collection.create_index(
            [("room_id", 1), ("participant_id", 1), ("timestamp", 1)],
            name="idx_room_participant_time",
        )
        self._indexes_created = True
        logger.debug("room_transactions 索引已就绪")

    async def record(self, entry: LedgerEntry) -> bool:
        await self._ensure_indexes()
        try:
            await self._collection.insert_one(entry.model_dump())
        except DuplicateKeyError:
            logger.debug("重复流水已忽略 | key=%s", entry.idempotency_key)
            return False
        return True

    async def entries_for(
        self, room_id: str, participant_id: str | None = None,
    ) -> list[LedgerEntry]:
        await self._ensure_indexes()
        query: dict[str, str] = {"room_id": room_id}
        if participant_id is not None:
            query["participant_id"] = participant_id
        cursor = self._collection.find(query, {"_id": 0}).sort("timestamp", 1)
        return [LedgerEntry(**doc) async for doc in cursor]
