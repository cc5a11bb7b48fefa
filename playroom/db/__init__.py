"""
playroom.db
~~~~~~~~~~~

MongoDB 连接管理（钱包与交易流水的持久化后端）。

仅当 ``STORAGE_BACKEND=mongo`` 时由 lifespan 调用:
  - 启动时 ``connect_mongo()`` 建立连接池并返回数据库句柄，
    随后构造 ``MongoWallet`` / ``MongoLedger``；
  - ``/health`` 通过 ``ping_mongo()`` 报告存储可用性；
  - 关闭时 ``close_mongo()`` 释放连接池。
"""
from __future__ import annotations

from urllib.parse import urlparse, urlunparse

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from playroom.core.logging import get_logger
from playroom.core.settings import settings

logger = get_logger(__name__)

_client: AsyncIOMotorClient | None = None
_db_name: str | None = None


def _mask_uri(uri: str) -> str:
    """将 URI 中的密码替换为 ``***``，避免凭证进入日志。"""
    parsed = urlparse(uri)
    if not parsed.password:
        return uri
    netloc = f"{parsed.username}:***@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


async def connect_mongo(
    uri: str | None = None, db_name: str | None = None,
) -> AsyncIOMotorDatabase:
    """建立连接池并确认目标库可用，返回数据库句柄。

    Raises:
        pymongo.errors.PyMongoError: 连接或认证失败，应用不应继续启动。
    """
    global _client, _db_name
    uri = uri or settings.MONGO_URI
    _db_name = db_name or settings.MONGO_DB_NAME
    _client = AsyncIOMotorClient(uri, tz_aware=True)

    db = _client[_db_name]
    try:
        await db.command("ping")
    except Exception as e:
        logger.error("MongoDB 连接失败 | uri=%s | err=%s", _mask_uri(uri), e, exc_info=True)
        _client.close()
        _client = None
        raise
    logger.info("MongoDB 已连接 | uri=%s | db=%s", _mask_uri(uri), _db_name)
    return db


async def close_mongo() -> None:
    global _client
    if _client is None:
        return
    _client.close()
    _client = None
    logger.info("MongoDB 连接已关闭")


async def ping_mongo() -> bool:
    """存储健康检查。未启用 Mongo 时返回 False。"""
    if _client is None or _db_name is None:
        return False
    try:
        await _client[_db_name].command("ping")
    except Exception as e:
        logger.warning("MongoDB 健康检查失败: %s", e)
        return False
    return True
