"""
app.db
~~~~~~

MongoDB 连接池（motor）。

lifespan 启动时 ``connect_mongo()`` 建立连接并确认可达，关闭时 ``close_mongo()``。
``StreamRepository`` 通过 ``get_database()`` 取得数据库实例。

客户端以 ``tz_aware=True`` 打开，读出的 ``created_at`` / ``updated_at`` 均带 UTC 时区，
与协调层生成的时间戳可以直接比较。
"""
from __future__ import annotations

from urllib.parse import urlparse

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from app.core.logging import get_logger
from app.core.settings import settings

logger = get_logger(__name__)

_client: AsyncIOMotorClient | None = None


def _mask_uri(uri: str) -> str:
    """隐藏 URI 中的密码后再写日志。"""
    parsed = urlparse(uri)
    if not parsed.password:
        return uri
    return uri.replace(f":{parsed.password}@", ":***@", 1)


async def connect_mongo() -> None:
    """创建连接池并 ping 一次，数据库不可达时让启动失败。"""
    global _client
    _client = AsyncIOMotorClient(
        settings.MONGO_URI,
        tz_aware=True,
        appname=settings.PROJECT_NAME,
        serverSelectionTimeoutMS=settings.MONGO_TIMEOUT_MS,
    )
    try:
        await _client[settings.MONGO_DB_NAME].command("ping")
    except Exception:
        logger.exception("MongoDB 不可达 | uri=%s", _mask_uri(settings.MONGO_URI))
        _client.close()
        _client = None
        raise
    logger.info(
        "MongoDB 已连接 | uri=%s | db=%s", _mask_uri(settings.MONGO_URI), settings.MONGO_DB_NAME,
    )


async def close_mongo() -> None:
    global _client
    if _client is None:
        return
    _client.close()
    _client = None
    logger.info("MongoDB 连接已关闭")


def get_database() -> AsyncIOMotorDatabase:
    """返回直播记录所在的数据库。

    Raises:
        RuntimeError: ``connect_mongo()`` 尚未调用。
    """
    if _client is None:
        raise RuntimeError("MongoDB 尚未连接，请先调用 connect_mongo()")
    return _client[settings.MONGO_DB_NAME]
