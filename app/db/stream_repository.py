"""
app.db.stream_repository
~~~~~~~~~~~~~~~~~~~~~~~~

直播记录仓库 —— 封装 MongoDB ``streams`` 集合的读写。

协调层只通过这里的四个操作访问直播记录：
``find_by_id`` / ``find_by_owner`` / ``find_active`` / ``update_status``。
``create`` 仅供 REST 接口使用。集合在首次操作时惰性建立索引。
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from app.core.logging import get_logger
from app.schemas.stream import Identity, StreamRecord, StreamStatus

logger = get_logger(__name__)

# 集合名称
_COLLECTION_NAME = "streams"

# 读取时排除 Mongo 内部主键
_PROJECTION: dict[str, int] = {"_id": 0}


def _to_record(doc: dict[str, Any] | None) -> StreamRecord | None:
    if doc is None:
        return None
    return StreamRecord.model_validate(doc)


class StreamRepository:
    """直播记录持久化仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        await self._collection.create_index("uid", unique=True, name="uniq_uid")
        await self._collection.create_index("status", name="idx_status")
        await self._collection.create_index("owner_id", name="idx_owner")
        self._indexes_created = True
        logger.debug("streams 索引已就绪")

    async def create(
        self,
        owner: Identity,
        title: str,
        playback_url: str | None = None,
    ) -> StreamRecord:
        """为指定用户创建一条下播状态的直播记录。"""
        await self._ensure_indexes()
        now = datetime.now(timezone.utc)
        record = StreamRecord(
            uid=uuid.uuid4().hex,
            title=title,
            owner_id=owner.id,
            status="offline",
            playback_url=playback_url,
            display_name=owner.display_name,
            handle=owner.handle,
            avatar_url=owner.avatar,
            created_at=now,
            updated_at=now,
        )
        await self._collection.insert_one(record.model_dump())
        logger.info("直播记录已创建 | uid=%s | owner=%s", record.uid, owner.id)
        return record

    async def find_by_id(self, uid: str) -> StreamRecord | None:
        """按 uid 查询单条记录，不存在时返回 ``None``。"""
        await self._ensure_indexes()
        doc = await self._collection.find_one({"uid": uid}, _PROJECTION)
        return _to_record(doc)

    async def find_by_owner(self, owner_id: str) -> list[StreamRecord]:
        """查询某个用户的全部直播记录（按创建时间倒序）。"""
        await self._ensure_indexes()
        cursor = (
            self._collection
            .find({"owner_id": owner_id}, _PROJECTION)
            .sort("created_at", -1)
        )
        return [StreamRecord.model_validate(doc) async for doc in cursor]

    async def find_active(self) -> list[StreamRecord]:
        """查询所有开播中的直播（按创建时间正序）。"""
        await self._ensure_indexes()
        cursor = (
            self._collection
            .find({"status": "active"}, _PROJECTION)
            .sort("created_at", 1)
        )
        return [StreamRecord.model_validate(doc) async for doc in cursor]

    async def update_status(self, uid: str, status: StreamStatus) -> StreamRecord | None:
        """修改直播状态并返回更新后的记录；记录不存在时返回 ``None``。"""
        await self._ensure_indexes()
        doc = await self._collection.find_one_and_update(
            {"uid": uid},
            {"$set": {"status": status, "updated_at": datetime.now(timezone.utc)}},
            projection=_PROJECTION,
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            logger.warning("更新直播状态失败，记录不存在 | uid=%s | status=%s", uid, status)
        return _to_record(doc)
