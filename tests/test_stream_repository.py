"""
tests.test_stream_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

StreamRepository 单元测试 —— 用 mock 替换 Motor 集合，不连接真实 MongoDB。
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo import ReturnDocument

from app.db.stream_repository import StreamRepository
from app.schemas.stream import Identity

_NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _doc(uid: str = "s1", status: str = "offline") -> dict[str, Any]:
    return {
        "uid": uid,
        "title": "Test Stream",
        "owner_id": "u1",
        "status": status,
        "playback_url": None,
        "display_name": "User 1",
        "handle": None,
        "avatar_url": None,
        "created_at": _NOW,
        "updated_at": _NOW,
    }


class FakeCursor:
    """模拟 Motor 游标：支持链式 ``sort`` 与 ``async for``。"""

    def __init__(self, docs: list[dict[str, Any]]) -> None:
        self._docs = docs
        self.sort_args: tuple[Any, ...] = ()

    def sort(self, *args: Any) -> FakeCursor:
        self.sort_args = args
        return self

    def __aiter__(self) -> FakeCursor:
        self._iter = iter(self._docs)
        return self

    async def __anext__(self) -> dict[str, Any]:
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration from None


@pytest.fixture()
def collection() -> MagicMock:
    coll = MagicMock()
    coll.create_index = AsyncMock()
    coll.insert_one = AsyncMock()
    coll.find_one = AsyncMock(return_value=None)
    coll.find_one_and_update = AsyncMock(return_value=None)
    return coll


@pytest.fixture()
def repo(collection: MagicMock) -> StreamRepository:
    db = MagicMock()
    db.__getitem__.return_value = collection
    return StreamRepository(db)


class TestStreamRepository:

    @pytest.mark.asyncio
    async def test_indexes_created_once(self, repo: StreamRepository, collection: MagicMock) -> None:
        await repo.find_by_id("s1")
        await repo.find_by_id("s2")

        assert collection.create_index.await_count == 3

    @pytest.mark.asyncio
    async def test_find_by_id(self, repo: StreamRepository, collection: MagicMock) -> None:
        collection.find_one.return_value = _doc()

        record = await repo.find_by_id("s1")

        assert record is not None
        assert record.uid == "s1"
        assert record.status == "offline"
        collection.find_one.assert_awaited_once_with({"uid": "s1"}, {"_id": 0})

    @pytest.mark.asyncio
    async def test_find_by_id_missing(self, repo: StreamRepository) -> None:
        assert await repo.find_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_find_active(self, repo: StreamRepository, collection: MagicMock) -> None:
        cursor = FakeCursor([_doc("s1", "active"), _doc("s2", "active")])
        collection.find = MagicMock(return_value=cursor)

        records = await repo.find_active()

        assert [r.uid for r in records] == ["s1", "s2"]
        collection.find.assert_called_once_with({"status": "active"}, {"_id": 0})
        assert cursor.sort_args == ("created_at", 1)

    @pytest.mark.asyncio
    async def test_find_by_owner(self, repo: StreamRepository, collection: MagicMock) -> None:
        cursor = FakeCursor([_doc("s2"), _doc("s1")])
        collection.find = MagicMock(return_value=cursor)

        records = await repo.find_by_owner("u1")

        assert len(records) == 2
        collection.find.assert_called_once_with({"owner_id": "u1"}, {"_id": 0})
        assert cursor.sort_args == ("created_at", -1)

    @pytest.mark.asyncio
    async def test_update_status(self, repo: StreamRepository, collection: MagicMock) -> None:
        collection.find_one_and_update.return_value = _doc(status="active")

        record = await repo.update_status("s1", "active")

        assert record is not None
        assert record.status == "active"
        filter_, update = collection.find_one_and_update.call_args.args
        assert filter_ == {"uid": "s1"}
        assert update["$set"]["status"] == "active"
        assert "updated_at" in update["$set"]
        kwargs = collection.find_one_and_update.call_args.kwargs
        assert kwargs["return_document"] is ReturnDocument.AFTER

    @pytest.mark.asyncio
    async def test_update_status_missing(self, repo: StreamRepository) -> None:
        assert await repo.update_status("missing", "offline") is None

    @pytest.mark.asyncio
    async def test_create(self, repo: StreamRepository, collection: MagicMock) -> None:
        owner = Identity(id="u1", display_name="User 1", handle="neo", role="streamer", avatar="a.png")

        record = await repo.create(owner, "Evening show", "https://cdn.test/x.m3u8")

        assert record.status == "offline"
        assert record.owner_id == "u1"
        assert record.avatar_url == "a.png"
        inserted = collection.insert_one.call_args.args[0]
        assert inserted["uid"] == record.uid
        assert inserted["title"] == "Evening show"
