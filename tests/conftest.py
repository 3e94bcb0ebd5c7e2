"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存实现替换 Socket.IO 房间层与 MongoDB 直播仓库，
使协调器测试无需真实连接即可快速运行。
"""
from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt
import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置

from app.core.security import IdentityVerifier  # noqa: E402
from app.schemas.stream import Identity, StreamRecord, StreamStatus  # noqa: E402
from app.services.presence import PresenceCoordinator  # noqa: E402

TEST_SECRET: str = "unit-test-secret"
DEFAULT_AVATAR: str = "https://example.test/default.png"


# ── Token ─────────────────────────────────────────────────────────────

def make_token(
    user_id: str,
    role: str = "viewer",
    secret: str = TEST_SECRET,
    expires_in: int = 3600,
    **claims: Any,
) -> str:
    """签发测试用 JWT。"""
    payload: dict[str, Any] = {
        "id": user_id,
        "role": role,
        "displayName": f"User {user_id}",
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


# ── 房间层 ────────────────────────────────────────────────────────────

class FakeFabric:
    """内存版 ``RoomFabric``。

    ``emitted`` 按接收方记录每次推送：连接 ID，或全局广播时的 ``"*"``。
    """

    def __init__(self) -> None:
        self.rooms: dict[str, set[str]] = {}
        self.connected: set[str] = set()
        self.emitted: list[tuple[str, str, Any]] = []

    async def emit_to(self, sid: str, event: str, data: Any) -> None:
        self.emitted.append((sid, event, data))

    async def emit_room(
        self, room: str, event: str, data: Any, skip_sid: str | None = None,
    ) -> None:
        for sid in sorted(self.rooms.get(room, set())):
            if sid != skip_sid:
                self.emitted.append((sid, event, data))

    async def emit_all(self, event: str, data: Any) -> None:
        self.emitted.append(("*", event, data))

    async def enter_room(self, sid: str, room: str) -> None:
        self.rooms.setdefault(room, set()).add(sid)

    async def leave_room(self, sid: str, room: str) -> None:
        self.rooms.get(room, set()).discard(sid)

    async def participants(self, room: str) -> list[str]:
        return sorted(self.rooms.get(room, set()))

    def is_connected(self, sid: str) -> bool:
        return sid in self.connected

    def drop(self, sid: str) -> None:
        """模拟传输层连接丢失（不触发断开事件）。"""
        self.connected.discard(sid)

    def events(self, event: str, to: str | None = None) -> list[Any]:
        return [
            data for target, name, data in self.emitted
            if name == event and (to is None or target == to)
        ]


# ── 直播仓库 ──────────────────────────────────────────────────────────

class FakeStreamDirectory:
    """内存版 ``StreamRepository``。"""

    def __init__(self) -> None:
        self.records: dict[str, StreamRecord] = {}

    def add(
        self,
        uid: str,
        owner_id: str,
        status: StreamStatus = "offline",
        title: str = "Test Stream",
        avatar_url: str | None = None,
    ) -> StreamRecord:
        now = datetime.now(timezone.utc)
        record = StreamRecord(
            uid=uid,
            title=title,
            owner_id=owner_id,
            status=status,
            playback_url=f"https://cdn.example.test/{uid}.m3u8",
            display_name=f"User {owner_id}",
            avatar_url=avatar_url,
            created_at=now,
            updated_at=now,
        )
        self.records[uid] = record
        return record

    async def create(
        self, owner: Identity, title: str, playback_url: str | None = None,
    ) -> StreamRecord:
        record = self.add(f"s-{len(self.records) + 1}", owner.id, title=title)
        record = record.model_copy(update={"playback_url": playback_url})
        self.records[record.uid] = record
        return record

    async def find_by_id(self, uid: str) -> StreamRecord | None:
        return self.records.get(uid)

    async def find_by_owner(self, owner_id: str) -> list[StreamRecord]:
        return [r for r in self.records.values() if r.owner_id == owner_id]

    async def find_active(self) -> list[StreamRecord]:
        return [r for r in self.records.values() if r.status == "active"]

    async def update_status(self, uid: str, status: StreamStatus) -> StreamRecord | None:
        record = self.records.get(uid)
        if record is None:
            return None
        record = record.model_copy(
            update={"status": status, "updated_at": datetime.now(timezone.utc)},
        )
        self.records[uid] = record
        return record

    def status_of(self, uid: str) -> StreamStatus:
        return self.records[uid].status


# ── Fixtures ──────────────────────────────────────────────────────────

def build_coordinator(
    fabric: FakeFabric, directory: FakeStreamDirectory, **overrides: Any,
) -> PresenceCoordinator:
    options: dict[str, Any] = {
        "debounce_seconds": 0.01,
        "broadcaster_role": "streamer",
        "default_avatar": DEFAULT_AVATAR,
        "chat_rate_limit_interval": 0,
        "chat_max_length": 50,
        "orphan_sweep_interval": 0,
    }
    options.update(overrides)
    return PresenceCoordinator(
        fabric,
        directory,
        IdentityVerifier(TEST_SECRET, default_avatar=DEFAULT_AVATAR),
        **options,
    )


@pytest.fixture()
def fabric() -> FakeFabric:
    return FakeFabric()


@pytest.fixture()
def directory() -> FakeStreamDirectory:
    return FakeStreamDirectory()


@pytest.fixture()
def coordinator(fabric: FakeFabric, directory: FakeStreamDirectory) -> PresenceCoordinator:
    return build_coordinator(fabric, directory)


async def connect(
    coordinator: PresenceCoordinator,
    fabric: FakeFabric,
    sid: str,
    user_id: str,
    role: str = "viewer",
    **claims: Any,
) -> None:
    """建立一个已鉴权的测试连接。"""
    fabric.connected.add(sid)
    await coordinator.connect(sid, make_token(user_id, role, **claims))
