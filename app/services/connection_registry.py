"""
app.services.connection_registry
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

连接注册表 —— 维护所有在线 Socket 连接的身份与角色状态。

注册表由 ``PresenceCoordinator`` 独占：状态字段只能通过这里的
``mark_*`` / ``clear_*`` 方法修改。所有方法都是同步的（内部没有 ``await``），
在单事件循环下每次修改天然是原子的，不同连接的并发事件不会交错写坏同一条记录。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from app.core.logging import get_logger
from app.schemas.stream import Identity

logger = get_logger(__name__)


@dataclass
class ConnectionState:
    """单个连接的状态记录。

    Attributes:
        sid: Socket 连接 ID。
        identity: 握手时校验得到的身份（只读）。
        is_broadcaster: 是否正在开播。
        active_stream_uid: 正在开播的直播 ID，仅 ``is_broadcaster`` 时有值。
        watching_stream_uid: 正在观看的直播 ID（同一时刻至多一个）。
        is_auto_viewer: 是否计入观众数。
        connected_at: 连接建立时间。
    """

    sid: str
    identity: Identity
    is_broadcaster: bool = False
    active_stream_uid: str | None = None
    watching_stream_uid: str | None = None
    is_auto_viewer: bool = False
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_viewer_of(self, stream_uid: str) -> bool:
        """是否作为观众计入指定直播。"""
        return (
            self.is_auto_viewer
            and not self.is_broadcaster
            and self.watching_stream_uid == stream_uid
        )

    def is_broadcaster_of(self, stream_uid: str) -> bool:
        """是否是指定直播的主播连接。"""
        return self.is_broadcaster and self.active_stream_uid == stream_uid


class ConnectionRegistry:
    """在线连接表（sid → ``ConnectionState``）。"""

    def __init__(self) -> None:
        self._connections: dict[str, ConnectionState] = {}

    def register(self, sid: str, identity: Identity) -> ConnectionState:
        """登记新连接。同一 sid 重复登记时覆盖旧记录。"""
        if sid in self._connections:
            logger.warning("连接重复登记，覆盖旧状态 | sid=%s", sid)
        state = ConnectionState(sid=sid, identity=identity)
        self._connections[sid] = state
        return state

    def lookup(self, sid: str) -> ConnectionState | None:
        """查询连接状态，不存在时返回 ``None``。"""
        return self._connections.get(sid)

    def remove(self, sid: str) -> ConnectionState | None:
        """移除连接并返回其最后的状态。"""
        return self._connections.pop(sid, None)

    def mark_watching(self, sid: str, stream_uid: str) -> None:
        state = self._connections[sid]
        state.watching_stream_uid = stream_uid
        state.is_auto_viewer = True

    def clear_watching(self, sid: str) -> None:
        state = self._connections.get(sid)
        if state is not None:
            state.watching_stream_uid = None
            state.is_auto_viewer = False

    def mark_broadcasting(self, sid: str, stream_uid: str) -> None:
        state = self._connections[sid]
        state.is_broadcaster = True
        state.active_stream_uid = stream_uid

    def clear_broadcasting(self, sid: str) -> None:
        state = self._connections.get(sid)
        if state is not None:
            state.is_broadcaster = False
            state.active_stream_uid = None

    def clear(self) -> None:
        """清空注册表（协调器关闭时调用）。"""
        self._connections.clear()

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, sid: object) -> bool:
        return sid in self._connections
