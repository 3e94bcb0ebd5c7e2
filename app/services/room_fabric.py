"""
app.services.room_fabric
~~~~~~~~~~~~~~~~~~~~~~~~

房间广播层 —— 对 ``socketio.AsyncServer`` 的房间与推送原语做一层薄封装。

每个直播对应一个房间 ``stream-<streamUid>``，房间成员以传输层为唯一事实来源；
协调层只通过这里点对点推送、房间推送、全局推送以及枚举成员。
"""
from __future__ import annotations

from typing import Any

import socketio

from app.core.logging import get_logger

logger = get_logger(__name__)


def room_for_stream(stream_uid: str) -> str:
    """直播 ID → 房间名。"""
    return f"stream-{stream_uid}"


class RoomFabric:
    """Socket.IO 房间广播器。

    Attributes:
        sio: Socket.IO 异步服务端实例。
        namespace: 使用的命名空间。
    """

    def __init__(self, sio: socketio.AsyncServer, namespace: str = "/") -> None:
        self.sio = sio
        self.namespace = namespace

    async def emit_to(self, sid: str, event: str, data: Any) -> None:
        """推送给单个连接。"""
        await self.sio.emit(event, data, to=sid, namespace=self.namespace)

    async def emit_room(
        self, room: str, event: str, data: Any, skip_sid: str | None = None,
    ) -> None:
        """推送给房间内所有连接（可排除一个连接）。"""
        await self.sio.emit(
            event, data, room=room, skip_sid=skip_sid, namespace=self.namespace,
        )

    async def emit_all(self, event: str, data: Any) -> None:
        """推送给命名空间内的全部连接。"""
        await self.sio.emit(event, data, namespace=self.namespace)

    async def enter_room(self, sid: str, room: str) -> None:
        await self.sio.enter_room(sid, room, namespace=self.namespace)

    async def leave_room(self, sid: str, room: str) -> None:
        await self.sio.leave_room(sid, room, namespace=self.namespace)

    async def participants(self, room: str) -> list[str]:
        """枚举房间内当前的连接 ID。房间不存在时返回空列表。"""
        rooms = self.sio.manager.rooms.get(self.namespace, {})
        if room not in rooms:
            return []
        return [
            sid for sid, _eio_sid in self.sio.manager.get_participants(self.namespace, room)
        ]

    def is_connected(self, sid: str) -> bool:
        """连接是否仍处于打开状态。"""
        return bool(self.sio.manager.is_connected(sid, self.namespace))
