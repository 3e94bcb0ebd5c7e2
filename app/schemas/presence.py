"""
app.schemas.presence
~~~~~~~~~~~~~~~~~~~~

Socket 事件的出站负载模型。

字段在 Python 侧使用蛇形命名，序列化到线上时统一转换为驼峰（``to_wire()``），
与前端 Socket.IO 客户端约定保持一致。
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.schemas.stream import Identity, StreamRecord, StreamStatus

ViewerAction = Literal["joined", "left"]
StreamEndReason = Literal["manual", "tcp_disconnection"]


class WireModel(BaseModel):
    """出站负载基类：蛇形字段，驼峰别名。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """序列化为可直接 emit 的 JSON 兼容字典。"""
        return self.model_dump(mode="json", by_alias=True)


class PublicUser(WireModel):
    """对其他连接公开的用户信息。"""

    id: str
    display_name: str
    handle: str | None = None
    role: str
    avatar: str

    @classmethod
    def from_identity(cls, identity: Identity) -> PublicUser:
        return cls(
            id=identity.id,
            display_name=identity.display_name,
            handle=identity.handle,
            role=identity.role,
            avatar=identity.avatar,
        )


class ViewerInfo(PublicUser):
    """观众信息（附带连接 ID 与可选的离开原因）。"""

    socket_id: str
    reason: str | None = None


class UserInfo(PublicUser):
    """``user-info``：连接建立后回给本人的身份快照。"""

    socket_id: str
    connected_at: datetime


class StreamSummary(WireModel):
    """``streams-list`` 中的单个直播条目。"""

    uid: str
    title: str
    status: StreamStatus
    playback_url: str | None = None
    owner_id: str
    display_name: str | None = None
    handle: str | None = None
    created_at: datetime
    updated_at: datetime
    viewers_count: int = Field(..., ge=0)
    streamer_avatar: str

    @classmethod
    def from_record(
        cls, record: StreamRecord, viewers_count: int, streamer_avatar: str,
    ) -> StreamSummary:
        return cls(
            uid=record.uid,
            title=record.title,
            status=record.status,
            playback_url=record.playback_url,
            owner_id=record.owner_id,
            display_name=record.display_name,
            handle=record.handle,
            created_at=record.created_at,
            updated_at=record.updated_at,
            viewers_count=viewers_count,
            streamer_avatar=streamer_avatar,
        )


class StreamsListData(WireModel):
    """``streams-list``：当前所有开播中的直播快照。"""

    streams: list[StreamSummary]
    count: int
    timestamp: datetime
    is_viewer_count_update: bool = False


class ViewerUpdate(WireModel):
    """``viewer_update``：仅发给主播的观众变动通知。"""

    stream_uid: str
    action: ViewerAction
    viewer: ViewerInfo
    current_viewers: list[ViewerInfo]
    total_count: int
    timestamp: datetime


class ViewersCount(WireModel):
    """``viewers-count``：单个直播的实时观众数。"""

    stream_uid: str
    viewers_count: int
    timestamp: datetime


class StreamStarted(WireModel):
    """``stream_started``：开播确认。"""

    stream_uid: str
    status: StreamStatus
    title: str
    playback_url: str | None = None
    timestamp: datetime


class StreamEnded(WireModel):
    """``stream_ended``：全局广播的下播通知。"""

    stream_uid: str
    reason: StreamEndReason
    message: str


class ChatMessage(WireModel):
    """``new-message``：聊天消息信封。"""

    stream_uid: str
    user: PublicUser
    message: str
    timestamp: datetime
    is_broadcaster: bool


class TypingNotice(WireModel):
    """``user-typing``：输入状态提示。"""

    user: PublicUser
    is_typing: bool


class ErrorReply(WireModel):
    """``error``：事件处理失败时回给发起方。"""

    event: str
    code: str
    message: str
