"""
app.services.chat_relay
~~~~~~~~~~~~~~~~~~~~~~~

聊天转发 —— 逐条校验并把消息推送到直播间房间。

消息不落库；发送者身份与主播标记取自连接注册表中的状态，
转发器自身不保存任何连接状态（限流记录由协调器持有并注入）。
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from app.core.errors import ValidationFailure
from app.core.logging import get_logger
from app.core.rate_limit import ChatRateLimiter
from app.schemas.presence import ChatMessage, PublicUser, TypingNotice
from app.services.connection_registry import ConnectionState
from app.services.payload import parse_payload, require_stream_uid
from app.services.room_fabric import RoomFabric, room_for_stream

logger = get_logger(__name__)


class ChatRelay:
    """直播间聊天转发器。

    Attributes:
        fabric: 房间广播层。
        rate_limiter: 按连接限制发送频率。
        max_length: 单条消息最大长度（去除首尾空白后）。
    """

    def __init__(
        self,
        fabric: RoomFabric,
        rate_limiter: ChatRateLimiter,
        max_length: int = 500,
    ) -> None:
        self.fabric = fabric
        self.rate_limiter = rate_limiter
        self.max_length = max_length

    async def send_message(self, state: ConnectionState, data: Any) -> None:
        """``send-message``：校验后推送给房间内所有人（包括发送者本人）。

        Raises:
            ValidationFailure: 负载无法解析、直播 ID 非字符串、消息为空或过长、发送过快。
        """
        payload = parse_payload(data)
        stream_uid = require_stream_uid(payload)

        message = payload.get("message")
        if not isinstance(message, str) or not message.strip():
            raise ValidationFailure("empty")
        message = message.strip()
        if len(message) > self.max_length:
            raise ValidationFailure("too long")

        if not self.rate_limiter.is_allowed(state.sid):
            raise ValidationFailure("rate limited")

        envelope = ChatMessage(
            stream_uid=stream_uid,
            user=PublicUser.from_identity(state.identity),
            message=message,
            timestamp=datetime.now(timezone.utc),
            is_broadcaster=state.is_broadcaster_of(stream_uid),
        ).to_wire()

        room = room_for_stream(stream_uid)
        await self.fabric.emit_room(room, "new-message", envelope)

        # 发送者不在房间里时（例如还没进入观看）也要收到自己的消息
        if state.sid not in await self.fabric.participants(room):
            await self.fabric.emit_to(state.sid, "new-message", envelope)

        logger.info(
            "聊天消息 | stream=%s | user=%s | broadcaster=%s | len=%d",
            stream_uid, state.identity.id, envelope["isBroadcaster"], len(message),
        )

    async def typing(self, state: ConnectionState, data: Any) -> None:
        """``typing``：转发输入状态给房间内其他人，类型不符时直接丢弃。"""
        try:
            payload = parse_payload(data)
        except ValidationFailure:
            logger.debug("typing 负载无法解析，已丢弃 | sid=%s", state.sid)
            return

        stream_uid = payload.get("streamUid")
        is_typing = payload.get("isTyping")
        if not isinstance(stream_uid, str) or not stream_uid or not isinstance(is_typing, bool):
            logger.debug("typing 负载类型不符，已丢弃 | sid=%s | payload=%s", state.sid, payload)
            return

        notice = TypingNotice(user=PublicUser.from_identity(state.identity), is_typing=is_typing)
        await self.fabric.emit_room(
            room_for_stream(stream_uid), "user-typing", notice.to_wire(), skip_sid=state.sid,
        )

    def forget(self, sid: str) -> None:
        """连接断开时清理限流记录。"""
        self.rate_limiter.remove_client(sid)
