"""
app.services.presence
~~~~~~~~~~~~~~~~~~~~~

在线状态协调器 —— 实时层的核心，进程内唯一实例。

负责:
  - 连接建立 / 断开时的登记与清理
  - 观众进出直播间、主播开播 / 下播
  - 开播中主播表（直播 ID → 主播连接）的维护与孤儿清理
  - 观众数的实时计算，以及防抖后的直播列表全量推送

所有事件都经 ``dispatch()`` 进入：处理器抛出的 ``PresenceError`` 会被转换为
``error`` 事件回给发起方，其它异常记录日志后以 ``external_failure`` 回复，
单个事件的失败不会影响协调器与其它连接。

生命周期由 ``app.main`` 的 lifespan 管理：``start()`` 启动孤儿巡检，
``close()`` 取消计时器与后台任务并清空注册表。
"""
from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

from app.core.errors import (
    AuthorizationFailure,
    ExternalFailure,
    PresenceError,
    StreamNotFound,
    ValidationFailure,
)
from app.core.logging import get_logger, request_id_ctx_var
from app.core.rate_limit import ChatRateLimiter
from app.core.security import IdentityVerifier
from app.schemas.presence import (
    ErrorReply,
    StreamEnded,
    StreamStarted,
    StreamsListData,
    StreamSummary,
    UserInfo,
    ViewerInfo,
    ViewersCount,
    ViewerUpdate,
)
from app.schemas.stream import Identity, StreamRecord, StreamStatus
from app.services.broadcast_scheduler import BroadcastScheduler
from app.services.chat_relay import ChatRelay
from app.services.connection_registry import ConnectionRegistry, ConnectionState
from app.services.payload import parse_payload, require_stream_uid
from app.services.room_fabric import RoomFabric, room_for_stream

logger = get_logger(__name__)

EventHandler = Callable[[ConnectionState, Any], Awaitable[None]]


class StreamDirectory(Protocol):
    """直播记录存储接口（由 ``StreamRepository`` 实现）。

    协调器只使用四个查询 / 更新操作，``create`` 仅供 REST 接口使用。
    """

    async def create(
        self, owner: Identity, title: str, playback_url: str | None = None,
    ) -> StreamRecord: ...

    async def find_by_id(self, uid: str) -> StreamRecord | None: ...

    async def find_by_owner(self, owner_id: str) -> list[StreamRecord]: ...

    async def find_active(self) -> list[StreamRecord]: ...

    async def update_status(self, uid: str, status: StreamStatus) -> StreamRecord | None: ...


@dataclass
class ActiveStreamer:
    """开播中主播表的一条记录。"""

    sid: str
    stream_uid: str
    last_seen: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PresenceCoordinator:
    """在线状态协调器。

    Attributes:
        fabric: 房间广播层。
        directory: 直播记录存储。
        verifier: 握手身份校验器。
        registry: 连接注册表（仅由本协调器修改）。
        active_streamers: 开播中主播表，直播 ID → ``ActiveStreamer``。
        scheduler: 直播列表广播的防抖调度器。
        chat: 聊天转发器。
        handlers: 事件名 → 处理器。
    """

    def __init__(
        self,
        fabric: RoomFabric,
        directory: StreamDirectory,
        verifier: IdentityVerifier,
        *,
        registry: ConnectionRegistry | None = None,
        debounce_seconds: float = 0.1,
        broadcaster_role: str = "streamer",
        default_avatar: str = "",
        chat_rate_limit_interval: float = 0.3,
        chat_max_length: int = 500,
        orphan_sweep_interval: float = 30.0,
    ) -> None:
        self.fabric = fabric
        self.directory = directory
        self.verifier = verifier
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.broadcaster_role = broadcaster_role
        self.default_avatar = default_avatar
        self.orphan_sweep_interval = orphan_sweep_interval

        self.active_streamers: dict[str, ActiveStreamer] = {}
        self.scheduler = BroadcastScheduler(debounce_seconds, self.broadcast_streams_list)
        self.chat = ChatRelay(
            fabric,
            ChatRateLimiter(interval_seconds=chat_rate_limit_interval),
            max_length=chat_max_length,
        )

        # 同一直播的开播 / 下播 / 孤儿清理串行执行；锁与使用计数同生同灭
        self._stream_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._sweeper: asyncio.Task[None] | None = None

        self.handlers: dict[str, EventHandler] = {
            "watch_live": self.watch,
            "watch": self.watch,
            "stop_watching": self.stop_watching,
            "start_streaming": self.start_streaming,
            "end_streaming": self.end_streaming,
            "get_streams": self.get_streams,
            "get-viewers-count": self.get_viewers_count,
            "send-message": self.chat.send_message,
            "typing": self.chat.typing,
        }

    # ── 生命周期 ────────────────────────────────────────────

    def start(self) -> None:
        """启动后台孤儿巡检（间隔为 0 时不启动）。"""
        if self.orphan_sweep_interval > 0 and self._sweeper is None:
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())
            logger.info("孤儿巡检已启动 | interval=%.1fs", self.orphan_sweep_interval)

    async def close(self) -> None:
        """取消巡检与待触发的广播，清空全部内存状态。"""
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        await self.scheduler.close()
        self.registry.clear()
        self.active_streamers.clear()
        self._stream_locks.clear()
        self._lock_users.clear()
        logger.info("在线状态协调器已关闭")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.orphan_sweep_interval)
            try:
                await self.reconcile_orphans()
            except Exception:
                logger.exception("孤儿巡检失败")

    @contextlib.asynccontextmanager
    async def _stream_lock(self, stream_uid: str) -> AsyncIterator[None]:
        """持有某条直播的串行锁。最后一个使用者退出时删除锁对象。

        ``streamUid`` 来自客户端，任意 ID 都会走到这里，锁表不能只增不减。
        """
        lock = self._stream_locks.get(stream_uid)
        if lock is None:
            lock = self._stream_locks[stream_uid] = asyncio.Lock()
        self._lock_users[stream_uid] = self._lock_users.get(stream_uid, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users.get(stream_uid, 1) - 1
            if remaining > 0:
                self._lock_users[stream_uid] = remaining
            else:
                self._lock_users.pop(stream_uid, None)
                self._stream_locks.pop(stream_uid, None)

    # ── 连接 ────────────────────────────────────────────────

    async def connect(self, sid: str, token: str | None) -> ConnectionState:
        """校验凭证、登记连接，并推送身份与直播列表快照。

        Raises:
            AuthenticationFailure: 凭证缺失或无效，连接不会建立。
        """
        identity = self.verifier.verify(token)
        state = self.registry.register(sid, identity)
        logger.info(
            "连接建立 | sid=%s | user=%s | role=%s | online=%d",
            sid, identity.id, identity.role, len(self.registry),
        )

        user_info = UserInfo(
            id=identity.id,
            display_name=identity.display_name,
            handle=identity.handle,
            role=identity.role,
            avatar=identity.avatar,
            socket_id=sid,
            connected_at=state.connected_at,
        )
        try:
            await self.fabric.emit_to(sid, "user-info", user_info.to_wire())
        except Exception:
            # 握手会被拒绝，之后不会再有断开事件
            self.registry.remove(sid)
            raise

        try:
            await self.send_streams_list(sid)
        except Exception:
            # 快照失败不影响连接建立
            logger.exception("初始直播列表推送失败 | sid=%s", sid)
        return state

    async def disconnect(self, sid: str) -> None:
        """连接断开：按最后的角色清理状态。

        主播断开只移出开播中主播表，不改直播状态、不广播下播；
        推流可能仍在外部服务中继续，真正的下播只能由 ``end_streaming``
        或孤儿巡检确认。
        """
        state = self.registry.lookup(sid)
        if state is None:
            logger.debug("断开的连接未登记 | sid=%s", sid)
            return

        try:
            if state.is_broadcaster and state.active_stream_uid:
                stream_uid = state.active_stream_uid
                entry = self.active_streamers.get(stream_uid)
                if entry is not None and entry.sid == sid:
                    del self.active_streamers[stream_uid]
                self.registry.clear_broadcasting(sid)
                logger.info(
                    "主播连接断开，直播状态保持不变 | sid=%s | stream=%s", sid, stream_uid,
                )
                self.scheduler.schedule()
            elif state.watching_stream_uid:
                await self._leave_viewer(state, state.watching_stream_uid, reason="disconnected")
                self.scheduler.schedule()
        finally:
            self.registry.remove(sid)
            self.chat.forget(sid)
            logger.info("连接断开 | sid=%s | online=%d", sid, len(self.registry))

    async def dispatch(self, event: str, sid: str, data: Any = None) -> None:
        """事件总入口：查找处理器并把异常转换为 ``error`` 回复。"""
        token = request_id_ctx_var.set(sid)
        try:
            handler = self.handlers.get(event)
            if handler is None:
                logger.warning("未知事件 | event=%s", event)
                return

            state = self.registry.lookup(sid)
            if state is None:
                logger.warning("未登记连接的事件已忽略 | event=%s", event)
                return
            self._touch(state)

            try:
                await handler(state, data)
            except PresenceError as exc:
                logger.info("事件处理被拒绝 | event=%s | code=%s | %s", event, exc.code, exc.message)
                await self._reply_error(sid, event, exc.code, exc.message)
            except Exception:
                logger.exception("事件处理异常 | event=%s", event)
                await self._reply_error(sid, event, ExternalFailure.code, "internal error")
        finally:
            request_id_ctx_var.reset(token)

    async def _reply_error(self, sid: str, event: str, code: str, message: str) -> None:
        reply = ErrorReply(event=event, code=code, message=message)
        try:
            await self.fabric.emit_to(sid, "error", reply.to_wire())
        except Exception:
            logger.exception("错误回复发送失败 | event=%s", event)

    def _touch(self, state: ConnectionState) -> None:
        """主播连接的任何事件都刷新开播表中的最后活跃时间。"""
        if not state.is_broadcaster or state.active_stream_uid is None:
            return
        entry = self.active_streamers.get(state.active_stream_uid)
        if entry is not None and entry.sid == state.sid:
            entry.last_seen = _now()

    # ── 观众 ────────────────────────────────────────────────

    async def watch(self, state: ConnectionState, data: Any) -> None:
        """``watch_live`` / ``watch``：进入直播间并计入观众数。"""
        stream_uid = require_stream_uid(parse_payload(data))
        if state.is_broadcaster:
            raise ValidationFailure("broadcasting connection cannot watch")

        record = await self.directory.find_by_id(stream_uid)
        if record is None or record.status != "active":
            raise StreamNotFound("not available")

        # 查询期间连接可能已经断开
        if state.sid not in self.registry or state.is_broadcaster:
            logger.debug("观看请求期间连接状态已变化，放弃 | stream=%s", stream_uid)
            return

        if state.watching_stream_uid == stream_uid:
            self.scheduler.schedule()
            return
        if state.watching_stream_uid is not None:
            await self._leave_viewer(state, state.watching_stream_uid)

        await self.fabric.enter_room(state.sid, room_for_stream(stream_uid))
        self.registry.mark_watching(state.sid, stream_uid)
        await self._notify_broadcaster(state, stream_uid, "joined")
        logger.info("观众进入 | stream=%s | user=%s", stream_uid, state.identity.id)
        self.scheduler.schedule()

    async def stop_watching(self, state: ConnectionState, data: Any) -> None:
        """``stop_watching``：离开直播间。未在观看时为空操作。"""
        stream_uid = require_stream_uid(parse_payload(data))
        if state.watching_stream_uid != stream_uid:
            logger.debug("未在观看该直播，忽略 | stream=%s", stream_uid)
            return
        await self._leave_viewer(state, stream_uid)
        self.scheduler.schedule()

    async def _leave_viewer(
        self, state: ConnectionState, stream_uid: str, reason: str | None = None,
    ) -> None:
        await self.fabric.leave_room(state.sid, room_for_stream(stream_uid))
        self.registry.clear_watching(state.sid)
        await self._notify_broadcaster(state, stream_uid, "left", reason=reason)
        logger.info(
            "观众离开 | stream=%s | user=%s | reason=%s",
            stream_uid, state.identity.id, reason or "manual",
        )

    async def _notify_broadcaster(
        self,
        viewer: ConnectionState,
        stream_uid: str,
        action: str,
        reason: str | None = None,
    ) -> None:
        """给直播间的主播连接（如果在线）推送 ``viewer_update``。"""
        entry = self.active_streamers.get(stream_uid)
        if entry is None:
            return

        current = await self._current_viewers(stream_uid)
        update = ViewerUpdate(
            stream_uid=stream_uid,
            action=action,
            viewer=self._viewer_info(viewer, reason=reason),
            current_viewers=current,
            total_count=len(current),
            timestamp=_now(),
        )
        await self.fabric.emit_to(entry.sid, "viewer_update", update.to_wire())

    @staticmethod
    def _viewer_info(state: ConnectionState, reason: str | None = None) -> ViewerInfo:
        identity = state.identity
        return ViewerInfo(
            id=identity.id,
            display_name=identity.display_name,
            handle=identity.handle,
            role=identity.role,
            avatar=identity.avatar,
            socket_id=state.sid,
            reason=reason,
        )

    async def _viewer_states(self, stream_uid: str) -> list[ConnectionState]:
        """房间成员中计入观众数的连接（以传输层成员为准）。"""
        viewers = []
        for sid in await self.fabric.participants(room_for_stream(stream_uid)):
            state = self.registry.lookup(sid)
            if state is not None and state.is_viewer_of(stream_uid):
                viewers.append(state)
        return viewers

    async def _current_viewers(self, stream_uid: str) -> list[ViewerInfo]:
        return [self._viewer_info(s) for s in await self._viewer_states(stream_uid)]

    async def count_viewers(self, stream_uid: str) -> int:
        """实时观众数。"""
        return len(await self._viewer_states(stream_uid))

    # ── 主播 ────────────────────────────────────────────────

    async def _owned_record(self, state: ConnectionState, stream_uid: str) -> StreamRecord:
        record = await self.directory.find_by_id(stream_uid)
        if record is None or record.owner_id != state.identity.id:
            raise StreamNotFound("not found or forbidden")
        return record

    async def start_streaming(self, state: ConnectionState, data: Any) -> None:
        """``start_streaming``：校验角色与所有权后开播。"""
        stream_uid = require_stream_uid(parse_payload(data))
        if state.identity.role != self.broadcaster_role:
            raise AuthorizationFailure("permission denied")
        if state.is_broadcaster and state.active_stream_uid != stream_uid:
            raise ValidationFailure("already broadcasting another stream")

        async with self._stream_lock(stream_uid):
            await self._owned_record(state, stream_uid)
            record = await self.directory.update_status(stream_uid, "active")
            if record is None:
                raise StreamNotFound("not found or forbidden")

            if state.sid not in self.registry:
                logger.warning("开播期间连接已断开 | stream=%s", stream_uid)
                return

            if state.watching_stream_uid is not None:
                await self._leave_viewer(state, state.watching_stream_uid)

            previous = self.active_streamers.get(stream_uid)
            if previous is not None and previous.sid != state.sid:
                await self._demote(previous.sid, stream_uid)

            await self.fabric.enter_room(state.sid, room_for_stream(stream_uid))
            self.registry.mark_broadcasting(state.sid, stream_uid)
            self.active_streamers[stream_uid] = ActiveStreamer(sid=state.sid, stream_uid=stream_uid)

        logger.info("开播 | stream=%s | user=%s", stream_uid, state.identity.id)
        self.scheduler.schedule()

        started = StreamStarted(
            stream_uid=stream_uid,
            status=record.status,
            title=record.title,
            playback_url=record.playback_url,
            timestamp=_now(),
        )
        await self.fabric.emit_to(state.sid, "stream_started", started.to_wire())

    async def _demote(self, sid: str, stream_uid: str) -> None:
        """撤销一个连接的主播身份并让它离开房间。"""
        self.registry.clear_broadcasting(sid)
        await self.fabric.leave_room(sid, room_for_stream(stream_uid))
        logger.info("旧的主播连接被替换 | stream=%s | sid=%s", stream_uid, sid)

    async def end_streaming(self, state: ConnectionState, data: Any) -> None:
        """``end_streaming``：下播并全局广播 ``stream_ended``。"""
        stream_uid = require_stream_uid(parse_payload(data))

        async with self._stream_lock(stream_uid):
            await self._owned_record(state, stream_uid)
            await self.directory.update_status(stream_uid, "offline")

            entry = self.active_streamers.pop(stream_uid, None)
            if entry is not None and entry.sid != state.sid:
                await self._demote(entry.sid, stream_uid)
            if state.is_broadcaster_of(stream_uid):
                self.registry.clear_broadcasting(state.sid)

            # 发起方自己可能也在观看，先随观众一起清理观看标记再离开房间
            evicted = await self._evict_viewers(stream_uid)
            await self.fabric.leave_room(state.sid, room_for_stream(stream_uid))

        logger.info("下播 | stream=%s | user=%s | evicted=%d", stream_uid, state.identity.id, evicted)
        ended = StreamEnded(
            stream_uid=stream_uid, reason="manual", message="The stream has ended",
        )
        await self.fabric.emit_all("stream_ended", ended.to_wire())
        self.scheduler.schedule()

    async def _evict_viewers(self, stream_uid: str) -> int:
        room = room_for_stream(stream_uid)
        evicted = 0
        for sid in await self.fabric.participants(room):
            viewer = self.registry.lookup(sid)
            if viewer is not None and viewer.watching_stream_uid == stream_uid:
                self.registry.clear_watching(sid)
                await self.fabric.leave_room(sid, room)
                evicted += 1
        return evicted

    # ── 孤儿清理 ────────────────────────────────────────────

    async def reconcile_orphans(self) -> list[str]:
        """巡检开播中主播表，清理连接已失效的条目。

        Returns:
            本轮被判定为孤儿并下播的直播 ID。
        """
        cleaned: list[str] = []
        for stream_uid, entry in list(self.active_streamers.items()):
            if self.fabric.is_connected(entry.sid):
                continue
            try:
                if await self._cleanup_orphan(stream_uid, entry.sid):
                    cleaned.append(stream_uid)
            except Exception:
                logger.exception("孤儿清理失败 | stream=%s", stream_uid)
        if cleaned:
            logger.info("孤儿巡检完成 | cleaned=%s", cleaned)
        return cleaned

    async def _cleanup_orphan(self, stream_uid: str, sid: str) -> bool:
        async with self._stream_lock(stream_uid):
            # 断开处理或新的开播可能已经先一步处理了这个条目
            entry = self.active_streamers.get(stream_uid)
            if entry is None or entry.sid != sid or self.fabric.is_connected(sid):
                logger.debug("孤儿条目已被处理，跳过 | stream=%s", stream_uid)
                return False
            del self.active_streamers[stream_uid]

            await self.directory.update_status(stream_uid, "offline")

            lingering = self.registry.remove(sid)
            if lingering is not None:
                self.chat.forget(sid)
            evicted = await self._evict_viewers(stream_uid)

        logger.warning(
            "主播连接已丢失，直播强制下播 | stream=%s | sid=%s | evicted=%d", stream_uid, sid, evicted,
        )
        ended = StreamEnded(
            stream_uid=stream_uid,
            reason="tcp_disconnection",
            message="The broadcaster lost connection",
        )
        await self.fabric.emit_all("stream_ended", ended.to_wire())
        self.scheduler.schedule()
        return True

    # ── 直播列表 ────────────────────────────────────────────

    async def build_streams_snapshot(self, is_viewer_count_update: bool = False) -> StreamsListData:
        """计算当前开播中直播的快照，观众数按房间成员实时统计。"""
        summaries = []
        for record in await self.directory.find_active():
            summaries.append(
                StreamSummary.from_record(
                    record,
                    viewers_count=await self.count_viewers(record.uid),
                    streamer_avatar=self._streamer_avatar(record),
                ),
            )
        return StreamsListData(
            streams=summaries,
            count=len(summaries),
            timestamp=_now(),
            is_viewer_count_update=is_viewer_count_update,
        )

    def _streamer_avatar(self, record: StreamRecord) -> str:
        entry = self.active_streamers.get(record.uid)
        if entry is not None:
            state = self.registry.lookup(entry.sid)
            if state is not None:
                return state.identity.avatar
        return record.avatar_url or self.default_avatar

    async def send_streams_list(self, sid: str) -> None:
        snapshot = await self.build_streams_snapshot()
        await self.fabric.emit_to(sid, "streams-list", snapshot.to_wire())

    async def broadcast_streams_list(self) -> None:
        """防抖触发：向全部连接推送直播列表。"""
        snapshot = await self.build_streams_snapshot(is_viewer_count_update=True)
        await self.fabric.emit_all("streams-list", snapshot.to_wire())
        logger.debug("直播列表已广播 | count=%d", snapshot.count)

    async def get_streams(self, state: ConnectionState, data: Any) -> None:
        """``get_streams``：把快照回给请求方。"""
        await self.send_streams_list(state.sid)

    async def get_viewers_count(self, state: ConnectionState, data: Any) -> None:
        """``get-viewers-count``：回复单个直播的实时观众数。"""
        stream_uid = require_stream_uid(parse_payload(data))
        reply = ViewersCount(
            stream_uid=stream_uid,
            viewers_count=await self.count_viewers(stream_uid),
            timestamp=_now(),
        )
        await self.fabric.emit_to(state.sid, "viewers-count", reply.to_wire())
