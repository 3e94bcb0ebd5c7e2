"""
app.api.socket_events
~~~~~~~~~~~~~~~~~~~~~

Socket.IO 事件接入 —— 把传输层事件转交给 ``PresenceCoordinator``。

约定:
  - Socket.IO 路径: ``settings.SOCKETIO_PATH``（默认 ``/socket.io``）
  - 鉴权: ``query.token``，其次 ``auth.token``，最后 ``Authorization: Bearer``
  - 握手失败原因: ``unauthorized`` / ``jwt_expired`` / ``server_error``

本模块不做业务判断，只负责取 token、登记处理器、设置日志上下文。
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any
from urllib.parse import parse_qs

import socketio

from app.core.errors import AuthenticationFailure
from app.core.logging import get_logger, request_id_ctx_var
from app.services.presence import PresenceCoordinator

logger = get_logger(__name__)


def create_socket_server() -> socketio.AsyncServer:
    """创建 ASGI 模式的 Socket.IO 服务端（日志统一走标准库 logging）。"""
    return socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins="*",
        logger=False,
        engineio_logger=False,
    )


def _scope_of(environ: Any) -> Any:
    if isinstance(environ, dict) and isinstance(environ.get("asgi.scope"), dict):
        return environ["asgi.scope"]
    return environ


def extract_token(environ: dict[str, Any], auth: Any | None) -> str | None:
    """从握手信息中取出 JWT。

    兼容 ASGI ``scope`` 与 WSGI 风格的 environ。
    """
    scope = _scope_of(environ)

    query_string: str | bytes = ""
    if isinstance(scope, dict):
        query_string = scope.get("query_string") or scope.get("QUERY_STRING") or ""
    if isinstance(query_string, (bytes, bytearray)):
        query_string = query_string.decode(errors="ignore")

    token = parse_qs(str(query_string)).get("token", [None])[0]
    if isinstance(token, str) and token:
        return token

    if isinstance(auth, dict):
        auth_token = auth.get("token")
        if isinstance(auth_token, str) and auth_token:
            return auth_token

    header = None
    if isinstance(environ, dict):
        header = environ.get("HTTP_AUTHORIZATION")
    if header is None and isinstance(scope, dict):
        for name, value in scope.get("headers") or []:
            if name.lower() == b"authorization":
                header = value.decode(errors="ignore")
                break
    if isinstance(header, str) and header.lower().startswith("bearer "):
        return header[7:].strip() or None

    return None


def register_socket_events(sio: socketio.AsyncServer, coordinator: PresenceCoordinator) -> None:
    """在 ``sio`` 上登记连接、断开以及协调器的全部事件处理器。"""

    async def connect(sid: str, environ: dict[str, Any], auth: Any | None = None) -> None:
        ctx_token = request_id_ctx_var.set(sid)
        try:
            await coordinator.connect(sid, extract_token(environ, auth))
        except AuthenticationFailure as exc:
            logger.info("握手被拒绝 | reason=%s", exc.message)
            raise ConnectionRefusedError(exc.message) from exc
        except Exception as exc:
            logger.exception("Socket.IO 握手异常")
            raise ConnectionRefusedError("server_error") from exc
        finally:
            request_id_ctx_var.reset(ctx_token)

    async def disconnect(sid: str, reason: Any = None) -> None:
        ctx_token = request_id_ctx_var.set(sid)
        try:
            logger.debug("传输层断开 | reason=%s", reason)
            await coordinator.disconnect(sid)
        except Exception:
            logger.exception("断开清理失败")
        finally:
            request_id_ctx_var.reset(ctx_token)

    sio.on("connect", handler=connect)
    sio.on("disconnect", handler=disconnect)

    for event in coordinator.handlers:
        sio.on(event, handler=_make_dispatcher(coordinator, event))

    logger.info("Socket 事件已登记 | events=%s", sorted(coordinator.handlers))


def _make_dispatcher(
    coordinator: PresenceCoordinator, event: str,
) -> Callable[[str, Any], Awaitable[None]]:
    async def handler(sid: str, data: Any = None) -> None:
        await coordinator.dispatch(event, sid, data)

    handler.__name__ = f"on_{event.replace('-', '_')}"
    return handler
