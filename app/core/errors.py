"""
app.core.errors
~~~~~~~~~~~~~~~

实时协调层的异常分类。

每个异常携带机器可读的 ``code`` 与简短的 ``message``，
由 ``PresenceCoordinator.dispatch`` 统一转换为 ``error`` 事件回复给客户端。
"""
from __future__ import annotations


class PresenceError(Exception):
    """协调层异常基类。

    Attributes:
        code: 机器可读的错误码。
        message: 简短的错误描述（直接回给客户端）。
    """

    code: str = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationFailure(PresenceError):
    """握手凭证缺失或无效，连接不会建立。"""

    code = "authentication_failed"


class ValidationFailure(PresenceError):
    """事件负载格式错误或缺少必要字段。"""

    code = "validation_error"


class AuthorizationFailure(PresenceError):
    """角色不符或非直播间所有者。"""

    code = "forbidden"


class StreamNotFound(PresenceError):
    """直播不存在、未开播或无权访问。"""

    code = "not_found"


class ExternalFailure(PresenceError):
    """存储或传输层 I/O 失败。"""

    code = "external_failure"
