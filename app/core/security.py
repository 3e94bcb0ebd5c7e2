"""
app.core.security
~~~~~~~~~~~~~~~~~

身份校验 —— 验证 JWT 并产出只读的 ``Identity``。

Socket 握手与 REST 接口共用同一个 ``IdentityVerifier`` 实例。
"""
from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import jwt

from app.core.errors import AuthenticationFailure
from app.core.logging import get_logger
from app.schemas.stream import Identity

logger = get_logger(__name__)


class IdentityVerifier:
    """基于共享密钥的 JWT 校验器。

    支持的声明:
      - ``id``（或 ``sub``）：用户 ID，必填
      - ``role``：身份角色，必填
      - ``displayName``：显示名称，缺省时使用用户 ID
      - ``handle``（兼容旧字段 ``metroUsername``）：用户名
      - ``avatar``：头像，缺省时使用占位图

    Attributes:
        secret: 签名密钥。
        algorithms: 允许的签名算法。
        default_avatar: 头像占位图。
    """

    def __init__(
        self,
        secret: str,
        algorithms: Sequence[str] = ("HS256",),
        default_avatar: str = "",
    ) -> None:
        self.secret = secret
        self.algorithms = list(algorithms)
        self.default_avatar = default_avatar

    def verify(self, token: str | None) -> Identity:
        """校验 token 并返回身份。

        Raises:
            AuthenticationFailure: token 缺失、过期、签名无效或缺少必要声明。
        """
        if not token:
            raise AuthenticationFailure("unauthorized")

        try:
            claims: dict[str, Any] = jwt.decode(token, self.secret, algorithms=self.algorithms)
        except jwt.ExpiredSignatureError as exc:
            # 前端依赖这个固定字符串触发 token 刷新
            raise AuthenticationFailure("jwt_expired") from exc
        except jwt.InvalidTokenError as exc:
            logger.info("JWT 校验失败: %s", exc)
            raise AuthenticationFailure("unauthorized") from exc

        user_id = claims.get("id") or claims.get("sub")
        role = claims.get("role")
        if not user_id or not isinstance(role, str) or not role:
            raise AuthenticationFailure("unauthorized")

        return Identity(
            id=str(user_id),
            display_name=claims.get("displayName") or str(user_id),
            handle=claims.get("handle") or claims.get("metroUsername"),
            role=role,
            avatar=claims.get("avatar") or self.default_avatar,
        )
