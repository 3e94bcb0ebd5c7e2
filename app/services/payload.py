"""
app.services.payload
~~~~~~~~~~~~~~~~~~~~

Socket 事件负载解析 —— 所有事件处理器共用的唯一入口。

客户端可能发送原生对象，也可能发送 JSON 字符串，甚至是键名未加引号的
“类 JSON” 字符串（如 ``{streamUid: "abc"}``）。解析顺序固定为:

  1. 已经是 ``dict`` → 原样返回
  2. 字符串严格 ``json.loads``
  3. 给裸键名补引号后再 ``json.loads`` 一次
  4. 仍失败 → ``ValidationFailure("invalid payload")``
"""
from __future__ import annotations

import json
import re
from typing import Any

from app.core.errors import ValidationFailure
from app.core.logging import get_logger

logger = get_logger(__name__)

# 只匹配对象起始或逗号之后的裸键名，避免改写字符串值里的冒号（如 URL）
_BARE_KEY_PATTERN = re.compile(r"([{,]\s*)([A-Za-z_$][\w$-]*)\s*:")


def _repair_bare_keys(raw: str) -> str:
    return _BARE_KEY_PATTERN.sub(r'\1"\2":', raw)


def parse_payload(raw: Any) -> dict[str, Any]:
    """把事件负载统一解析为字典。

    Args:
        raw: Socket 收到的原始负载。

    Returns:
        解析后的字典。

    Raises:
        ValidationFailure: 两次解析均失败，或结果不是对象。
    """
    if isinstance(raw, dict):
        return raw

    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")

    if not isinstance(raw, str):
        raise ValidationFailure("invalid payload")

    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        repaired = _repair_bare_keys(raw)
        logger.debug("负载非标准 JSON，尝试补全键名引号 | repaired=%s", repaired)
        try:
            value = json.loads(repaired)
        except json.JSONDecodeError as exc:
            raise ValidationFailure("invalid payload") from exc

    if not isinstance(value, dict):
        raise ValidationFailure("invalid payload")
    return value


def require_stream_uid(payload: dict[str, Any]) -> str:
    """取出并校验 ``streamUid`` 字段。"""
    stream_uid = payload.get("streamUid")
    if not isinstance(stream_uid, str) or not stream_uid.strip():
        raise ValidationFailure("invalid stream id")
    return stream_uid.strip()
