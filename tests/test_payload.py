"""
tests.test_payload
~~~~~~~~~~~~~~~~~~

事件负载解析测试。
"""
from __future__ import annotations

import pytest

from app.core.errors import ValidationFailure
from app.services.payload import parse_payload, require_stream_uid


class TestParsePayload:

    def test_dict_passes_through(self) -> None:
        payload = {"streamUid": "s1"}
        assert parse_payload(payload) is payload

    def test_json_string(self) -> None:
        assert parse_payload('{"streamUid": "s1", "isTyping": true}') == {
            "streamUid": "s1",
            "isTyping": True,
        }

    def test_bytes(self) -> None:
        assert parse_payload(b'{"streamUid": "s1"}') == {"streamUid": "s1"}

    def test_bare_keys_are_repaired(self) -> None:
        """键名未加引号时补引号后重新解析，字符串值里的冒号不受影响。"""
        raw = '{streamUid: "s1", message: "see https://example.test:8080/x"}'

        assert parse_payload(raw) == {
            "streamUid": "s1",
            "message": "see https://example.test:8080/x",
        }

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '"text"', None, 42])
    def test_invalid_payload(self, raw: object) -> None:
        with pytest.raises(ValidationFailure) as exc_info:
            parse_payload(raw)
        assert exc_info.value.message == "invalid payload"
        assert exc_info.value.code == "validation_error"


class TestRequireStreamUid:

    def test_strips_value(self) -> None:
        assert require_stream_uid({"streamUid": "  s1 "}) == "s1"

    @pytest.mark.parametrize("value", [None, 123, "", "   ", ["s1"]])
    def test_rejects_invalid(self, value: object) -> None:
        with pytest.raises(ValidationFailure, match="invalid stream id"):
            require_stream_uid({"streamUid": value})
