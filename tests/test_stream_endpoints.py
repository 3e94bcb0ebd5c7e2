"""
tests.test_stream_endpoints
~~~~~~~~~~~~~~~~~~~~~~~~~~~

直播记录 REST 接口测试（FastAPI TestClient）。
"""
from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api import stream_endpoints
from app.core.rate_limit import limiter
from conftest import make_token


@pytest.fixture()
def client(coordinator, monkeypatch) -> TestClient:
    monkeypatch.setattr(limiter, "enabled", False)
    app = FastAPI()
    app.state.limiter = limiter
    app.state.coordinator = coordinator
    app.include_router(stream_endpoints.router, prefix="/api")
    return TestClient(app)


def _auth(user_id: str, role: str = "viewer") -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


class TestStreamEndpoints:

    def test_list_active_streams(self, client, directory) -> None:
        directory.add("s1", owner_id="u1", status="active")
        directory.add("s2", owner_id="u2")

        resp = client.get("/api/streams")

        assert resp.status_code == 200
        body = resp.json()
        assert body["code"] == 200
        assert body["data"]["count"] == 1
        assert body["data"]["streams"][0]["uid"] == "s1"
        assert body["data"]["streams"][0]["viewersCount"] == 0

    def test_get_stream(self, client, directory) -> None:
        directory.add("s1", owner_id="u1")

        resp = client.get("/api/streams/s1")

        assert resp.status_code == 200
        assert resp.json()["data"]["owner_id"] == "u1"

    def test_get_stream_not_found(self, client) -> None:
        resp = client.get("/api/streams/missing")

        assert resp.status_code == 404
        assert resp.json() == {"code": 404, "data": None, "msg": "stream not found"}

    def test_my_streams_requires_auth(self, client) -> None:
        assert client.get("/api/streams/mine").status_code == 401

    def test_my_streams(self, client, directory) -> None:
        directory.add("s1", owner_id="u1")
        directory.add("s2", owner_id="u2")

        resp = client.get("/api/streams/mine", headers=_auth("u1"))

        assert resp.status_code == 200
        assert [r["uid"] for r in resp.json()["data"]] == ["s1"]

    def test_create_stream(self, client, directory) -> None:
        resp = client.post(
            "/api/streams",
            json={"title": "Evening show"},
            headers=_auth("u1", "streamer"),
        )

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["title"] == "Evening show"
        assert data["status"] == "offline"
        assert directory.records[data["uid"]].owner_id == "u1"

    def test_create_stream_requires_broadcaster_role(self, client, directory) -> None:
        resp = client.post("/api/streams", json={"title": "x"}, headers=_auth("u1"))

        assert resp.status_code == 403
        assert resp.json()["code"] == 403
        assert directory.records == {}
