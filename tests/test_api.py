"""
tests.test_api
~~~~~~~~~~~~~~

REST 与 WebSocket 端点测试。

不触发 lifespan（不连接 MongoDB），而是直接把基于内存仓库的
``StudySystem`` 挂到 ``app.state`` 上。
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from studysphere.core.rate_limit import limiter
from studysphere.main import app
from studysphere.services.dispatcher import EventDispatcher


@pytest.fixture()
def client(system):
    app.state.study_system = system
    app.state.event_dispatcher = EventDispatcher(system)
    limiter.enabled = False
    try:
        yield TestClient(app)
    finally:
        limiter.enabled = True
        del app.state.study_system
        del app.state.event_dispatcher


class TestRoomsApi:

    def test_list_rooms(self, client) -> None:
        resp = client.get("/api/rooms")

        assert resp.status_code == 200
        body = resp.json()
        assert body["code"] == 200
        assert [r["id"] for r in body["data"]] == ["room-1", "room-2"]
        assert body["data"][0] == {
            "id": "room-1", "name": "Math Study Group", "topic": "Algebra", "participants": 0,
        }

    def test_room_detail(self, client) -> None:
        resp = client.get("/api/rooms/room-1")

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["notes"] == "Welcome!"
        assert data["targets"] == ["Review Algebra"]
        assert data["timer"] == 0
        assert data["moderatorId"] is None
        assert data["activeParticipants"] == []

    def test_room_detail_not_found(self, client) -> None:
        resp = client.get("/api/rooms/ghost")

        assert resp.status_code == 404
        assert resp.json() == {"code": 404, "data": {"room_id": "ghost"}, "msg": "Room not found"}

    def test_create_room(self, client, repo) -> None:
        resp = client.post("/api/rooms", json={"name": "Optics", "topic": "Physics"})

        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["name"] == "Optics"
        assert data["participants"] == 0
        assert repo.rooms[data["id"]]["topic"] == "Physics"

    def test_create_room_rejects_blank_name(self, client) -> None:
        resp = client.post("/api/rooms", json={"name": ""})

        assert resp.status_code == 422

    def test_create_room_persistence_failure(self, client, repo) -> None:
        repo.fail_writes = True

        resp = client.post("/api/rooms", json={"name": "Optics"})

        assert resp.status_code == 500
        assert resp.json()["msg"] == "Failed to create room"

    def test_list_rooms_rate_limited(self, client) -> None:
        limiter.enabled = True
        limiter.reset()

        codes = [client.get("/api/rooms").status_code for _ in range(12)]

        assert 429 in codes

    def test_health(self, client) -> None:
        resp = client.get("/health")

        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
        assert resp.json()["connections"] == 0
        assert resp.json()["rooms"] == 0
        assert resp.json()["mongo"] is False


class TestWebSocketEndpoint:

    def test_join_flow(self, client, system) -> None:
        with client.websocket_connect("/ws") as ws:
            assigned = ws.receive_json()
            assert assigned["event"] == "user-id-assigned"
            user_id = assigned["data"]

            ws.send_json({"event": "join-room", "data": {"roomId": "room-1", "username": "Alice"}})
            state = ws.receive_json()
            count = ws.receive_json()

            assert state["event"] == "room-state"
            assert state["data"]["localUserId"] == user_id
            assert state["data"]["isAdmin"] is True
            assert state["data"]["moderatorId"] == user_id
            assert state["data"]["notes"] == "Welcome!"
            assert count == {
                "event": "room-updated-participant-count",
                "data": {"roomId": "room-1", "count": 1},
            }

    def test_malformed_json_keeps_connection_open(self, client) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()

            ws.send_text("{not json")
            assert ws.receive_json() == {"event": "error", "data": "malformed message"}

            ws.send_json({"event": "get-rooms"})
            rooms = ws.receive_json()
            assert rooms["event"] == "rooms-list"
            assert len(rooms["data"]) == 2

    def test_unknown_room(self, client) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()

            ws.send_json({"event": "join-room", "data": {"roomId": "room-404", "username": "Alice"}})

            assert ws.receive_json() == {"event": "room-not-found", "data": "room-404"}
