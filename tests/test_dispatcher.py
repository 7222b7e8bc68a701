"""
tests.test_dispatcher
~~~~~~~~~~~~~~~~~~~~~

``EventDispatcher`` 测试：事件路由、载荷校验以及错误到出站事件的映射。
"""
from __future__ import annotations

from unittest.mock import ANY, AsyncMock

import pytest

from studysphere.core.rate_limit import WebSocketRateLimiter
from studysphere.services.dispatcher import EventDispatcher


@pytest.fixture()
def dispatcher(system) -> EventDispatcher:
    # 间隔足够长，保证同一测试内第二条聊天消息一定被限流
    return EventDispatcher(system, chat_limiter=WebSocketRateLimiter(interval_seconds=60))


async def _pair_in_room(system, dispatcher, connect):
    a, a_ws = await connect()
    b, b_ws = await connect()
    await dispatcher.dispatch(a, {"event": "join-room", "data": {"roomId": "room-1", "username": "Alice"}})
    await dispatcher.dispatch(b, {"event": "join-room", "data": {"roomId": "room-1", "username": "Bob"}})
    await dispatcher.dispatch(
        a,
        {"event": "join-request-response", "data": {"roomId": "room-1", "userId": b.user_id, "action": "approve"}},
    )
    a_ws.clear()
    b_ws.clear()
    return (a, a_ws), (b, b_ws)


class TestRoomEvents:

    @pytest.mark.asyncio
    async def test_get_rooms_lists_live_counts(self, dispatcher, join, connect) -> None:
        await join("Alice")
        conn, ws = await connect()

        await dispatcher.dispatch(conn, {"event": "get-rooms"})

        assert ws.events("rooms-list") == [[
            {"id": "room-1", "name": "Math Study Group", "topic": "Algebra", "participants": 1},
            {"id": "room-2", "name": "Science Lab", "topic": "Physics", "participants": 0},
        ]]

    @pytest.mark.asyncio
    async def test_create_room_broadcasts_to_everyone(self, system, repo, dispatcher, connect) -> None:
        a, a_ws = await connect()
        _, b_ws = await connect()

        await dispatcher.dispatch(a, {"event": "create-new-room", "data": {"name": "Optics", "topic": "Physics"}})

        created = a_ws.events("room-created")
        assert created == [{"id": ANY, "name": "Optics", "topic": "Physics", "participants": 0}]
        assert b_ws.events("room-created") == created
        room_id = created[0]["id"]
        assert repo.rooms[room_id]["timer"] == 0
        assert repo.rooms[room_id]["notes"] == ""
        assert repo.rooms[room_id]["targets"] == []
        assert system.directory.get(room_id) is not None

    @pytest.mark.asyncio
    async def test_create_room_persistence_failure(self, repo, dispatcher, connect) -> None:
        a, a_ws = await connect()
        _, b_ws = await connect()
        repo.fail_writes = True

        await dispatcher.dispatch(a, {"event": "create-new-room", "data": {"name": "Optics"}})

        assert a_ws.events("error") == ["persistence failure during insert_room"]
        assert a_ws.events("room-created") == []
        assert b_ws.events("room-created") == []
        assert len(repo.rooms) == 2

    @pytest.mark.asyncio
    async def test_join_unknown_room(self, system, dispatcher, connect) -> None:
        conn, ws = await connect()

        await dispatcher.dispatch(conn, {"event": "join-room", "data": {"roomId": "room-404", "username": "Alice"}})

        assert ws.events("room-not-found") == ["room-404"]
        assert system.directory.get("room-404") is None

    @pytest.mark.asyncio
    async def test_join_read_failure_reports_error(self, repo, dispatcher, connect) -> None:
        conn, ws = await connect()
        repo.fail_reads = True

        await dispatcher.dispatch(conn, {"event": "join-room", "data": {"roomId": "room-1", "username": "Alice"}})

        assert ws.events("error") == ["persistence failure during find_room"]
        assert ws.events("room-state") == []

    @pytest.mark.asyncio
    async def test_leave_room(self, system, dispatcher, connect) -> None:
        (a, a_ws), (b, b_ws) = await _pair_in_room(system, dispatcher, connect)

        await dispatcher.dispatch(b, {"event": "leave-room"})

        assert a_ws.events("user-disconnected") == [b.user_id]
        assert a_ws.events("room-updated-participant-count") == [{"roomId": "room-1", "count": 1}]
        assert b.room_id is None
        assert list(system.directory.get("room-1").participants) == [a.user_id]

    @pytest.mark.asyncio
    async def test_kick_participant(self, system, dispatcher, connect) -> None:
        (a, a_ws), (b, b_ws) = await _pair_in_room(system, dispatcher, connect)

        await dispatcher.dispatch(
            a, {"event": "kick-participant", "data": {"roomId": "room-1", "participantId": b.user_id}},
        )

        assert b_ws.events("kicked-from-room") == ["room-1"]
        assert a_ws.events("user-disconnected") == [b.user_id]
        assert list(system.directory.get("room-1").participants) == [a.user_id]

    @pytest.mark.asyncio
    async def test_kick_participant_requires_target(self, dispatcher, join) -> None:
        a, a_ws = await join("Alice")

        await dispatcher.dispatch(a, {"event": "kick-participant", "data": {"roomId": "room-1"}})

        assert a_ws.events("error") == ["invalid payload for kick-participant"]


class TestCollaborationEvents:

    @pytest.mark.asyncio
    async def test_signal_is_relayed(self, system, dispatcher, connect) -> None:
        (a, _), (b, b_ws) = await _pair_in_room(system, dispatcher, connect)
        candidate = {"candidate": "candidate:1 1 udp 2122260223 10.0.0.2 54321 typ host"}

        await dispatcher.dispatch(a, {"event": "signal", "data": {"targetUserId": b.user_id, "signal": candidate}})

        assert b_ws.events("signal") == [{"userId": a.user_id, "signal": candidate}]

    @pytest.mark.asyncio
    async def test_notes_update(self, system, repo, dispatcher, connect) -> None:
        (a, _), (_, b_ws) = await _pair_in_room(system, dispatcher, connect)

        await dispatcher.dispatch(a, {"event": "notes-update", "data": {"roomId": "room-1", "notes": "Ch.3"}})

        assert b_ws.events("notes-update") == ["Ch.3"]
        assert repo.rooms["room-1"]["notes"] == "Ch.3"

    @pytest.mark.asyncio
    async def test_negative_timer_is_rejected(self, system, repo, dispatcher, connect) -> None:
        (a, a_ws), (_, b_ws) = await _pair_in_room(system, dispatcher, connect)

        await dispatcher.dispatch(a, {"event": "timer-update", "data": {"roomId": "room-1", "timer": -5}})

        assert a_ws.events("error") == ["invalid payload for timer-update"]
        assert b_ws.events("timer-update") == []
        assert repo.updates == []

    @pytest.mark.asyncio
    async def test_chat_reaches_sender_and_is_rate_limited(self, system, dispatcher, connect) -> None:
        (a, a_ws), (_, b_ws) = await _pair_in_room(system, dispatcher, connect)
        message = {"event": "chat-message", "data": {"roomId": "room-1", "message": "hi"}}

        await dispatcher.dispatch(a, message)
        await dispatcher.dispatch(a, message)

        expected = {"userId": a.user_id, "username": "Alice", "message": "hi", "timestamp": ANY}
        assert a_ws.events("chat-message") == [expected]
        assert b_ws.events("chat-message") == [expected]
        assert a_ws.events("error") == ["you are sending messages too fast"]

    @pytest.mark.asyncio
    async def test_chat_from_outsider_is_ignored(self, system, dispatcher, join, connect) -> None:
        _, member_ws = await join("Alice")
        outsider, _ = await connect()

        await dispatcher.dispatch(outsider, {"event": "chat-message", "data": {"roomId": "room-1", "message": "spam"}})

        assert member_ws.events("chat-message") == []

    @pytest.mark.asyncio
    async def test_media_state_update(self, system, dispatcher, connect) -> None:
        (a, a_ws), (_, b_ws) = await _pair_in_room(system, dispatcher, connect)

        await dispatcher.dispatch(a, {"event": "media-state-update", "data": {"isMuted": True}})

        assert b_ws.events("media-state-changed") == [
            {"userId": a.user_id, "isMuted": True, "isCameraOff": False, "isScreenSharing": False},
        ]
        assert a_ws.events("media-state-changed") == []
        assert system.directory.get("room-1").participants[a.user_id].is_muted is True


class TestErrorMapping:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", ["hello", ["join-room"], {"data": {}}, {"event": 42}])
    async def test_malformed_message(self, dispatcher, connect, message) -> None:
        conn, ws = await connect()

        await dispatcher.dispatch(conn, message)

        assert ws.events("error") == ["malformed message"]

    @pytest.mark.asyncio
    async def test_invalid_payload(self, dispatcher, connect) -> None:
        conn, ws = await connect()

        await dispatcher.dispatch(conn, {"event": "join-room", "data": {"roomId": "room-1"}})

        assert ws.events("error") == ["invalid payload for join-room"]

    @pytest.mark.asyncio
    async def test_unknown_event_is_silent(self, dispatcher, connect) -> None:
        conn, ws = await connect()

        await dispatcher.dispatch(conn, {"event": "dance", "data": {}})

        assert ws.event_names() == ["user-id-assigned"]

    @pytest.mark.asyncio
    async def test_unexpected_exception_keeps_connection_usable(self, system, dispatcher, connect) -> None:
        conn, ws = await connect()
        original = system.list_room_summaries
        system.list_room_summaries = AsyncMock(side_effect=RuntimeError("boom"))

        await dispatcher.dispatch(conn, {"event": "get-rooms"})
        system.list_room_summaries = original
        await dispatcher.dispatch(conn, {"event": "get-rooms"})

        assert ws.events("error") == ["internal server error"]
        assert len(ws.events("rooms-list")) == 1

    def test_forget_clears_rate_limit_state(self, dispatcher) -> None:
        assert dispatcher.chat_limiter.is_allowed("ws-aaaa0001") is True
        assert dispatcher.chat_limiter.is_allowed("ws-aaaa0001") is False

        dispatcher.forget("ws-aaaa0001")

        assert dispatcher.chat_limiter.is_allowed("ws-aaaa0001") is True

    def test_registered_events(self, dispatcher) -> None:
        assert set(dispatcher.events) == {
            "get-rooms", "create-new-room", "join-room", "join-request-response", "signal",
            "notes-update", "timer-update", "targets-update", "chat-message",
            "media-state-update", "leave-room", "kick-participant",
        }
