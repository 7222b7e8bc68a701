"""
studysphere.services.dispatcher
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 入站事件分发器。

入站消息格式 ``{"event": <事件名>, "data": <载荷>}``，载荷先经 Pydantic 校验，
再交给 ``StudySystem`` 处理。每个事件独立处理，任何异常都不会终止连接:

  - ``ValidationError``    → ``error``（载荷格式错误）
  - ``RoomNotFoundError``  → ``room-not-found``
  - 其他 ``StudyRoomError`` → ``error``
  - 未知异常              → 记录堆栈 + ``error``
  - 未知事件名            → 静默忽略
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from studysphere.core.errors import RoomNotFoundError, StudyRoomError
from studysphere.core.logging import get_logger
from studysphere.core.rate_limit import WebSocketRateLimiter
from studysphere.schemas.study_room import (
    ChatMessagePayload,
    CreateRoomRequest,
    JoinRequestResponsePayload,
    JoinRoomPayload,
    KickParticipantPayload,
    MediaStatePayload,
    NotesUpdatePayload,
    SignalPayload,
    TargetsUpdatePayload,
    TimerUpdatePayload,
)
from studysphere.services.connection import Connection
from studysphere.services.study_system import StudySystem

logger = get_logger(__name__)

Handler = Callable[[Connection, Any], Awaitable[None]]


class EventDispatcher:
    """把入站事件路由到 ``StudySystem``。

    Attributes:
        system: 自习室系统。
        chat_limiter: 聊天消息限流器（按连接 ID）。
    """

    def __init__(self, system: StudySystem, chat_limiter: WebSocketRateLimiter | None = None) -> None:
        self.system = system
        self.chat_limiter = chat_limiter or WebSocketRateLimiter()
        self._handlers: dict[str, Handler] = {
            "get-rooms": self._on_get_rooms,
            "create-new-room": self._on_create_room,
            "join-room": self._on_join_room,
            "join-request-response": self._on_join_request_response,
            "signal": self._on_signal,
            "notes-update": self._on_notes_update,
            "timer-update": self._on_timer_update,
            "targets-update": self._on_targets_update,
            "chat-message": self._on_chat_message,
            "media-state-update": self._on_media_state_update,
            "leave-room": self._on_leave_room,
            "kick-participant": self._on_kick_participant,
        }

    @property
    def events(self) -> list[str]:
        return list(self._handlers)

    async def dispatch(self, connection: Connection, message: Any) -> None:
        """处理一条入站消息。"""
        if not isinstance(message, dict) or not isinstance(message.get("event"), str):
            await connection.send("error", "malformed message")
            return

        event: str = message["event"]
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("忽略未知事件 | event=%s", event)
            return

        try:
            await handler(connection, message.get("data"))
        except ValidationError as e:
            logger.info("事件载荷校验失败 | event=%s | errors=%d", event, e.error_count())
            await connection.send("error", f"invalid payload for {event}")
        except RoomNotFoundError as e:
            await connection.send("room-not-found", e.room_id)
        except StudyRoomError as e:
            logger.warning("事件处理失败 | event=%s | err=%s", event, e.message)
            await connection.send("error", e.message)
        except Exception as e:
            logger.error("事件处理异常 | event=%s | err=%s", event, e, exc_info=True)
            await connection.send("error", "internal server error")

    def forget(self, connection_id: str) -> None:
        """连接断开后清理分发器自身持有的状态。"""
        self.chat_limiter.remove_client(connection_id)

    # ── 事件处理 ──────────────────────────────────────────────────────

    async def _on_get_rooms(self, connection: Connection, data: Any) -> None:
        rooms = await self.system.list_room_summaries()
        await connection.send("rooms-list", [r.model_dump(by_alias=True) for r in rooms])

    async def _on_create_room(self, connection: Connection, data: Any) -> None:
        payload = CreateRoomRequest.model_validate(data or {})
        await self.system.create_room(payload.name, payload.topic)

    async def _on_join_room(self, connection: Connection, data: Any) -> None:
        payload = JoinRoomPayload.model_validate(data or {})
        await self.system.join_room(connection, payload.room_id, payload.username)

    async def _on_join_request_response(self, connection: Connection, data: Any) -> None:
        payload = JoinRequestResponsePayload.model_validate(data or {})
        await self.system.respond_to_join(connection, payload.room_id, payload.user_id, payload.action)

    async def _on_signal(self, connection: Connection, data: Any) -> None:
        payload = SignalPayload.model_validate(data or {})
        await self.system.relay_signal(connection, payload.target_user_id, payload.signal)

    async def _on_notes_update(self, connection: Connection, data: Any) -> None:
        payload = NotesUpdatePayload.model_validate(data or {})
        await self.system.apply_update(connection, payload.room_id, "notes", payload.notes)

    async def _on_timer_update(self, connection: Connection, data: Any) -> None:
        payload = TimerUpdatePayload.model_validate(data or {})
        await self.system.apply_update(connection, payload.room_id, "timer", payload.timer)

    async def _on_targets_update(self, connection: Connection, data: Any) -> None:
        payload = TargetsUpdatePayload.model_validate(data or {})
        await self.system.apply_update(connection, payload.room_id, "targets", payload.targets)

    async def _on_chat_message(self, connection: Connection, data: Any) -> None:
        payload = ChatMessagePayload.model_validate(data or {})
        if not self.chat_limiter.is_allowed(connection.connection_id):
            await connection.send("error", "you are sending messages too fast")
            return
        await self.system.send_chat_message(connection, payload.room_id, payload.message)

    async def _on_media_state_update(self, connection: Connection, data: Any) -> None:
        payload = MediaStatePayload.model_validate(data or {})
        await self.system.update_media_state(connection, payload)

    async def _on_leave_room(self, connection: Connection, data: Any) -> None:
        await self.system.leave_room(connection)

    async def _on_kick_participant(self, connection: Connection, data: Any) -> None:
        payload = KickParticipantPayload.model_validate(data or {})
        await self.system.kick_participant(connection, payload.room_id, payload.participant_id)
