"""
studysphere.services.admission
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

入房审批控制器：决定新用户是直接进入房间，还是进入待审批队列等待房主处理。

规则:
  - 房间为空：申请者直接准入，并成为房主。
  - 房间非空：登记 ``JoinRequest``，只通知当前房主（``new-join-request``），
    申请者收到 ``join-request-pending`` 后等待。
  - 房主批准 → ``join-approved`` + 准入；拒绝或申请者已离线 → ``join-rejected``。
  - 房主可以把其他成员移出房间（``kicked-from-room``）。
  - 最后一名成员离开后，排队中的申请保留且不会收到任何通知，
    直到有人再次进入房间（申请没有超时）。

同一房间内的多步操作（检查成员 → 读库 → 写入成员 / 移除成员）在
``RoomSession.lock`` 下执行，避免两个并发申请都被当成“空房间”直接准入。
任何时刻最多持有一把房间锁。
"""
from __future__ import annotations

import asyncio

from studysphere.core.errors import RoomNotFoundError
from studysphere.core.logging import get_logger
from studysphere.db.room_repository import RoomRepository
from studysphere.schemas.study_room import JoinAction, RoomStateData
from studysphere.services.connection import Connection, ConnectionRegistry, DeliveryResult
from studysphere.services.presence import PresenceNotifier
from studysphere.services.room import JoinRequest, Participant, RoomSession
from studysphere.services.room_directory import RoomDirectory, room_summary

logger = get_logger(__name__)


class AdmissionController:
    """入房审批流程。

    Attributes:
        repo: 房间持久化仓库。
        registry: 连接注册表。
        directory: 房间目录。
        notifier: 在线状态通知器。
    """

    def __init__(
        self,
        repo: RoomRepository,
        registry: ConnectionRegistry,
        directory: RoomDirectory,
        notifier: PresenceNotifier,
    ) -> None:
        self.repo = repo
        self.registry = registry
        self.directory = directory
        self.notifier = notifier

    # ── 入房申请 ──────────────────────────────────────────────────────

    async def request_join(self, connection: Connection, display_name: str, room_id: str) -> bool:
        """处理 ``join-room``。

        Returns:
            是否已直接准入；``False`` 表示进入待审批状态或无需处理。

        Raises:
            RoomNotFoundError: 房间不存在于持久化存储中。
        """
        room = await self.repo.find_room(room_id)
        if room is None:
            raise RoomNotFoundError(room_id)

        session = self.directory.get_or_create(room_id)
        if connection.room_id == room_id and connection.user_id in session.participants:
            logger.debug("用户已在房间中 | user=%s | room=%s", connection.user_id, room_id)
            return False

        # 一个用户同一时间只属于一个房间，也只在一个房间排队
        if connection.room_id is not None:
            await self.leave_room(connection)
        if connection.pending_room_id not in (None, room_id):
            await self.withdraw_requests(connection.user_id, exclude_room_id=room_id)

        async with session.lock:
            if connection.closed:
                return False
            if session.is_empty:
                return await self._admit(connection, display_name, session)

            added = session.add_request(JoinRequest(user_id=connection.user_id, display_name=display_name))
            connection.pending_room_id = room_id
            if added:
                logger.info(
                    "入房申请已登记 | room=%s | user=%s | 待审批: %d",
                    room_id, connection.user_id, len(session.join_requests),
                )
                await self._notify_moderator_of_request(session, connection.user_id, display_name)
            await connection.send("join-request-pending", room_id)
            return False

    async def _notify_moderator_of_request(
        self, session: RoomSession, user_id: str, display_name: str,
    ) -> None:
        moderator_id = session.moderator_user_id
        if moderator_id is None:
            return
        result = await self.notifier.send_to_user(
            moderator_id,
            "new-join-request",
            {"userId": user_id, "username": display_name},
        )
        if result is DeliveryResult.PEER_UNREACHABLE:
            logger.warning("房主不可达，申请未送达 | room=%s | moderator=%s", session.room_id, moderator_id)

    # ── 审批 ──────────────────────────────────────────────────────────

    async def respond_to_join(
        self,
        responder: Connection,
        room_id: str,
        requester_id: str,
        action: JoinAction,
    ) -> bool:
        """处理 ``join-request-response``。

        只有当前房主可以审批；其他人或已失效的申请都是静默的空操作。

        Returns:
            申请者是否被准入。
        """
        session = self.directory.get(room_id)
        if session is None or session.moderator_user_id != responder.user_id:
            logger.debug(
                "忽略非房主的审批 | room=%s | responder=%s", room_id, responder.user_id,
            )
            return False

        admitted = False
        async with session.lock:
            request = session.pop_request(requester_id)
            if request is not None:
                requester = self.registry.lookup_by_user(requester_id)
                if requester is not None and requester.pending_room_id == room_id:
                    requester.pending_room_id = None

                if action == "approve" and requester is not None:
                    await requester.send("join-approved", room_id)
                    admitted = await self._admit(requester, request.display_name, session)
                else:
                    await self.notifier.send_to_user(requester_id, "join-rejected", room_id)
                logger.info(
                    "入房申请已处理 | room=%s | user=%s | action=%s | admitted=%s",
                    room_id, requester_id, action, admitted,
                )
            else:
                logger.debug("审批的申请已不存在 | room=%s | user=%s", room_id, requester_id)

            await responder.send(
                "update-join-requests",
                [r.model_dump(by_alias=True) for r in session.request_list()],
            )
        return admitted

    # ── 准入 ──────────────────────────────────────────────────────────

    async def _admit(self, connection: Connection, display_name: str, session: RoomSession) -> bool:
        """把连接准入房间。调用方必须已持有 ``session.lock``。"""
        room = await self.repo.find_room(session.room_id)
        if room is None:
            raise RoomNotFoundError(session.room_id)
        if connection.closed:
            # 读库期间申请者已断开
            return False

        if connection.room_id not in (None, session.room_id):
            previous = self.directory.get(connection.room_id)
            if previous is not None:
                await self._remove_participant(connection, previous)

        # 互相发现：老成员收到新成员，新成员逐个收到老成员，建立点对点连接时需要
        existing = session.participant_list()
        arrival = {"userId": connection.user_id, "username": display_name}
        await self.notifier.notify_room(session.room_id, "user-connected", arrival)
        await asyncio.gather(
            *(connection.send("user-connected", p.model_dump(by_alias=True)) for p in existing),
        )

        session.add_participant(
            Participant(
                user_id=connection.user_id,
                display_name=display_name,
                connection_id=connection.connection_id,
            ),
        )
        # 空房间直接准入时，可能还留着自己之前排队的申请
        session.pop_request(connection.user_id)
        self.registry.attach(connection.connection_id, session.room_id, display_name)
        connection.pending_room_id = None

        is_admin = session.moderator_user_id == connection.user_id
        state = RoomStateData(
            room_id=session.room_id,
            room_info=room_summary(room, session.participant_count),
            notes=room.get("notes", ""),
            timer=room.get("timer", 0),
            targets=list(room.get("targets", [])),
            participants=session.participant_list(),
            join_requests=session.request_list(),
            local_user_id=connection.user_id,
            moderator_id=session.moderator_user_id,
            is_admin=is_admin,
        )
        await connection.send("room-state", state.model_dump(by_alias=True))
        await self.notifier.publish_participant_count(session.room_id)
        logger.info(
            "用户已进入房间 | room=%s | user=%s | 在线: %d | 房主: %s",
            session.room_id, connection.user_id, session.participant_count, session.moderator_user_id,
        )
        return True

    # ── 离开 ──────────────────────────────────────────────────────────

    async def leave_room(self, connection: Connection) -> bool:
        """离开当前房间（``leave-room`` 或断开连接）。

        Returns:
            是否确实移除了一个成员。
        """
        if connection.room_id is None:
            return False
        session = self.directory.get(connection.room_id)
        if session is None:
            connection.room_id = None
            return False
        async with session.lock:
            return await self._remove_participant(connection, session)

    async def kick(self, moderator: Connection, room_id: str, participant_id: str) -> bool:
        """处理 ``kick-participant``：房主把其他成员移出房间。

        非房主、踢自己或目标不在房间内都是静默的空操作。

        Returns:
            是否确实移除了该成员。
        """
        session = self.directory.get(room_id)
        if session is None or participant_id == moderator.user_id:
            return False

        async with session.lock:
            # 等锁期间房主可能已经移交
            if session.moderator_user_id != moderator.user_id:
                logger.debug("忽略非房主的踢人请求 | room=%s | user=%s", room_id, moderator.user_id)
                return False
            target = self.registry.lookup_by_user(participant_id)
            if target is None or participant_id not in session.participants:
                # 不在房间内，或连接已注销（断开流程会负责清理）
                return False

            await target.send("kicked-from-room", room_id)
            removed = await self._remove_participant(target, session)
        logger.info("成员已被移出房间 | room=%s | user=%s | by=%s", room_id, participant_id, moderator.user_id)
        return removed

    async def _remove_participant(self, connection: Connection, session: RoomSession) -> bool:
        previous_moderator = session.moderator_user_id
        participant = session.remove_participant(connection.user_id)
        self.registry.attach(connection.connection_id, None, None)
        connection.room_id = None
        if participant is None:
            return False

        await self.notifier.notify_room(session.room_id, "user-disconnected", connection.user_id)
        await self.notifier.publish_participant_count(session.room_id)
        logger.info(
            "用户已离开房间 | room=%s | user=%s | 在线: %d",
            session.room_id, connection.user_id, session.participant_count,
        )

        new_moderator = session.moderator_user_id
        if new_moderator is not None and new_moderator != previous_moderator:
            logger.info("房主已移交 | room=%s | moderator=%s", session.room_id, new_moderator)
            if session.join_requests:
                # 新房主接手尚未处理的申请
                await self.notifier.send_to_user(
                    new_moderator,
                    "update-join-requests",
                    [r.model_dump(by_alias=True) for r in session.request_list()],
                )
        return True

    async def withdraw_requests(self, user_id: str, exclude_room_id: str | None = None) -> int:
        """撤回某用户在各房间的待审批申请，并把最新列表推给对应房主。

        Returns:
            撤回的申请数。
        """
        withdrawn = 0
        for session in self.directory.sessions():
            if session.room_id == exclude_room_id:
                continue
            if session.pop_request(user_id) is None:
                continue
            withdrawn += 1
            if session.moderator_user_id is not None:
                await self.notifier.send_to_user(
                    session.moderator_user_id,
                    "update-join-requests",
                    [r.model_dump(by_alias=True) for r in session.request_list()],
                )
        connection = self.registry.lookup_by_user(user_id)
        if connection is not None and connection.pending_room_id != exclude_room_id:
            connection.pending_room_id = None
        if withdrawn:
            logger.debug("已撤回待审批申请 | user=%s | 数量: %d", user_id, withdrawn)
        return withdrawn
