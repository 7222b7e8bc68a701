"""
studysphere.services.study_system
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

自习室业务服务：在 FastAPI lifespan 中创建、启动并挂载到 ``app.state``。

持有连接注册表、房间目录以及审批 / 信令 / 同步等组件，是 WebSocket 事件
与 REST 接口共同的入口。不使用模块级全局状态，关闭时整体丢弃。
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone

from studysphere.core.errors import RoomNotFoundError
from studysphere.core.logging import get_logger
from studysphere.db.room_repository import RoomDocument, RoomRepository
from studysphere.schemas.study_room import (
    JoinAction,
    MediaStatePayload,
    RoomDetailData,
    RoomSummaryData,
    SyncField,
)
from studysphere.services.admission import AdmissionController
from studysphere.services.connection import Connection, ConnectionRegistry, DeliveryResult, JsonSocket
from studysphere.services.presence import PresenceNotifier
from studysphere.services.room_directory import RoomDirectory, room_summary
from studysphere.services.signaling import SignalingRelay
from studysphere.services.sync import BroadcastSynchronizer, SyncResult

logger = get_logger(__name__)

# rooms 集合为空时写入的默认房间
DEFAULT_ROOMS: tuple[dict, ...] = (
    {
        "id": "room-1",
        "name": "Math Study Group",
        "topic": "Algebra",
        "notes": "Welcome to Math Study Group notes!",
        "targets": ["Review Algebra", "Solve practice problems"],
    },
    {
        "id": "room-2",
        "name": "Science Lab",
        "topic": "Physics",
        "notes": "Science Lab notes here.",
        "targets": ["Experiment setup", "Data analysis"],
    },
    {
        "id": "room-3",
        "name": "History Buffs",
        "topic": "World History",
        "notes": "History Buffs notes.",
        "targets": ["Read Chapter 5", "Discuss historical events"],
    },
)


def new_room_document(
    name: str,
    topic: str,
    room_id: str | None = None,
    notes: str = "",
    targets: list[str] | None = None,
) -> RoomDocument:
    """构造一个计时器归零的新房间文档。"""
    now = datetime.now(timezone.utc)
    return RoomDocument(
        id=room_id or str(uuid.uuid4()),
        name=name,
        topic=topic,
        notes=notes,
        timer=0,
        targets=list(targets or []),
        created_at=now,
        updated_at=now,
    )


class StudySystem:
    """自习室系统（每个进程一个，由 lifespan 持有）。

    - ``startup()`` / ``shutdown()``      → 生命周期（写入默认房间 + 恢复房间会话）
    - ``connect()`` / ``disconnect()``    → 连接登记与清理
    - ``create_room()`` / ``join_room()`` → 房间管理与入房审批
    - ``relay_signal()`` / ``apply_update()`` / ``send_chat_message()`` → 房间内协作

    Attributes:
        repo: 房间持久化仓库。
        registry: 连接注册表。
        directory: 房间目录。
        notifier: 在线状态通知器。
        admission: 入房审批控制器。
        relay: 信令转发器。
        synchronizer: 共享文档同步器。
    """

    def __init__(self, repo: RoomRepository) -> None:
        self.repo = repo
        self.registry = ConnectionRegistry()
        self.directory = RoomDirectory(repo)
        self.notifier = PresenceNotifier(self.registry, self.directory)
        self.admission = AdmissionController(repo, self.registry, self.directory, self.notifier)
        self.relay = SignalingRelay(self.registry)
        self.synchronizer = BroadcastSynchronizer(repo, self.directory, self.notifier)

    # ── 生命周期 ──────────────────────────────────────────────────────

    async def startup(self, seed_default_rooms: bool = True) -> None:
        """写入默认房间（仅当集合为空）并为已有房间建立会话。"""
        if seed_default_rooms:
            await self.seed_default_rooms()
        await self.directory.hydrate()

    async def shutdown(self) -> None:
        for connection in self.registry.all():
            self.registry.remove(connection.connection_id)
        self.directory.clear()
        logger.info("自习室系统已关闭")

    async def seed_default_rooms(self) -> int:
        """rooms 集合为空时写入默认房间，返回写入数量。"""
        count = await self.repo.count_rooms()
        if count:
            logger.info("已有 %d 个房间，跳过默认房间写入", count)
            return 0
        docs = [
            new_room_document(
                room["name"], room["topic"],
                room_id=room["id"], notes=room["notes"], targets=room["targets"],
            )
            for room in DEFAULT_ROOMS
        ]
        await self.repo.insert_rooms(docs)
        logger.info("数据库中没有房间，已写入 %d 个默认房间", len(docs))
        return len(docs)

    # ── 连接 ──────────────────────────────────────────────────────────

    async def connect(self, websocket: JsonSocket, connection_id: str | None = None) -> Connection:
        return await self.registry.register(websocket, connection_id=connection_id)

    async def disconnect(self, connection_id: str) -> None:
        """连接断开：离开房间，并撤回其所有待审批申请。"""
        connection = self.registry.remove(connection_id)
        if connection is None:
            return
        await self.admission.leave_room(connection)
        await self.admission.withdraw_requests(connection.user_id)

    # ── 房间 ──────────────────────────────────────────────────────────

    async def list_room_summaries(self) -> list[RoomSummaryData]:
        return await self.directory.list_room_summaries()

    async def get_room_detail(self, room_id: str) -> RoomDetailData:
        """房间详情 + 在线成员。

        Raises:
            RoomNotFoundError: 房间不存在。
        """
        room = await self.repo.find_room(room_id)
        if room is None:
            raise RoomNotFoundError(room_id)
        session = self.directory.get(room_id)
        return RoomDetailData(
            **room_summary(room, self.directory.participant_count(room_id)).model_dump(),
            notes=room.get("notes", ""),
            timer=room.get("timer", 0),
            targets=list(room.get("targets", [])),
            moderator_id=session.moderator_user_id if session is not None else None,
            active_participants=session.participant_list() if session is not None else [],
        )

    async def create_room(self, name: str, topic: str = "") -> RoomSummaryData:
        """持久化新房间、建立会话，并向所有连接广播 ``room-created``。

        持久化失败时 ``PersistenceError`` 直接上抛，不做任何广播。
        """
        doc = new_room_document(name, topic)
        await self.repo.insert_room(doc)
        self.directory.get_or_create(doc["id"])

        summary = room_summary(doc, 0)
        await self.notifier.broadcast_all("room-created", summary.model_dump(by_alias=True))
        logger.info("房间已创建 | room=%s | name=%s", doc["id"], name)
        return summary

    async def join_room(self, connection: Connection, room_id: str, username: str) -> bool:
        return await self.admission.request_join(connection, username, room_id)

    async def respond_to_join(
        self, connection: Connection, room_id: str, requester_id: str, action: JoinAction,
    ) -> bool:
        return await self.admission.respond_to_join(connection, room_id, requester_id, action)

    async def leave_room(self, connection: Connection) -> bool:
        """主动离开房间，同时取消排队中的申请。"""
        left = await self.admission.leave_room(connection)
        await self.admission.withdraw_requests(connection.user_id)
        return left

    async def kick_participant(self, connection: Connection, room_id: str, participant_id: str) -> bool:
        return await self.admission.kick(connection, room_id, participant_id)

    # ── 房间内协作 ────────────────────────────────────────────────────

    async def relay_signal(self, connection: Connection, target_user_id: str, payload: object) -> DeliveryResult:
        return await self.relay.relay(connection.user_id, target_user_id, payload)

    async def apply_update(
        self, connection: Connection, room_id: str, field_name: SyncField, value: object,
    ) -> SyncResult:
        return await self.synchronizer.apply_update(room_id, field_name, value, connection.user_id)

    async def send_chat_message(self, connection: Connection, room_id: str, message: str) -> bool:
        """向房间内全部成员（含发送者）推送聊天消息，不落库。

        Returns:
            发送者不是该房间成员时返回 ``False``。
        """
        session = self.directory.get(room_id)
        if session is None or connection.user_id not in session.participants:
            logger.debug("非房间成员的聊天消息已忽略 | room=%s | user=%s", room_id, connection.user_id)
            return False
        await self.notifier.notify_room(
            room_id,
            "chat-message",
            {
                "userId": connection.user_id,
                "username": connection.display_name,
                "message": message,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
        return True

    async def update_media_state(self, connection: Connection, state: MediaStatePayload) -> bool:
        """更新发送者的麦克风 / 摄像头 / 屏幕共享状态并通知其他成员。"""
        if connection.room_id is None:
            return False
        session = self.directory.get(connection.room_id)
        participant = session.participants.get(connection.user_id) if session is not None else None
        if participant is None:
            return False

        participant.is_muted = state.is_muted
        participant.is_camera_off = state.is_camera_off
        participant.is_screen_sharing = state.is_screen_sharing
        await self.notifier.notify_room(
            connection.room_id,
            "media-state-changed",
            {"userId": connection.user_id, **state.model_dump(by_alias=True)},
            exclude_user_id=connection.user_id,
        )
        return True
