"""
studysphere.services.room_directory
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间目录：房间 ID → ``RoomSession`` 的进程内映射。

启动时根据 MongoDB 中已有的房间预先建立会话（hydrate），之后对于
新出现的房间（例如重启后其他实例写入的房间）在首次引用时懒创建。
同一房间 ID 在任意时刻最多只有一个 ``RoomSession``。
"""
from __future__ import annotations

from studysphere.core.logging import get_logger
from studysphere.db.room_repository import RoomDocument, RoomRepository
from studysphere.schemas.study_room import RoomSummaryData
from studysphere.services.room import RoomSession

logger = get_logger(__name__)


def room_summary(room: RoomDocument, participants: int = 0) -> RoomSummaryData:
    """把房间文档转换为带在线人数的摘要。"""
    return RoomSummaryData(
        id=room["id"],
        name=room.get("name", ""),
        topic=room.get("topic", ""),
        participants=participants,
    )


class RoomDirectory:
    """房间目录，独占持有全部 ``RoomSession``。

    Attributes:
        repo: 房间持久化仓库。
    """

    def __init__(self, repo: RoomRepository) -> None:
        self.repo = repo
        self._sessions: dict[str, RoomSession] = {}

    async def hydrate(self) -> int:
        """为持久化存储中的每个房间建立空会话，返回新建的会话数。"""
        rooms = await self.repo.list_rooms()
        created = 0
        for room in rooms:
            if room["id"] not in self._sessions:
                self._sessions[room["id"]] = RoomSession(room["id"])
                created += 1
        logger.info("房间会话已恢复 | 新建 %d 个 | 共 %d 个", created, len(self._sessions))
        return created

    def get(self, room_id: str) -> RoomSession | None:
        return self._sessions.get(room_id)

    def get_or_create(self, room_id: str) -> RoomSession:
        """获取房间会话，不存在则创建。"""
        session = self._sessions.get(room_id)
        if session is None:
            session = RoomSession(room_id)
            self._sessions[room_id] = session
            logger.debug("房间会话已创建 | room=%s", room_id)
        return session

    def participant_count(self, room_id: str) -> int:
        session = self._sessions.get(room_id)
        return session.participant_count if session is not None else 0

    def sessions(self) -> list[RoomSession]:
        return list(self._sessions.values())

    async def list_room_summaries(self) -> list[RoomSummaryData]:
        """列出全部持久化房间及其实时在线人数（无会话的房间记为 0）。"""
        rooms = await self.repo.list_rooms()
        return [room_summary(room, self.participant_count(room["id"])) for room in rooms]

    def clear(self) -> None:
        """丢弃全部会话（仅在关闭时调用）。"""
        self._sessions.clear()
