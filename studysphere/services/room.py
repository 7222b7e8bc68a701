"""
studysphere.services.room
~~~~~~~~~~~~~~~~~~~~~~~~~

自习室内存会话模型：一个房间的在线成员、待审批的入房申请和当前房主。

``RoomSession`` 只保存瞬时状态；笔记 / 计时器 / 学习目标等持久化内容
始终以 MongoDB 中的房间文档为准。
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass

from studysphere.schemas.study_room import JoinRequestData, ParticipantData


@dataclass(slots=True)
class Participant:
    """已准入房间的成员。"""

    user_id: str
    display_name: str
    connection_id: str
    is_muted: bool = False
    is_camera_off: bool = False
    is_screen_sharing: bool = False


@dataclass(slots=True)
class JoinRequest:
    """等待房主审批的入房申请，先后顺序由所在列表的位置决定。"""

    user_id: str
    display_name: str


class RoomSession:
    """一个房间的在线会话。

    成员映射保持插入顺序：房主离开时，房主身份交给剩余成员中最早加入的一位。

    Attributes:
        room_id: 房间唯一标识。
        participants: 用户 ID → ``Participant``，按加入顺序排列。
        join_requests: 待审批的申请，按到达顺序排列。
        moderator_user_id: 当前房主；房间为空时为 ``None``。
        lock: 串行化同一房间内“检查 → 读库 → 写入成员”这类多步操作。
    """

    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        self.participants: dict[str, Participant] = {}
        self.join_requests: list[JoinRequest] = []
        self.moderator_user_id: str | None = None
        self.lock = asyncio.Lock()

    @property
    def participant_count(self) -> int:
        return len(self.participants)

    @property
    def is_empty(self) -> bool:
        return not self.participants

    def add_participant(self, participant: Participant) -> None:
        """加入成员；第一个加入空房间的成员成为房主。"""
        self.participants[participant.user_id] = participant
        if self.moderator_user_id is None:
            self.moderator_user_id = participant.user_id

    def remove_participant(self, user_id: str) -> Participant | None:
        """移除成员，必要时把房主身份移交给下一位最早加入的成员。"""
        participant = self.participants.pop(user_id, None)
        if participant is not None and self.moderator_user_id == user_id:
            self.moderator_user_id = next(iter(self.participants), None)
        return participant

    def has_request(self, user_id: str) -> bool:
        return any(request.user_id == user_id for request in self.join_requests)

    def add_request(self, request: JoinRequest) -> bool:
        """登记入房申请；同一用户已有待审批申请时返回 ``False``。"""
        if self.has_request(request.user_id):
            return False
        self.join_requests.append(request)
        return True

    def pop_request(self, user_id: str) -> JoinRequest | None:
        """取出并删除指定用户的申请，不存在时返回 ``None``。"""
        for index, request in enumerate(self.join_requests):
            if request.user_id == user_id:
                return self.join_requests.pop(index)
        return None

    def participant_list(self) -> list[ParticipantData]:
        return [
            ParticipantData(
                user_id=p.user_id,
                username=p.display_name,
                is_muted=p.is_muted,
                is_camera_off=p.is_camera_off,
                is_screen_sharing=p.is_screen_sharing,
                is_admin=p.user_id == self.moderator_user_id,
            )
            for p in self.participants.values()
        ]

    def request_list(self) -> list[JoinRequestData]:
        return [
            JoinRequestData(user_id=r.user_id, username=r.display_name)
            for r in self.join_requests
        ]

    def __repr__(self) -> str:
        return (
            f"<RoomSession {self.room_id} participants={len(self.participants)} "
            f"requests={len(self.join_requests)} moderator={self.moderator_user_id}>"
        )
