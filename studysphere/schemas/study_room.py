"""
studysphere.schemas.study_room
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

自习室相关的 Pydantic 模型：WebSocket 入站事件载荷、出站事件数据与 REST 请求/响应体。

线上协议统一使用 camelCase 字段名（``roomId``、``userId`` …），
Python 侧使用 snake_case，二者通过 ``alias_generator`` 互转。
出站数据请使用 ``model_dump(by_alias=True)`` 序列化。
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

SyncField = Literal["notes", "timer", "targets"]
JoinAction = Literal["approve", "reject"]


class CamelModel(BaseModel):
    """使用 camelCase 别名的基类，同时允许按字段名构造。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── 入站事件载荷 ──────────────────────────────────────────────────────

class CreateRoomRequest(CamelModel):
    """创建房间请求体（``create-new-room`` 事件 / ``POST /api/rooms``）。"""

    name: str = Field(..., min_length=1, max_length=100, description="房间名称")
    topic: str = Field(default="", max_length=200, description="学习主题")


class JoinRoomPayload(CamelModel):
    room_id: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1, max_length=50)


class JoinRequestResponsePayload(CamelModel):
    room_id: str
    user_id: str
    action: JoinAction


class KickParticipantPayload(CamelModel):
    room_id: str
    participant_id: str


class SignalPayload(CamelModel):
    target_user_id: str
    signal: Any = None


class NotesUpdatePayload(CamelModel):
    room_id: str
    notes: str


class TimerUpdatePayload(CamelModel):
    room_id: str
    timer: int = Field(..., ge=0, description="计时器秒数")


class TargetsUpdatePayload(CamelModel):
    room_id: str
    targets: list[str]


class ChatMessagePayload(CamelModel):
    room_id: str
    message: str = Field(..., min_length=1, max_length=500)


class MediaStatePayload(CamelModel):
    is_muted: bool = False
    is_camera_off: bool = False
    is_screen_sharing: bool = False


# ── 出站事件数据 ──────────────────────────────────────────────────────

class RoomSummaryData(CamelModel):
    """房间摘要（房间列表 / ``room-created``）。"""

    id: str = Field(..., description="房间唯一标识")
    name: str = Field(..., description="房间名称")
    topic: str = Field(..., description="学习主题")
    participants: int = Field(default=0, description="当前在线人数")


class ParticipantData(CamelModel):
    user_id: str
    username: str
    is_muted: bool = False
    is_camera_off: bool = False
    is_screen_sharing: bool = False
    is_admin: bool = False


class JoinRequestData(CamelModel):
    user_id: str
    username: str


class RoomStateData(CamelModel):
    """新成员准入后收到的完整房间快照（``room-state``）。"""

    room_id: str
    room_info: RoomSummaryData
    notes: str
    timer: int
    targets: list[str]
    participants: list[ParticipantData]
    join_requests: list[JoinRequestData]
    local_user_id: str
    moderator_id: str | None
    is_admin: bool


class RoomDetailData(RoomSummaryData):
    """房间详情（``GET /api/rooms/{room_id}``）。"""

    notes: str = Field(default="", description="共享笔记")
    timer: int = Field(default=0, description="计时器秒数")
    targets: list[str] = Field(default_factory=list, description="学习目标")
    moderator_id: str | None = Field(default=None, description="当前房主用户 ID")
    active_participants: list[ParticipantData] = Field(
        default_factory=list, description="在线成员列表",
    )
