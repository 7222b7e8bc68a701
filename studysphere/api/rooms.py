"""
studysphere.api.rooms
~~~~~~~~~~~~~~~~~~~~~

自习室 REST 接口：房间列表、房间详情、创建房间。

端点:
  - ``GET  /rooms``             → 获取全部房间（含实时在线人数）
  - ``GET  /rooms/{room_id}``   → 获取房间详情（含在线成员）
  - ``POST /rooms``             → 创建房间，并通过 WebSocket 广播 ``room-created``
"""
from fastapi import APIRouter, Depends, Request

from studysphere.api.deps import get_study_system
from studysphere.core.errors import PersistenceError, RoomNotFoundError
from studysphere.core.logging import get_logger
from studysphere.core.rate_limit import limiter
from studysphere.schemas.api_response import ApiResponse
from studysphere.schemas.study_room import CreateRoomRequest, RoomDetailData, RoomSummaryData
from studysphere.services.study_system import StudySystem

logger = get_logger(__name__)

router: APIRouter = APIRouter()


@router.get("/rooms", summary="获取房间列表", response_model=ApiResponse[list[RoomSummaryData]])
@limiter.limit("10/second")
async def list_rooms(request: Request, system: StudySystem = Depends(get_study_system)):
    """返回所有持久化房间及其实时在线人数。"""
    rooms = await system.list_room_summaries()
    return ApiResponse.ok(data=rooms)


@router.get("/rooms/{room_id}", summary="获取房间详情", response_model=ApiResponse[RoomDetailData])
@limiter.limit("5/second")
async def room_detail(request: Request, room_id: str, system: StudySystem = Depends(get_study_system)):
    """返回指定房间的共享内容与在线成员。

    Args:
        room_id: 房间唯一标识。
    """
    try:
        detail = await system.get_room_detail(room_id)
    except RoomNotFoundError:
        return ApiResponse.not_found(msg="Room not found", data={"room_id": room_id}).to_json_response()
    return ApiResponse.ok(data=detail)


@router.post("/rooms", summary="创建房间", response_model=ApiResponse[RoomSummaryData], status_code=201)
@limiter.limit("2/second")
async def create_room(
    request: Request,
    create_request: CreateRoomRequest,
    system: StudySystem = Depends(get_study_system),
):
    """创建一个空白自习室（笔记为空、计时器归零、无学习目标）。

    持久化失败时返回 500，且不会广播任何事件。
    """
    try:
        summary = await system.create_room(create_request.name, create_request.topic)
    except PersistenceError as e:
        logger.error("创建房间失败: %s", e.cause, exc_info=True)
        return ApiResponse.fail(msg="Failed to create room").to_json_response()
    return ApiResponse.ok(data=summary)
