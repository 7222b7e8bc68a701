"""
studysphere.schemas
~~~~~~~~~~~~~~~~~~~
Pydantic schemas and models for the REST API and the WebSocket protocol.
"""
from studysphere.schemas.api_response import ApiResponse
from studysphere.schemas.study_room import (
    CreateRoomRequest,
    JoinRequestData,
    ParticipantData,
    RoomDetailData,
    RoomStateData,
    RoomSummaryData,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
