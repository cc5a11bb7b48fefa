"""
playroom.schemas
~~~~~~~~~~~~~~~~
Pydantic schemas and models for the API.
"""
from playroom.schemas.api_response import ApiResponse
from playroom.schemas.room_interactions import (
    CameraSlotData,
    CreateRoomRequest,
    JoinRoomRequest,
    LeaveRoomData,
    LedgerEntry,
    OccupancyData,
    ParticipantRequest,
    PurchaseRequest,
    RoomEvent,
    RoomInfoData,
    RoomPolicy,
    SessionData,
    SessionState,
    SettlementData,
    TipRequest,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()

__all__ = [
    "ApiResponse",
    "CameraSlotData",
    "CreateRoomRequest",
    "JoinRoomRequest",
    "LeaveRoomData",
    "LedgerEntry",
    "OccupancyData",
    "ParticipantRequest",
    "PurchaseRequest",
    "RoomEvent",
    "RoomInfoData",
    "RoomPolicy",
    "SessionData",
    "SessionState",
    "SettlementData",
    "TipRequest",
]
