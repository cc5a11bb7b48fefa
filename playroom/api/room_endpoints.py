"""
playroom.api.room_endpoints
~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间 REST 接口 —— 房间生命周期 + 入场计费 + 上麦席位 + 打赏/购买。

路由前缀 ``/api``，所有响应统一包装为 ``ApiResponse``。

端点:
  - ``POST   /rooms``                               → 创建房间
  - ``GET    /rooms``                               → 活跃房间列表
  - ``GET    /rooms/{room_id}``                     → 房间详情
  - ``DELETE /rooms/{room_id}``                     → 关闭房间（强制结算、清空席位）
  - ``POST   /rooms/{room_id}/join``                → 付费入场（幂等）
  - ``POST   /rooms/{room_id}/leave``               → 离场结算
  - ``GET    /rooms/{room_id}/sessions/{pid}``      → 当前会话（惰性重算）
  - ``POST   /rooms/{room_id}/heartbeat``           → 在线心跳
  - ``POST   /rooms/{room_id}/camera``              → 申请上麦
  - ``DELETE /rooms/{room_id}/camera/{pid}``        → 下麦
  - ``GET    /rooms/{room_id}/occupancy``           → 席位快照
  - ``POST   /rooms/{room_id}/tips``                → 打赏
  - ``POST   /rooms/{room_id}/purchases``           → 房间内购买
"""
from fastapi import APIRouter, Depends, Request

from playroom.api.deps import get_room_system
from playroom.core.rate_limit import limiter
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
    RoomInfoData,
    SessionData,
    SettlementData,
    TipRequest,
)
from playroom.services.live_system import RoomSystem

router: APIRouter = APIRouter()


# ── 房间生命周期 ──────────────────────────────────────────────────────

@router.post("/rooms", summary="创建房间", response_model=ApiResponse[RoomInfoData])
@limiter.limit("5/second")
async def create_room(
    request: Request,
    body: CreateRoomRequest,
    system: RoomSystem = Depends(get_room_system),
):
    """登记新房间；未填写的计费/容量字段使用全局默认值。"""
    room = system.on_room_created(
        body.room_id,
        creator_slots=body.creator_slots,
        fan_slots=body.fan_slots,
        host_id=body.host_id,
        creator_ids=body.creator_ids,
        entry_fee=body.entry_fee,
        free_trial_seconds=body.free_trial_seconds,
        per_minute_rate=body.per_minute_rate,
    )
    return ApiResponse.ok(data=room.info())


@router.get("/rooms", summary="获取活跃房间列表", response_model=ApiResponse[list[RoomInfoData]])
@limiter.limit("10/second")
async def list_rooms(request: Request, system: RoomSystem = Depends(get_room_system)):
    return ApiResponse.ok(data=system.list_rooms())


@router.get("/rooms/{room_id}", summary="获取房间详情", response_model=ApiResponse[RoomInfoData])
@limiter.limit("10/second")
async def room_info(request: Request, room_id: str, system: RoomSystem = Depends(get_room_system)):
    return ApiResponse.ok(data=system.get_room(room_id).info())


@router.delete(
    "/rooms/{room_id}",
    summary="关闭房间",
    response_model=ApiResponse[list[SettlementData]],
)
@limiter.limit("5/second")
async def destroy_room(request: Request, room_id: str, system: RoomSystem = Depends(get_room_system)):
    """关闭房间：所有会话立即结算，所有席位清空。"""
    settlements = await system.on_room_destroyed(room_id)
    return ApiResponse.ok(data=settlements)


# ── 入场 / 离场 ───────────────────────────────────────────────────────

@router.post("/rooms/{room_id}/join", summary="付费入场", response_model=ApiResponse[SessionData])
@limiter.limit("5/second")
async def join_room(
    request: Request,
    room_id: str,
    body: JoinRoomRequest,
    system: RoomSystem = Depends(get_room_system),
):
    """扣除入场费并开始免费体验计时。

    重复提交（双击、重连）返回同一会话，不会重复扣款。
    余额不足返回 402。
    """
    session = await system.join(
        room_id, body.participant_id, body.idempotency_key,
    )
    return ApiResponse.ok(data=session)


@router.post("/rooms/{room_id}/leave", summary="离场结算", response_model=ApiResponse[LeaveRoomData])
@limiter.limit("5/second")
async def leave_room(
    request: Request,
    room_id: str,
    body: ParticipantRequest,
    system: RoomSystem = Depends(get_room_system),
):
    """释放席位并结算。结算写入失败也会正常离场（后台对账）。"""
    result = await system.leave(room_id, body.participant_id)
    return ApiResponse.ok(data=result)


@router.get(
    "/rooms/{room_id}/sessions/{participant_id}",
    summary="查询当前会话",
    response_model=ApiResponse[SessionData],
)
@limiter.limit("10/second")
async def get_session(
    request: Request,
    room_id: str,
    participant_id: str,
    system: RoomSystem = Depends(get_room_system),
):
    return ApiResponse.ok(data=system.session(room_id, participant_id))


@router.post("/rooms/{room_id}/heartbeat", summary="在线心跳", response_model=ApiResponse[None])
@limiter.limit("5/second")
async def heartbeat(
    request: Request,
    room_id: str,
    body: ParticipantRequest,
    system: RoomSystem = Depends(get_room_system),
):
    system.heartbeat(room_id, body.participant_id)
    return ApiResponse.ok(data=None)


# ── 上麦席位 ──────────────────────────────────────────────────────────

@router.post("/rooms/{room_id}/camera", summary="申请上麦", response_model=ApiResponse[CameraSlotData])
@limiter.limit("5/second")
async def join_camera(
    request: Request,
    room_id: str,
    body: ParticipantRequest,
    system: RoomSystem = Depends(get_room_system),
):
    """占用编号最小的空席位。已在麦上时返回原席位；席位已满返回 409。"""
    slot = await system.join_camera(room_id, body.participant_id)
    return ApiResponse.ok(data=slot)


@router.delete(
    "/rooms/{room_id}/camera/{participant_id}",
    summary="下麦",
    response_model=ApiResponse[CameraSlotData | None],
)
@limiter.limit("5/second")
async def leave_camera(
    request: Request,
    room_id: str,
    participant_id: str,
    system: RoomSystem = Depends(get_room_system),
):
    released = await system.leave_camera(room_id, participant_id)
    return ApiResponse.ok(data=released)


@router.get(
    "/rooms/{room_id}/occupancy",
    summary="席位快照",
    response_model=ApiResponse[OccupancyData],
)
@limiter.limit("20/second")
async def occupancy(request: Request, room_id: str, system: RoomSystem = Depends(get_room_system)):
    """重连的订阅者应先拉取此快照，再依赖实时事件。"""
    return ApiResponse.ok(data=system.get_occupancy(room_id))


# ── 打赏 / 购买 ───────────────────────────────────────────────────────

@router.post("/rooms/{room_id}/tips", summary="打赏创作者", response_model=ApiResponse[LedgerEntry])
@limiter.limit("5/second")
async def tip_creator(
    request: Request,
    room_id: str,
    body: TipRequest,
    system: RoomSystem = Depends(get_room_system),
):
    entry = await system.tip(
        room_id, body.participant_id, body.creator_id, body.amount, body.idempotency_key,
    )
    return ApiResponse.ok(data=entry)


@router.post(
    "/rooms/{room_id}/purchases",
    summary="房间内购买",
    response_model=ApiResponse[LedgerEntry],
)
@limiter.limit("5/second")
async def purchase(
    request: Request,
    room_id: str,
    body: PurchaseRequest,
    system: RoomSystem = Depends(get_room_system),
):
    entry = await system.purchase(
        room_id,
        body.participant_id,
        body.kind,
        option=body.option,
        text=body.text,
        idempotency_key=body.idempotency_key,
    )
    return ApiResponse.ok(data=entry)
