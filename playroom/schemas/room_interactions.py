"""
playroom.schemas.room_interactions
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间计费、上麦席位、打赏/购买相关的 Pydantic 模型。

包含三类结构:
  - 请求体（``*Request``）
  - 对外快照（``*Data``），由服务层生成，可直接序列化为 JSON
  - 实时事件（``RoomEvent``）与账本流水（``LedgerEntry``）

所有金额均为整数最小货币单位（分）。
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ParticipantRole = Literal["creator", "fan"]
SlotPoolName = Literal["creator", "fan"]
LedgerEntryType = Literal["entry_fee", "metered", "tip", "purchase"]
RoomEventType = Literal["occupancy_changed", "session_state_changed"]
PurchaseKind = Literal[
    "tier_purchase",
    "custom_truth",
    "custom_dare",
    "crowd_vote_tier",
    "crowd_vote_truth_dare",
]


class SessionState(str, Enum):
    """计费会话状态。"""

    NOT_JOINED = "not_joined"
    FREE_TRIAL = "free_trial"
    METERED = "metered"
    ENDED = "ended"

    @property
    def is_active(self) -> bool:
        return self in (SessionState.FREE_TRIAL, SessionState.METERED)


# ── 房间配置 ──────────────────────────────────────────────────────────

class RoomPolicy(BaseModel):
    """房间级计费与容量配置，创建房间时确定，之后不可修改。"""

    model_config = ConfigDict(frozen=True)

    entry_fee: int = Field(..., ge=0, description="入场费（分）")
    free_trial_seconds: int = Field(..., ge=0, description="免费体验时长（秒）")
    per_minute_rate: int = Field(..., ge=0, description="体验期后每整分钟费用（分）")
    creator_slots: int = Field(..., ge=0, description="创作者席位容量")
    fan_slots: int = Field(..., ge=0, description="粉丝席位容量")


# ── 请求体 ────────────────────────────────────────────────────────────

class CreateRoomRequest(BaseModel):
    """创建房间请求。未填写的字段使用全局默认配置。"""

    room_id: str = Field(..., min_length=1, max_length=128, description="房间唯一标识")
    host_id: str | None = Field(default=None, description="房主创作者 ID（购买收入归属）")
    creator_ids: list[str] = Field(
        default_factory=list, description="联合创作者 ID，免费入场并使用创作者席位",
    )
    entry_fee: int | None = Field(default=None, ge=0)
    free_trial_seconds: int | None = Field(default=None, ge=0)
    per_minute_rate: int | None = Field(default=None, ge=0)
    creator_slots: int | None = Field(default=None, ge=0, le=64)
    fan_slots: int | None = Field(default=None, ge=0, le=256)


class JoinRoomRequest(BaseModel):
    participant_id: str = Field(..., min_length=1, description="参与者 ID")
    idempotency_key: str | None = Field(
        default=None, max_length=128, description="客户端生成的幂等键（防重复扣款）",
    )


class ParticipantRequest(BaseModel):
    participant_id: str = Field(..., min_length=1, description="参与者 ID")


class TipRequest(BaseModel):
    participant_id: str = Field(..., min_length=1, description="打赏者 ID")
    creator_id: str = Field(..., min_length=1, description="被打赏的创作者 ID")
    amount: int = Field(..., gt=0, description="打赏金额（分）")
    idempotency_key: str | None = Field(default=None, max_length=128)


class PurchaseRequest(BaseModel):
    participant_id: str = Field(..., min_length=1, description="购买者 ID")
    kind: PurchaseKind = Field(..., description="购买类型")
    option: str | None = Field(
        default=None, description="档位 bronze/silver/gold 或投票 truth/dare",
    )
    text: str | None = Field(default=None, max_length=500, description="自定义真心话/大冒险内容")
    idempotency_key: str | None = Field(default=None, max_length=128)


# ── 对外快照 ──────────────────────────────────────────────────────────

class SessionData(BaseModel):
    """计费会话快照。"""

    session_id: str
    room_id: str
    participant_id: str
    role: ParticipantRole
    state: SessionState
    joined_at: datetime | None
    elapsed_seconds: int
    accrued_cost: int
    unsettled: bool = False


class SettlementData(BaseModel):
    """最终结算结果。会话结束后不可变，重复结算返回同一份结果。"""

    model_config = ConfigDict(frozen=True)

    session_id: str
    room_id: str
    participant_id: str
    entry_fee: int
    metered_cost: int
    total_cost: int
    elapsed_seconds: int
    ended_at: datetime
    settled: bool = Field(..., description="计时部分是否已成功写入钱包与流水")


class CameraSlotData(BaseModel):
    pool: SlotPoolName
    slot_index: int
    occupant_id: str | None = None
    occupied_since: datetime | None = None


class OccupancyData(BaseModel):
    """某房间两个席位池的只读快照。"""

    room_id: str
    creator_slots: list[CameraSlotData]
    fan_slots: list[CameraSlotData]

    @property
    def creator_occupied(self) -> int:
        return sum(1 for s in self.creator_slots if s.occupant_id is not None)

    @property
    def fan_occupied(self) -> int:
        return sum(1 for s in self.fan_slots if s.occupant_id is not None)


class RoomInfoData(BaseModel):
    """房间摘要信息。"""

    room_id: str
    host_id: str | None
    policy: RoomPolicy
    active_sessions: int
    online_count: int
    creator_occupied: int
    fan_occupied: int


class LeaveRoomData(BaseModel):
    settlement: SettlementData
    released_slot: CameraSlotData | None = None


# ── 账本 / 事件 ───────────────────────────────────────────────────────

class LedgerEntry(BaseModel):
    """追加写入的交易流水。``idempotency_key`` 相同的流水只记录一次。"""

    model_config = ConfigDict(frozen=True)

    room_id: str
    participant_id: str
    type: LedgerEntryType
    amount: int = Field(..., ge=0)
    timestamp: datetime
    idempotency_key: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class RoomEvent(BaseModel):
    """实时总线消息，推送给房间内所有订阅者（尽力而为，至多一次）。"""

    room_id: str
    event: RoomEventType
    payload: dict[str, Any] = Field(default_factory=dict)
