"""
playroom.core.errors
~~~~~~~~~~~~~~~~~~~~

领域错误码与异常定义。

- 准入类错误（余额不足、席位已满、无资格）同步抛给调用方，
  由 API 层映射为对应 HTTP 状态码。
- 幂等重复操作（重复入场、重复上麦）不是错误，直接返回当前状态。
- 结算失败只在服务内部流转（记录日志 + 进入对账队列），不向离场用户抛出。
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """领域错误码。"""

    ROOM_NOT_FOUND = "ROOM_NOT_FOUND"
    ROOM_ALREADY_EXISTS = "ROOM_ALREADY_EXISTS"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    POOL_FULL = "POOL_FULL"
    NOT_ELIGIBLE = "NOT_ELIGIBLE"
    INVALID_PURCHASE = "INVALID_PURCHASE"
    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"


@dataclass(eq=False)
class DomainError(Exception):
    """领域错误基类，携带错误码、可展示给用户的消息和 HTTP 状态码。"""

    code: ErrorCode
    message: str
    status_code: int = 400

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class RoomNotFoundError(DomainError):
    def __init__(self, room_id: str) -> None:
        super().__init__(
            code=ErrorCode.ROOM_NOT_FOUND,
            message="Room not found",
            status_code=404,
        )
        self.room_id = room_id


class RoomAlreadyExistsError(DomainError):
    def __init__(self, room_id: str) -> None:
        super().__init__(
            code=ErrorCode.ROOM_ALREADY_EXISTS,
            message="Room already exists",
            status_code=409,
        )
        self.room_id = room_id


class SessionNotFoundError(DomainError):
    """参与者在该房间内没有进行中的计费会话。"""

    def __init__(self, room_id: str, participant_id: str) -> None:
        super().__init__(
            code=ErrorCode.SESSION_NOT_FOUND,
            message="No active session in this room",
            status_code=404,
        )
        self.room_id = room_id
        self.participant_id = participant_id


class InsufficientFundsError(DomainError):
    """钱包余额不足，未创建会话也未扣款。"""

    def __init__(self, participant_id: str, amount: int) -> None:
        super().__init__(
            code=ErrorCode.INSUFFICIENT_FUNDS,
            message="Insufficient wallet balance, please top up",
            status_code=402,
        )
        self.participant_id = participant_id
        self.amount = amount


class PaymentFailedError(DomainError):
    """钱包服务调用失败（网络/传输错误）。不自动重试，避免重复扣款。"""

    def __init__(self, participant_id: str) -> None:
        super().__init__(
            code=ErrorCode.PAYMENT_FAILED,
            message="Payment could not be processed, please try again",
            status_code=502,
        )
        self.participant_id = participant_id


class PoolFullError(DomainError):
    """目标席位池已满（包括并发抢占最后一个席位失败的一方）。"""

    def __init__(self, room_id: str, pool: str) -> None:
        super().__init__(
            code=ErrorCode.POOL_FULL,
            message="All camera slots are full",
            status_code=409,
        )
        self.room_id = room_id
        self.pool = pool


class NotEligibleError(DomainError):
    """粉丝未持有有效计费会话，不能上麦或消费。"""

    def __init__(self, room_id: str, participant_id: str) -> None:
        super().__init__(
            code=ErrorCode.NOT_ELIGIBLE,
            message="You must join the room first",
            status_code=403,
        )
        self.room_id = room_id
        self.participant_id = participant_id


class InvalidPurchaseError(DomainError):
    def __init__(self, message: str) -> None:
        super().__init__(
            code=ErrorCode.INVALID_PURCHASE,
            message=message,
            status_code=422,
        )


class SettlementFailedError(DomainError):
    """结算写入钱包/流水失败。仅在服务内部使用，会话仍然结束并标记为未结算。"""

    def __init__(self, session_id: str, reason: str) -> None:
        super().__init__(
            code=ErrorCode.SETTLEMENT_FAILED,
            message="Settlement could not be recorded",
            status_code=500,
        )
        self.session_id = session_id
        self.reason = reason
