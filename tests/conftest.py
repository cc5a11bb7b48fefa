"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用进程内钱包/账本替换外部服务，
用可手动推进的时钟替换真实时间，使计费测试完全确定。
"""
from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["STORAGE_BACKEND"] = "memory"

from playroom.clients import InMemoryLedger, InMemoryWallet  # noqa: E402
from playroom.services.live_system import RoomSystem  # noqa: E402
from playroom.services.payments import PaymentGateway  # noqa: E402

ROOM_ID = "room-1"
HOST_ID = "creator-1"
CO_CREATOR_ID = "creator-2"

# 默认计费配置（与 settings 默认值一致）：入场 $10、体验 10 分钟、$2/分钟
ENTRY_FEE = 1000
FREE_TRIAL = 600
RATE = 200


class FakeClock:
    """可手动推进的时钟。"""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 20, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def wallet() -> InMemoryWallet:
    """预置余额的钱包：两个粉丝各 $100，一个余额只有 $5 的粉丝。"""
    return InMemoryWallet({"fan-1": 10_000, "fan-2": 10_000, "fan-3": 10_000, "broke-fan": 500})


@pytest.fixture()
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture()
def gateway(wallet: InMemoryWallet, ledger: InMemoryLedger, clock: FakeClock) -> PaymentGateway:
    return PaymentGateway(wallet, ledger, clock=clock)


@pytest.fixture()
def system(gateway: PaymentGateway) -> RoomSystem:
    return RoomSystem(gateway)


@pytest.fixture()
def room_system(system: RoomSystem) -> RoomSystem:
    """已创建 ``room-1`` 的房间系统（2 个创作者席位 + 2 个粉丝席位）。"""
    system.on_room_created(
        ROOM_ID,
        host_id=HOST_ID,
        creator_ids=[CO_CREATOR_ID],
        creator_slots=2,
        fan_slots=2,
        entry_fee=ENTRY_FEE,
        free_trial_seconds=FREE_TRIAL,
        per_minute_rate=RATE,
    )
    return system
