"""
tests.test_live_system
~~~~~~~~~~~~~~~~~~~~~~

RoomSystem + LiveRoom 业务服务层测试：房间生命周期、完整入场到离场流程、
掉线超时、打赏与购买、事件推送。
"""
from __future__ import annotations

import json
import logging
from unittest.mock import AsyncMock

import pytest
from fastapi import WebSocket

from playroom.clients import InMemoryLedger, InMemoryWallet
from playroom.core.errors import (
    InsufficientFundsError,
    InvalidPurchaseError,
    NotEligibleError,
    PoolFullError,
    RoomAlreadyExistsError,
    RoomNotFoundError,
    SessionNotFoundError,
)
from playroom.schemas.room_interactions import SessionState
from playroom.services.live_system import RoomSystem

from tests.conftest import CO_CREATOR_ID, ENTRY_FEE, HOST_ID, RATE, ROOM_ID, FakeClock


def subscribe(system: RoomSystem) -> AsyncMock:
    """向房间登记一个 mock 订阅者，返回它以便检查收到的事件。"""
    ws = AsyncMock(spec=WebSocket)
    system.get_room(ROOM_ID).broadcaster.subscribers[ws] = None
    return ws


def sent_events(ws: AsyncMock) -> list[str]:
    return [json.loads(call.args[0])["event"] for call in ws.send_text.await_args_list]


# ── 房间生命周期 ──────────────────────────────────────────────────────

class TestRoomLifecycle:
    """测试房间创建与关闭。"""

    def test_create_uses_default_policy(self, system: RoomSystem) -> None:
        room = system.on_room_created("room-default")
        assert room.policy.entry_fee == system.config.DEFAULT_ENTRY_FEE
        assert room.policy.fan_slots == system.config.DEFAULT_FAN_SLOTS
        assert [r.room_id for r in system.list_rooms()] == ["room-default"]

    def test_duplicate_room_rejected(self, room_system: RoomSystem) -> None:
        with pytest.raises(RoomAlreadyExistsError):
            room_system.on_room_created(ROOM_ID)

    def test_unknown_room(self, system: RoomSystem) -> None:
        with pytest.raises(RoomNotFoundError):
            system.get_room("nope")

    @pytest.mark.asyncio
    async def test_destroy_settles_sessions_and_clears_slots(
        self, room_system: RoomSystem, clock: FakeClock, ledger: InMemoryLedger,
    ) -> None:
        await room_system.join(ROOM_ID, "fan-1")
        await room_system.join(ROOM_ID, "fan-2")
        await room_system.join_camera(ROOM_ID, "fan-1")
        clock.advance(720)

        settlements = await room_system.on_room_destroyed(ROOM_ID)

        assert {s.participant_id for s in settlements} == {"fan-1", "fan-2"}
        assert all(s.total_cost == ENTRY_FEE + 2 * RATE for s in settlements)
        assert len([e for e in ledger.entries if e.type == "metered"]) == 2
        with pytest.raises(RoomNotFoundError):
            room_system.get_room(ROOM_ID)

    @pytest.mark.asyncio
    async def test_destroy_unknown_room(self, system: RoomSystem) -> None:
        with pytest.raises(RoomNotFoundError):
            await system.on_room_destroyed("nope")


# ── 入场 → 计时 → 离场 ────────────────────────────────────────────────

class TestJoinAndLeave:
    """测试完整的付费在场流程。"""

    @pytest.mark.asyncio
    async def test_end_to_end_fifteen_minutes(
        self,
        room_system: RoomSystem,
        clock: FakeClock,
        wallet: InMemoryWallet,
        ledger: InMemoryLedger,
    ) -> None:
        """入场 $10，体验 10 分钟，$2/分钟，停留 15 分钟后离场，共计 $20。"""
        joined = await room_system.join(ROOM_ID, "fan-1")
        assert joined.state is SessionState.FREE_TRIAL
        await room_system.join_camera(ROOM_ID, "fan-1")

        clock.advance(900)
        snapshot = room_system.session(ROOM_ID, "fan-1")
        assert snapshot.state is SessionState.METERED
        assert snapshot.accrued_cost == 2000

        result = await room_system.leave(ROOM_ID, "fan-1")

        assert result.settlement.entry_fee == 1000
        assert result.settlement.metered_cost == 1000
        assert result.settlement.total_cost == 2000
        assert result.settlement.elapsed_seconds == 900
        assert result.settlement.settled is True
        assert result.released_slot is not None and result.released_slot.occupant_id == "fan-1"
        assert room_system.get_occupancy(ROOM_ID).fan_occupied == 0

        assert [(e.type, e.amount) for e in ledger.entries] == [
            ("entry_fee", 1000), ("metered", 1000),
        ]
        assert wallet.balance("fan-1") == 10_000 - 2000

        with pytest.raises(SessionNotFoundError):
            room_system.session(ROOM_ID, "fan-1")

    @pytest.mark.asyncio
    async def test_rejoin_is_idempotent(
        self, room_system: RoomSystem, wallet: InMemoryWallet,
    ) -> None:
        first = await room_system.join(ROOM_ID, "fan-1", idempotency_key="k1")
        second = await room_system.join(ROOM_ID, "fan-1", idempotency_key="k2")

        assert first.session_id == second.session_id
        assert wallet.balance("fan-1") == 10_000 - ENTRY_FEE

    @pytest.mark.asyncio
    async def test_rejoin_with_same_key_after_leave_is_new_paid_session(
        self, room_system: RoomSystem, wallet: InMemoryWallet, ledger: InMemoryLedger,
    ) -> None:
        first = await room_system.join(ROOM_ID, "fan-1", idempotency_key="k1")
        await room_system.leave(ROOM_ID, "fan-1")
        second = await room_system.join(ROOM_ID, "fan-1", idempotency_key="k1")

        assert second.session_id != first.session_id
        assert second.state is SessionState.FREE_TRIAL
        assert wallet.balance("fan-1") == 10_000 - 2 * ENTRY_FEE
        assert len([e for e in ledger.entries if e.type == "entry_fee"]) == 2

    @pytest.mark.asyncio
    async def test_leave_without_session(self, room_system: RoomSystem) -> None:
        with pytest.raises(SessionNotFoundError):
            await room_system.leave(ROOM_ID, "fan-1")

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, room_system: RoomSystem) -> None:
        with pytest.raises(InsufficientFundsError):
            await room_system.join(ROOM_ID, "broke-fan")
        with pytest.raises(NotEligibleError):
            await room_system.join_camera(ROOM_ID, "broke-fan")

    @pytest.mark.asyncio
    async def test_ended_session_loses_camera_eligibility(self, room_system: RoomSystem) -> None:
        await room_system.join(ROOM_ID, "fan-1")
        await room_system.leave(ROOM_ID, "fan-1")

        with pytest.raises(NotEligibleError):
            await room_system.join_camera(ROOM_ID, "fan-1")


# ── 角色 ──────────────────────────────────────────────────────────────

class TestRoleFromRoster:
    """角色由房间的创作者名单决定。"""

    @pytest.mark.asyncio
    async def test_fan_is_always_charged(
        self, room_system: RoomSystem, wallet: InMemoryWallet,
    ) -> None:
        session = await room_system.join(ROOM_ID, "fan-1")

        assert session.role == "fan"
        assert wallet.balance("fan-1") == 10_000 - ENTRY_FEE

    @pytest.mark.asyncio
    async def test_host_and_co_creator_join_free(
        self, room_system: RoomSystem, ledger: InMemoryLedger,
    ) -> None:
        host = await room_system.join(ROOM_ID, HOST_ID)
        co_creator = await room_system.join(ROOM_ID, CO_CREATOR_ID)

        assert host.role == co_creator.role == "creator"
        assert host.accrued_cost == 0
        assert ledger.entries == []

    @pytest.mark.asyncio
    async def test_paid_fan_cannot_take_creator_seat(self, room_system: RoomSystem) -> None:
        await room_system.join(ROOM_ID, "fan-1")
        await room_system.join(ROOM_ID, "fan-2")
        await room_system.join(ROOM_ID, "fan-3")

        assert (await room_system.join_camera(ROOM_ID, "fan-1")).pool == "fan"
        assert (await room_system.join_camera(ROOM_ID, "fan-2")).pool == "fan"
        with pytest.raises(PoolFullError):
            await room_system.join_camera(ROOM_ID, "fan-3")
        assert room_system.get_occupancy(ROOM_ID).creator_occupied == 0

    @pytest.mark.asyncio
    async def test_creator_takes_creator_seat_without_session(
        self, room_system: RoomSystem,
    ) -> None:
        slot = await room_system.join_camera(ROOM_ID, CO_CREATOR_ID)
        assert slot.pool == "creator"


# ── 事件推送 ──────────────────────────────────────────────────────────

class TestRoomEvents:
    """测试状态变化后向订阅者推送的事件。"""

    @pytest.mark.asyncio
    async def test_join_camera_and_leave_publish_events(self, room_system: RoomSystem) -> None:
        ws = subscribe(room_system)

        await room_system.join(ROOM_ID, "fan-1")
        await room_system.join_camera(ROOM_ID, "fan-1")
        await room_system.join_camera(ROOM_ID, "fan-1")  # 幂等，不推送
        await room_system.leave(ROOM_ID, "fan-1")

        assert sent_events(ws) == [
            "session_state_changed",
            "occupancy_changed",
            "occupancy_changed",
            "session_state_changed",
        ]

    @pytest.mark.asyncio
    async def test_tick_all_publishes_metered_transition(
        self, room_system: RoomSystem, clock: FakeClock,
    ) -> None:
        await room_system.join(ROOM_ID, "fan-1")
        ws = subscribe(room_system)

        assert await room_system.tick_all(clock.advance(300)) == 0
        assert await room_system.tick_all(clock.advance(300)) == 1
        assert await room_system.tick_all(clock.advance(60)) == 0

        payload = json.loads(ws.send_text.await_args.args[0])["payload"]
        assert payload["state"] == "metered"

    @pytest.mark.asyncio
    async def test_metered_transition_logged_once(
        self, room_system: RoomSystem, clock: FakeClock, caplog: pytest.LogCaptureFixture,
    ) -> None:
        caplog.set_level(logging.INFO)
        await room_system.join(ROOM_ID, "fan-1")

        await room_system.tick_all(clock.advance(600))

        messages = [r.getMessage() for r in caplog.records]
        assert len([m for m in messages if m.startswith("免费体验结束")]) == 1

    @pytest.mark.asyncio
    async def test_broken_subscriber_does_not_affect_state(
        self, room_system: RoomSystem,
    ) -> None:
        ws = subscribe(room_system)
        ws.send_text.side_effect = RuntimeError("socket closed")

        await room_system.join(ROOM_ID, "fan-1")
        slot = await room_system.join_camera(ROOM_ID, "fan-1")

        assert slot.occupant_id == "fan-1"
        assert room_system.get_room(ROOM_ID).online_count == 0


# ── 在线检测 ──────────────────────────────────────────────────────────

class TestPresenceTimeout:
    """心跳超时的参与者会被下麦并结算。"""

    @pytest.mark.asyncio
    async def test_silent_participant_is_settled(
        self, room_system: RoomSystem, clock: FakeClock,
    ) -> None:
        await room_system.join(ROOM_ID, "fan-1")
        await room_system.join(ROOM_ID, "fan-2")
        await room_system.join_camera(ROOM_ID, "fan-1")

        clock.advance(30)
        room_system.heartbeat(ROOM_ID, "fan-2")
        clock.advance(30)

        assert await room_system.expire_stale() == 1
        assert room_system.get_occupancy(ROOM_ID).fan_occupied == 0
        with pytest.raises(SessionNotFoundError):
            room_system.session(ROOM_ID, "fan-1")
        assert room_system.session(ROOM_ID, "fan-2").state is SessionState.FREE_TRIAL

    @pytest.mark.asyncio
    async def test_silent_creator_without_session_loses_seat(
        self, room_system: RoomSystem, clock: FakeClock,
    ) -> None:
        await room_system.join_camera(ROOM_ID, CO_CREATOR_ID)
        assert room_system.get_occupancy(ROOM_ID).creator_occupied == 1

        clock.advance(10_000)

        assert await room_system.expire_stale() == 1
        assert room_system.get_occupancy(ROOM_ID).creator_occupied == 0

    @pytest.mark.asyncio
    async def test_timeout_after_leave_is_noop(self, room_system: RoomSystem) -> None:
        await room_system.join(ROOM_ID, "fan-1")
        await room_system.leave(ROOM_ID, "fan-1")

        await room_system.on_presence_timeout(ROOM_ID, "fan-1")
        await room_system.on_presence_timeout("gone-room", "fan-1")

    def test_heartbeat_unknown_room(self, system: RoomSystem) -> None:
        with pytest.raises(RoomNotFoundError):
            system.heartbeat("nope", "fan-1")


# ── 打赏 / 购买 ───────────────────────────────────────────────────────

class TestTipsAndPurchases:
    """测试房间内消费与创作者分成。"""

    @pytest.mark.asyncio
    async def test_tip_splits_revenue(
        self, room_system: RoomSystem, wallet: InMemoryWallet, ledger: InMemoryLedger,
    ) -> None:
        await room_system.join(ROOM_ID, "fan-1")
        entry = await room_system.tip(ROOM_ID, "fan-1", HOST_ID, 500, idempotency_key="tip-1")

        assert entry.type == "tip"
        assert entry.metadata["creator_share"] == 450
        assert wallet.balance("fan-1") == 10_000 - ENTRY_FEE - 500
        assert wallet.balance(HOST_ID) == 450

        # 重放同一幂等键不会重复扣款或入账
        await room_system.tip(ROOM_ID, "fan-1", HOST_ID, 500, idempotency_key="tip-1")
        assert wallet.balance("fan-1") == 10_000 - ENTRY_FEE - 500
        assert wallet.balance(HOST_ID) == 450
        assert len([e for e in ledger.entries if e.type == "tip"]) == 1

    @pytest.mark.asyncio
    async def test_tip_requires_session(self, room_system: RoomSystem) -> None:
        with pytest.raises(NotEligibleError):
            await room_system.tip(ROOM_ID, "fan-1", HOST_ID, 500)

    @pytest.mark.asyncio
    async def test_tip_rejects_self_and_non_positive(self, room_system: RoomSystem) -> None:
        await room_system.join(ROOM_ID, HOST_ID)
        with pytest.raises(InvalidPurchaseError):
            await room_system.tip(ROOM_ID, HOST_ID, HOST_ID, 500)
        with pytest.raises(InvalidPurchaseError):
            await room_system.tip(ROOM_ID, HOST_ID, "creator-2", 0)

    @pytest.mark.asyncio
    async def test_tier_purchase(
        self, room_system: RoomSystem, wallet: InMemoryWallet,
    ) -> None:
        await room_system.join(ROOM_ID, "fan-1")
        entry = await room_system.purchase(ROOM_ID, "fan-1", "tier_purchase", option="gold")

        assert entry.amount == 2000
        assert entry.metadata["tier"] == "gold"
        assert wallet.balance(HOST_ID) == 1800

    @pytest.mark.asyncio
    async def test_custom_dare_requires_text(self, room_system: RoomSystem) -> None:
        await room_system.join(ROOM_ID, "fan-1")
        with pytest.raises(InvalidPurchaseError):
            await room_system.purchase(ROOM_ID, "fan-1", "custom_dare", text="   ")

        entry = await room_system.purchase(ROOM_ID, "fan-1", "custom_dare", text=" sing a song ")
        assert entry.amount == 3500
        assert entry.metadata["text"] == "sing a song"

    @pytest.mark.asyncio
    async def test_purchase_insufficient_funds(self, room_system: RoomSystem, wallet) -> None:
        wallet.top_up("broke-fan", 900)
        await room_system.join(ROOM_ID, "broke-fan")

        with pytest.raises(InsufficientFundsError):
            await room_system.purchase(ROOM_ID, "broke-fan", "tier_purchase", option="bronze")
        assert wallet.balance("broke-fan") == 400
