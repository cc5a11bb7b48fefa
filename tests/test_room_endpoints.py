"""
tests.test_room_endpoints
~~~~~~~~~~~~~~~~~~~~~~~~~

REST 接口与 WebSocket 订阅接口的集成测试。

``TestClient`` 进入时会执行 lifespan，随后把 ``app.state.room_system``
替换为使用进程内钱包与可控时钟的房间系统。
"""
from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from playroom.main import app
from playroom.services.live_system import RoomSystem

from tests.conftest import HOST_ID, ROOM_ID, FakeClock

BASE = f"/api/rooms/{ROOM_ID}"


@pytest.fixture()
def client(room_system: RoomSystem) -> Iterator[TestClient]:
    with TestClient(app) as c:
        app.state.room_system = room_system
        yield c


class TestSystemEndpoints:

    def test_health(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_request_id_header(self, client: TestClient) -> None:
        resp = client.get("/api/rooms", headers={"X-Request-ID": "abc-123"})
        assert resp.headers["X-Request-ID"] == "abc-123"


class TestRoomEndpoints:
    """测试房间生命周期接口。"""

    def test_create_and_list(self, client: TestClient) -> None:
        resp = client.post("/api/rooms", json={"room_id": "room-2", "host_id": "creator-2"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["code"] == 200
        assert body["data"]["room_id"] == "room-2"
        assert body["data"]["policy"]["entry_fee"] == 1000

        rooms = client.get("/api/rooms").json()["data"]
        assert {r["room_id"] for r in rooms} == {ROOM_ID, "room-2"}

    def test_create_duplicate(self, client: TestClient) -> None:
        resp = client.post("/api/rooms", json={"room_id": ROOM_ID})
        assert resp.status_code == 409
        assert resp.json()["data"] == {"error": "ROOM_ALREADY_EXISTS"}

    def test_unknown_room(self, client: TestClient) -> None:
        resp = client.get("/api/rooms/nope")
        assert resp.status_code == 404
        assert resp.json()["data"]["error"] == "ROOM_NOT_FOUND"

    def test_destroy_room(self, client: TestClient, clock: FakeClock) -> None:
        client.post(f"{BASE}/join", json={"participant_id": "fan-1"})
        clock.advance(660)

        resp = client.delete(BASE)

        assert resp.status_code == 200
        [settlement] = resp.json()["data"]
        assert settlement["total_cost"] == 1200
        assert client.get(BASE).status_code == 404


class TestBillingEndpoints:
    """测试入场、会话查询与离场结算接口。"""

    def test_join_session_leave(self, client: TestClient, clock: FakeClock) -> None:
        joined = client.post(f"{BASE}/join", json={"participant_id": "fan-1"})
        assert joined.status_code == 200
        assert joined.json()["data"]["state"] == "free_trial"
        assert joined.json()["data"]["accrued_cost"] == 1000

        again = client.post(f"{BASE}/join", json={"participant_id": "fan-1"})
        assert again.json()["data"]["session_id"] == joined.json()["data"]["session_id"]

        clock.advance(900)
        session = client.get(f"{BASE}/sessions/fan-1").json()["data"]
        assert session["state"] == "metered"
        assert session["accrued_cost"] == 2000

        left = client.post(f"{BASE}/leave", json={"participant_id": "fan-1"})
        assert left.status_code == 200
        settlement = left.json()["data"]["settlement"]
        assert settlement["total_cost"] == 2000
        assert settlement["settled"] is True

        assert client.get(f"{BASE}/sessions/fan-1").status_code == 404

    def test_role_in_body_is_ignored(self, client: TestClient) -> None:
        resp = client.post(f"{BASE}/join", json={"participant_id": "fan-1", "role": "creator"})
        assert resp.json()["data"]["role"] == "fan"
        assert resp.json()["data"]["accrued_cost"] == 1000

        slot = client.post(f"{BASE}/camera", json={"participant_id": "fan-1", "role": "creator"})
        assert slot.json()["data"]["pool"] == "fan"

    def test_join_insufficient_funds(self, client: TestClient) -> None:
        resp = client.post(f"{BASE}/join", json={"participant_id": "broke-fan"})
        assert resp.status_code == 402
        assert resp.json()["data"]["error"] == "INSUFFICIENT_FUNDS"

    def test_leave_without_session(self, client: TestClient) -> None:
        resp = client.post(f"{BASE}/leave", json={"participant_id": "fan-1"})
        assert resp.status_code == 404
        assert resp.json()["data"]["error"] == "SESSION_NOT_FOUND"

    def test_heartbeat(self, client: TestClient, room_system: RoomSystem) -> None:
        resp = client.post(f"{BASE}/heartbeat", json={"participant_id": "fan-1"})
        assert resp.status_code == 200
        assert room_system.presence.last_seen(ROOM_ID, "fan-1") is not None


class TestCameraEndpoints:
    """测试上麦 / 下麦 / 席位快照接口。"""

    def test_fan_must_join_first(self, client: TestClient) -> None:
        resp = client.post(f"{BASE}/camera", json={"participant_id": "fan-1"})
        assert resp.status_code == 403
        assert resp.json()["msg"] == "You must join the room first"

    def test_join_and_leave_camera(self, client: TestClient) -> None:
        client.post(f"{BASE}/join", json={"participant_id": "fan-1"})

        slot = client.post(f"{BASE}/camera", json={"participant_id": "fan-1"}).json()["data"]
        assert slot == {
            "pool": "fan",
            "slot_index": 0,
            "occupant_id": "fan-1",
            "occupied_since": slot["occupied_since"],
        }

        occupancy = client.get(f"{BASE}/occupancy").json()["data"]
        assert [s["occupant_id"] for s in occupancy["fan_slots"]] == ["fan-1", None]

        released = client.delete(f"{BASE}/camera/fan-1").json()["data"]
        assert released["slot_index"] == 0
        assert client.delete(f"{BASE}/camera/fan-1").json()["data"] is None

    def test_pool_full(self, client: TestClient) -> None:
        for pid in ("fan-1", "fan-2", "fan-3"):
            client.post(f"{BASE}/join", json={"participant_id": pid})
        client.post(f"{BASE}/camera", json={"participant_id": "fan-1"})
        client.post(f"{BASE}/camera", json={"participant_id": "fan-2"})

        resp = client.post(f"{BASE}/camera", json={"participant_id": "fan-3"})
        assert resp.status_code == 409
        assert resp.json()["data"]["error"] == "POOL_FULL"


class TestSpendingEndpoints:
    """测试打赏与购买接口。"""

    def test_tip(self, client: TestClient) -> None:
        client.post(f"{BASE}/join", json={"participant_id": "fan-1"})
        resp = client.post(
            f"{BASE}/tips",
            json={"participant_id": "fan-1", "creator_id": HOST_ID, "amount": 1000},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["metadata"]["creator_share"] == 900

    def test_purchase_invalid_option(self, client: TestClient) -> None:
        client.post(f"{BASE}/join", json={"participant_id": "fan-1"})
        resp = client.post(
            f"{BASE}/purchases",
            json={"participant_id": "fan-1", "kind": "tier_purchase", "option": "platinum"},
        )
        assert resp.status_code == 422
        assert resp.json()["data"]["error"] == "INVALID_PURCHASE"

    def test_crowd_vote(self, client: TestClient) -> None:
        client.post(f"{BASE}/join", json={"participant_id": "fan-1"})
        resp = client.post(
            f"{BASE}/purchases",
            json={"participant_id": "fan-1", "kind": "crowd_vote_truth_dare", "option": "dare"},
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["amount"] == 1000


class TestRoomWebSocket:
    """测试房间订阅 WebSocket。"""

    def test_initial_snapshot_and_ping(self, client: TestClient, room_system: RoomSystem) -> None:
        with client.websocket_connect(f"/ws/rooms/{ROOM_ID}?participant_id=fan-1") as ws:
            first = ws.receive_json()
            assert first["event"] == "occupancy_changed"
            assert first["room_id"] == ROOM_ID

            ws.send_text("ping")
            assert ws.receive_text() == "pong"
            assert room_system.presence.last_seen(ROOM_ID, "fan-1") is not None

            # 心跳过快被拒绝
            ws.send_text("ping")
            assert ws.receive_text().startswith("[SYSTEM:")

    def test_receives_room_events(self, client: TestClient) -> None:
        with client.websocket_connect(f"/ws/rooms/{ROOM_ID}") as ws:
            ws.receive_json()
            client.post(f"{BASE}/join", json={"participant_id": "fan-1"})

            event = ws.receive_json()
            assert event["event"] == "session_state_changed"
            assert event["payload"]["participant_id"] == "fan-1"

    def test_unknown_room_is_closed(self, client: TestClient) -> None:
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/rooms/nope") as ws:
                ws.receive_text()
