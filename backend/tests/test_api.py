"""Tests for FastAPI REST endpoints with mocked table_manager."""

from __future__ import annotations

import os
import random
from unittest.mock import AsyncMock, patch

# Disable rate limiting before importing the app module
os.environ.setdefault("RATE_LIMIT_ENABLED", "0")

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from holdem.engine import apply_action, start_hand
from holdem.models import SeatInfo, TableStatus, TableSummary

# We need to patch the lifespan so it doesn't start background tasks or Redis
import contextlib


@contextlib.asynccontextmanager
async def _noop_lifespan(app):
    yield


# Patch lifespan BEFORE importing app
with patch("holdem.main.lifespan", _noop_lifespan):
    from holdem.main import app as fastapi_app


PATCH_TM = "holdem.main.table_manager"

PLAYERS = [
    {"id": "p0", "display_name": "Alice", "chips": 1000},
    {"id": "p1", "display_name": "Bob", "chips": 1000},
    {"id": "p2", "display_name": "Carol", "chips": 1000},
]
SEATS = [dict(p, pin="1234") for p in PLAYERS]


def _summary(code="ABC123", status=TableStatus.WAITING) -> TableSummary:
    return TableSummary(
        code=code,
        status=status,
        small_blind=10,
        big_blind=20,
        hand_number=0,
        seats=[SeatInfo(**p) for p in PLAYERS],
    )


def _state():
    return start_hand(PLAYERS, -1, 10, 20, rng=random.Random(1))


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=fastapi_app), base_url="http://test")


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestCreateTableEndpoint:
    @pytest.fixture(autouse=True)
    def _mock(self):
        with patch(f"{PATCH_TM}.create_table", new_callable=AsyncMock) as m:
            self.create_table = m
            yield

    async def test_create_success(self):
        self.create_table.return_value = ("ABC123", _summary())
        async with _client() as client:
            resp = await client.post(
                "/api/tables",
                json={"players": SEATS, "small_blind": 10, "big_blind": 20},
            )
        assert resp.status_code == 200
        body = resp.json()
        assert body["code"] == "ABC123"
        assert body["table"]["status"] == "waiting"
        assert len(body["table"]["seats"]) == 3

    async def test_too_few_players(self):
        async with _client() as client:
            resp = await client.post("/api/tables", json={"players": SEATS[:1]})
        assert resp.status_code == 422
        self.create_table.assert_not_awaited()

    async def test_blinds_out_of_order(self):
        async with _client() as client:
            resp = await client.post(
                "/api/tables",
                json={"players": SEATS, "small_blind": 50, "big_blind": 20},
            )
        assert resp.status_code == 422

    async def test_non_positive_chips(self):
        players = [dict(p, chips=0) for p in SEATS]
        async with _client() as client:
            resp = await client.post("/api/tables", json={"players": players})
        assert resp.status_code == 422

    async def test_pin_required_per_seat(self):
        async with _client() as client:
            resp = await client.post("/api/tables", json={"players": PLAYERS})
        assert resp.status_code == 422

    async def test_pin_must_be_four_digits(self):
        players = [dict(p, pin="12ab") for p in PLAYERS]
        async with _client() as client:
            resp = await client.post("/api/tables", json={"players": players})
        assert resp.status_code == 422

    async def test_response_has_no_pins(self):
        self.create_table.return_value = ("ABC123", _summary())
        async with _client() as client:
            resp = await client.post("/api/tables", json={"players": SEATS})
        assert "pin" not in resp.text

    async def test_service_error_is_400(self):
        self.create_table.side_effect = ValueError("Player ids must be unique")
        async with _client() as client:
            resp = await client.post("/api/tables", json={"players": SEATS})
        assert resp.status_code == 400
        assert "unique" in resp.json()["detail"]


class TestGetTableEndpoint:
    @pytest.fixture(autouse=True)
    def _mock(self):
        with patch(f"{PATCH_TM}.get_table_summary", new_callable=AsyncMock) as m:
            self.get_table_summary = m
            yield

    async def test_found(self):
        self.get_table_summary.return_value = _summary()
        async with _client() as client:
            resp = await client.get("/api/tables/abc123")
        assert resp.status_code == 200
        assert resp.json()["code"] == "ABC123"
        self.get_table_summary.assert_awaited_once_with("ABC123")

    async def test_not_found(self):
        self.get_table_summary.return_value = None
        async with _client() as client:
            resp = await client.get("/api/tables/NOPE00")
        assert resp.status_code == 404


class TestStartHandEndpoint:
    @pytest.fixture(autouse=True)
    def _mock(self):
        with patch(f"{PATCH_TM}.verify_player", new_callable=AsyncMock) as m0, \
             patch(f"{PATCH_TM}.start_hand", new_callable=AsyncMock) as m1, \
             patch("holdem.main._broadcast_state", new_callable=AsyncMock) as m2, \
             patch("holdem.main._sync_timer", new_callable=AsyncMock) as m3:
            self.verify_player = m0
            self.start_hand = m1
            self.broadcast = m2
            self.sync_timer = m3
            yield

    async def test_start(self):
        self.start_hand.return_value = _state()
        async with _client() as client:
            resp = await client.post(
                "/api/tables/ABC123/hands",
                json={"player_id": "p0", "pin": "1234", "seed": 5},
            )
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "hand_number": 1}
        self.verify_player.assert_awaited_once_with("ABC123", "p0", "1234")
        self.start_hand.assert_awaited_once_with("ABC123", seed=5)
        self.broadcast.assert_awaited_once()
        self.sync_timer.assert_awaited_once_with("ABC123")

    async def test_start_without_seed(self):
        self.start_hand.return_value = _state()
        async with _client() as client:
            resp = await client.post(
                "/api/tables/ABC123/hands", json={"player_id": "p0", "pin": "1234"}
            )
        assert resp.status_code == 200
        self.start_hand.assert_awaited_once_with("ABC123", seed=None)

    async def test_credentials_required(self):
        async with _client() as client:
            resp = await client.post("/api/tables/ABC123/hands")
        assert resp.status_code == 422
        self.start_hand.assert_not_awaited()

    async def test_wrong_pin(self):
        self.verify_player.side_effect = PermissionError("Invalid player or PIN")
        async with _client() as client:
            resp = await client.post(
                "/api/tables/ABC123/hands", json={"player_id": "p0", "pin": "9999"}
            )
        assert resp.status_code == 403
        self.start_hand.assert_not_awaited()
        self.broadcast.assert_not_awaited()

    async def test_hand_in_progress(self):
        self.start_hand.side_effect = ValueError("A hand is already in progress")
        async with _client() as client:
            resp = await client.post(
                "/api/tables/ABC123/hands", json={"player_id": "p0", "pin": "1234"}
            )
        assert resp.status_code == 400
        assert "in progress" in resp.json()["detail"]
        self.broadcast.assert_not_awaited()

    async def test_unknown_table(self):
        self.verify_player.side_effect = LookupError("Table not found")
        async with _client() as client:
            resp = await client.post(
                "/api/tables/NOPE00/hands", json={"player_id": "p0", "pin": "1234"}
            )
        assert resp.status_code == 404


class TestActionEndpoint:
    @pytest.fixture(autouse=True)
    def _mock(self):
        with patch(f"{PATCH_TM}.verify_player", new_callable=AsyncMock) as m0, \
             patch(f"{PATCH_TM}.apply_action", new_callable=AsyncMock) as m1, \
             patch("holdem.main._broadcast_state", new_callable=AsyncMock) as m2, \
             patch("holdem.main._sync_timer", new_callable=AsyncMock) as m3:
            self.verify_player = m0
            self.apply_action = m1
            self.broadcast = m2
            self.sync_timer = m3
            yield

    async def test_accepted_action(self):
        state = apply_action(_state(), "p0", {"type": "call"})
        self.apply_action.return_value = (state, True)
        async with _client() as client:
            resp = await client.post(
                "/api/tables/ABC123/action",
                json={"player_id": "p0", "pin": "1234", "action": {"type": "call"}},
            )
        assert resp.status_code == 200
        body = resp.json()
        assert body["pot"] == 50
        assert body["action_on"] == "p1"
        assert len(body["my_cards"]) == 2
        assert body["players"][1]["hand"] == []
        self.verify_player.assert_awaited_once_with("ABC123", "p0", "1234")
        self.apply_action.assert_awaited_once_with("ABC123", "p0", {"type": "call"})
        self.broadcast.assert_awaited_once()
        self.sync_timer.assert_awaited_once()

    async def test_rejected_action_not_broadcast(self):
        s = _state()
        state = apply_action(s, "p1", {"type": "call"})
        self.apply_action.return_value = (state, False)
        async with _client() as client:
            resp = await client.post(
                "/api/tables/ABC123/action",
                json={"player_id": "p1", "pin": "1234", "action": {"type": "call"}},
            )
        assert resp.status_code == 200
        assert "turn" in resp.json()["messages"][-1]
        self.broadcast.assert_not_awaited()
        self.sync_timer.assert_not_awaited()

    async def test_cannot_act_for_another_seat(self):
        self.verify_player.side_effect = PermissionError("Invalid player or PIN")
        async with _client() as client:
            resp = await client.post(
                "/api/tables/ABC123/action",
                json={"player_id": "p0", "pin": "0000", "action": {"type": "fold"}},
            )
        assert resp.status_code == 403
        self.apply_action.assert_not_awaited()
        self.broadcast.assert_not_awaited()

    async def test_no_hand_yet(self):
        self.apply_action.side_effect = ValueError("No hand has been dealt at this table")
        async with _client() as client:
            resp = await client.post(
                "/api/tables/ABC123/action",
                json={"player_id": "p0", "pin": "1234", "action": {"type": "fold"}},
            )
        assert resp.status_code == 400

    async def test_missing_action(self):
        async with _client() as client:
            resp = await client.post(
                "/api/tables/ABC123/action", json={"player_id": "p0", "pin": "1234"}
            )
        assert resp.status_code == 422

    async def test_missing_pin(self):
        async with _client() as client:
            resp = await client.post(
                "/api/tables/ABC123/action",
                json={"player_id": "p0", "action": {"type": "fold"}},
            )
        assert resp.status_code == 422
        self.apply_action.assert_not_awaited()


class TestPlayerStateEndpoint:
    @pytest.fixture(autouse=True)
    def _mock(self):
        with patch(f"{PATCH_TM}.verify_player", new_callable=AsyncMock) as m0, \
             patch(f"{PATCH_TM}.get_player_view", new_callable=AsyncMock) as m1:
            self.verify_player = m0
            self.get_player_view = m1
            yield

    async def test_view(self):
        self.get_player_view.return_value = {"phase": "pre-flop", "my_cards": []}
        async with _client() as client:
            resp = await client.get("/api/tables/abc123/state/p0", params={"pin": "1234"})
        assert resp.status_code == 200
        assert resp.json()["phase"] == "pre-flop"
        self.verify_player.assert_awaited_once_with("ABC123", "p0", "1234")
        self.get_player_view.assert_awaited_once_with("ABC123", "p0")

    async def test_pin_required(self):
        async with _client() as client:
            resp = await client.get("/api/tables/ABC123/state/p0")
        assert resp.status_code == 422
        self.get_player_view.assert_not_awaited()

    async def test_wrong_pin_hides_cards(self):
        self.verify_player.side_effect = PermissionError("Invalid player or PIN")
        async with _client() as client:
            resp = await client.get("/api/tables/ABC123/state/p1", params={"pin": "0000"})
        assert resp.status_code == 403
        self.get_player_view.assert_not_awaited()

    async def test_unknown_table(self):
        self.verify_player.side_effect = LookupError("Table not found")
        async with _client() as client:
            resp = await client.get("/api/tables/NOPE00/state/p0", params={"pin": "1234"})
        assert resp.status_code == 404

    async def test_no_hand_yet(self):
        self.get_player_view.side_effect = ValueError("No hand has been dealt at this table")
        async with _client() as client:
            resp = await client.get("/api/tables/ABC123/state/p0", params={"pin": "1234"})
        assert resp.status_code == 400


class TestWebSocketEndpoint:
    @pytest.fixture(autouse=True)
    def _mock(self):
        with patch(f"{PATCH_TM}.get_table_summary", new_callable=AsyncMock) as m0, \
             patch(f"{PATCH_TM}.verify_player", new_callable=AsyncMock) as m1, \
             patch(f"{PATCH_TM}.get_player_view", new_callable=AsyncMock) as m2:
            m0.return_value = _summary(status=TableStatus.IN_HAND)
            self.verify_player = m1
            self.get_player_view = m2
            m2.side_effect = lambda code, viewer: {"viewer": viewer}
            yield

    def test_seat_with_pin_gets_own_view(self):
        client = TestClient(fastapi_app)
        with client.websocket_connect("/ws/ABC123/p0?pin=1234") as ws:
            assert ws.receive_json()["type"] == "table"
            assert ws.receive_json() == {"type": "game_state", "data": {"viewer": "p0"}}
        self.verify_player.assert_awaited_once_with("ABC123", "p0", "1234")

    def test_seat_without_valid_pin_is_refused(self):
        self.verify_player.side_effect = PermissionError("Invalid player or PIN")
        client = TestClient(fastapi_app)
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws/ABC123/p1?pin=0000") as ws:
                ws.receive_json()
        assert exc.value.code == 4003
        self.get_player_view.assert_not_awaited()

    def test_unseated_id_joins_as_spectator(self):
        client = TestClient(fastapi_app)
        with client.websocket_connect("/ws/ABC123/watcher") as ws:
            assert ws.receive_json()["type"] == "table"
            assert ws.receive_json() == {"type": "game_state", "data": {"viewer": None}}
        self.verify_player.assert_not_awaited()
