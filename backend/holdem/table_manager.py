"""Table manager — the boundary between transports and the round controller.

Loads a table's GameState from Redis, applies one action at a time under
a per-table lock, persists the result and hands back redacted views.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import os
import random
import string
import time
import weakref
from typing import Any, Optional

from holdem import engine, redis_client
from holdem.models import CreateTableRequest, SeatInfo, TableStatus, TableSummary
from holdem.state import GameState, Phase
from holdem.views import player_view

logger = logging.getLogger(__name__)

# Seconds a player has to act before the timer acts for them (0 = no timer)
TURN_TIMEOUT = int(os.getenv("TURN_TIMEOUT", "0"))

# A lock lives only while some coroutine holds or waits on it
_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()


def _get_lock(code: str) -> asyncio.Lock:
    """One lock per table: actions for a table are applied strictly in order."""
    lock = _locks.get(code)
    if lock is None:
        lock = _locks[code] = asyncio.Lock()
    return lock


def _generate_code(length: int = 6) -> str:
    """Generate a short uppercase table code."""
    return "".join(random.choices(string.ascii_uppercase + string.digits, k=length))


# ------------------------------------------------------------------
# Table lifecycle
# ------------------------------------------------------------------


async def create_table(req: CreateTableRequest) -> tuple[str, TableSummary]:
    """Create a new table and return (code, summary)."""
    ids = [p.id for p in req.players]
    if len(set(ids)) != len(ids):
        raise ValueError("Player ids must be unique")

    code = _generate_code()
    while await redis_client.load_table(code) is not None:
        code = _generate_code()

    table_data = {
        "code": code,
        "small_blind": req.small_blind,
        "big_blind": req.big_blind,
        "dealer_button_index": req.dealer_button_index,
        "seats": [p.model_dump(exclude={"pin"}) for p in req.players],
        "pin_hashes": {p.id: _hash_pin(code, p.pin) for p in req.players},
        "created_at": time.time(),
        "action_deadline": None,
    }
    await redis_client.store_table(code, table_data)
    logger.info("Created table %s with %d seats", code, len(req.players))

    return code, _build_summary(table_data, None)


async def get_table_summary(code: str) -> Optional[TableSummary]:
    table_data = await redis_client.load_table(code)
    if table_data is None:
        return None
    return _build_summary(table_data, await _load_state(code))


def _build_summary(table_data: dict[str, Any], state: Optional[GameState]) -> TableSummary:
    if state is None:
        status = TableStatus.WAITING
        seats = [SeatInfo(**s) for s in table_data["seats"]]
        hand_number = 0
    else:
        seats = [
            SeatInfo(id=p.id, display_name=p.display_name, chips=p.chips)
            for p in state.players
        ]
        hand_number = state.hand_number
        if state.is_live:
            status = TableStatus.IN_HAND
        elif sum(1 for p in state.players if p.chips > 0) < engine.MIN_PLAYERS:
            status = TableStatus.FINISHED
        else:
            status = TableStatus.BETWEEN_HANDS

    return TableSummary(
        code=table_data["code"],
        status=status,
        small_blind=table_data["small_blind"],
        big_blind=table_data["big_blind"],
        hand_number=hand_number,
        seats=seats,
    )


# ------------------------------------------------------------------
# Engine Operations
# ------------------------------------------------------------------


async def _load_table(code: str) -> dict[str, Any]:
    table_data = await redis_client.load_table(code)
    if table_data is None:
        raise LookupError("Table not found")
    return table_data


def _hash_pin(code: str, pin: str) -> str:
    return hashlib.sha256(f"{code}:{pin}".encode()).hexdigest()


async def verify_player(code: str, player_id: str, pin: str) -> None:
    """Check a seat's PIN before acting or reading as that player."""
    table_data = await _load_table(code)
    pin_hash = table_data.get("pin_hashes", {}).get(player_id)
    if pin_hash is None or not hmac.compare_digest(pin_hash, _hash_pin(code, pin)):
        raise PermissionError("Invalid player or PIN")


async def _load_state(code: str) -> Optional[GameState]:
    data = await redis_client.load_state(code)
    if data is None:
        return None
    return GameState.from_snapshot(data)


async def _save(code: str, table_data: dict[str, Any], state: GameState) -> None:
    table_data["action_deadline"] = (
        time.time() + TURN_TIMEOUT if TURN_TIMEOUT > 0 and state.is_live else None
    )
    await redis_client.store_state(code, state.to_snapshot())
    await redis_client.store_table(code, table_data)


async def start_hand(code: str, seed: Optional[int] = None) -> GameState:
    """Deal the next hand at a table.  Only one hand may be live at a time."""
    async with _get_lock(code):
        table_data = await _load_table(code)
        previous = await _load_state(code)
        rng = random.Random(seed) if seed is not None else None

        if previous is None:
            state = engine.start_hand(
                table_data["seats"],
                table_data["dealer_button_index"],
                table_data["small_blind"],
                table_data["big_blind"],
                rng=rng,
            )
        elif previous.phase != Phase.ENDED:
            raise ValueError("A hand is already in progress")
        else:
            state = engine.next_hand(previous, rng=rng)

        await _save(code, table_data, state)
        logger.info("Table %s: dealt hand %d", code, state.hand_number)
        return state


async def apply_action(
    code: str, player_id: str, action: dict[str, Any]
) -> tuple[GameState, bool]:
    """Apply one player action.  Returns (new state, accepted).

    Rejections come back in ``messages`` of the returned state and are
    not persisted, so only the offending client sees them.
    """
    async with _get_lock(code):
        table_data = await _load_table(code)
        state = await _load_state(code)
        if state is None:
            raise ValueError("No hand has been dealt at this table")

        new_state = engine.apply_action(state, player_id, action)
        ok = accepted(state, new_state)
        if ok:
            await _save(code, table_data, new_state)
        return new_state, ok


def accepted(before: GameState, after: GameState) -> bool:
    """True when ``after`` is the result of an accepted action."""
    return after.events != before.events


async def get_player_view(code: str, player_id: Optional[str]) -> dict[str, Any]:
    """Get the redacted hand state for one player (or a spectator)."""
    await _load_table(code)
    state = await _load_state(code)
    if state is None:
        raise ValueError("No hand has been dealt at this table")
    return player_view(state, player_id)


async def get_action_deadline(code: str) -> Optional[float]:
    table_data = await redis_client.load_table(code)
    if table_data is None:
        return None
    return table_data.get("action_deadline")
