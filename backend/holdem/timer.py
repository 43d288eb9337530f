"""Turn timer — background task that acts for players who run out of time.

The engine has no notion of time.  When a deadline passes, this task
injects an ordinary action for the active player: a check when that is
free, otherwise a fold.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Optional

from holdem import engine, table_manager
from holdem.state import Check, Fold, GameState
from holdem.views import player_view

if TYPE_CHECKING:
    from holdem.ws_manager import ConnectionManager

logger = logging.getLogger(__name__)

# How often the timer loop checks for expired deadlines (seconds)
TICK_INTERVAL = 1.0


def timeout_action(state: GameState) -> Check | Fold:
    """Auto-check when nothing is owed, otherwise auto-fold."""
    p = state.players[state.active_player_index]
    if p.current_bet >= state.current_round_bet:
        return Check()
    return Fold()


class ActionTimer:
    """Per-table action deadlines driven by a single asyncio loop."""

    def __init__(self) -> None:
        self._task: asyncio.Task | None = None
        # table_code -> deadline (Unix timestamp)
        self._deadlines: dict[str, float] = {}
        self._manager: ConnectionManager | None = None

    def set_manager(self, manager: "ConnectionManager") -> None:
        """Inject the WebSocket connection manager (avoids circular import)."""
        self._manager = manager

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("Action timer started")

    def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Action timer stopped")

    def set_deadline(self, code: str, deadline: Optional[float]) -> None:
        """Register (or clear) the action deadline for a table."""
        if deadline is None or deadline <= 0:
            self._deadlines.pop(code, None)
        else:
            self._deadlines[code] = deadline

    def expired(self, now: float) -> list[str]:
        """Pop and return the tables whose deadline has passed."""
        codes = [code for code, dl in self._deadlines.items() if now >= dl]
        for code in codes:
            self._deadlines.pop(code, None)
        return codes

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(TICK_INTERVAL)
                for code in self.expired(time.time()):
                    try:
                        await self.handle_timeout(code)
                    except Exception:
                        logger.exception("Timer error for table %s", code)
        except asyncio.CancelledError:
            pass

    async def handle_timeout(self, code: str) -> Optional[GameState]:
        """Act for the player whose turn expired.  Returns the new state, if any."""
        async with table_manager._get_lock(code):
            table_data = await table_manager._load_table(code)
            state = await table_manager._load_state(code)
            if state is None or not state.is_live:
                return None

            deadline = table_data.get("action_deadline")
            if deadline is None:
                return None
            if time.time() < deadline:
                # Player acted in time and the deadline moved; re-register
                self._deadlines[code] = deadline
                return None

            action = timeout_action(state)
            player = state.players[state.active_player_index]
            logger.info(
                "Auto-%s: table=%s player=%s timed out",
                action.type,
                code,
                player.id,
            )
            new_state = engine.apply_action(state, player.id, action)
            await table_manager._save(code, table_data, new_state)

            if table_data.get("action_deadline"):
                self._deadlines[code] = table_data["action_deadline"]

        if self._manager is not None:
            await self._manager.broadcast_views(
                code, lambda viewer: player_view(new_state, viewer)
            )
        return new_state


# Singleton
action_timer = ActionTimer()
