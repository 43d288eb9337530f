"""Per-client views of a game state.

A raw ``GameState`` snapshot is privileged: it carries the deck, the burn
pile and every hole card.  Anything leaving the server goes through
``player_view`` (or ``spectator_view``) first.
"""

from __future__ import annotations

from typing import Any, Optional

from holdem.engine import legal_actions
from holdem.state import EventKind, GameState, Phase

def _went_to_showdown(state: GameState) -> bool:
    return state.phase == Phase.ENDED and any(
        e.kind == EventKind.SHOWDOWN for e in state.events
    )


def player_view(state: GameState, viewer_id: Optional[str]) -> dict[str, Any]:
    """Build the state a single player is allowed to see.

    The viewer's own hole cards are always included.  Other players'
    cards are only shown once the hand has been decided at showdown, and
    then only for players who did not fold.
    """
    data = state.to_snapshot()
    data.pop("deck", None)
    data.pop("burned", None)
    data["deck_remaining"] = len(state.deck)

    reveal = _went_to_showdown(state)
    my_cards: list[dict[str, Any]] = []
    for p_state, p_data in zip(state.players, data["players"]):
        if p_state.id == viewer_id:
            my_cards = p_data["hand"]
        elif not (reveal and not p_state.has_folded):
            p_data["hand"] = []
        p_data["card_count"] = len(p_state.hand)

    active = state.active_player
    data["my_cards"] = my_cards
    data["action_on"] = active.id if active is not None else None
    data["valid_actions"] = legal_actions(state, viewer_id) if viewer_id else []
    return data


def spectator_view(state: GameState) -> dict[str, Any]:
    """View for someone who is not seated: no hole cards before showdown."""
    return player_view(state, None)
