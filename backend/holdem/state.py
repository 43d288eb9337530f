"""Immutable game state, actions and events for the round controller.

Everything here is a frozen pydantic model.  The engine never mutates a
state in place; each transition builds a new value with ``model_copy``.

A raw ``GameState`` is privileged: it carries every player's hole cards
and the undealt deck.  Use ``holdem.views.player_view`` before sending
a snapshot to a client.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from holdem.cards import Card


class Phase(str, Enum):
    WAITING = "waiting"
    PRE_FLOP = "pre-flop"
    FLOP = "flop"
    TURN = "turn"
    RIVER = "river"
    SHOWDOWN = "showdown"
    ENDED = "ended"


BETTING_PHASES = frozenset({Phase.PRE_FLOP, Phase.FLOP, Phase.TURN, Phase.RIVER})


# ------------------------------------------------------------------
# Actions
# ------------------------------------------------------------------


class _Action(BaseModel):
    model_config = ConfigDict(frozen=True)


class Fold(_Action):
    type: Literal["fold"] = "fold"


class Check(_Action):
    type: Literal["check"] = "check"


class Call(_Action):
    type: Literal["call"] = "call"


class Bet(_Action):
    """Open the betting for this round with ``amount`` chips."""

    type: Literal["bet"] = "bet"
    amount: int = Field(..., gt=0)


class Raise(_Action):
    """Raise to ``amount``: the new total committed this round, not the increment."""

    type: Literal["raise"] = "raise"
    amount: int = Field(..., gt=0)


Action = Annotated[Union[Fold, Check, Call, Bet, Raise], Field(discriminator="type")]

_action_adapter: TypeAdapter[Any] = TypeAdapter(Action)


def parse_action(data: Any) -> Union[Fold, Check, Call, Bet, Raise]:
    """Validate a serialized action such as ``{"type": "raise", "amount": 60}``."""
    if isinstance(data, _Action):
        return data
    return _action_adapter.validate_python(data)


# ------------------------------------------------------------------
# Events
# ------------------------------------------------------------------


class EventKind(str, Enum):
    HAND_STARTED = "hand_started"
    BLIND_POSTED = "blind_posted"
    FOLD = "fold"
    CHECK = "check"
    CALL = "call"
    BET = "bet"
    RAISE = "raise"
    STREET_DEALT = "street_dealt"
    SHOWDOWN = "showdown"
    POT_AWARDED = "pot_awarded"


class GameEvent(BaseModel):
    """Machine-readable record of one thing that happened in a hand."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    phase: Phase
    player_id: Optional[str] = None
    amount: int = 0
    all_in: bool = False
    cards: tuple[Card, ...] = ()
    detail: str = ""


class PotAward(BaseModel):
    """Chips paid out of one pot to one player when a hand ends."""

    model_config = ConfigDict(frozen=True)

    player_id: str
    amount: int
    pot_index: int = 0
    hand: Optional[str] = None
    refund: bool = False


# ------------------------------------------------------------------
# Players and table
# ------------------------------------------------------------------


class SeatSpec(BaseModel):
    """What the engine needs to seat a player at the start of a hand."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)
    chips: int = Field(..., gt=0)


class PlayerState(BaseModel):
    """Per-hand state for a single seat."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    chips: int = Field(..., ge=0)
    hand: tuple[Card, ...] = ()
    current_bet: int = 0
    total_bet: int = 0
    has_folded: bool = False
    is_all_in: bool = False
    has_acted: bool = False

    @property
    def can_act(self) -> bool:
        """Still in the hand with chips behind."""
        return not self.has_folded and not self.is_all_in


class GameState(BaseModel):
    """Aggregate root for one hand at one table."""

    model_config = ConfigDict(frozen=True)

    players: tuple[PlayerState, ...]
    deck: tuple[Card, ...] = ()
    burned: tuple[Card, ...] = ()
    community_cards: tuple[Card, ...] = ()
    pot: int = 0
    current_round_bet: int = 0
    min_raise: int = 0
    active_player_index: int = 0
    dealer_button_index: int = 0
    small_blind_index: int = 0
    big_blind_index: int = 0
    last_aggressive_action_index: Optional[int] = None
    small_blind_amount: int
    big_blind_amount: int
    phase: Phase = Phase.WAITING
    hand_number: int = 1
    messages: tuple[str, ...] = ()
    events: tuple[GameEvent, ...] = ()
    results: tuple[PotAward, ...] = ()

    @property
    def is_live(self) -> bool:
        return self.phase in BETTING_PHASES

    @property
    def active_player(self) -> Optional[PlayerState]:
        if not self.is_live:
            return None
        return self.players[self.active_player_index]

    def find_player_index(self, player_id: str) -> Optional[int]:
        for i, p in enumerate(self.players):
            if p.id == player_id:
                return i
        return None

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_snapshot(self) -> dict[str, Any]:
        """JSON-ready dict of the full (privileged) state."""
        return self.model_dump(mode="json")

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> GameState:
        return cls.model_validate(data)
