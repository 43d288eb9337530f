"""Pydantic request/response models for the table service."""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from holdem.engine import MAX_PLAYERS, MIN_PLAYERS
from holdem.state import SeatSpec


class TableStatus(str, Enum):
    WAITING = "waiting"
    IN_HAND = "in_hand"
    BETWEEN_HANDS = "between_hands"
    FINISHED = "finished"


# --- Request models ---

PIN_PATTERN = r"^\d{4}$"


class SeatRequest(SeatSpec):
    """A seat at table creation, with the PIN that proves its owner."""

    pin: str = Field(..., pattern=PIN_PATTERN)


class CreateTableRequest(BaseModel):
    players: list[SeatRequest] = Field(..., min_length=MIN_PLAYERS, max_length=MAX_PLAYERS)
    small_blind: int = Field(default=10, ge=1)
    big_blind: int = Field(default=20, ge=1)
    dealer_button_index: int = Field(default=-1, ge=-1)

    @model_validator(mode="after")
    def _check_blinds(self) -> CreateTableRequest:
        if self.big_blind < self.small_blind:
            raise ValueError("big_blind must be at least small_blind")
        return self


class ActionRequest(BaseModel):
    player_id: str
    pin: str = Field(..., pattern=PIN_PATTERN)
    action: dict[str, Any]  # {"type": "raise", "amount": 60}


class StartHandRequest(BaseModel):
    player_id: str
    pin: str = Field(..., pattern=PIN_PATTERN)
    seed: Optional[int] = None  # deterministic deck for replays/tests


# --- Response / state models ---


class SeatInfo(BaseModel):
    """Public-facing seat information (no cards)."""

    id: str
    display_name: str
    chips: int


class TableSummary(BaseModel):
    code: str
    status: TableStatus
    small_blind: int
    big_blind: int
    hand_number: int
    seats: list[SeatInfo]


class CreateTableResponse(BaseModel):
    code: str
    table: TableSummary


class ErrorResponse(BaseModel):
    detail: str
