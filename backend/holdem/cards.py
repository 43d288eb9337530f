"""Card, Rank, Suit and deck construction."""

from __future__ import annotations

import random
from enum import IntEnum, Enum
from typing import Protocol

from pydantic import BaseModel, ConfigDict


class Suit(str, Enum):
    HEARTS = "hearts"
    DIAMONDS = "diamonds"
    CLUBS = "clubs"
    SPADES = "spades"


class Rank(IntEnum):
    TWO = 2
    THREE = 3
    FOUR = 4
    FIVE = 5
    SIX = 6
    SEVEN = 7
    EIGHT = 8
    NINE = 9
    TEN = 10
    JACK = 11
    QUEEN = 12
    KING = 13
    ACE = 14


RANK_SYMBOLS = {
    Rank.TWO: "2",
    Rank.THREE: "3",
    Rank.FOUR: "4",
    Rank.FIVE: "5",
    Rank.SIX: "6",
    Rank.SEVEN: "7",
    Rank.EIGHT: "8",
    Rank.NINE: "9",
    Rank.TEN: "T",
    Rank.JACK: "J",
    Rank.QUEEN: "Q",
    Rank.KING: "K",
    Rank.ACE: "A",
}

SUIT_SYMBOLS = {
    Suit.HEARTS: "♥",
    Suit.DIAMONDS: "♦",
    Suit.CLUBS: "♣",
    Suit.SPADES: "♠",
}

_SUIT_CHARS = {
    "h": Suit.HEARTS,
    "d": Suit.DIAMONDS,
    "c": Suit.CLUBS,
    "s": Suit.SPADES,
}

_RANK_CHARS = {v: k for k, v in RANK_SYMBOLS.items()}
_RANK_CHARS["10"] = Rank.TEN

DECK_SIZE = 52


class Shuffler(Protocol):
    """Anything that can permute a list in place (``random.Random`` does)."""

    def shuffle(self, x: list) -> None: ...


class Card(BaseModel):
    """Immutable playing card."""

    model_config = ConfigDict(frozen=True)

    rank: Rank
    suit: Suit

    def __init__(self, rank: Rank, suit: Suit, **data) -> None:
        super().__init__(rank=rank, suit=suit, **data)

    def __repr__(self) -> str:
        return f"{RANK_SYMBOLS[self.rank]}{self.suit.value[0]}"

    __str__ = __repr__

    @property
    def pretty(self) -> str:
        return f"{RANK_SYMBOLS[self.rank]}{SUIT_SYMBOLS[self.suit]}"

    def to_dict(self) -> dict:
        return {"rank": self.rank.value, "suit": self.suit.value}

    @classmethod
    def from_dict(cls, data: dict) -> Card:
        return cls(Rank(data["rank"]), Suit(data["suit"]))

    @classmethod
    def from_str(cls, s: str) -> Card:
        """Parse 'Ah', 'Ts', '10s', '2c' etc."""
        s = s.strip()
        if len(s) < 2:
            raise ValueError(f"Invalid card: {s!r}")
        rank_part, suit_char = s[:-1].upper(), s[-1].lower()
        if rank_part not in _RANK_CHARS or suit_char not in _SUIT_CHARS:
            raise ValueError(f"Invalid card: {s!r}")
        return cls(_RANK_CHARS[rank_part], _SUIT_CHARS[suit_char])


def parse_cards(text: str) -> list[Card]:
    """Parse a space-separated list of card codes."""
    return [Card.from_str(c) for c in text.split()]


def build_deck() -> list[Card]:
    """Return the 52 cards in suit-major, rank-ascending order."""
    return [Card(rank, suit) for suit in Suit for rank in Rank]


def shuffled_deck(rng: Shuffler | None = None) -> list[Card]:
    """Build a fresh deck and permute it uniformly (Fisher-Yates)."""
    cards = build_deck()
    (rng or random.Random()).shuffle(cards)
    return cards
