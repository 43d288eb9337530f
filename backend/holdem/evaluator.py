"""Texas Hold'em hand evaluator.

Scores the best 5-card hand available in a pool of up to 7 cards by
counting rank and suit frequencies over the whole pool instead of
enumerating the 21 five-card subsets.  The result is an EvaluatedHand
that can be compared directly (higher is better).
"""

from __future__ import annotations

from collections import Counter
from enum import IntEnum
from typing import Sequence

from holdem.cards import Card

WHEEL = (14, 5, 4, 3, 2)


class HandCategory(IntEnum):
    HIGH_CARD = 0
    ONE_PAIR = 1
    TWO_PAIR = 2
    THREE_OF_A_KIND = 3
    STRAIGHT = 4
    FLUSH = 5
    FULL_HOUSE = 6
    FOUR_OF_A_KIND = 7
    STRAIGHT_FLUSH = 8


HAND_NAMES = {
    HandCategory.HIGH_CARD: "High Card",
    HandCategory.ONE_PAIR: "One Pair",
    HandCategory.TWO_PAIR: "Two Pair",
    HandCategory.THREE_OF_A_KIND: "Three of a Kind",
    HandCategory.STRAIGHT: "Straight",
    HandCategory.FLUSH: "Flush",
    HandCategory.FULL_HOUSE: "Full House",
    HandCategory.FOUR_OF_A_KIND: "Four of a Kind",
    HandCategory.STRAIGHT_FLUSH: "Straight Flush",
}


class EvaluatedHand:
    """Comparable hand ranking.

    ``category`` decides first; ``high_cards`` breaks ties element by
    element.  Two EvaluatedHands can be compared with < > ==.
    """

    __slots__ = ("category", "high_cards")

    def __init__(self, category: HandCategory, high_cards: Sequence[int]) -> None:
        self.category = category
        self.high_cards = tuple(int(v) for v in high_cards)

    @property
    def rank_value(self) -> int:
        return int(self.category)

    @property
    def _key(self) -> tuple[int, ...]:
        return (self.rank_value,) + self.high_cards

    def __lt__(self, other: EvaluatedHand) -> bool:
        return self._key < other._key

    def __gt__(self, other: EvaluatedHand) -> bool:
        return self._key > other._key

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EvaluatedHand):
            return NotImplemented
        return self._key == other._key

    def __le__(self, other: EvaluatedHand) -> bool:
        return self._key <= other._key

    def __ge__(self, other: EvaluatedHand) -> bool:
        return self._key >= other._key

    def __hash__(self) -> int:
        return hash(self._key)

    @property
    def name(self) -> str:
        return HAND_NAMES[self.category]

    def to_dict(self) -> dict:
        return {
            "rank_category": self.name,
            "rank_value": self.rank_value,
            "high_cards": list(self.high_cards),
        }

    def __repr__(self) -> str:
        return f"EvaluatedHand({self.name}, {self.high_cards})"


def _straight_high(values_desc: Sequence[int]) -> int:
    """High card of the best straight in distinct descending values, else 0."""
    for i in range(len(values_desc) - 4):
        if values_desc[i] - values_desc[i + 4] == 4:
            return values_desc[i]
    if all(v in values_desc for v in WHEEL):
        return 5
    return 0


def evaluate(community: Sequence[Card], hole: Sequence[Card]) -> EvaluatedHand:
    """Evaluate the best hand made from community cards plus hole cards.

    Accepts 0-5 community cards and exactly 2 hole cards.  Pools with
    fewer than five cards still rank (a pair, trips or high card), which
    is what a mid-hand read needs.
    """
    if len(hole) != 2:
        raise ValueError(f"Need exactly 2 hole cards, got {len(hole)}")
    if len(community) > 5:
        raise ValueError(f"At most 5 community cards, got {len(community)}")
    return evaluate_pool(list(community) + list(hole))


def evaluate_pool(cards: Sequence[Card]) -> EvaluatedHand:
    """Evaluate any pool of up to 7 cards without regard to who holds them."""
    if len(set(cards)) != len(cards):
        raise ValueError("Duplicate cards in pool")

    values = sorted((int(c.rank) for c in cards), reverse=True)
    rank_counts = Counter(values)
    by_suit: dict[str, list[int]] = {}
    for c in cards:
        by_suit.setdefault(c.suit.value, []).append(int(c.rank))

    flush_values: list[int] = []
    for suit_values in by_suit.values():
        if len(suit_values) >= 5:
            flush_values = sorted(suit_values, reverse=True)
            break

    unique_values = sorted(rank_counts, reverse=True)

    if flush_values:
        sf_high = _straight_high(flush_values)
        if sf_high:
            return EvaluatedHand(HandCategory.STRAIGHT_FLUSH, (sf_high,))

    quads = [v for v in unique_values if rank_counts[v] == 4]
    trips = [v for v in unique_values if rank_counts[v] == 3]
    pairs = [v for v in unique_values if rank_counts[v] == 2]

    if quads:
        kickers = [v for v in unique_values if v != quads[0]][:1]
        return EvaluatedHand(HandCategory.FOUR_OF_A_KIND, [quads[0]] + kickers)

    if trips and (pairs or len(trips) > 1):
        low = max(trips[1:] + pairs)
        return EvaluatedHand(HandCategory.FULL_HOUSE, (trips[0], low))

    if flush_values:
        return EvaluatedHand(HandCategory.FLUSH, flush_values[:5])

    straight_high = _straight_high(unique_values)
    if straight_high:
        return EvaluatedHand(HandCategory.STRAIGHT, (straight_high,))

    if trips:
        kickers = [v for v in unique_values if v != trips[0]][:2]
        return EvaluatedHand(HandCategory.THREE_OF_A_KIND, [trips[0]] + kickers)

    if len(pairs) >= 2:
        top_two = pairs[:2]
        kickers = [v for v in unique_values if v not in top_two][:1]
        return EvaluatedHand(HandCategory.TWO_PAIR, top_two + kickers)

    if pairs:
        kickers = [v for v in unique_values if v != pairs[0]][:3]
        return EvaluatedHand(HandCategory.ONE_PAIR, [pairs[0]] + kickers)

    return EvaluatedHand(HandCategory.HIGH_CARD, values[:5])


def compare_hands(a: EvaluatedHand, b: EvaluatedHand) -> int:
    """Return 1 if a wins, -1 if b wins, 0 on an exact tie."""
    if a > b:
        return 1
    if a < b:
        return -1
    return 0


def determine_winners(
    player_hands: dict[str, EvaluatedHand],
) -> list[str]:
    """Given {player_id: EvaluatedHand}, return list of winner player_ids (ties possible)."""
    if not player_hands:
        return []

    best = max(player_hands.values())
    return [pid for pid, hand in player_hands.items() if hand == best]
