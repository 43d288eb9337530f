"""Round controller for No-Limit Texas Hold'em.

Pure state-transition functions over an immutable ``GameState``:
dealing, blinds, betting rounds, street advancement, showdown and pot
award.  There is no I/O and no concurrency here; callers must apply
actions for a given table one at a time.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Mapping, Optional, Sequence

from pydantic import ValidationError

from holdem.cards import DECK_SIZE, Card, Shuffler, shuffled_deck
from holdem.errors import IllegalAction, InvalidActor, MalformedState
from holdem.evaluator import EvaluatedHand, evaluate
from holdem.state import (
    Bet,
    Call,
    Check,
    EventKind,
    Fold,
    GameEvent,
    GameState,
    Phase,
    PlayerState,
    PotAward,
    Raise,
    SeatSpec,
    parse_action,
)

logger = logging.getLogger(__name__)

# Raise MalformedState instead of logging it (tests and debug runs)
STRICT_INVARIANTS = os.getenv("HOLDEM_STRICT_INVARIANTS", "0") == "1"

MIN_PLAYERS = 2
MAX_PLAYERS = 7

_NEXT_STREET = {
    Phase.PRE_FLOP: Phase.FLOP,
    Phase.FLOP: Phase.TURN,
    Phase.TURN: Phase.RIVER,
}

_STREET_CARDS = {Phase.FLOP: 3, Phase.TURN: 1, Phase.RIVER: 1}

_COMMUNITY_COUNT = {
    Phase.PRE_FLOP: (0,),
    Phase.FLOP: (3,),
    Phase.TURN: (4,),
    Phase.RIVER: (5,),
    Phase.SHOWDOWN: (5,),
    Phase.ENDED: (0, 3, 4, 5),
}


# ------------------------------------------------------------------
# Small state helpers
# ------------------------------------------------------------------


def _say(state: GameState, message: str) -> GameState:
    return state.model_copy(update={"messages": state.messages + (message,)})


def _record(state: GameState, kind: EventKind, **fields: Any) -> GameState:
    event = GameEvent(kind=kind, phase=state.phase, **fields)
    return state.model_copy(update={"events": state.events + (event,)})


def _with_player(state: GameState, idx: int, **changes: Any) -> GameState:
    players = list(state.players)
    players[idx] = players[idx].model_copy(update=changes)
    return state.model_copy(update={"players": tuple(players)})


def _draw(state: GameState, count: int) -> tuple[tuple[Card, ...], GameState]:
    if count > len(state.deck):
        raise MalformedState(
            f"Deck underflow: need {count}, {len(state.deck)} left"
        )
    return state.deck[:count], state.model_copy(update={"deck": state.deck[count:]})


def _commit(state: GameState, idx: int, amount: int) -> GameState:
    """Move chips from a player's stack into the pot."""
    p = state.players[idx]
    if amount < 0 or amount > p.chips:
        raise MalformedState(f"Cannot commit {amount} from a stack of {p.chips}")
    state = _with_player(
        state,
        idx,
        chips=p.chips - amount,
        current_bet=p.current_bet + amount,
        total_bet=p.total_bet + amount,
        is_all_in=p.chips == amount,
    )
    return state.model_copy(update={"pot": state.pot + amount})


def _players_in_hand(state: GameState) -> list[int]:
    """Indices of non-folded players."""
    return [i for i, p in enumerate(state.players) if not p.has_folded]


def _players_who_can_act(state: GameState) -> list[int]:
    """Indices of players who are neither folded nor all-in."""
    return [i for i, p in enumerate(state.players) if p.can_act]


def _seats_after(state: GameState, idx: int) -> list[int]:
    """Every seat index once, starting with the seat left of ``idx``."""
    n = len(state.players)
    return [(idx + offset) % n for offset in range(1, n + 1)]


def _needs_to_act(state: GameState, p: PlayerState) -> bool:
    return p.can_act and (
        not p.has_acted or p.current_bet < state.current_round_bet
    )


# ------------------------------------------------------------------
# Hand lifecycle
# ------------------------------------------------------------------


def _validate_table(
    seats: Sequence[SeatSpec], small_blind_amount: int, big_blind_amount: int
) -> None:
    if not MIN_PLAYERS <= len(seats) <= MAX_PLAYERS:
        raise ValueError(
            f"A hand needs {MIN_PLAYERS}-{MAX_PLAYERS} players, got {len(seats)}"
        )
    ids = [s.id for s in seats]
    if len(set(ids)) != len(ids):
        raise ValueError("Player ids must be unique")
    if small_blind_amount <= 0 or big_blind_amount < small_blind_amount:
        raise ValueError("Blinds must satisfy 0 < small blind <= big blind")


def start_hand(
    players: Sequence[Mapping[str, Any] | SeatSpec],
    dealer_button_index: int,
    small_blind_amount: int,
    big_blind_amount: int,
    rng: Optional[Shuffler] = None,
    hand_number: int = 1,
) -> GameState:
    """Deal a new hand (``waiting -> pre-flop``).

    ``dealer_button_index`` is where the button sat for the previous
    hand; it moves one seat left before the blinds are posted.  Pass a
    seeded ``random.Random`` as ``rng`` for a reproducible deck.
    """
    seats = [p if isinstance(p, SeatSpec) else SeatSpec.model_validate(p) for p in players]
    _validate_table(seats, small_blind_amount, big_blind_amount)

    n = len(seats)
    dealer_idx = (dealer_button_index + 1) % n
    if n == 2:
        # Heads-up: dealer posts the small blind
        sb_idx = dealer_idx
        bb_idx = (dealer_idx + 1) % n
    else:
        sb_idx = (dealer_idx + 1) % n
        bb_idx = (dealer_idx + 2) % n

    state = GameState(
        players=tuple(
            PlayerState(id=s.id, display_name=s.display_name, chips=s.chips)
            for s in seats
        ),
        deck=tuple(shuffled_deck(rng)),
        min_raise=big_blind_amount,
        dealer_button_index=dealer_idx,
        small_blind_index=sb_idx,
        big_blind_index=bb_idx,
        small_blind_amount=small_blind_amount,
        big_blind_amount=big_blind_amount,
        hand_number=hand_number,
    )
    state = state.model_copy(update={"phase": Phase.PRE_FLOP})
    state = _say(state, f"Hand #{hand_number} started!")
    state = _record(
        state,
        EventKind.HAND_STARTED,
        player_id=state.players[dealer_idx].id,
        detail="dealer",
    )

    state = _post_blind(state, sb_idx, small_blind_amount, "small blind")
    state = _post_blind(state, bb_idx, big_blind_amount, "big blind")
    state = _deal_hole_cards(state)

    state = state.model_copy(
        update={
            "current_round_bet": max(p.current_bet for p in state.players),
            "min_raise": big_blind_amount,
            "last_aggressive_action_index": bb_idx,
        }
    )
    logger.info(
        "Hand %d started: %d players, dealer=%s, blinds %d/%d",
        hand_number,
        n,
        state.players[dealer_idx].id,
        small_blind_amount,
        big_blind_amount,
    )

    if _is_round_closed(state):
        # Every blind poster is all-in, or nobody is left with a decision
        state = _advance_street(state)
    else:
        state = state.model_copy(
            update={"active_player_index": _next_to_act(state, bb_idx)}
        )
    _verify(state)
    return state


def _post_blind(state: GameState, idx: int, amount: int, label: str) -> GameState:
    """Post a forced bet; a short stack posts what it has and is all-in."""
    p = state.players[idx]
    actual = min(amount, p.chips)
    state = _commit(state, idx, actual)
    all_in = state.players[idx].is_all_in
    if all_in:
        state = _say(state, f"{p.display_name} posts {label} of {actual} and is all-in.")
    else:
        state = _say(state, f"{p.display_name} posts {label} of {actual}.")
    return _record(
        state,
        EventKind.BLIND_POSTED,
        player_id=p.id,
        amount=actual,
        all_in=all_in,
        detail=label,
    )


def _deal_hole_cards(state: GameState) -> GameState:
    """Two rounds of one card each, starting left of the dealer."""
    order = _seats_after(state, state.dealer_button_index)
    for _ in range(2):
        for idx in order:
            (card,), state = _draw(state, 1)
            state = _with_player(state, idx, hand=state.players[idx].hand + (card,))
    return state


def next_hand(state: GameState, rng: Optional[Shuffler] = None) -> GameState:
    """Start the following hand, carrying chips forward.

    Busted players are dropped and the button moves one seat among the
    players who are left.
    """
    if state.phase != Phase.ENDED:
        raise ValueError("Current hand is still in progress")

    survivors = [i for i, p in enumerate(state.players) if p.chips > 0]
    if len(survivors) < MIN_PLAYERS:
        raise ValueError("Need at least 2 players with chips to deal another hand")

    # Last surviving seat at or before the old button, wrapping around
    previous = len(survivors) - 1
    for k, seat in enumerate(survivors):
        if seat <= state.dealer_button_index:
            previous = k

    seats = [
        SeatSpec(
            id=state.players[i].id,
            display_name=state.players[i].display_name,
            chips=state.players[i].chips,
        )
        for i in survivors
    ]
    return start_hand(
        seats,
        previous,
        state.small_blind_amount,
        state.big_blind_amount,
        rng=rng,
        hand_number=state.hand_number + 1,
    )


# ------------------------------------------------------------------
# Action processing
# ------------------------------------------------------------------


def legal_actions(state: GameState, player_id: str) -> list[dict[str, Any]]:
    """Return the actions the given player may take right now."""
    idx = state.find_player_index(player_id)
    if idx is None or not state.is_live or idx != state.active_player_index:
        return []

    p = state.players[idx]
    if not p.can_act:
        return []

    actions: list[dict[str, Any]] = [{"action": "fold"}]
    to_call = state.current_round_bet - p.current_bet

    if to_call <= 0:
        actions.append({"action": "check"})
    else:
        actions.append({"action": "call", "amount": min(to_call, p.chips)})

    if state.current_round_bet == 0:
        actions.append(
            {
                "action": "bet",
                "min_amount": min(state.big_blind_amount, p.chips),
                "max_amount": p.chips,
            }
        )
    elif p.chips > to_call:
        max_total = p.chips + p.current_bet
        actions.append(
            {
                "action": "raise",
                "min_amount": min(state.current_round_bet + state.min_raise, max_total),
                "max_amount": max_total,
            }
        )

    return actions


def apply_action(state: GameState, player_id: str, action: Any) -> GameState:
    """Validate and apply one player action, returning the next state.

    Out-of-turn and rule-breaking actions never raise: the original state
    comes back with an explanatory line appended to ``messages``.
    """
    try:
        action = parse_action(action)
    except ValidationError as e:
        return _reject(state, player_id, f"Malformed action: {e.errors()[0]['msg']}")

    try:
        idx = _check_actor(state, player_id)
        handler = _HANDLERS[type(action)]
        new_state = handler(state, idx, action)
    except (InvalidActor, IllegalAction) as e:
        return _reject(state, player_id, str(e))

    logger.debug(
        "Hand %d: %s %s", state.hand_number, player_id, action.model_dump()
    )
    try:
        new_state = _after_action(new_state, idx)
    except MalformedState:
        if STRICT_INVARIANTS:
            raise
        logger.error(
            "Could not apply %s for %s in hand %d",
            action.type,
            player_id,
            state.hand_number,
            exc_info=True,
        )
        return _say(state, "Internal error: action ignored.")
    _verify(new_state)
    return new_state


def _reject(state: GameState, player_id: str, reason: str) -> GameState:
    logger.debug("Rejected action from %s: %s", player_id, reason)
    return _say(state, reason)


def _check_actor(state: GameState, player_id: str) -> int:
    if not state.is_live:
        raise IllegalAction(f"No actions accepted: the hand is {state.phase.value}.")
    idx = state.find_player_index(player_id)
    if idx is None:
        raise InvalidActor(f"Unknown player {player_id}.")
    if idx != state.active_player_index:
        raise InvalidActor(
            f"It is not {state.players[idx].display_name}'s turn; "
            f"waiting on {state.players[state.active_player_index].display_name}."
        )
    return idx


def _do_fold(state: GameState, idx: int, action: Fold) -> GameState:
    p = state.players[idx]
    state = _with_player(state, idx, has_folded=True, has_acted=True)
    state = _say(state, f"{p.display_name} folds.")
    return _record(state, EventKind.FOLD, player_id=p.id)


def _do_check(state: GameState, idx: int, action: Check) -> GameState:
    p = state.players[idx]
    if p.current_bet < state.current_round_bet:
        raise IllegalAction("You cannot check, you must call or raise.")
    state = _with_player(state, idx, has_acted=True)
    state = _say(state, f"{p.display_name} checks.")
    return _record(state, EventKind.CHECK, player_id=p.id)


def _do_call(state: GameState, idx: int, action: Call) -> GameState:
    p = state.players[idx]
    owed = state.current_round_bet - p.current_bet
    if owed <= 0:
        raise IllegalAction("There is nothing to call; check instead.")

    amount = min(owed, p.chips)
    state = _commit(state, idx, amount)
    state = _with_player(state, idx, has_acted=True)
    all_in = state.players[idx].is_all_in
    if all_in:
        state = _say(
            state,
            f"{p.display_name} goes all-in for {state.players[idx].current_bet}.",
        )
    else:
        state = _say(state, f"{p.display_name} calls {amount}.")
    return _record(state, EventKind.CALL, player_id=p.id, amount=amount, all_in=all_in)


def _do_bet(state: GameState, idx: int, action: Bet) -> GameState:
    p = state.players[idx]
    amount = action.amount
    if state.current_round_bet > 0:
        raise IllegalAction(
            f"There is already a bet of {state.current_round_bet}; call or raise."
        )
    if amount > p.chips:
        raise IllegalAction("You don't have enough chips to make this bet.")
    all_in = amount == p.chips
    if amount < state.big_blind_amount and not all_in:
        raise IllegalAction(f"Bet must be at least {state.big_blind_amount}.")

    state = _commit(state, idx, amount - p.current_bet)
    state = state.model_copy(
        update={
            "current_round_bet": amount,
            "min_raise": max(state.big_blind_amount, amount),
        }
    )
    state = _mark_aggressor(state, idx)
    if all_in:
        state = _say(state, f"{p.display_name} bets {amount} and is all-in.")
    else:
        state = _say(state, f"{p.display_name} bets {amount}.")
    return _record(state, EventKind.BET, player_id=p.id, amount=amount, all_in=all_in)


def _do_raise(state: GameState, idx: int, action: Raise) -> GameState:
    p = state.players[idx]
    amount = action.amount
    previous = state.current_round_bet
    if previous == 0:
        raise IllegalAction("There is no bet to raise; bet instead.")
    if amount > p.chips + p.current_bet:
        raise IllegalAction("You don't have enough chips to make this raise.")

    all_in = amount == p.chips + p.current_bet
    full_raise = amount >= previous + state.min_raise
    if not full_raise and not (all_in and amount > previous):
        raise IllegalAction(
            f"Raise must be at least {state.min_raise} over the current bet "
            f"of {previous} (to {previous + state.min_raise})."
        )

    state = _commit(state, idx, amount - p.current_bet)
    update: dict[str, Any] = {"current_round_bet": amount}
    if full_raise:
        update["min_raise"] = amount - previous
    state = state.model_copy(update=update)
    state = _mark_aggressor(state, idx)
    if all_in:
        state = _say(state, f"{p.display_name} raises to {amount} and is all-in.")
    else:
        state = _say(state, f"{p.display_name} raises to {amount}.")
    return _record(state, EventKind.RAISE, player_id=p.id, amount=amount, all_in=all_in)


def _mark_aggressor(state: GameState, idx: int) -> GameState:
    """Record the bet/raise and make everyone else respond to it."""
    players = tuple(
        p.model_copy(update={"has_acted": i == idx}) for i, p in enumerate(state.players)
    )
    return state.model_copy(
        update={"players": players, "last_aggressive_action_index": idx}
    )


_HANDLERS: dict[type, Callable[[GameState, int, Any], GameState]] = {
    Fold: _do_fold,
    Check: _do_check,
    Call: _do_call,
    Bet: _do_bet,
    Raise: _do_raise,
}


# ------------------------------------------------------------------
# Round / Street Management
# ------------------------------------------------------------------


def _after_action(state: GameState, idx: int) -> GameState:
    in_hand = _players_in_hand(state)
    if len(in_hand) == 1:
        return _award_uncontested(state, in_hand[0])

    if _is_round_closed(state):
        return _advance_street(state)

    return state.model_copy(update={"active_player_index": _next_to_act(state, idx)})


def _is_round_closed(state: GameState) -> bool:
    """Every player who can still act has acted and matched the bet."""
    actors = [state.players[i] for i in _players_who_can_act(state)]
    if not actors:
        return True
    if len(actors) == 1 and actors[0].current_bet >= state.current_round_bet:
        # Nobody left to bet against
        return True
    return not any(_needs_to_act(state, p) for p in actors)


def _next_to_act(state: GameState, idx: int) -> int:
    for i in _seats_after(state, idx):
        if _needs_to_act(state, state.players[i]):
            return i
    raise MalformedState("Betting round is open but nobody needs to act")


def _advance_street(state: GameState) -> GameState:
    """Close the betting round and deal the next street, or go to showdown."""
    players = tuple(
        p.model_copy(update={"current_bet": 0, "has_acted": False})
        for p in state.players
    )
    state = state.model_copy(
        update={
            "players": players,
            "current_round_bet": 0,
            "min_raise": state.big_blind_amount,
            "last_aggressive_action_index": None,
            "messages": (),
        }
    )

    if state.phase == Phase.RIVER:
        return _showdown(state)

    street = _NEXT_STREET[state.phase]
    burn, state = _draw(state, 1)
    cards, state = _draw(state, _STREET_CARDS[street])
    state = state.model_copy(
        update={
            "phase": street,
            "burned": state.burned + burn,
            "community_cards": state.community_cards + cards,
        }
    )
    state = _say(state, f"--- {street.value.upper()} ---")
    state = _record(state, EventKind.STREET_DEALT, cards=cards)
    logger.debug("Hand %d: dealt %s %s", state.hand_number, street.value, cards)

    if len(_players_who_can_act(state)) < 2:
        # Nobody can bet against anybody: run out the board
        return _advance_street(state)

    first = next(
        i for i in _seats_after(state, state.dealer_button_index)
        if state.players[i].can_act
    )
    return state.model_copy(update={"active_player_index": first})


# ------------------------------------------------------------------
# Showdown & Pot Award
# ------------------------------------------------------------------


def _build_pots(state: GameState) -> list[tuple[int, list[int], set[int]]]:
    """Layer the pot by each player's commitment this hand.

    Returns a list of (pot_amount, [eligible_player_indices],
    {contributor_indices}).  Folded players' chips count toward every
    layer they reached but they are never eligible.
    """
    in_hand = _players_in_hand(state)
    levels = sorted({state.players[i].total_bet for i in in_hand if state.players[i].total_bet > 0})

    pots: list[tuple[int, list[int], set[int]]] = []
    prev_level = 0
    for level in levels:
        amount = sum(
            min(p.total_bet, level) - min(p.total_bet, prev_level)
            for p in state.players
        )
        eligible = [i for i in in_hand if state.players[i].total_bet >= level]
        contributors = {i for i, p in enumerate(state.players) if p.total_bet > prev_level}
        if amount > 0:
            pots.append((amount, eligible, contributors))
        prev_level = level

    # Dead chips above the deepest live commitment join the last pot
    leftover = state.pot - sum(amount for amount, _, _ in pots)
    if leftover and pots:
        amount, eligible, contributors = pots[-1]
        pots[-1] = (amount + leftover, eligible, contributors)
    return pots


def _showdown(state: GameState) -> GameState:
    """Evaluate hands, split every pot among its best hands, end the hand."""
    state = state.model_copy(update={"phase": Phase.SHOWDOWN})
    state = _record(state, EventKind.SHOWDOWN)

    hands: dict[int, EvaluatedHand] = {
        i: evaluate(state.community_cards, state.players[i].hand)
        for i in _players_in_hand(state)
    }
    # Odd chips go to the first winner left of the button
    seat_order = _seats_after(state, state.dealer_button_index)

    awards: list[PotAward] = []
    for pot_index, (amount, eligible, contributors) in enumerate(_build_pots(state)):
        # Only chips nobody else matched go back uncalled; dead chips are won
        if len(eligible) == 1 and contributors == set(eligible):
            awards.append(
                PotAward(
                    player_id=state.players[eligible[0]].id,
                    amount=amount,
                    pot_index=pot_index,
                    refund=True,
                )
            )
            continue

        best = max(hands[i] for i in eligible)
        winners = [i for i in seat_order if i in eligible and hands[i] == best]
        share, remainder = divmod(amount, len(winners))
        for j, i in enumerate(winners):
            awards.append(
                PotAward(
                    player_id=state.players[i].id,
                    amount=share + (1 if j < remainder else 0),
                    pot_index=pot_index,
                    hand=best.name,
                )
            )

    return _finish_hand(state, awards)


def _award_uncontested(state: GameState, winner_idx: int) -> GameState:
    """Everyone else folded: the last player takes the whole pot."""
    award = PotAward(player_id=state.players[winner_idx].id, amount=state.pot)
    return _finish_hand(state, [award])


def _finish_hand(state: GameState, awards: list[PotAward]) -> GameState:
    for award in awards:
        idx = state.find_player_index(award.player_id)
        p = state.players[idx]
        # A paid all-in player has chips behind again
        state = _with_player(state, idx, chips=p.chips + award.amount, is_all_in=False)
        if award.refund:
            message = f"{p.display_name} takes back {award.amount} uncalled."
        elif award.hand is None:
            message = f"{p.display_name} wins {award.amount} chips (everyone else folded)."
        else:
            message = f"{p.display_name} wins {award.amount} chips with {award.hand}!"
        state = _say(state, message)
        state = _record(
            state,
            EventKind.POT_AWARDED,
            player_id=award.player_id,
            amount=award.amount,
            detail=award.hand or ("refund" if award.refund else "uncontested"),
        )
        logger.info(
            "Hand %d: %s receives %d (%s)",
            state.hand_number,
            award.player_id,
            award.amount,
            award.hand or ("refund" if award.refund else "uncontested"),
        )

    paid = sum(a.amount for a in awards)
    if paid != state.pot:
        raise MalformedState(f"Paid out {paid} from a pot of {state.pot}")

    return state.model_copy(
        update={"pot": 0, "phase": Phase.ENDED, "results": tuple(awards)}
    )


# ------------------------------------------------------------------
# Invariants
# ------------------------------------------------------------------


def card_count(state: GameState) -> int:
    """Cards accounted for: deck, burn pile, hole cards and board."""
    return (
        len(state.deck)
        + len(state.burned)
        + sum(len(p.hand) for p in state.players)
        + len(state.community_cards)
    )


def check_invariants(state: GameState) -> None:
    """Raise MalformedState if the state breaks a structural rule."""
    if state.phase == Phase.WAITING:
        return

    if card_count(state) != DECK_SIZE:
        raise MalformedState(f"{card_count(state)} cards accounted for, expected {DECK_SIZE}")

    if len(state.community_cards) not in _COMMUNITY_COUNT[state.phase]:
        raise MalformedState(
            f"{len(state.community_cards)} community cards during {state.phase.value}"
        )

    for p in state.players:
        if p.chips < 0 or p.current_bet < 0 or p.total_bet < 0:
            raise MalformedState(f"Negative chip count for {p.id}")
        if p.is_all_in and p.chips != 0:
            raise MalformedState(f"{p.id} is all-in with {p.chips} chips behind")

    if state.phase == Phase.ENDED:
        if state.pot != 0:
            raise MalformedState(f"Hand ended with {state.pot} left in the pot")
        return

    committed = sum(p.total_bet for p in state.players)
    if state.pot != committed:
        raise MalformedState(f"Pot is {state.pot} but players committed {committed}")

    for p in state.players:
        if p.can_act and p.current_bet > state.current_round_bet:
            raise MalformedState(f"{p.id} bet above the current round bet")

    if state.is_live and state.players[state.active_player_index].has_folded:
        raise MalformedState("Active seat has folded")


def _verify(state: GameState) -> None:
    try:
        check_invariants(state)
    except MalformedState:
        if STRICT_INVARIANTS:
            raise
        logger.error("Invariant violated in hand %d", state.hand_number, exc_info=True)
