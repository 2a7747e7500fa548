"""
Parlay outcome aggregation and payout math.

Aggregation law:
- any losing leg  -> loss, payout 0
- every leg a push -> push, stake returned
- otherwise        -> win, stake x product of the decimal odds of winning legs

Push legs are dropped from the payout product (the parlay is recombined
over the remaining legs), so [win @ 2.0, push] on a 10.00 stake pays 20.00.
"""
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from app.models import Outcome


@dataclass(frozen=True)
class LegResult:
    """Settled leg as seen by the aggregator."""

    outcome: str
    odds: Optional[float] = None


@dataclass(frozen=True)
class ParlayOutcome:
    outcome: str
    payout: float
    winning_legs: int
    push_legs: int


def to_decimal_odds(odds: float) -> float:
    """
    Convert odds to decimal format.

    Auto-detects input format:
    - American odds: |value| >= 100 (e.g., -110, +200)
    - Decimal odds: anything else (e.g., 1.91, 2.50)

    Raises:
        ValueError: Decimal odds at or below 1.0 cannot pay out
    """
    if abs(odds) >= 100:
        if odds > 0:
            return (odds / 100) + 1
        return (100 / abs(odds)) + 1

    if odds <= 1.0:
        raise ValueError(f"Invalid decimal odds: {odds}")
    return float(odds)


def combined_decimal_odds(odds: Iterable[float]) -> float:
    """Product of decimal odds for the given legs (1.0 for no legs)."""
    combined = 1.0
    for value in odds:
        combined *= to_decimal_odds(value)
    return combined


def aggregate_parlay(stake: float, legs: Sequence[LegResult]) -> ParlayOutcome:
    """
    Decide a fully-settled parlay's outcome and payout.

    Args:
        stake: Amount wagered
        legs: Every leg of the parlay, each with a terminal outcome

    Raises:
        ValueError: No legs, a leg without a terminal outcome, or a winning
                    leg without usable odds
    """
    if not legs:
        raise ValueError("Parlay has no legs")

    outcomes = [leg.outcome for leg in legs]
    unknown = [o for o in outcomes if o not in (Outcome.WIN.value, Outcome.LOSS.value, Outcome.PUSH.value)]
    if unknown:
        raise ValueError(f"Legs without a terminal outcome: {unknown}")

    winning = [leg for leg in legs if leg.outcome == Outcome.WIN.value]
    pushes = sum(1 for o in outcomes if o == Outcome.PUSH.value)

    if Outcome.LOSS.value in outcomes:
        return ParlayOutcome(Outcome.LOSS.value, 0.0, len(winning), pushes)

    if not winning:
        return ParlayOutcome(Outcome.PUSH.value, round(float(stake), 2), 0, pushes)

    missing_odds = [i for i, leg in enumerate(legs) if leg.outcome == Outcome.WIN.value and leg.odds is None]
    if missing_odds:
        raise ValueError(f"Winning legs without odds at positions {missing_odds}")

    payout = float(stake) * combined_decimal_odds(leg.odds for leg in winning)
    return ParlayOutcome(Outcome.WIN.value, round(payout, 2), len(winning), pushes)
