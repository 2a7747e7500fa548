"""
Core services shared by the settlement pipeline.

- circuit_breaker: pybreaker instances guarding external feeds
- parlay_service: Parlay payout aggregation from settled legs
"""
from app.services.core.parlay_service import (
    LegResult,
    ParlayOutcome,
    aggregate_parlay,
    combined_decimal_odds,
    to_decimal_odds,
)

__all__ = [
    "LegResult",
    "ParlayOutcome",
    "aggregate_parlay",
    "combined_decimal_odds",
    "to_decimal_odds",
]
