"""
Settlement pipeline exception hierarchy.

Exception Classes:
- SettlementPipelineError: Base exception, carries the offending entity
- TransientFeedError: Live scoring feed unavailable or timed out (retry next tick)
- DataIncompleteError: Round or matchup not yet reportable (informational)
- ReferentialInconsistencyError: Pick/matchup/result cannot be resolved
- ParlayNotFoundError: Parlay id does not exist
- ConflictError: Concurrent run, or settle/reverse race on the same parlay
- PersistenceError: Storage write failed

Every error names the round, matchup or parlay it concerns so it can be
attached to a run report or API response without losing context.
"""
from typing import Any, Optional


class SettlementPipelineError(Exception):
    """Base exception for the settlement pipeline."""

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.entity_type = entity_type
        self.entity_id = entity_id

    @property
    def error_type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.error_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "message": self.message,
        }


class TransientFeedError(SettlementPipelineError):
    """Live scoring feed unavailable or timed out."""

    def __init__(self, message: str, tournament_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, entity_type="tournament", entity_id=tournament_id)
        self.status_code = status_code


class DataIncompleteError(SettlementPipelineError):
    """Round not complete yet, or a matchup is missing player data."""

    pass


class ReferentialInconsistencyError(SettlementPipelineError):
    """A pick references a matchup, player or result that cannot be resolved."""

    pass


class ParlayNotFoundError(ReferentialInconsistencyError):
    """Parlay does not exist."""

    def __init__(self, parlay_id: str):
        super().__init__(f"Parlay {parlay_id} not found", entity_type="parlay", entity_id=parlay_id)


class ConflictError(SettlementPipelineError):
    """Concurrent modification or an already-active pipeline run."""

    pass


class PersistenceError(SettlementPipelineError):
    """Storage write failure."""

    pass


def round_key(tournament_id: str, round_num: int) -> str:
    """Entity id used for round-scoped errors."""
    return f"{tournament_id}:R{round_num}"
