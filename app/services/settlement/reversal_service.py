"""
Settlement reversal for correction workflows.

Resets a parlay and all of its picks to their pre-settlement state in one
transaction; either everything is reset or nothing is. MatchupResults are
not touched, so the next settlement pass re-derives the same outcomes
unless the round is re-ingested with force_reprocess.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import ConflictError, ParlayNotFoundError, PersistenceError
from app.core.logging import get_logger
from app.core.metrics import record_reversal
from app.models import Matchup, ParlayStatus, PickSettlementStatus, RoundStatus, SettlementAction
from app.repositories import ParlayPickRepository, ParlayRepository, RoundRepository, SettlementHistoryRepository
from app.utils.timezone import utcnow

logger = get_logger(__name__)


@dataclass
class ReversalResult:
    parlay_id: str
    picks_reset: int
    reason: str
    previous_outcome: Optional[str] = None
    rounds_reopened: List[Tuple[str, int]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "parlay_id": self.parlay_id,
            "picks_reset": self.picks_reset,
            "reason": self.reason,
            "previous_outcome": self.previous_outcome,
            "rounds_reopened": [
                {"tournament_id": tournament_id, "round_num": round_num}
                for tournament_id, round_num in self.rounds_reopened
            ],
        }


class ReversalService:
    """Undo a parlay settlement."""

    def __init__(self, db: Session):
        self.db = db
        self.parlays = ParlayRepository(db)
        self.picks = ParlayPickRepository(db)
        self.rounds = RoundRepository(db)
        self.history = SettlementHistoryRepository(db)

    def reverse_settlement(self, parlay_id: str, reason: str) -> ReversalResult:
        """
        Reset a parlay to pending and every pick to unsettled.

        Settled rounds the picks belong to are moved back to completed so the
        pipeline picks them up again.

        Raises:
            ParlayNotFoundError: Unknown parlay
            ConflictError: Parlay or a pick changed concurrently (nothing written)
            PersistenceError: Storage failure (nothing written, not retried)
        """
        parlay = self.parlays.find_by_id(parlay_id)
        if parlay is None:
            raise ParlayNotFoundError(parlay_id)

        previous_outcome = parlay.outcome
        now = utcnow()

        try:
            picks = self.picks.find_by_parlay(parlay_id)

            parlay.status = ParlayStatus.PENDING.value
            parlay.outcome = None
            parlay.settled_at = None
            parlay.actual_payout = None
            parlay.updated_at = now  # Forces a versioned UPDATE even on an unsettled parlay

            for pick in picks:
                pick.settlement_status = PickSettlementStatus.UNSETTLED.value
                pick.pick_outcome = None
                pick.settled_at = None
                pick.settlement_notes = None

            self.history.record(
                parlay_id=parlay_id,
                action=SettlementAction.REVERSE,
                old_outcome=previous_outcome,
                reason=reason,
            )

            reopened = self._reopen_rounds([p.matchup_id for p in picks])
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            raise ConflictError(
                f"Parlay {parlay_id} was modified concurrently; reversal not applied, retry",
                entity_type="parlay",
                entity_id=parlay_id,
            ) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(
                f"Parlay {parlay_id}: reversal failed and was rolled back: {e}",
                entity_type="parlay",
                entity_id=parlay_id,
            ) from e

        record_reversal()
        logger.warning(
            f"Reversed settlement of parlay {parlay_id} ({previous_outcome or 'unsettled'}): "
            f"{len(picks)} picks reset, reason: {reason}"
        )

        return ReversalResult(
            parlay_id=parlay_id,
            picks_reset=len(picks),
            reason=reason,
            previous_outcome=previous_outcome,
            rounds_reopened=reopened,
        )

    def _reopen_rounds(self, matchup_ids: List[str]) -> List[Tuple[str, int]]:
        if not matchup_ids:
            return []

        keys = (
            self.db.query(Matchup.tournament_id, Matchup.round_num)
            .filter(Matchup.id.in_(matchup_ids))
            .distinct()
            .all()
        )

        reopened = []
        for tournament_id, round_num in keys:
            state = self.rounds.find(tournament_id, round_num)
            if state is not None and state.status == RoundStatus.SETTLED.value:
                state.status = RoundStatus.COMPLETED.value
                state.settled_at = None
                reopened.append((tournament_id, round_num))
        return reopened
