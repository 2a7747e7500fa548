"""
Repositories for parlays, picks and the settlement audit trail.

Parlay and ParlayPick rows are version-checked on every UPDATE; callers
must expect sqlalchemy.orm.exc.StaleDataError on flush/commit when another
writer got there first.
"""
from typing import Optional, List, Dict, Iterable

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models import (
    Matchup,
    Parlay,
    ParlayPick,
    PickSettlementStatus,
    SettlementHistory,
    SettlementAction,
)
from app.repositories.base import BaseRepository


class ParlayRepository(BaseRepository[Parlay]):
    """Repository for parlay data access."""

    def __init__(self, db: Session):
        super().__init__(Parlay, db)

    def find_by_ids(self, ids: Iterable[str]) -> Dict[str, Parlay]:
        ids = list(ids)
        if not ids:
            return {}
        return {p.id: p for p in self.where(Parlay.id.in_(ids))}


class ParlayPickRepository(BaseRepository[ParlayPick]):
    """Repository for parlay pick data access."""

    def __init__(self, db: Session):
        super().__init__(ParlayPick, db)

    def find_by_parlay(self, parlay_id: str) -> List[ParlayPick]:
        return (
            self.query()
            .filter(ParlayPick.parlay_id == parlay_id)
            .order_by(ParlayPick.leg_index)
            .all()
        )

    def find_unsettled_for_matchups(self, matchup_ids: Iterable[str]) -> List[ParlayPick]:
        matchup_ids = list(matchup_ids)
        if not matchup_ids:
            return []
        return (
            self.query()
            .filter(
                ParlayPick.matchup_id.in_(matchup_ids),
                ParlayPick.settlement_status == PickSettlementStatus.UNSETTLED.value,
            )
            .order_by(ParlayPick.parlay_id, ParlayPick.leg_index)
            .all()
        )

    def count_unsettled_for_round(self, tournament_id: str, round_num: int) -> int:
        return (
            self.db.query(func.count(ParlayPick.id))
            .join(Matchup, Matchup.id == ParlayPick.matchup_id)
            .filter(
                Matchup.tournament_id == tournament_id,
                Matchup.round_num == round_num,
                ParlayPick.settlement_status != PickSettlementStatus.SETTLED.value,
            )
            .scalar()
            or 0
        )

    def count_by_status(self) -> Dict[str, int]:
        return {status: count for status, count in self.group_by_and_count("settlement_status")}

    def unsettled_by_tournament(self) -> Dict[str, int]:
        """Count of picks not yet settled, per tournament id."""
        rows = (
            self.db.query(Matchup.tournament_id, func.count(ParlayPick.id))
            .join(Matchup, Matchup.id == ParlayPick.matchup_id)
            .filter(ParlayPick.settlement_status != PickSettlementStatus.SETTLED.value)
            .group_by(Matchup.tournament_id)
            .all()
        )
        return {tournament_id: count for tournament_id, count in rows}


class SettlementHistoryRepository(BaseRepository[SettlementHistory]):
    """Append-only audit trail for settlements and reversals."""

    def __init__(self, db: Session):
        super().__init__(SettlementHistory, db)

    def record(
        self,
        parlay_id: str,
        action: SettlementAction,
        pick_id: Optional[str] = None,
        old_outcome: Optional[str] = None,
        new_outcome: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> SettlementHistory:
        return self.create(
            parlay_id=parlay_id,
            pick_id=pick_id,
            action=action.value,
            old_outcome=old_outcome,
            new_outcome=new_outcome,
            reason=reason,
        )

    def find_by_parlay(self, parlay_id: str) -> List[SettlementHistory]:
        return (
            self.query()
            .filter(SettlementHistory.parlay_id == parlay_id)
            .order_by(SettlementHistory.created_at)
            .all()
        )
