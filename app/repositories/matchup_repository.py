"""
Repositories for matchups and their canonical results.

MatchupResult identity is (matchup_id, event_id, round_num); `upsert` is the
only write path used by ingestion and the operator API.
"""
from datetime import datetime
from typing import Optional, List, Tuple, Dict, Any

from sqlalchemy.orm import Session

from app.models import Matchup, MatchupResult
from app.repositories.base import BaseRepository


class MatchupRepository(BaseRepository[Matchup]):
    """Repository for matchup data access."""

    def __init__(self, db: Session):
        super().__init__(Matchup, db)

    def find_by_round(self, tournament_id: str, round_num: int) -> List[Matchup]:
        return (
            self.query()
            .filter(Matchup.tournament_id == tournament_id, Matchup.round_num == round_num)
            .order_by(Matchup.created_at, Matchup.id)
            .all()
        )

    def find_by_ids(self, ids: List[str]) -> Dict[str, Matchup]:
        if not ids:
            return {}
        return {m.id: m for m in self.where(Matchup.id.in_(ids))}


class MatchupResultRepository(BaseRepository[MatchupResult]):
    """Repository for MatchupResult data access."""

    # Outcomes of upsert()
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"

    def __init__(self, db: Session):
        super().__init__(MatchupResult, db)

    def find_by_key(self, matchup_id: str, event_id: str, round_num: int) -> Optional[MatchupResult]:
        return self.where_first(
            MatchupResult.matchup_id == matchup_id,
            MatchupResult.event_id == event_id,
            MatchupResult.round_num == round_num,
        )

    def find_for_round(self, event_id: str, round_num: int) -> List[MatchupResult]:
        return self.where(
            MatchupResult.event_id == event_id,
            MatchupResult.round_num == round_num,
        )

    def search(
        self,
        event_id: Optional[str] = None,
        round_num: Optional[int] = None,
        matchup_id: Optional[str] = None,
        limit: int = 500,
    ) -> List[MatchupResult]:
        """List results filtered by tournament, round and/or matchup, newest first."""
        query = self.query()
        if event_id:
            query = query.filter(MatchupResult.event_id == event_id)
        if round_num is not None:
            query = query.filter(MatchupResult.round_num == round_num)
        if matchup_id:
            query = query.filter(MatchupResult.matchup_id == matchup_id)
        return query.order_by(MatchupResult.result_determined_at.desc()).limit(limit).all()

    def upsert(
        self,
        matchup_id: str,
        event_id: str,
        round_num: int,
        values: Dict[str, Any],
        determined_at: datetime,
        overwrite: bool = False,
    ) -> Tuple[MatchupResult, str]:
        """
        Insert-or-update by (matchup_id, event_id, round_num).

        An existing row is only modified when `overwrite` is True; otherwise it
        is returned untouched, including its result_determined_at.

        Returns:
            (result, one of CREATED / UPDATED / UNCHANGED)
        """
        existing = self.find_by_key(matchup_id, event_id, round_num)

        if existing is None:
            result = self.create(
                matchup_id=matchup_id,
                event_id=event_id,
                round_num=round_num,
                result_determined_at=determined_at,
                **values,
            )
            return result, self.CREATED

        if not overwrite:
            return existing, self.UNCHANGED

        for key, value in values.items():
            setattr(existing, key, value)
        existing.result_determined_at = determined_at
        return existing, self.UPDATED

    def matchup_ids_with_results(self, event_id: str, round_num: int) -> set[str]:
        rows = (
            self.db.query(MatchupResult.matchup_id)
            .filter(MatchupResult.event_id == event_id, MatchupResult.round_num == round_num)
            .all()
        )
        return {row[0] for row in rows}
