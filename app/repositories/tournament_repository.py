"""
Tournament and round-state repositories.

TournamentRound rows are the persisted completion state consulted by the
round completion detector; nothing else is used to decide whether a round
has already been reported.
"""
from datetime import datetime, timedelta
from typing import Optional, List, Iterable

from sqlalchemy.orm import Session

from app.models import Tournament, TournamentRound, RoundStatus
from app.repositories.base import BaseRepository


class TournamentRepository(BaseRepository[Tournament]):
    """Repository for tournament data access."""

    def __init__(self, db: Session):
        super().__init__(Tournament, db)

    def find_by_event_id(self, event_id: str) -> Optional[Tournament]:
        return self.where_first(Tournament.event_id == event_id)

    def find_active(self, now: datetime, lookback_hours: int) -> List[Tournament]:
        """
        Tournaments that have started and ended no more than `lookback_hours` ago.

        Args:
            now: Reference time (naive UTC)
            lookback_hours: How long after end_date a tournament stays eligible
        """
        cutoff = now - timedelta(hours=lookback_hours)
        return (
            self.query()
            .filter(Tournament.start_date <= now, Tournament.end_date >= cutoff)
            .order_by(Tournament.start_date)
            .all()
        )


class RoundRepository(BaseRepository[TournamentRound]):
    """Repository for persisted round completion state."""

    def __init__(self, db: Session):
        super().__init__(TournamentRound, db)

    def find(self, tournament_id: str, round_num: int) -> Optional[TournamentRound]:
        return self.where_first(
            TournamentRound.tournament_id == tournament_id,
            TournamentRound.round_num == round_num,
        )

    def get_or_create(self, tournament_id: str, round_num: int) -> TournamentRound:
        """Return the round row, creating it as in_progress when missing."""
        round_state = self.find(tournament_id, round_num)
        if round_state is None:
            round_state = self.create(
                tournament_id=tournament_id,
                round_num=round_num,
                status=RoundStatus.IN_PROGRESS.value,
            )
            self.flush()
        return round_state

    def find_for_tournament(self, tournament_id: str) -> List[TournamentRound]:
        return (
            self.query()
            .filter(TournamentRound.tournament_id == tournament_id)
            .order_by(TournamentRound.round_num)
            .all()
        )

    def find_by_status(self, statuses: Iterable[RoundStatus]) -> List[TournamentRound]:
        values = [s.value for s in statuses]
        return (
            self.query()
            .filter(TournamentRound.status.in_(values))
            .order_by(TournamentRound.completed_at)
            .all()
        )

    def find_completed_since(self, since: datetime) -> List[TournamentRound]:
        """Rounds whose completion was detected at or after `since`, newest first."""
        return (
            self.query()
            .filter(
                TournamentRound.completed_at.isnot(None),
                TournamentRound.completed_at >= since,
            )
            .order_by(TournamentRound.completed_at.desc())
            .all()
        )
