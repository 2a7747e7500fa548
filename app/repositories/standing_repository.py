"""
Repository for live per-player round standings.

Standings are overwritten on every feed poll, keyed by
(tournament_id, round_num, player_id).
"""
from typing import List, Iterable, Dict

from sqlalchemy.orm import Session

from app.models import PlayerRoundStanding
from app.repositories.base import BaseRepository


class StandingRepository(BaseRepository[PlayerRoundStanding]):
    """Repository for PlayerRoundStanding data access."""

    def __init__(self, db: Session):
        super().__init__(PlayerRoundStanding, db)

    def find_for_round(self, tournament_id: str, round_num: int) -> List[PlayerRoundStanding]:
        return self.where(
            PlayerRoundStanding.tournament_id == tournament_id,
            PlayerRoundStanding.round_num == round_num,
        )

    def find_by_player(self, tournament_id: str, round_num: int) -> Dict[str, PlayerRoundStanding]:
        """Standings for a round indexed by player id."""
        return {s.player_id: s for s in self.find_for_round(tournament_id, round_num)}

    def replace_round(self, tournament_id: str, round_num: int, records: Iterable) -> int:
        """
        Overwrite the stored snapshot with freshly fetched standings.

        Players absent from `records` keep their previous row; the feed is
        partial by nature and a missing entry is not a withdrawal.

        Args:
            records: StandingRecord objects from the live score gateway

        Returns:
            Number of rows written
        """
        existing = self.find_by_player(tournament_id, round_num)
        written = 0

        for record in records:
            values = {
                "player_name": record.player_name,
                "position": record.position,
                "today_score": record.today,
                "thru": record.thru,
                "total_score": record.total,
                "feed_updated_at": record.feed_updated_at,
            }
            standing = existing.get(record.player_id)
            if standing is None:
                standing = self.create(
                    tournament_id=tournament_id,
                    round_num=round_num,
                    player_id=record.player_id,
                    **values,
                )
                existing[record.player_id] = standing
            else:
                for key, value in values.items():
                    setattr(standing, key, value)
            written += 1

        return written
