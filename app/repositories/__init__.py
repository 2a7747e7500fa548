"""
Repository layer for data access.

Usage:
    from app.repositories import MatchupRepository, MatchupResultRepository
    from app.core.database import SessionLocal

    db = SessionLocal()
    results = MatchupResultRepository(db).find_for_round("event-123", 2)
    db.close()
"""

from app.repositories.base import BaseRepository
from app.repositories.tournament_repository import TournamentRepository, RoundRepository
from app.repositories.standing_repository import StandingRepository
from app.repositories.matchup_repository import MatchupRepository, MatchupResultRepository
from app.repositories.parlay_repository import (
    ParlayRepository,
    ParlayPickRepository,
    SettlementHistoryRepository,
)

__all__ = [
    "BaseRepository",
    "TournamentRepository",
    "RoundRepository",
    "StandingRepository",
    "MatchupRepository",
    "MatchupResultRepository",
    "ParlayRepository",
    "ParlayPickRepository",
    "SettlementHistoryRepository",
]
