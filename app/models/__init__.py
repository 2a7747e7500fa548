"""
Models Module

Usage:
    from app.models import Tournament, Matchup, MatchupResult, Parlay, ParlayPick
"""

from app.models.models import (
    Base,
    RoundStatus,
    MatchupType,
    WinMethod,
    PickSettlementStatus,
    ParlayStatus,
    Outcome,
    SettlementAction,
    Tournament,
    TournamentRound,
    PlayerRoundStanding,
    Matchup,
    MatchupResult,
    Parlay,
    ParlayPick,
    SettlementHistory,
)

__all__ = [
    "Base",
    "RoundStatus",
    "MatchupType",
    "WinMethod",
    "PickSettlementStatus",
    "ParlayStatus",
    "Outcome",
    "SettlementAction",
    "Tournament",
    "TournamentRound",
    "PlayerRoundStanding",
    "Matchup",
    "MatchupResult",
    "Parlay",
    "ParlayPick",
    "SettlementHistory",
]
