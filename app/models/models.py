"""
Database models for the golf matchup settlement API.

Tournament, Matchup and bet-line data originate from external imports.
MatchupResult and the settlement columns on Parlay / ParlayPick are owned
by the settlement pipeline. Status columns hold the values of the enums
below; timestamps are metadata only.
"""
from enum import Enum

from sqlalchemy import Column, String, Float, Integer, DateTime, ForeignKey, Boolean, Text, Index, UniqueConstraint
from sqlalchemy.orm import relationship, declarative_base

from app.utils.timezone import utcnow

Base = declarative_base()


# =============================================================================
# STATUS ENUMS
# =============================================================================

class RoundStatus(str, Enum):
    """Round lifecycle. Only reversal moves a round backwards (settled -> completed)."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"  # Detector saw the completion threshold
    RESULTS_INGESTED = "results_ingested"  # Every matchup has a result; eligible for settlement
    SETTLED = "settled"


class MatchupType(str, Enum):
    TWO_BALL = "2ball"
    THREE_BALL = "3ball"


class WinMethod(str, Enum):
    LOWEST_SCORE = "lowest_score"
    TIE = "tie"
    WITHDRAWAL = "withdrawal"
    MANUAL = "manual"


class PickSettlementStatus(str, Enum):
    UNSETTLED = "unsettled"
    PENDING = "pending"
    SETTLED = "settled"


class ParlayStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"


class Outcome(str, Enum):
    """Terminal outcome shared by picks and parlays."""

    WIN = "win"
    LOSS = "loss"
    PUSH = "push"


class SettlementAction(str, Enum):
    SETTLE = "settle"
    REVERSE = "reverse"


# =============================================================================
# TOURNAMENTS & ROUNDS
# =============================================================================

class Tournament(Base):
    """Golf tournament, refreshed by the external schedule sync."""
    __tablename__ = "tournaments"

    id = Column(String(36), primary_key=True)
    event_id = Column(String(50), unique=True, nullable=False, index=True)  # DataGolf event id
    name = Column(String(255), nullable=False)
    course = Column(String(255), nullable=True)
    tour = Column(String(20), nullable=False, default="pga")  # pga, euro, kft, alt
    start_date = Column(DateTime, nullable=False, index=True)
    end_date = Column(DateTime, nullable=False, index=True)
    num_rounds = Column(Integer, nullable=False, default=4)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    rounds = relationship("TournamentRound", back_populates="tournament", cascade="all, delete-orphan")
    matchups = relationship("Matchup", back_populates="tournament", cascade="all, delete-orphan")


class TournamentRound(Base):
    """Persisted completion state of one round; the detector's dedupe source."""
    __tablename__ = "tournament_rounds"

    id = Column(String(36), primary_key=True)
    tournament_id = Column(String(36), ForeignKey("tournaments.id", ondelete="CASCADE"), nullable=False, index=True)
    round_num = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=RoundStatus.IN_PROGRESS.value, index=True)
    completion_percentage = Column(Float, nullable=True)
    players_total = Column(Integer, nullable=True)
    players_completed = Column(Integer, nullable=True)
    completed_at = Column(DateTime, nullable=True, index=True)
    settled_at = Column(DateTime, nullable=True)
    last_checked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    tournament = relationship("Tournament", back_populates="rounds")

    __table_args__ = (
        UniqueConstraint('tournament_id', 'round_num', name='uq_tournament_round'),
    )


class PlayerRoundStanding(Base):
    """Latest live-feed snapshot for a player in a round. Overwritten on every poll."""
    __tablename__ = "player_round_standings"

    id = Column(String(36), primary_key=True)
    tournament_id = Column(String(36), ForeignKey("tournaments.id", ondelete="CASCADE"), nullable=False)
    round_num = Column(Integer, nullable=False)
    player_id = Column(String(50), nullable=False)  # DataGolf dg_id
    player_name = Column(String(255), nullable=True)
    position = Column(String(10), nullable=True)  # "T5", "CUT", "WD", ...
    today_score = Column(Integer, nullable=True)  # Relative to par for the round
    thru = Column(Integer, nullable=True)  # Holes completed, 0-18
    total_score = Column(Integer, nullable=True)  # Relative to par for the event
    feed_updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('tournament_id', 'round_num', 'player_id', name='uq_standing_player_round'),
        Index('ix_standings_round', 'tournament_id', 'round_num'),
    )


# =============================================================================
# MATCHUPS & RESULTS
# =============================================================================

class Matchup(Base):
    """2-ball or 3-ball head-to-head market for a single round."""
    __tablename__ = "matchups"

    id = Column(String(36), primary_key=True)
    tournament_id = Column(String(36), ForeignKey("tournaments.id", ondelete="CASCADE"), nullable=False, index=True)
    round_num = Column(Integer, nullable=False)
    matchup_type = Column(String(10), nullable=False, default=MatchupType.TWO_BALL.value)
    player1_id = Column(String(50), nullable=False)
    player1_name = Column(String(255), nullable=True)
    player1_odds = Column(Float, nullable=True)  # Pre-bet odds, American or decimal
    player2_id = Column(String(50), nullable=False)
    player2_name = Column(String(255), nullable=True)
    player2_odds = Column(Float, nullable=True)
    player3_id = Column(String(50), nullable=True)  # 3ball only
    player3_name = Column(String(255), nullable=True)
    player3_odds = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    tournament = relationship("Tournament", back_populates="matchups")
    results = relationship("MatchupResult", back_populates="matchup", cascade="all, delete-orphan")

    __table_args__ = (
        Index('ix_matchups_round', 'tournament_id', 'round_num'),
    )

    @property
    def player_ids(self) -> list[str]:
        ids = [self.player1_id, self.player2_id]
        if self.player3_id:
            ids.append(self.player3_id)
        return ids

    def player_name(self, player_id: str) -> str | None:
        for pid, name in (
            (self.player1_id, self.player1_name),
            (self.player2_id, self.player2_name),
            (self.player3_id, self.player3_name),
        ):
            if pid == player_id:
                return name
        return None


class MatchupResult(Base):
    """Final result of a matchup. Exactly one row per (matchup_id, event_id, round_num)."""
    __tablename__ = "matchup_results"

    id = Column(String(36), primary_key=True)
    matchup_id = Column(String(36), ForeignKey("matchups.id", ondelete="CASCADE"), nullable=False, index=True)
    event_id = Column(String(50), nullable=False, index=True)
    round_num = Column(Integer, nullable=False)
    winner_player_id = Column(String(50), nullable=True)  # None means push
    winner_name = Column(String(255), nullable=True)
    is_push = Column(Boolean, nullable=False, default=False)
    player1_score = Column(Integer, nullable=True)
    player1_total = Column(Integer, nullable=True)
    player2_score = Column(Integer, nullable=True)
    player2_total = Column(Integer, nullable=True)
    player3_score = Column(Integer, nullable=True)
    player3_total = Column(Integer, nullable=True)
    win_method = Column(String(20), nullable=False, default=WinMethod.LOWEST_SCORE.value)
    result_notes = Column(Text, nullable=True)
    result_determined_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    matchup = relationship("Matchup", back_populates="results")

    __table_args__ = (
        UniqueConstraint('matchup_id', 'event_id', 'round_num', name='uq_matchup_result_key'),
    )


# =============================================================================
# PARLAYS
# =============================================================================

class Parlay(Base):
    """User parlay. `version` guards settle/reverse races."""
    __tablename__ = "parlays"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=True, index=True)
    stake = Column(Float, nullable=False)
    status = Column(String(20), nullable=False, default=ParlayStatus.PENDING.value, index=True)
    outcome = Column(String(10), nullable=True)
    actual_payout = Column(Float, nullable=True)
    settled_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    picks = relationship(
        "ParlayPick",
        back_populates="parlay",
        cascade="all, delete-orphan",
        order_by="ParlayPick.leg_index",
    )

    __mapper_args__ = {"version_id_col": version}


class ParlayPick(Base):
    """One leg of a parlay: a chosen player within a matchup."""
    __tablename__ = "parlay_picks"

    id = Column(String(36), primary_key=True)
    parlay_id = Column(String(36), ForeignKey("parlays.id", ondelete="CASCADE"), nullable=False, index=True)
    leg_index = Column(Integer, nullable=False, default=0)
    matchup_id = Column(String(36), ForeignKey("matchups.id"), nullable=False, index=True)
    picked_player_id = Column(String(50), nullable=False)
    picked_player_name = Column(String(255), nullable=True)
    odds = Column(Float, nullable=True)  # Odds taken at bet time, American or decimal
    settlement_status = Column(String(20), nullable=False, default=PickSettlementStatus.UNSETTLED.value, index=True)
    pick_outcome = Column(String(10), nullable=True)
    settled_at = Column(DateTime, nullable=True)
    settlement_notes = Column(Text, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    parlay = relationship("Parlay", back_populates="picks")
    matchup = relationship("Matchup")

    __table_args__ = (
        Index('ix_parlay_picks_matchup_status', 'matchup_id', 'settlement_status'),
    )

    __mapper_args__ = {"version_id_col": version}


class SettlementHistory(Base):
    """Audit trail of pick settlements and parlay reversals."""
    __tablename__ = "settlement_history"

    id = Column(String(36), primary_key=True)
    parlay_id = Column(String(36), ForeignKey("parlays.id", ondelete="CASCADE"), nullable=False, index=True)
    pick_id = Column(String(36), nullable=True, index=True)
    action = Column(String(20), nullable=False)
    old_outcome = Column(String(10), nullable=True)
    new_outcome = Column(String(10), nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
