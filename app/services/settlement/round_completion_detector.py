"""
Round completion detection.

A round is complete once enough of the field has finished it: a player
counts as finished when they are through 18 holes or, optionally, when
the feed marks them CUT / WD / DQ / DNS. Completion is persisted on
TournamentRound and only ever moves forward, so a stale or flapping feed
cannot pull a completed round back to in_progress, and a restarted
process does not report the same round twice.

Once a tournament is past its end date the feed stops moving, so a round
still short of the threshold is finalized from the last standings seen;
operators can also force a single round through force_round_completion().
"""
import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from app.core.exceptions import ConflictError, DataIncompleteError, TransientFeedError, round_key
from app.core.logging import get_logger
from app.models import RoundStatus, Tournament, TournamentRound
from app.repositories import RoundRepository, StandingRepository, TournamentRepository
from app.services.scoring.live_score_gateway import LiveScoreGateway, StandingRecord
from app.utils.timezone import utcnow

logger = get_logger(__name__)

WITHDRAWN_POSITION = re.compile(r"^(CUT|WD|DQ|DNS)", re.IGNORECASE)
MINUTES_PER_HOLE = 12


@dataclass
class CompletionCriteria:
    min_completion_percentage: float = 80.0
    min_players_required: int = 50
    holes_required: int = 18
    consider_withdrawn_complete: bool = True


@dataclass
class CompletionSnapshot:
    """Field-wide completion counts for one round."""

    total_players: int = 0
    completed_players: int = 0
    in_progress_players: int = 0
    not_started_players: int = 0
    withdrawn_players: int = 0
    completion_percentage: float = 0.0
    is_complete: bool = False
    max_holes_remaining: int = 0
    # completed without meeting the threshold (tournament over, or forced by an operator)
    finalized: bool = False


@dataclass
class RoundCompletionStatus:
    tournament_id: str
    round_num: int
    round_status: str
    snapshot: CompletionSnapshot
    estimated_completion_time: Optional[datetime] = None
    checked_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tournament_id": self.tournament_id,
            "round_num": self.round_num,
            "round_status": self.round_status,
            "is_complete": self.snapshot.is_complete,
            "completion_percentage": round(self.snapshot.completion_percentage, 2),
            "total_players": self.snapshot.total_players,
            "completed_players": self.snapshot.completed_players,
            "in_progress_players": self.snapshot.in_progress_players,
            "not_started_players": self.snapshot.not_started_players,
            "withdrawn_players": self.snapshot.withdrawn_players,
            "estimated_completion_time": (
                self.estimated_completion_time.isoformat() if self.estimated_completion_time else None
            ),
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass
class DetectionReport:
    rounds: List[Tuple[str, int]] = field(default_factory=list)
    # subset of `rounds` finalized because the tournament ended before the threshold was met
    rounds_finalized: List[Tuple[str, int]] = field(default_factory=list)
    rounds_checked: int = 0
    tournaments_checked: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)


def is_withdrawn(position: Optional[str]) -> bool:
    return bool(position) and bool(WITHDRAWN_POSITION.match(position.strip()))


def evaluate_completion(standings: Sequence, criteria: CompletionCriteria) -> CompletionSnapshot:
    """
    Count finished players and decide completion.

    Accepts PlayerRoundStanding rows or StandingRecords; only `position`
    and `thru` are read. A round with no players is never complete.
    """
    snapshot = CompletionSnapshot(total_players=len(standings))

    for standing in standings:
        withdrawn = is_withdrawn(standing.position)
        thru = standing.thru or 0

        if withdrawn:
            snapshot.withdrawn_players += 1

        if thru >= criteria.holes_required or (withdrawn and criteria.consider_withdrawn_complete):
            snapshot.completed_players += 1
        elif thru > 0:
            snapshot.in_progress_players += 1
            snapshot.max_holes_remaining = max(snapshot.max_holes_remaining, criteria.holes_required - thru)
        else:
            snapshot.not_started_players += 1
            snapshot.max_holes_remaining = criteria.holes_required

    if snapshot.total_players == 0:
        return snapshot

    snapshot.completion_percentage = snapshot.completed_players / snapshot.total_players * 100
    snapshot.is_complete = (
        snapshot.total_players >= criteria.min_players_required
        and snapshot.completion_percentage >= criteria.min_completion_percentage
    )
    return snapshot


class RoundCompletionDetector:
    """Finds rounds that have just crossed the completion threshold."""

    def __init__(
        self,
        db: Session,
        gateway: LiveScoreGateway,
        criteria: Optional[CompletionCriteria] = None,
        check_timeout_seconds: Optional[float] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.criteria = criteria or CompletionCriteria()
        self.check_timeout_seconds = check_timeout_seconds
        self.tournaments = TournamentRepository(db)
        self.rounds = RoundRepository(db)
        self.standings = StandingRepository(db)

    async def find_recently_completed_rounds(self, lookback_hours: int) -> DetectionReport:
        """
        Check every active tournament and report rounds completed by this pass.

        Tournaments are checked concurrently. A failure for one tournament
        is recorded in the report and does not affect the others.
        """
        now = utcnow()
        tournaments = self.tournaments.find_active(now, lookback_hours)
        report = DetectionReport(tournaments_checked=len(tournaments))

        if not tournaments:
            logger.info(f"No active tournaments within {lookback_hours}h lookback")
            return report

        outcomes = await asyncio.gather(
            *(self._bounded_check(t, now) for t in tournaments),
            return_exceptions=True,
        )

        for tournament, outcome in zip(tournaments, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, asyncio.TimeoutError):
                    error_type = TransientFeedError.__name__
                    message = f"feed check timed out after {self.check_timeout_seconds}s"
                else:
                    error_type = type(outcome).__name__
                    message = getattr(outcome, "message", None) or str(outcome)
                logger.warning(f"Completion check failed for {tournament.name} ({tournament.id}): {message}")
                report.errors.append({
                    "error_type": error_type,
                    "entity_type": "tournament",
                    "entity_id": tournament.id,
                    "message": f"{tournament.name}: {message}",
                })
                continue

            completed, finalized, checked = outcome
            report.rounds.extend((tournament.id, round_num) for round_num in completed)
            report.rounds_finalized.extend((tournament.id, round_num) for round_num in finalized)
            report.rounds_checked += checked

        logger.info(
            f"Detection pass: {report.tournaments_checked} tournaments, "
            f"{report.rounds_checked} rounds checked, {len(report.rounds)} newly completed "
            f"({len(report.rounds_finalized)} finalized after tournament end), "
            f"{len(report.errors)} errors"
        )
        return report

    async def _bounded_check(self, tournament: Tournament, now: datetime) -> Tuple[List[int], List[int], int]:
        if self.check_timeout_seconds:
            return await asyncio.wait_for(self._check_tournament(tournament, now), timeout=self.check_timeout_seconds)
        return await self._check_tournament(tournament, now)

    async def _check_tournament(self, tournament: Tournament, now: datetime) -> Tuple[List[int], List[int], int]:
        """
        Check open rounds of one tournament in order.

        Stops at the first round still in progress: later rounds cannot be
        complete before it. Each round's standings are persisted before the
        next feed call, so the session never holds writes across an await.

        After the tournament's end date an open round with a non-empty field
        is finalized instead of waiting for a threshold the feed will never reach.
        """
        states = {r.round_num: r for r in self.rounds.find_for_tournament(tournament.id)}
        tournament_over = tournament.end_date is not None and now >= tournament.end_date
        completed: List[int] = []
        finalized: List[int] = []
        checked = 0

        for round_num in range(1, (tournament.num_rounds or 4) + 1):
            state = states.get(round_num)
            if state is not None and state.status != RoundStatus.IN_PROGRESS.value:
                continue

            if now < tournament.start_date + timedelta(days=round_num - 1):
                break

            try:
                records = await self.gateway.fetch_round_standings(tournament, round_num)
            except TransientFeedError as e:
                e.entity_id = e.entity_id or tournament.id
                raise

            checked += 1
            snapshot = self._store_and_evaluate(tournament.id, round_num, records, finalize=tournament_over)
            if snapshot.is_complete:
                completed.append(round_num)
                if snapshot.finalized:
                    finalized.append(round_num)
                continue
            break

        return completed, finalized, checked

    def _store_and_evaluate(
        self,
        tournament_id: str,
        round_num: int,
        records: List[StandingRecord],
        finalize: bool = False,
    ) -> CompletionSnapshot:
        try:
            # A finished event drops off the live feed; keep the last standings seen
            if records or not finalize:
                self.standings.replace_round(tournament_id, round_num, records)
                self.db.flush()

            snapshot = evaluate_completion(self.standings.find_for_round(tournament_id, round_num), self.criteria)
            if finalize and not snapshot.is_complete and snapshot.total_players:
                snapshot.is_complete = True
                snapshot.finalized = True
            state = self.rounds.get_or_create(tournament_id, round_num)
            newly_completed = self._apply_snapshot(state, snapshot)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if newly_completed and snapshot.finalized:
            logger.warning(
                f"Round {round_num} of tournament {tournament_id} finalized after tournament end: "
                f"{snapshot.completed_players}/{snapshot.total_players} players "
                f"({snapshot.completion_percentage:.1f}%) had finished"
            )
        elif newly_completed:
            logger.info(
                f"Round {round_num} of tournament {tournament_id} completed: "
                f"{snapshot.completed_players}/{snapshot.total_players} players "
                f"({snapshot.completion_percentage:.1f}%)"
            )
        else:
            snapshot.is_complete = False
            snapshot.finalized = False
        return snapshot

    def _apply_snapshot(self, state: TournamentRound, snapshot: CompletionSnapshot) -> bool:
        """Record counts on an in_progress round; returns True if it just completed."""
        if state.status != RoundStatus.IN_PROGRESS.value:
            return False

        now = utcnow()
        state.last_checked_at = now
        state.players_total = snapshot.total_players
        state.players_completed = snapshot.completed_players
        state.completion_percentage = round(snapshot.completion_percentage, 2)

        if snapshot.is_complete:
            state.status = RoundStatus.COMPLETED.value
            state.completed_at = now
            return True
        return False

    def force_round_completion(self, tournament_id: str, round_num: int, reason: str) -> TournamentRound:
        """
        Mark an in_progress round completed from its stored standings.

        For rounds the feed stopped updating before the threshold was met.
        The feed is not called; ingestion still rejects matchups whose
        players have no stored score.

        Raises:
            ValueError: Unknown tournament
            DataIncompleteError: No standings stored for the round
            ConflictError: Round is already past in_progress
        """
        tournament = self.tournaments.find_by_id(tournament_id)
        if tournament is None:
            raise ValueError(f"Tournament {tournament_id} not found")

        key = round_key(tournament_id, round_num)
        standings = self.standings.find_for_round(tournament_id, round_num)
        if not standings:
            raise DataIncompleteError(
                f"No standings stored for round {round_num}; run a completion check first",
                entity_type="round",
                entity_id=key,
            )

        state = self.rounds.get_or_create(tournament_id, round_num)
        if state.status != RoundStatus.IN_PROGRESS.value:
            self.db.rollback()
            raise ConflictError(f"Round {key} is already {state.status}", entity_type="round", entity_id=key)

        snapshot = evaluate_completion(standings, self.criteria)
        snapshot.is_complete = True
        snapshot.finalized = True
        try:
            self._apply_snapshot(state, snapshot)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.warning(
            f"Round {round_num} of {tournament.name} forced to completed "
            f"({snapshot.completed_players}/{snapshot.total_players} players finished): {reason}"
        )
        return state

    async def check_round_completion(self, tournament_id: str, round_num: int) -> RoundCompletionStatus:
        """
        Refresh and report the completion status of a single round.

        Rounds already past in_progress are reported from stored standings
        without calling the feed.

        Raises:
            ValueError: Unknown tournament
            TransientFeedError: Feed unavailable
        """
        tournament = self.tournaments.find_by_id(tournament_id)
        if tournament is None:
            raise ValueError(f"Tournament {tournament_id} not found")

        state = self.rounds.find(tournament_id, round_num)
        if state is None or state.status == RoundStatus.IN_PROGRESS.value:
            records = await self.gateway.fetch_round_standings(tournament, round_num)
            self._store_and_evaluate(tournament_id, round_num, records)
            state = self.rounds.find(tournament_id, round_num)

        snapshot = evaluate_completion(self.standings.find_for_round(tournament_id, round_num), self.criteria)
        round_status = state.status if state else RoundStatus.IN_PROGRESS.value
        if round_status != RoundStatus.IN_PROGRESS.value:
            snapshot.is_complete = True

        estimate = None
        if not snapshot.is_complete and snapshot.total_players:
            estimate = utcnow() + timedelta(minutes=snapshot.max_holes_remaining * MINUTES_PER_HOLE)

        return RoundCompletionStatus(
            tournament_id=tournament_id,
            round_num=round_num,
            round_status=round_status,
            snapshot=snapshot,
            estimated_completion_time=estimate,
        )

    def recently_completed(self, hours_back: int) -> List[TournamentRound]:
        """Rounds whose completion was detected within the last `hours_back` hours."""
        return self.rounds.find_completed_since(utcnow() - timedelta(hours=hours_back))
