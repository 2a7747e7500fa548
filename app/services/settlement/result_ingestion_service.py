"""
Result ingestion: stored round standings -> canonical MatchupResults.

Scoring rule: the lowest round score wins. An exact tie for the lowest
score is a push, as is any matchup in which a player withdrew, was
disqualified or did not start. One MatchupResult exists per
(matchup_id, event_id, round_num); an existing result is left untouched
unless the caller forces reprocessing.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from app.core.exceptions import (
    DataIncompleteError,
    PersistenceError,
    ReferentialInconsistencyError,
    round_key,
)
from app.core.logging import get_logger
from app.models import Matchup, PlayerRoundStanding, RoundStatus, WinMethod
from app.repositories import (
    MatchupRepository,
    MatchupResultRepository,
    RoundRepository,
    StandingRepository,
    TournamentRepository,
)
from app.utils.timezone import utcnow

logger = get_logger(__name__)

HOLES_PER_ROUND = 18
VOID_POSITIONS = ("WD", "DQ", "DNS")


@dataclass
class MatchupOutcome:
    matchup_id: str
    status: str  # created, updated, unchanged, error
    winner_player_id: Optional[str] = None
    is_push: bool = False
    win_method: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matchup_id": self.matchup_id,
            "status": self.status,
            "winner_player_id": self.winner_player_id,
            "is_push": self.is_push,
            "win_method": self.win_method,
            "message": self.message,
        }


@dataclass
class IngestionResult:
    tournament_id: str
    round_num: int
    saved_count: int = 0
    matchups_total: int = 0
    existing: bool = False
    round_status: Optional[str] = None
    per_matchup_outcomes: List[MatchupOutcome] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tournament_id": self.tournament_id,
            "round_num": self.round_num,
            "saved_count": self.saved_count,
            "matchups_total": self.matchups_total,
            "existing": self.existing,
            "round_status": self.round_status,
            "per_matchup_outcomes": [o.to_dict() for o in self.per_matchup_outcomes],
            "errors": self.errors,
        }


def _is_void(standing: PlayerRoundStanding) -> bool:
    position = (standing.position or "").strip().upper()
    if position.startswith(VOID_POSITIONS):
        return True
    # Missed-cut players have no score in later rounds
    return position.startswith("CUT") and (standing.today_score is None or (standing.thru or 0) < HOLES_PER_ROUND)


def _label(matchup: Matchup, player_id: str) -> str:
    return matchup.player_name(player_id) or player_id


def determine_matchup_result(matchup: Matchup, standings: Dict[str, PlayerRoundStanding]) -> Dict[str, Any]:
    """
    Compute MatchupResult column values for one matchup.

    Raises:
        DataIncompleteError: A player has no standing, no score, or has not finished
    """
    players = matchup.player_ids
    rows = []
    for pid in players:
        standing = standings.get(pid)
        if standing is None:
            raise DataIncompleteError(
                f"Matchup {matchup.id}: no standings for {_label(matchup, pid)}",
                entity_type="matchup",
                entity_id=matchup.id,
            )
        rows.append((pid, standing))

    values: Dict[str, Any] = {}
    for idx, (pid, standing) in enumerate(rows, start=1):
        values[f"player{idx}_score"] = standing.today_score
        values[f"player{idx}_total"] = standing.total_score

    void = [pid for pid, standing in rows if _is_void(standing)]
    if void:
        names = ", ".join(f"{_label(matchup, pid)} ({standings[pid].position})" for pid in void)
        values.update(
            winner_player_id=None,
            winner_name=None,
            is_push=True,
            win_method=WinMethod.WITHDRAWAL.value,
            result_notes=f"Void: {names} did not complete the round",
        )
        return values

    for pid, standing in rows:
        if standing.today_score is None or (standing.thru or 0) < HOLES_PER_ROUND:
            raise DataIncompleteError(
                f"Matchup {matchup.id}: {_label(matchup, pid)} has not finished the round "
                f"(thru {standing.thru}, score {standing.today_score})",
                entity_type="matchup",
                entity_id=matchup.id,
            )

    best = min(standing.today_score for _, standing in rows)
    leaders = [pid for pid, standing in rows if standing.today_score == best]
    scores = ", ".join(f"{_label(matchup, pid)} {standing.today_score:+d}" for pid, standing in rows)

    if len(leaders) > 1:
        values.update(
            winner_player_id=None,
            winner_name=None,
            is_push=True,
            win_method=WinMethod.TIE.value,
            result_notes=f"Push: tied at {best:+d} ({scores})",
        )
        return values

    winner = leaders[0]
    values.update(
        winner_player_id=winner,
        winner_name=matchup.player_name(winner),
        is_push=False,
        win_method=WinMethod.LOWEST_SCORE.value,
        result_notes=f"{_label(matchup, winner)} wins with {best:+d} ({scores})",
    )
    return values


class ResultIngestionService:
    """Writes one MatchupResult per matchup of a completed round."""

    def __init__(self, db: Session):
        self.db = db
        self.tournaments = TournamentRepository(db)
        self.rounds = RoundRepository(db)
        self.matchups = MatchupRepository(db)
        self.results = MatchupResultRepository(db)
        self.standings = StandingRepository(db)

    def ingest_round_results(
        self,
        tournament_id: str,
        round_num: int,
        force_reprocess: bool = False,
    ) -> IngestionResult:
        """
        Ingest results for every matchup of a round.

        Args:
            tournament_id: Tournament primary key
            round_num: Round number
            force_reprocess: Recompute and overwrite existing results

        Returns:
            IngestionResult; matchups that could not be resolved are listed
            individually in `errors` and the rest are still saved.

        Raises:
            ReferentialInconsistencyError: Unknown tournament
        """
        tournament = self.tournaments.find_by_id(tournament_id)
        if tournament is None:
            raise ReferentialInconsistencyError(
                f"Tournament {tournament_id} not found",
                entity_type="tournament",
                entity_id=tournament_id,
            )

        result = IngestionResult(tournament_id=tournament_id, round_num=round_num)
        matchups = self.matchups.find_by_round(tournament_id, round_num)
        result.matchups_total = len(matchups)

        existing_ids = self.results.matchup_ids_with_results(tournament.event_id, round_num)
        result.existing = bool(matchups) and not force_reprocess and all(m.id in existing_ids for m in matchups)

        standings = self.standings.find_by_player(tournament_id, round_num)

        for matchup in matchups:
            if matchup.id in existing_ids and not force_reprocess:
                result.per_matchup_outcomes.append(
                    MatchupOutcome(matchup.id, MatchupResultRepository.UNCHANGED, message="Result already ingested")
                )
                continue

            try:
                values = determine_matchup_result(matchup, standings)
            except DataIncompleteError as e:
                logger.info(e.message)
                result.per_matchup_outcomes.append(MatchupOutcome(matchup.id, "error", message=e.message))
                result.errors.append(e.to_dict())
                continue

            try:
                action = self._persist_result(matchup, tournament.event_id, round_num, values, force_reprocess)
            except SQLAlchemyError as e:
                error = PersistenceError(
                    f"Matchup {matchup.id}: failed to save result: {e}",
                    entity_type="matchup",
                    entity_id=matchup.id,
                )
                logger.error(error.message)
                result.per_matchup_outcomes.append(MatchupOutcome(matchup.id, "error", message=error.message))
                result.errors.append(error.to_dict())
                continue

            if action != MatchupResultRepository.UNCHANGED:
                result.saved_count += 1
            result.per_matchup_outcomes.append(
                MatchupOutcome(
                    matchup.id,
                    action,
                    winner_player_id=values["winner_player_id"],
                    is_push=values["is_push"],
                    win_method=values["win_method"],
                    message=values["result_notes"],
                )
            )

        result.round_status = self._advance_round(tournament_id, tournament.event_id, round_num, matchups)

        logger.info(
            f"Ingested {round_key(tournament_id, round_num)}: {result.saved_count} saved, "
            f"{len(result.errors)} errors, {result.matchups_total} matchups"
        )
        return result

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((OperationalError, IntegrityError)),
        reraise=True,
    )
    def _persist_result(
        self,
        matchup: Matchup,
        event_id: str,
        round_num: int,
        values: Dict[str, Any],
        overwrite: bool,
    ) -> str:
        """Upsert and commit one result; safe to retry since the write is keyed."""
        try:
            _, action = self.results.upsert(
                matchup_id=matchup.id,
                event_id=event_id,
                round_num=round_num,
                values=values,
                determined_at=utcnow(),
                overwrite=overwrite,
            )
            self.db.commit()
            return action
        except SQLAlchemyError:
            self.db.rollback()
            raise

    def _advance_round(self, tournament_id: str, event_id: str, round_num: int, matchups: List[Matchup]) -> Optional[str]:
        """Move a completed round to results_ingested once every matchup has a result."""
        state = self.rounds.find(tournament_id, round_num)
        if state is None:
            return None

        if state.status != RoundStatus.COMPLETED.value:
            return state.status

        have = self.results.matchup_ids_with_results(event_id, round_num)
        missing = [m.id for m in matchups if m.id not in have]
        if missing:
            logger.info(
                f"{round_key(tournament_id, round_num)} stays completed: "
                f"{len(missing)} matchups without results"
            )
            return state.status

        state.status = RoundStatus.RESULTS_INGESTED.value
        self.db.commit()
        logger.info(f"{round_key(tournament_id, round_num)} results ingested, eligible for settlement")
        return state.status
