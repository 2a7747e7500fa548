"""
Settlement engine: MatchupResults -> pick outcomes -> parlay outcomes.

Per pick:   unsettled -> settled {win | loss | push}
Per parlay: pending   -> settled {win | loss | push}, once every pick is settled

Each pick and each parlay is written in its own transaction. Parlay and
ParlayPick rows are version-checked, so a reversal that lands between our
read and our write surfaces as a ConflictError for that parlay instead of
being overwritten. A failing pick or parlay is recorded and the pass moves
on to the next one.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.core.exceptions import (
    ConflictError,
    PersistenceError,
    ReferentialInconsistencyError,
    SettlementPipelineError,
    round_key,
)
from app.core.logging import get_logger
from app.core.metrics import record_parlay_settled, record_pick_settled
from app.models import (
    Matchup,
    MatchupResult,
    Outcome,
    Parlay,
    ParlayPick,
    ParlayStatus,
    PickSettlementStatus,
    RoundStatus,
    SettlementAction,
)
from app.repositories import (
    MatchupRepository,
    MatchupResultRepository,
    ParlayPickRepository,
    ParlayRepository,
    RoundRepository,
    SettlementHistoryRepository,
    TournamentRepository,
)
from app.services.core.parlay_service import LegResult, aggregate_parlay
from app.utils.timezone import utcnow

logger = get_logger(__name__)


@dataclass
class SettlementResult:
    tournament_id: str
    round_num: int
    picks_settled: int = 0
    parlays_settled: int = 0
    round_status: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tournament_id": self.tournament_id,
            "round_num": self.round_num,
            "picks_settled": self.picks_settled,
            "parlays_settled": self.parlays_settled,
            "round_status": self.round_status,
            "errors": self.errors,
        }


def determine_pick_outcome(pick: ParlayPick, matchup: Optional[Matchup], result: MatchupResult) -> Tuple[str, str]:
    """
    Outcome and settlement note for one pick.

    Raises:
        ReferentialInconsistencyError: Matchup missing, picked player not in
                                       the matchup, or a result with neither
                                       winner nor push
    """
    if matchup is None:
        raise ReferentialInconsistencyError(
            f"Pick {pick.id} references unknown matchup {pick.matchup_id}",
            entity_type="pick",
            entity_id=pick.id,
        )

    if pick.picked_player_id not in matchup.player_ids:
        raise ReferentialInconsistencyError(
            f"Pick {pick.id}: player {pick.picked_player_id} is not in matchup {matchup.id}",
            entity_type="pick",
            entity_id=pick.id,
        )

    picked = pick.picked_player_name or matchup.player_name(pick.picked_player_id) or pick.picked_player_id

    if result.is_push:
        return Outcome.PUSH.value, f"Push on {picked}: {result.result_notes or 'matchup tied or void'}"

    if not result.winner_player_id:
        raise ReferentialInconsistencyError(
            f"Result {result.id} for matchup {matchup.id} has no winner and is not a push",
            entity_type="pick",
            entity_id=pick.id,
        )

    if result.winner_player_id == pick.picked_player_id:
        return Outcome.WIN.value, f"Win: {result.result_notes or picked}"

    winner = result.winner_name or matchup.player_name(result.winner_player_id) or result.winner_player_id
    return Outcome.LOSS.value, f"Loss: {winner} beat {picked}. {result.result_notes or ''}".strip()


class SettlementEngine:
    """Settles picks and parlays for one round at a time."""

    def __init__(self, db: Session):
        self.db = db
        self.tournaments = TournamentRepository(db)
        self.rounds = RoundRepository(db)
        self.matchups = MatchupRepository(db)
        self.results = MatchupResultRepository(db)
        self.parlays = ParlayRepository(db)
        self.picks = ParlayPickRepository(db)
        self.history = SettlementHistoryRepository(db)

    def settle_parlays_for_round(self, tournament_id: str, round_num: int) -> SettlementResult:
        """
        Settle every unsettled pick on the round's matchup results, then every
        parlay those picks complete.

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

        result = SettlementResult(tournament_id=tournament_id, round_num=round_num)
        results_by_matchup = {r.matchup_id: r for r in self.results.find_for_round(tournament.event_id, round_num)}
        matchups = self.matchups.find_by_ids(list(results_by_matchup))

        touched: Set[str] = set()
        for pick in self.picks.find_unsettled_for_matchups(results_by_matchup.keys()):
            pick_id, parlay_id, matchup_id = pick.id, pick.parlay_id, pick.matchup_id
            try:
                outcome = self._settle_pick(pick, matchups.get(matchup_id), results_by_matchup[matchup_id])
            except SettlementPipelineError as e:
                self.db.rollback()
                self._record_error(result, e)
                continue
            except StaleDataError:
                self.db.rollback()
                self._record_error(result, ConflictError(
                    f"Pick {pick_id} of parlay {parlay_id} was modified concurrently",
                    entity_type="parlay",
                    entity_id=parlay_id,
                ))
                continue
            except SQLAlchemyError as e:
                self.db.rollback()
                self._record_error(result, PersistenceError(
                    f"Pick {pick_id}: failed to save settlement: {e}",
                    entity_type="pick",
                    entity_id=pick_id,
                ))
                continue

            result.picks_settled += 1
            touched.add(parlay_id)
            record_pick_settled(outcome)

        # Pending parlays on this round whose last parlay write failed earlier
        touched.update(self._pending_parlay_ids(results_by_matchup.keys()))

        parlays = self.parlays.find_by_ids(touched)
        for parlay_id in sorted(touched):
            try:
                if self._settle_parlay(parlay_id, parlays.get(parlay_id), matchups):
                    result.parlays_settled += 1
            except SettlementPipelineError as e:
                self.db.rollback()
                self._record_error(result, e)
            except StaleDataError:
                self.db.rollback()
                self._record_error(result, ConflictError(
                    f"Parlay {parlay_id} was modified concurrently",
                    entity_type="parlay",
                    entity_id=parlay_id,
                ))
            except SQLAlchemyError as e:
                self.db.rollback()
                self._record_error(result, PersistenceError(
                    f"Parlay {parlay_id}: failed to save settlement: {e}",
                    entity_type="parlay",
                    entity_id=parlay_id,
                ))

        result.round_status = self._advance_round(tournament_id, round_num, result)

        logger.info(
            f"Settled {round_key(tournament_id, round_num)}: {result.picks_settled} picks, "
            f"{result.parlays_settled} parlays, {len(result.errors)} errors"
        )
        return result

    def _settle_pick(self, pick: ParlayPick, matchup: Optional[Matchup], matchup_result: MatchupResult) -> str:
        outcome, notes = determine_pick_outcome(pick, matchup, matchup_result)

        pick.pick_outcome = outcome
        pick.settlement_status = PickSettlementStatus.SETTLED.value
        pick.settled_at = utcnow()
        pick.settlement_notes = notes
        self.history.record(
            parlay_id=pick.parlay_id,
            pick_id=pick.id,
            action=SettlementAction.SETTLE,
            new_outcome=outcome,
            reason=notes,
        )
        self.db.commit()
        return outcome

    def _settle_parlay(self, parlay_id: str, parlay: Optional[Parlay], matchups: Dict[str, Matchup]) -> bool:
        """Settle the parlay if all of its picks are settled. Returns True when settled now."""
        if parlay is None:
            raise ReferentialInconsistencyError(
                f"Parlay {parlay_id} not found", entity_type="parlay", entity_id=parlay_id
            )

        if parlay.status == ParlayStatus.SETTLED.value:
            return False

        picks = self.picks.find_by_parlay(parlay_id)
        if not picks or any(p.settlement_status != PickSettlementStatus.SETTLED.value for p in picks):
            return False

        missing = [p.matchup_id for p in picks if p.matchup_id not in matchups]
        matchups = {**matchups, **self.matchups.find_by_ids(missing)}

        legs = [LegResult(outcome=p.pick_outcome, odds=self._leg_odds(p, matchups.get(p.matchup_id))) for p in picks]
        try:
            aggregated = aggregate_parlay(parlay.stake, legs)
        except ValueError as e:
            raise ReferentialInconsistencyError(
                f"Parlay {parlay_id}: cannot compute payout: {e}",
                entity_type="parlay",
                entity_id=parlay_id,
            ) from e

        parlay.status = ParlayStatus.SETTLED.value
        parlay.outcome = aggregated.outcome
        parlay.actual_payout = aggregated.payout
        parlay.settled_at = utcnow()
        self.db.commit()

        record_parlay_settled(aggregated.outcome)
        logger.info(
            f"Parlay {parlay_id} settled {aggregated.outcome}: payout {aggregated.payout:.2f} "
            f"({aggregated.winning_legs} winning legs, {aggregated.push_legs} pushes)"
        )
        return True

    @staticmethod
    def _leg_odds(pick: ParlayPick, matchup: Optional[Matchup]) -> Optional[float]:
        """Odds recorded on the pick, falling back to the matchup line for the picked player."""
        if pick.odds is not None:
            return pick.odds
        if matchup is None:
            return None
        for pid, odds in (
            (matchup.player1_id, matchup.player1_odds),
            (matchup.player2_id, matchup.player2_odds),
            (matchup.player3_id, matchup.player3_odds),
        ):
            if pid == pick.picked_player_id:
                return odds
        return None

    def _pending_parlay_ids(self, matchup_ids) -> Set[str]:
        matchup_ids = list(matchup_ids)
        if not matchup_ids:
            return set()
        rows = (
            self.db.query(ParlayPick.parlay_id)
            .join(Parlay, Parlay.id == ParlayPick.parlay_id)
            .filter(
                ParlayPick.matchup_id.in_(matchup_ids),
                Parlay.status == ParlayStatus.PENDING.value,
            )
            .distinct()
            .all()
        )
        return {row[0] for row in rows}

    def _advance_round(self, tournament_id: str, round_num: int, result: SettlementResult) -> Optional[str]:
        """Mark a results_ingested round settled once nothing on it is left to settle."""
        state = self.rounds.find(tournament_id, round_num)
        if state is None:
            return None
        if state.status != RoundStatus.RESULTS_INGESTED.value or result.errors:
            return state.status
        if self.picks.count_unsettled_for_round(tournament_id, round_num):
            return state.status

        state.status = RoundStatus.SETTLED.value
        state.settled_at = utcnow()
        self.db.commit()
        return state.status

    @staticmethod
    def _record_error(result: SettlementResult, error: SettlementPipelineError) -> None:
        logger.warning(error.message)
        result.errors.append(error.to_dict())
