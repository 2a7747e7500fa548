"""Tests for pick and parlay settlement.

Test Strategy:
1. determine_pick_outcome(): win / loss / push and referential errors
2. settle_parlays_for_round(): picks settled, parlays aggregated, round advanced
3. Failing picks are isolated and keep the round open
4. A second pass is a no-op
5. A reversal committed while a parlay is being settled wins; the parlay stays pending
"""
import sys
from pathlib import Path

import pytest
from sqlalchemy.orm import Session

sys.path.insert(0, str(Path(__file__).parent.parent))
from conftest import create_matchup, create_parlay

from app.core.exceptions import ConflictError, ReferentialInconsistencyError
from app.models import (
    MatchupResult,
    Parlay,
    ParlayPick,
    ParlayStatus,
    PickSettlementStatus,
    RoundStatus,
    SettlementHistory,
)
from app.repositories import MatchupResultRepository, ParlayPickRepository, RoundRepository
from app.services.settlement.result_ingestion_service import ResultIngestionService
from app.services.settlement.reversal_service import ReversalService
from app.services.settlement.settlement_engine import SettlementEngine, determine_pick_outcome


@pytest.fixture
def ingested_round(db_session: Session, completed_round):
    tournament, matchups = completed_round
    ResultIngestionService(db_session).ingest_round_results(tournament.id, 1)
    return tournament, matchups


def result_for(db: Session, tournament, matchup) -> MatchupResult:
    return MatchupResultRepository(db).find_by_key(matchup.id, tournament.event_id, 1)


class TestDeterminePickOutcome:
    """Unit tests for a single pick against its matchup result."""

    def test_win_loss_push(self, db_session: Session, ingested_round):
        tournament, matchups = ingested_round
        parlay = create_parlay(db_session, [(matchups["m1"], "A", None), (matchups["m1"], "B", None),
                                            (matchups["m2"], "C", None)])
        picks = parlay.picks

        win, _ = determine_pick_outcome(picks[0], matchups["m1"], result_for(db_session, tournament, matchups["m1"]))
        loss, loss_note = determine_pick_outcome(picks[1], matchups["m1"], result_for(db_session, tournament, matchups["m1"]))
        push, _ = determine_pick_outcome(picks[2], matchups["m2"], result_for(db_session, tournament, matchups["m2"]))

        assert (win, loss, push) == ("win", "loss", "push")
        assert "Player A beat Player B" in loss_note

    def test_player_not_in_matchup(self, db_session: Session, ingested_round):
        tournament, matchups = ingested_round
        parlay = create_parlay(db_session, [(matchups["m1"], "Z", 2.0)])

        with pytest.raises(ReferentialInconsistencyError) as exc_info:
            determine_pick_outcome(parlay.picks[0], matchups["m1"], result_for(db_session, tournament, matchups["m1"]))

        assert exc_info.value.entity_id == parlay.picks[0].id

    def test_missing_matchup(self, db_session: Session, ingested_round):
        tournament, matchups = ingested_round
        parlay = create_parlay(db_session, [(matchups["m1"], "A", 2.0)])

        with pytest.raises(ReferentialInconsistencyError):
            determine_pick_outcome(parlay.picks[0], None, result_for(db_session, tournament, matchups["m1"]))


class TestSettlementEngine:
    """Integration tests for settle_parlays_for_round()."""

    def test_settles_picks_and_parlays(self, db_session: Session, ingested_round):
        tournament, matchups = ingested_round
        winner = create_parlay(db_session, [(matchups["m1"], "A", -120), (matchups["m3"], "E", 150)])
        loser = create_parlay(db_session, [(matchups["m1"], "B", 100), (matchups["m3"], "E", 150)])
        with_push = create_parlay(db_session, [(matchups["m1"], "A", None), (matchups["m2"], "C", 2.0)])
        all_push = create_parlay(db_session, [(matchups["m2"], "D", 1.8)], stake=5.0)

        result = SettlementEngine(db_session).settle_parlays_for_round(tournament.id, 1)

        assert result.errors == []
        assert result.picks_settled == 7
        assert result.parlays_settled == 4
        assert result.round_status == RoundStatus.SETTLED.value

        db_session.expire_all()
        expected = {
            winner.id: ("win", 45.83),
            loser.id: ("loss", 0.0),
            with_push.id: ("win", 18.33),  # Odds fall back to the matchup line (-120)
            all_push.id: ("push", 5.0),
        }
        for parlay_id, (outcome, payout) in expected.items():
            parlay = db_session.get(Parlay, parlay_id)
            assert parlay.status == ParlayStatus.SETTLED.value
            assert parlay.outcome == outcome
            assert parlay.actual_payout == pytest.approx(payout)
            assert parlay.settled_at is not None

        picks = db_session.query(ParlayPick).all()
        assert all(p.settlement_status == PickSettlementStatus.SETTLED.value for p in picks)
        assert all(p.settlement_notes for p in picks)
        assert db_session.query(SettlementHistory).count() == 7

        state = RoundRepository(db_session).find(tournament.id, 1)
        assert state.settled_at is not None

    def test_parlay_waits_for_legs_in_later_rounds(self, db_session: Session, ingested_round):
        tournament, matchups = ingested_round
        later = create_matchup(db_session, tournament, 2, [("A", 2.0), ("B", 2.0)])
        parlay = create_parlay(db_session, [(matchups["m1"], "A", 2.0), (later, "A", 2.0)])

        result = SettlementEngine(db_session).settle_parlays_for_round(tournament.id, 1)

        assert result.picks_settled == 1
        assert result.parlays_settled == 0
        # Round 1 has nothing left unsettled even though the parlay is still pending
        assert result.round_status == RoundStatus.SETTLED.value

        db_session.expire_all()
        assert db_session.get(Parlay, parlay.id).status == ParlayStatus.PENDING.value

    def test_second_pass_is_noop(self, db_session: Session, ingested_round):
        tournament, matchups = ingested_round
        create_parlay(db_session, [(matchups["m1"], "A", 2.0)])
        engine = SettlementEngine(db_session)
        engine.settle_parlays_for_round(tournament.id, 1)

        again = engine.settle_parlays_for_round(tournament.id, 1)

        assert again.picks_settled == 0
        assert again.parlays_settled == 0
        assert db_session.query(SettlementHistory).count() == 1

    def test_bad_pick_is_isolated(self, db_session: Session, ingested_round):
        """A pick on a player outside the matchup fails alone; the round stays open."""
        tournament, matchups = ingested_round
        good = create_parlay(db_session, [(matchups["m1"], "A", 2.0)])
        bad = create_parlay(db_session, [(matchups["m3"], "Z", 2.0)])

        result = SettlementEngine(db_session).settle_parlays_for_round(tournament.id, 1)

        assert result.picks_settled == 1
        assert result.parlays_settled == 1
        assert len(result.errors) == 1
        assert result.errors[0]["error_type"] == "ReferentialInconsistencyError"
        assert result.errors[0]["entity_id"] == bad.picks[0].id
        assert result.round_status == RoundStatus.RESULTS_INGESTED.value

        db_session.expire_all()
        assert db_session.get(Parlay, good.id).outcome == "win"
        assert db_session.get(Parlay, bad.id).status == ParlayStatus.PENDING.value

    def test_round_without_results_settles_nothing(self, db_session: Session, completed_round):
        tournament, matchups = completed_round
        create_parlay(db_session, [(matchups["m1"], "A", 2.0)])

        result = SettlementEngine(db_session).settle_parlays_for_round(tournament.id, 1)

        assert result.picks_settled == 0
        assert result.round_status == RoundStatus.COMPLETED.value

    def test_unknown_tournament(self, db_session: Session):
        with pytest.raises(ReferentialInconsistencyError):
            SettlementEngine(db_session).settle_parlays_for_round("missing", 1)

    def test_reversal_between_pick_read_and_parlay_write(
        self, db_session: Session, session_factory, ingested_round, monkeypatch
    ):
        """Another session reverses the parlay after its picks were read; the parlay write must lose."""
        tournament, matchups = ingested_round
        parlay = create_parlay(db_session, [(matchups["m1"], "A", -120), (matchups["m3"], "E", 150)])
        find_by_parlay = ParlayPickRepository.find_by_parlay
        reversals = []

        def find_then_reverse(repo, parlay_id):
            picks = find_by_parlay(repo, parlay_id)
            if not reversals and repo.db is db_session:
                reversals.append(parlay_id)
                other = session_factory()
                try:
                    ReversalService(other).reverse_settlement(parlay_id, "Scorecard corrected mid-settlement")
                finally:
                    other.close()
            return picks

        monkeypatch.setattr(ParlayPickRepository, "find_by_parlay", find_then_reverse)

        result = SettlementEngine(db_session).settle_parlays_for_round(tournament.id, 1)

        assert reversals == [parlay.id]
        assert result.picks_settled == 2
        assert result.parlays_settled == 0
        conflicts = [e for e in result.errors if e["error_type"] == ConflictError.__name__]
        assert len(conflicts) == 1
        assert conflicts[0]["entity_type"] == "parlay"
        assert conflicts[0]["entity_id"] == parlay.id
        assert result.round_status == RoundStatus.RESULTS_INGESTED.value

        db_session.expire_all()
        stored = db_session.get(Parlay, parlay.id)
        assert stored.status == ParlayStatus.PENDING.value
        assert stored.outcome is None
        assert stored.actual_payout is None
        picks = db_session.query(ParlayPick).filter_by(parlay_id=parlay.id).all()
        assert all(p.settlement_status == PickSettlementStatus.UNSETTLED.value for p in picks)
