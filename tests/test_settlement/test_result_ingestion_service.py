"""Tests for result ingestion.

Test Strategy:
1. determine_matchup_result() scoring rules: lowest wins, tie push, withdrawal push
2. ingest_round_results() is idempotent without force_reprocess
3. A corrupt matchup is reported and the others are still saved
4. The round advances to results_ingested only when every matchup has a result
"""
import sys
from pathlib import Path

import pytest
from sqlalchemy.orm import Session

sys.path.insert(0, str(Path(__file__).parent.parent))
from conftest import create_matchup, create_round, create_tournament, standing

from app.core.exceptions import DataIncompleteError, ReferentialInconsistencyError
from app.models import MatchupResult, PlayerRoundStanding, RoundStatus, WinMethod
from app.repositories import MatchupResultRepository, RoundRepository, StandingRepository
from app.services.settlement.result_ingestion_service import ResultIngestionService, determine_matchup_result


def standings_for(db: Session, tournament, records):
    repo = StandingRepository(db)
    repo.replace_round(tournament.id, 1, records)
    db.commit()
    return repo.find_by_player(tournament.id, 1)


class TestDetermineMatchupResult:
    """Unit tests for the scoring rule."""

    def test_lowest_score_wins(self, db_session: Session):
        tournament = create_tournament(db_session)
        matchup = create_matchup(db_session, tournament, 1, [("A", None), ("B", None)])
        standings = standings_for(db_session, tournament, [standing("A", -3), standing("B", -1)])

        values = determine_matchup_result(matchup, standings)

        assert values["winner_player_id"] == "A"
        assert values["winner_name"] == "Player A"
        assert values["is_push"] is False
        assert values["win_method"] == WinMethod.LOWEST_SCORE.value
        assert values["player1_score"] == -3
        assert values["player2_score"] == -1

    def test_tie_for_lowest_is_push(self, db_session: Session):
        tournament = create_tournament(db_session)
        matchup = create_matchup(db_session, tournament, 1, [("A", None), ("B", None)])
        standings = standings_for(db_session, tournament, [standing("A", -2), standing("B", -2)])

        values = determine_matchup_result(matchup, standings)

        assert values["is_push"] is True
        assert values["winner_player_id"] is None
        assert values["win_method"] == WinMethod.TIE.value

    def test_three_ball_tie_below_leader_still_has_winner(self, db_session: Session):
        tournament = create_tournament(db_session)
        matchup = create_matchup(db_session, tournament, 1, [("A", None), ("B", None), ("C", None)])
        standings = standings_for(
            db_session, tournament, [standing("A", 1), standing("B", 1), standing("C", -4)]
        )

        values = determine_matchup_result(matchup, standings)

        assert values["winner_player_id"] == "C"
        assert values["player3_score"] == -4

    def test_withdrawal_is_push(self, db_session: Session):
        tournament = create_tournament(db_session)
        matchup = create_matchup(db_session, tournament, 1, [("A", None), ("B", None)])
        standings = standings_for(
            db_session, tournament, [standing("A", -5), standing("B", 2, thru=7, position="WD")]
        )

        values = determine_matchup_result(matchup, standings)

        assert values["is_push"] is True
        assert values["win_method"] == WinMethod.WITHDRAWAL.value
        assert "WD" in values["result_notes"]

    def test_missing_player_standing_raises(self, db_session: Session):
        tournament = create_tournament(db_session)
        matchup = create_matchup(db_session, tournament, 1, [("A", None), ("B", None)])
        standings = standings_for(db_session, tournament, [standing("A", -5)])

        with pytest.raises(DataIncompleteError) as exc_info:
            determine_matchup_result(matchup, standings)

        assert exc_info.value.entity_id == matchup.id

    def test_unfinished_player_raises(self, db_session: Session):
        tournament = create_tournament(db_session)
        matchup = create_matchup(db_session, tournament, 1, [("A", None), ("B", None)])
        standings = standings_for(db_session, tournament, [standing("A", -5), standing("B", -1, thru=16)])

        with pytest.raises(DataIncompleteError):
            determine_matchup_result(matchup, standings)


class TestResultIngestionService:
    """Integration tests for ingest_round_results()."""

    def test_ingests_every_matchup(self, db_session: Session, completed_round):
        tournament, matchups = completed_round

        result = ResultIngestionService(db_session).ingest_round_results(tournament.id, 1)

        assert result.saved_count == 3
        assert result.errors == []
        assert result.round_status == RoundStatus.RESULTS_INGESTED.value

        stored = {r.matchup_id: r for r in MatchupResultRepository(db_session).find_for_round(tournament.event_id, 1)}
        assert stored[matchups["m1"].id].winner_player_id == "A"
        assert stored[matchups["m2"].id].is_push is True
        assert stored[matchups["m3"].id].winner_player_id == "E"

    def test_idempotent_without_force(self, db_session: Session, completed_round):
        """Second call writes nothing and keeps result_determined_at."""
        tournament, _ = completed_round
        service = ResultIngestionService(db_session)

        service.ingest_round_results(tournament.id, 1)
        before = {
            r.matchup_id: r.result_determined_at
            for r in MatchupResultRepository(db_session).find_for_round(tournament.event_id, 1)
        }

        second = service.ingest_round_results(tournament.id, 1)

        after = {
            r.matchup_id: r.result_determined_at
            for r in MatchupResultRepository(db_session).find_for_round(tournament.event_id, 1)
        }
        assert second.saved_count == 0
        assert second.existing is True
        assert all(o.status == MatchupResultRepository.UNCHANGED for o in second.per_matchup_outcomes)
        assert after == before
        assert db_session.query(MatchupResult).count() == 3

    def test_force_reprocess_overwrites(self, db_session: Session, completed_round):
        tournament, matchups = completed_round
        service = ResultIngestionService(db_session)
        service.ingest_round_results(tournament.id, 1)

        # Scoring correction: B actually shot -4
        StandingRepository(db_session).replace_round(tournament.id, 1, [standing("B", -4)])
        db_session.commit()

        result = service.ingest_round_results(tournament.id, 1, force_reprocess=True)

        assert result.saved_count == 3
        corrected = MatchupResultRepository(db_session).find_by_key(matchups["m1"].id, tournament.event_id, 1)
        assert corrected.winner_player_id == "B"
        assert db_session.query(MatchupResult).count() == 3

    def test_partial_failure_is_isolated(self, db_session: Session):
        """Five matchups with one missing player data -> four results, one error."""
        tournament = create_tournament(db_session)
        create_round(db_session, tournament, 1, RoundStatus.COMPLETED)

        records = []
        matchups = []
        for i in range(5):
            a, b = f"A{i}", f"B{i}"
            records += [standing(a, -2), standing(b, 0)]
            matchups.append(create_matchup(db_session, tournament, 1, [(a, None), (b, None)]))
        corrupt = matchups[2]
        records = [r for r in records if r.player_id != "B2"]
        StandingRepository(db_session).replace_round(tournament.id, 1, records)
        db_session.commit()

        result = ResultIngestionService(db_session).ingest_round_results(tournament.id, 1)

        assert result.saved_count == 4
        assert len(result.errors) == 1
        assert result.errors[0]["entity_id"] == corrupt.id
        assert result.errors[0]["error_type"] == "DataIncompleteError"
        assert result.round_status == RoundStatus.COMPLETED.value
        assert db_session.query(MatchupResult).count() == 4

        # The missing standing arrives; the next pass fills the gap and advances the round
        StandingRepository(db_session).replace_round(tournament.id, 1, [standing("B2", 1)])
        db_session.commit()
        retry = ResultIngestionService(db_session).ingest_round_results(tournament.id, 1)

        assert retry.saved_count == 1
        assert retry.round_status == RoundStatus.RESULTS_INGESTED.value

    def test_in_progress_round_is_not_advanced(self, db_session: Session):
        tournament = create_tournament(db_session)
        create_round(db_session, tournament, 1, RoundStatus.IN_PROGRESS)
        create_matchup(db_session, tournament, 1, [("A", None), ("B", None)])
        StandingRepository(db_session).replace_round(tournament.id, 1, [standing("A", -1), standing("B", 0)])
        db_session.commit()

        result = ResultIngestionService(db_session).ingest_round_results(tournament.id, 1)

        assert result.saved_count == 1
        assert RoundRepository(db_session).find(tournament.id, 1).status == RoundStatus.IN_PROGRESS.value

    def test_unknown_tournament(self, db_session: Session):
        with pytest.raises(ReferentialInconsistencyError):
            ResultIngestionService(db_session).ingest_round_results("missing", 1)

    def test_standings_rows_are_not_modified(self, db_session: Session, completed_round):
        tournament, _ = completed_round
        before = db_session.query(PlayerRoundStanding).count()

        ResultIngestionService(db_session).ingest_round_results(tournament.id, 1)

        assert db_session.query(PlayerRoundStanding).count() == before
