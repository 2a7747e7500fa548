"""
HTTP endpoint integration tests for the golf matchup settlement API.

These tests verify that FastAPI endpoints:
- Return correct HTTP status codes
- Map service errors to 400/404/409
- Run the same settlement services the pipeline uses

Uses FastAPI TestClient for in-memory HTTP testing.
"""
import uuid

import pytest
from fastapi.testclient import TestClient

# Add project root to path
import sys
from pathlib import Path
PROJECT_ROOT = Path(__file__).parent.parent.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(PROJECT_ROOT / "tests"))

from conftest import create_parlay, create_tournament, standing

from app.models import MatchupResult, Parlay, RoundStatus, SettlementHistory
from app.repositories import RoundRepository


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settled_parlay(test_client: TestClient, db_session, completed_round):
    """Two-leg parlay on round 1, ingested and settled through the API."""
    tournament, matchups = completed_round
    parlay = create_parlay(db_session, [(matchups["m1"], "A", -120), (matchups["m3"], "E", 150)])

    test_client.post("/api/v1/ingest-results", json={"tournament_id": tournament.id, "round_num": 1})
    test_client.post("/api/v1/settle-rounds", json={"tournament_id": tournament.id, "round_num": 1})
    return tournament, parlay


# =============================================================================
# ROOT AND HEALTH
# =============================================================================

class TestRootAndHealthEndpoints:
    """Test root and health check endpoints."""

    def test_root_endpoint(self, test_client: TestClient):
        response = test_client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "running"
        assert data["endpoints"]["automation"] == "/api/v1/automation/pipeline"

    def test_health_endpoint(self, test_client: TestClient):
        response = test_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_api_health_without_scheduler_is_degraded(self, test_client: TestClient):
        """No scheduler runs when the lifespan is skipped."""
        response = test_client.get("/api/health")

        assert response.status_code == 503
        data = response.json()
        assert data["status"] == "degraded"
        assert data["components"]["database"]["status"] == "connected"
        assert data["components"]["scheduler"]["status"] == "stopped"
        assert data["components"]["pipeline"]["status"] == "initialized"
        assert data["components"]["pipeline"]["lifecycle"] == "configured"
        assert "datagolf" in data["components"]["circuit_breakers"]


# =============================================================================
# PIPELINE AUTOMATION
# =============================================================================

class TestPipelineEndpoints:
    """Test /api/v1/automation/pipeline lifecycle endpoints."""

    def test_get_status(self, test_client: TestClient):
        response = test_client.get("/api/v1/automation/pipeline")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "initialized"
        assert data["is_running"] is False
        assert data["last_report"] is None
        assert data["config"]["min_players_required"] == 2

    def test_unknown_action_rejected(self, test_client: TestClient):
        response = test_client.post("/api/v1/automation/pipeline", json={"action": "explode"})

        assert response.status_code == 400
        assert "Unknown action" in response.json()["detail"]

    def test_configure_requires_config(self, test_client: TestClient):
        response = test_client.post("/api/v1/automation/pipeline", json={"action": "configure"})

        assert response.status_code == 400

    def test_configure_merges(self, test_client: TestClient):
        response = test_client.post(
            "/api/v1/automation/pipeline",
            json={"action": "configure", "config": {"lookback_hours": 12}},
        )

        assert response.status_code == 200
        config = response.json()["config"]
        assert config["lookback_hours"] == 12
        assert config["min_players_required"] == 2

    def test_invalid_config_rejected(self, test_client: TestClient):
        response = test_client.put(
            "/api/v1/automation/pipeline",
            json={"min_completion_percentage": 150},
        )

        assert response.status_code == 400

    def test_empty_put_rejected(self, test_client: TestClient):
        response = test_client.put("/api/v1/automation/pipeline", json={})

        assert response.status_code == 400

    def test_start_and_stop_without_scheduler(self, test_client: TestClient):
        response = test_client.post("/api/v1/automation/pipeline", json={"action": "start"})

        assert response.status_code == 200
        assert response.json()["scheduled"] is False
        assert response.json()["is_started"] is True

        response = test_client.post("/api/v1/automation/pipeline", json={"action": "stop"})

        assert response.status_code == 200
        assert response.json()["is_started"] is False

    def test_run_once_settles_completed_round(self, test_client: TestClient, db_session, completed_round):
        tournament, matchups = completed_round
        create_parlay(db_session, [(matchups["m1"], "A", -120)])

        response = test_client.post("/api/v1/automation/pipeline", json={"action": "run_once"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["report"]["rounds_retried"] == 1
        assert data["report"]["results_ingested"] == 3
        assert data["report"]["picks_settled"] == 1

        status = test_client.get("/api/v1/automation/pipeline").json()
        assert status["last_report"]["run_id"] == data["report"]["run_id"]

    def test_delete_then_initialize(self, test_client: TestClient):
        response = test_client.delete("/api/v1/automation/pipeline")
        assert response.status_code == 200

        assert test_client.get("/api/v1/automation/pipeline").json() == {"status": "not_initialized"}
        response = test_client.post("/api/v1/automation/pipeline", json={"action": "start"})
        assert response.status_code == 404

        response = test_client.post(
            "/api/v1/automation/pipeline",
            json={"action": "initialize", "config": {"lookback_hours": 6}},
        )

        assert response.status_code == 200
        assert response.json()["config"]["lookback_hours"] == 6
        assert test_client.get("/api/v1/automation/pipeline").json()["status"] == "initialized"


# =============================================================================
# MANUAL SETTLEMENT
# =============================================================================

class TestRoundCompletionEndpoint:
    """Test GET /api/v1/round-completion."""

    def test_single_round_detected(self, test_client: TestClient, db_session, fake_gateway):
        tournament = create_tournament(db_session)
        fake_gateway.set_round(tournament.id, 1, [standing("A", -2), standing("B", 1)])

        response = test_client.get(
            "/api/v1/round-completion",
            params={"tournament_id": tournament.id, "round_num": 1},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["is_complete"] is True
        assert data["round_status"] == RoundStatus.COMPLETED.value
        assert data["total_players"] == 2

    def test_requires_round_or_mode(self, test_client: TestClient):
        response = test_client.get("/api/v1/round-completion")

        assert response.status_code == 400

    def test_unknown_tournament(self, test_client: TestClient):
        response = test_client.get(
            "/api/v1/round-completion",
            params={"tournament_id": str(uuid.uuid4()), "round_num": 1},
        )

        assert response.status_code == 404

    def test_check_all(self, test_client: TestClient, db_session, fake_gateway):
        tournament = create_tournament(db_session)
        fake_gateway.set_round(tournament.id, 1, [standing("A", -2), standing("B", 1)])

        response = test_client.get("/api/v1/round-completion", params={"check_all": True})

        assert response.status_code == 200
        data = response.json()
        assert data["tournaments_checked"] == 1
        assert data["completed_rounds"] == [{"tournament_id": tournament.id, "round_num": 1}]

    def test_recently_completed(self, test_client: TestClient, db_session, completed_round):
        tournament, _ = completed_round

        response = test_client.get("/api/v1/round-completion", params={"recently_completed": True})

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["rounds"][0]["tournament_id"] == tournament.id


class TestIngestAndSettleEndpoints:
    """Test POST /api/v1/ingest-results and /api/v1/settle-rounds."""

    def test_ingest_results(self, test_client: TestClient, db_session, completed_round):
        tournament, _ = completed_round

        response = test_client.post(
            "/api/v1/ingest-results",
            json={"tournament_id": tournament.id, "round_num": 1},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["saved_count"] == 3
        assert data["round_status"] == RoundStatus.RESULTS_INGESTED.value
        assert db_session.query(MatchupResult).count() == 3

    def test_ingest_unknown_tournament(self, test_client: TestClient):
        response = test_client.post(
            "/api/v1/ingest-results",
            json={"tournament_id": str(uuid.uuid4()), "round_num": 1},
        )

        assert response.status_code == 404

    def test_settle_round(self, test_client: TestClient, db_session, settled_parlay):
        tournament, parlay = settled_parlay

        db_session.expire_all()
        settled = db_session.get(Parlay, parlay.id)
        assert settled.outcome == "win"
        assert RoundRepository(db_session).find(tournament.id, 1).status == RoundStatus.SETTLED.value

    def test_settle_status(self, test_client: TestClient, settled_parlay):
        response = test_client.get("/api/v1/settle-status")

        assert response.status_code == 200
        data = response.json()
        assert data["picks_by_status"]["settled"] == 2
        assert data["unsettled_by_tournament"] == {}
        assert data["rounds_by_status"] == {RoundStatus.SETTLED.value: 1}


class TestMatchupResultEndpoints:
    """Test /api/v1/matchup-results."""

    def test_manual_result_overwrites(self, test_client: TestClient, completed_round):
        tournament, matchups = completed_round
        test_client.post("/api/v1/ingest-results", json={"tournament_id": tournament.id, "round_num": 1})

        response = test_client.post(
            "/api/v1/matchup-results",
            json={"matchup_id": matchups["m2"].id, "winner_player_id": "D", "result_notes": "Rules ruling"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["action"] == "updated"
        assert data["result"]["winner_player_id"] == "D"
        assert data["result"]["is_push"] is False
        assert data["result"]["win_method"] == "manual"

        listed = test_client.get("/api/v1/matchup-results", params={"matchup_id": matchups["m2"].id}).json()
        assert listed["count"] == 1

    def test_list_by_round(self, test_client: TestClient, completed_round):
        tournament, _ = completed_round
        test_client.post("/api/v1/ingest-results", json={"tournament_id": tournament.id, "round_num": 1})

        response = test_client.get(
            "/api/v1/matchup-results",
            params={"event_id": tournament.event_id, "round_num": 1},
        )

        assert response.status_code == 200
        assert response.json()["count"] == 3

    def test_winner_must_be_in_matchup(self, test_client: TestClient, completed_round):
        _, matchups = completed_round

        response = test_client.post(
            "/api/v1/matchup-results",
            json={"matchup_id": matchups["m1"].id, "winner_player_id": "Z"},
        )

        assert response.status_code == 400

    def test_winner_or_push_required(self, test_client: TestClient, completed_round):
        _, matchups = completed_round

        response = test_client.post("/api/v1/matchup-results", json={"matchup_id": matchups["m1"].id})

        assert response.status_code == 400

    def test_unknown_matchup(self, test_client: TestClient):
        response = test_client.post(
            "/api/v1/matchup-results",
            json={"matchup_id": str(uuid.uuid4()), "is_push": True},
        )

        assert response.status_code == 404

    def test_delete(self, test_client: TestClient, completed_round):
        _, matchups = completed_round
        created = test_client.post(
            "/api/v1/matchup-results",
            json={"matchup_id": matchups["m1"].id, "is_push": True},
        ).json()

        response = test_client.delete(f"/api/v1/matchup-results/{created['result']['id']}")
        assert response.status_code == 200

        response = test_client.delete(f"/api/v1/matchup-results/{created['result']['id']}")
        assert response.status_code == 404


# =============================================================================
# ADMIN
# =============================================================================

class TestReverseSettlementEndpoint:
    """Test POST /api/admin/reverse-settlement."""

    def test_reverse_settled_parlay(self, test_client: TestClient, db_session, settled_parlay):
        tournament, parlay = settled_parlay

        response = test_client.post(
            "/api/admin/reverse-settlement",
            json={"parlay_id": parlay.id, "reason": "Scorecard corrected"},
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "parlay_id": parlay.id, "picks_reset": 2}

        db_session.expire_all()
        assert db_session.get(Parlay, parlay.id).outcome is None
        assert RoundRepository(db_session).find(tournament.id, 1).status == RoundStatus.COMPLETED.value
        history = db_session.query(SettlementHistory).filter_by(parlay_id=parlay.id).all()
        assert "reverse" in [h.action for h in history]

    def test_unknown_parlay(self, test_client: TestClient):
        response = test_client.post(
            "/api/admin/reverse-settlement",
            json={"parlay_id": str(uuid.uuid4()), "reason": "typo"},
        )

        assert response.status_code == 404

    def test_reason_required(self, test_client: TestClient):
        response = test_client.post(
            "/api/admin/reverse-settlement",
            json={"parlay_id": str(uuid.uuid4()), "reason": ""},
        )

        assert response.status_code == 422


class TestCompleteRoundEndpoint:
    """Test POST /api/admin/complete-round."""

    def test_forces_stalled_round_by_event_id(self, test_client: TestClient, db_session, fake_gateway):
        tournament = create_tournament(db_session)
        fake_gateway.set_round(tournament.id, 1, [standing("A", -2), standing("B", 1, thru=14)])
        test_client.get("/api/v1/round-completion", params={"tournament_id": tournament.id, "round_num": 1})

        response = test_client.post(
            "/api/admin/complete-round",
            json={"event_id": tournament.event_id, "round_num": 1, "reason": "Feed stopped after suspension"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["tournament_id"] == tournament.id
        assert data["status"] == RoundStatus.COMPLETED.value
        assert data["players_completed"] == 1
        db_session.expire_all()
        assert RoundRepository(db_session).find(tournament.id, 1).status == RoundStatus.COMPLETED.value

    def test_already_completed_round_conflicts(self, test_client: TestClient, completed_round):
        tournament, _ = completed_round

        response = test_client.post(
            "/api/admin/complete-round",
            json={"tournament_id": tournament.id, "round_num": 1, "reason": "duplicate"},
        )

        assert response.status_code == 409

    def test_round_without_standings(self, test_client: TestClient, db_session):
        tournament = create_tournament(db_session)

        response = test_client.post(
            "/api/admin/complete-round",
            json={"tournament_id": tournament.id, "round_num": 1, "reason": "no data"},
        )

        assert response.status_code == 422

    def test_unknown_event_id(self, test_client: TestClient):
        response = test_client.post(
            "/api/admin/complete-round",
            json={"event_id": "evt-missing", "round_num": 1, "reason": "typo"},
        )

        assert response.status_code == 404

    def test_requires_tournament_reference(self, test_client: TestClient):
        response = test_client.post("/api/admin/complete-round", json={"round_num": 1, "reason": "typo"})

        assert response.status_code == 400
