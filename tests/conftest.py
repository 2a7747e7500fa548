"""Shared pytest fixtures for golf-matchup-settlement tests."""
import asyncio
import os
import sys
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Dict, Generator, List, Optional, Tuple

# Settings are read at import time; configure before any app module loads
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("DATAGOLF_API_KEY", "test-key")

import pytest
from sqlalchemy.orm import sessionmaker, Session

# Add project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from app.core.database import build_engine
from app.models import (
    Base,
    Matchup,
    MatchupType,
    Parlay,
    ParlayPick,
    RoundStatus,
    Tournament,
    TournamentRound,
)
from app.services.scoring.live_score_gateway import LiveScoreGateway, StandingRecord
from app.utils.timezone import utcnow


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture(scope="function")
def engine(tmp_path):
    """
    File-backed SQLite engine, one database per test.

    A file (not :memory:) gives every session its own connection, so
    pipeline worker threads and concurrent-writer tests see real
    transaction isolation.
    """
    test_engine = build_engine(f"sqlite:///{tmp_path / 'settlement.db'}")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    """Session factory bound to the per-test database."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create fresh test database session."""
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# FAKE LIVE SCORE GATEWAY
# =============================================================================

class FakeGateway(LiveScoreGateway):
    """
    In-memory LiveScoreGateway.

    standings: {(tournament_id, round_num): [StandingRecord, ...]}
    failures:  {tournament_id: Exception} raised instead of returning standings
    """

    def __init__(self):
        self.standings: Dict[Tuple[str, int], List[StandingRecord]] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[Tuple[str, int]] = []
        self.delay: float = 0.0
        self.closed = False

    def set_round(self, tournament_id: str, round_num: int, records: List[StandingRecord]) -> None:
        self.standings[(tournament_id, round_num)] = records

    async def fetch_round_standings(self, tournament, round_num):
        self.calls.append((tournament.id, round_num))
        if self.delay:
            await asyncio.sleep(self.delay)
        if tournament.id in self.failures:
            raise self.failures[tournament.id]
        return list(self.standings.get((tournament.id, round_num), []))

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


# =============================================================================
# DATA HELPERS
# =============================================================================

def standing(
    player_id: str,
    today: Optional[int],
    thru: Optional[int] = 18,
    position: Optional[str] = None,
    total: Optional[int] = None,
    name: Optional[str] = None,
) -> StandingRecord:
    """Build a StandingRecord for a player."""
    return StandingRecord(
        player_id=player_id,
        player_name=name or f"Player {player_id}",
        position=position,
        today=today,
        thru=thru,
        total=total if total is not None else today,
    )


def create_tournament(db: Session, **kwargs) -> Tournament:
    """Create a tournament that started a few hours ago (round 1 eligible only)."""
    now = utcnow()
    defaults = {
        "id": str(uuid.uuid4()),
        "event_id": f"evt-{uuid.uuid4().hex[:8]}",
        "name": "The Heritage",
        "course": "Harbour Town",
        "tour": "pga",
        "start_date": now - timedelta(hours=6),
        "end_date": now + timedelta(days=3),
        "num_rounds": 4,
    }
    defaults.update(kwargs)
    tournament = Tournament(**defaults)
    db.add(tournament)
    db.commit()
    return tournament


def create_round(db: Session, tournament: Tournament, round_num: int, status: RoundStatus, **kwargs) -> TournamentRound:
    round_state = TournamentRound(
        id=str(uuid.uuid4()),
        tournament_id=tournament.id,
        round_num=round_num,
        status=status.value,
        completed_at=kwargs.pop("completed_at", utcnow() if status != RoundStatus.IN_PROGRESS else None),
        **kwargs,
    )
    db.add(round_state)
    db.commit()
    return round_state


def create_matchup(
    db: Session,
    tournament: Tournament,
    round_num: int,
    players: List[Tuple[str, Optional[float]]],
) -> Matchup:
    """
    Create a 2-ball or 3-ball matchup.

    Args:
        players: [(player_id, odds), ...] with two or three entries
    """
    values = {
        "id": str(uuid.uuid4()),
        "tournament_id": tournament.id,
        "round_num": round_num,
        "matchup_type": MatchupType.THREE_BALL.value if len(players) == 3 else MatchupType.TWO_BALL.value,
    }
    for idx, (player_id, odds) in enumerate(players, start=1):
        values[f"player{idx}_id"] = player_id
        values[f"player{idx}_name"] = f"Player {player_id}"
        values[f"player{idx}_odds"] = odds
    matchup = Matchup(**values)
    db.add(matchup)
    db.commit()
    return matchup


def create_parlay(
    db: Session,
    legs: List[Tuple[Matchup, str, Optional[float]]],
    stake: float = 10.0,
) -> Parlay:
    """
    Create a pending parlay.

    Args:
        legs: [(matchup, picked_player_id, odds), ...]
    """
    parlay = Parlay(id=str(uuid.uuid4()), user_id="user-1", stake=stake)
    for idx, (matchup, player_id, odds) in enumerate(legs):
        parlay.picks.append(
            ParlayPick(
                id=str(uuid.uuid4()),
                leg_index=idx,
                matchup_id=matchup.id,
                picked_player_id=player_id,
                picked_player_name=f"Player {player_id}",
                odds=odds,
            )
        )
    db.add(parlay)
    db.commit()
    return parlay


# =============================================================================
# SEEDED SCENARIO
# =============================================================================

@pytest.fixture
def completed_round(db_session: Session):
    """
    Tournament with round 1 completed and finished standings stored.

    Matchups:
        m1: A (-3) vs B (-1)        -> A wins
        m2: C (-2) vs D (-2)        -> push (tie)
        m3: E (-4) vs F (+1) vs G (0) -> E wins
    """
    from app.repositories import StandingRepository

    tournament = create_tournament(db_session)
    create_round(db_session, tournament, 1, RoundStatus.COMPLETED)

    records = [
        standing("A", -3), standing("B", -1),
        standing("C", -2), standing("D", -2),
        standing("E", -4), standing("F", 1), standing("G", 0),
    ]
    StandingRepository(db_session).replace_round(tournament.id, 1, records)
    db_session.commit()

    matchups = {
        "m1": create_matchup(db_session, tournament, 1, [("A", -120), ("B", 100)]),
        "m2": create_matchup(db_session, tournament, 1, [("C", 2.0), ("D", 1.8)]),
        "m3": create_matchup(db_session, tournament, 1, [("E", 150), ("F", 250), ("G", 200)]),
    }
    return tournament, matchups


# =============================================================================
# API CLIENT
# =============================================================================

@pytest.fixture(scope="function")
def test_client(db_session, session_factory, fake_gateway):
    """
    FastAPI TestClient with get_db overridden and a pipeline on app.state.

    Created without a context manager so the application lifespan (real
    scheduler, DataGolf gateway) does not run.
    """
    from fastapi.testclient import TestClient
    from app.main import app
    from app.core.database import get_db
    from app.api.routes.settlement import get_gateway
    from app.services.settlement.orchestrator import PipelineConfig, PipelineOrchestrator

    test_db_session = db_session

    def override_get_db():
        try:
            yield test_db_session
        finally:
            pass

    async def override_get_gateway():
        yield fake_gateway

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = override_get_gateway
    app.state.pipeline = PipelineOrchestrator(
        session_factory=session_factory,
        gateway=fake_gateway,
        config=PipelineConfig(min_players_required=2),
    )

    client = TestClient(app)
    yield client

    app.dependency_overrides.clear()
    app.state.pipeline = None
