"""
Manual settlement routes.

Provides endpoints for:
- Round completion status, full detection pass, recently completed rounds
- Ingesting results for a single round
- Settling a single round
- Pick settlement counts

These run the same services the pipeline uses, for one round at a time.
"""
import logging
from typing import AsyncGenerator, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.core.exceptions import ReferentialInconsistencyError, TransientFeedError
from app.repositories import ParlayPickRepository, RoundRepository
from app.services.scoring.live_score_gateway import DataGolfGateway, LiveScoreGateway
from app.services.settlement.orchestrator import PipelineConfig
from app.services.settlement.result_ingestion_service import ResultIngestionService
from app.services.settlement.round_completion_detector import RoundCompletionDetector
from app.services.settlement.settlement_engine import SettlementEngine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["settlement"])


class RoundRequest(BaseModel):
    tournament_id: str
    round_num: int = Field(..., ge=1)


class IngestRequest(RoundRequest):
    force_reprocess: bool = False


async def get_gateway(request: Request) -> AsyncGenerator[LiveScoreGateway, None]:
    """Live score gateway: the pipeline's when initialized, otherwise a per-request DataGolf client."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is not None:
        yield pipeline.gateway
        return

    gateway = DataGolfGateway()
    try:
        yield gateway
    finally:
        await gateway.close()


def _pipeline_config(request: Request) -> PipelineConfig:
    pipeline = getattr(request.app.state, "pipeline", None)
    return pipeline.config if pipeline is not None else PipelineConfig.from_settings()


@router.get("/round-completion")
async def get_round_completion(
    request: Request,
    tournament_id: Optional[str] = Query(None, description="Tournament id"),
    round_num: Optional[int] = Query(None, ge=1, description="Round number"),
    check_all: bool = Query(False, description="Run a detection pass over all active tournaments"),
    recently_completed: bool = Query(False, description="List rounds completed within hours_back"),
    hours_back: int = Query(24, ge=1, le=720),
    db: Session = Depends(get_db),
    gateway: LiveScoreGateway = Depends(get_gateway)
) -> Dict:
    """
    Round completion status.

    Modes (first match wins):
        recently_completed=true: rounds marked completed in the last `hours_back` hours
        check_all=true: detection pass over active tournaments
        tournament_id + round_num: status of a single round
    """
    config = _pipeline_config(request)
    detector = RoundCompletionDetector(
        db,
        gateway,
        criteria=config.completion_criteria(),
        check_timeout_seconds=config.round_timeout_seconds,
    )

    if recently_completed:
        rounds = detector.recently_completed(hours_back)
        return {
            "hours_back": hours_back,
            "count": len(rounds),
            "rounds": [
                {
                    "tournament_id": r.tournament_id,
                    "round_num": r.round_num,
                    "status": r.status,
                    "completion_percentage": r.completion_percentage,
                    "completed_at": r.completed_at.isoformat() if r.completed_at else None,
                }
                for r in rounds
            ],
        }

    if check_all:
        report = await detector.find_recently_completed_rounds(config.lookback_hours)
        return {
            "tournaments_checked": report.tournaments_checked,
            "rounds_checked": report.rounds_checked,
            "completed_rounds": [
                {"tournament_id": tid, "round_num": rn} for tid, rn in report.rounds
            ],
            "finalized_rounds": [
                {"tournament_id": tid, "round_num": rn} for tid, rn in report.rounds_finalized
            ],
            "errors": report.errors,
        }

    if not tournament_id or round_num is None:
        raise HTTPException(
            status_code=400,
            detail="Provide tournament_id and round_num, check_all=true, or recently_completed=true",
        )

    try:
        status = await detector.check_round_completion(tournament_id, round_num)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except TransientFeedError as e:
        raise HTTPException(status_code=503, detail=e.message)

    return status.to_dict()


@router.post("/ingest-results")
async def ingest_results(
    body: IngestRequest,
    db: Session = Depends(get_db)
) -> Dict:
    """
    Ingest matchup results for one round from stored standings.

    Returns per-matchup outcomes; unresolved matchups are listed in `errors`.
    """
    try:
        result = ResultIngestionService(db).ingest_round_results(
            body.tournament_id,
            body.round_num,
            force_reprocess=body.force_reprocess,
        )
    except ReferentialInconsistencyError as e:
        raise HTTPException(status_code=404, detail=e.message)

    return {"success": result.complete, **result.to_dict()}


@router.post("/settle-rounds")
async def settle_round(
    body: RoundRequest,
    db: Session = Depends(get_db)
) -> Dict:
    """Settle picks and parlays on one round's matchup results."""
    try:
        result = SettlementEngine(db).settle_parlays_for_round(body.tournament_id, body.round_num)
    except ReferentialInconsistencyError as e:
        raise HTTPException(status_code=404, detail=e.message)

    return {"success": not result.errors, **result.to_dict()}


@router.get("/settle-status")
async def get_settle_status(
    db: Session = Depends(get_db)
) -> Dict:
    """Pick counts by settlement status, unsettled picks per tournament, and rounds awaiting work."""
    picks = ParlayPickRepository(db)
    rounds = RoundRepository(db)

    return {
        "picks_by_status": picks.count_by_status(),
        "unsettled_by_tournament": picks.unsettled_by_tournament(),
        "rounds_by_status": {status: count for status, count in rounds.group_by_and_count("status")},
        "lookback_hours": settings.PIPELINE_LOOKBACK_HOURS,
    }
