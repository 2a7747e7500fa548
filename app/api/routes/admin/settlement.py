"""
Admin settlement routes.

Provides endpoints for:
- Reversing a parlay settlement (correction workflow)
- Forcing a stalled round to completed (tournament ended, feed moved on)

Rate limited; not versioned with the public API.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.api.routes.settlement import _pipeline_config, get_gateway
from app.core.database import get_db
from app.core.exceptions import ConflictError, DataIncompleteError, ParlayNotFoundError, PersistenceError
from app.core.rate_limit import ADMIN_RATE_LIMIT, limiter
from app.repositories import TournamentRepository
from app.services.scoring.live_score_gateway import LiveScoreGateway
from app.services.settlement.round_completion_detector import RoundCompletionDetector
from app.services.settlement.reversal_service import ReversalService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["admin"])


class ReverseSettlementRequest(BaseModel):
    """Request model for settlement reversal."""
    parlay_id: str
    reason: str = Field(..., min_length=1, max_length=500)


class ReverseSettlementResponse(BaseModel):
    """Response model for settlement reversal."""
    success: bool
    parlay_id: str
    picks_reset: int


@router.post("/reverse-settlement", response_model=ReverseSettlementResponse)
@limiter.limit(ADMIN_RATE_LIMIT)
async def reverse_settlement(
    request: Request,
    body: ReverseSettlementRequest,
    db: Session = Depends(get_db)
):
    """
    Reset a settled parlay and its picks so they are settled again.

    Raises:
        404: Parlay not found
        409: Parlay modified concurrently (retry)
        500: Storage failure, nothing was changed
    """
    logger.info(f"Reversal requested for parlay {body.parlay_id} from {request.client.host if request.client else 'unknown'}")

    try:
        result = ReversalService(db).reverse_settlement(body.parlay_id, body.reason)
    except ParlayNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=e.message)

    return ReverseSettlementResponse(
        success=True,
        parlay_id=result.parlay_id,
        picks_reset=result.picks_reset,
    )


class CompleteRoundRequest(BaseModel):
    """Request model for forcing a round to completed. Identify the tournament by id or feed event id."""
    tournament_id: Optional[str] = None
    event_id: Optional[str] = None
    round_num: int = Field(..., ge=1)
    reason: str = Field(..., min_length=1, max_length=500)


class CompleteRoundResponse(BaseModel):
    """Response model for a forced round completion."""
    success: bool
    tournament_id: str
    round_num: int
    status: str
    players_total: Optional[int] = None
    players_completed: Optional[int] = None
    completion_percentage: Optional[float] = None


@router.post("/complete-round", response_model=CompleteRoundResponse)
@limiter.limit(ADMIN_RATE_LIMIT)
async def complete_round(
    request: Request,
    body: CompleteRoundRequest,
    db: Session = Depends(get_db),
    gateway: LiveScoreGateway = Depends(get_gateway)
):
    """
    Mark a round completed from its stored standings so the pipeline ingests and settles it.

    For tournaments that ended while a round was still in_progress and the
    feed has moved on.

    Raises:
        400: Neither tournament_id nor event_id given
        404: Tournament not found
        409: Round is already past in_progress
        422: No standings stored for the round
    """
    tournament_id = body.tournament_id
    if tournament_id is None:
        if body.event_id is None:
            raise HTTPException(status_code=400, detail="Provide tournament_id or event_id")
        tournament = TournamentRepository(db).find_by_event_id(body.event_id)
        if tournament is None:
            raise HTTPException(status_code=404, detail=f"Tournament with event id {body.event_id} not found")
        tournament_id = tournament.id

    logger.info(f"Forced completion requested for {tournament_id} round {body.round_num}: {body.reason}")

    detector = RoundCompletionDetector(db, gateway, criteria=_pipeline_config(request).completion_criteria())
    try:
        state = detector.force_round_completion(tournament_id, body.round_num, body.reason)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except DataIncompleteError as e:
        raise HTTPException(status_code=422, detail=e.message)

    return CompleteRoundResponse(
        success=True,
        tournament_id=state.tournament_id,
        round_num=state.round_num,
        status=state.status,
        players_total=state.players_total,
        players_completed=state.players_completed,
        completion_percentage=state.completion_percentage,
    )
