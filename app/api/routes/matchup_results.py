"""
Matchup result routes.

Canonical MatchupResults are normally written by the ingestion service.
These endpoints list them and allow manual entry or correction; a manual
POST overwrites the existing result for the same (matchup, event, round).
"""
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.models import MatchupResult, WinMethod
from app.repositories import MatchupRepository, MatchupResultRepository
from app.utils.timezone import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/matchup-results", tags=["matchup-results"])


class MatchupResultRequest(BaseModel):
    """Manual result entry."""
    matchup_id: str
    event_id: Optional[str] = None  # Defaults to the matchup's tournament event id
    round_num: Optional[int] = Field(None, ge=1)  # Defaults to the matchup's round
    winner_player_id: Optional[str] = None
    is_push: bool = False
    win_method: str = WinMethod.MANUAL.value
    result_notes: Optional[str] = None
    player1_score: Optional[int] = None
    player2_score: Optional[int] = None
    player3_score: Optional[int] = None


def _serialize(result: MatchupResult) -> Dict:
    return {
        "id": result.id,
        "matchup_id": result.matchup_id,
        "event_id": result.event_id,
        "round_num": result.round_num,
        "winner_player_id": result.winner_player_id,
        "winner_name": result.winner_name,
        "is_push": result.is_push,
        "win_method": result.win_method,
        "result_notes": result.result_notes,
        "player1_score": result.player1_score,
        "player2_score": result.player2_score,
        "player3_score": result.player3_score,
        "result_determined_at": result.result_determined_at.isoformat() if result.result_determined_at else None,
    }


@router.get("")
async def list_matchup_results(
    event_id: Optional[str] = Query(None, description="Tournament event id"),
    round_num: Optional[int] = Query(None, ge=1, description="Round number"),
    matchup_id: Optional[str] = Query(None, description="Matchup id"),
    limit: int = Query(500, ge=1, le=5000),
    db: Session = Depends(get_db)
) -> Dict:
    """List matchup results, newest first."""
    results: List[MatchupResult] = MatchupResultRepository(db).search(
        event_id=event_id,
        round_num=round_num,
        matchup_id=matchup_id,
        limit=limit,
    )
    return {
        "count": len(results),
        "results": [_serialize(r) for r in results],
    }


@router.post("")
async def upsert_matchup_result(
    body: MatchupResultRequest,
    db: Session = Depends(get_db)
) -> Dict:
    """
    Create or overwrite the result for a matchup.

    Returns:
        The stored result and whether it was created or updated

    Raises:
        404: Unknown matchup
        400: Winner not in the matchup, or neither a winner nor a push
    """
    matchup = MatchupRepository(db).find_by_id(body.matchup_id)
    if matchup is None:
        raise HTTPException(status_code=404, detail=f"Matchup {body.matchup_id} not found")

    valid_methods = {m.value for m in WinMethod}
    if body.win_method not in valid_methods:
        raise HTTPException(status_code=400, detail=f"win_method must be one of {sorted(valid_methods)}")

    if body.is_push:
        winner_id = None
    elif not body.winner_player_id:
        raise HTTPException(status_code=400, detail="winner_player_id is required unless is_push is true")
    elif body.winner_player_id not in matchup.player_ids:
        raise HTTPException(
            status_code=400,
            detail=f"Player {body.winner_player_id} is not part of matchup {matchup.id}",
        )
    else:
        winner_id = body.winner_player_id

    values = {
        "winner_player_id": winner_id,
        "winner_name": matchup.player_name(winner_id) if winner_id else None,
        "is_push": body.is_push,
        "win_method": body.win_method,
        "result_notes": body.result_notes,
        "player1_score": body.player1_score,
        "player2_score": body.player2_score,
        "player3_score": body.player3_score,
    }

    try:
        result, action = MatchupResultRepository(db).upsert(
            matchup_id=matchup.id,
            event_id=body.event_id or matchup.tournament.event_id,
            round_num=body.round_num or matchup.round_num,
            values=values,
            determined_at=utcnow(),
            overwrite=True,
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to save result for matchup {matchup.id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to save result: {e}")

    logger.info(f"Matchup result {action} manually for matchup {matchup.id}")
    return {"success": True, "action": action, "result": _serialize(result)}


@router.delete("/{result_id}")
async def delete_matchup_result(
    result_id: str,
    db: Session = Depends(get_db)
) -> Dict:
    """Delete a matchup result. Picks already settled on it are not reversed."""
    repo = MatchupResultRepository(db)
    if not repo.delete(result_id):
        raise HTTPException(status_code=404, detail=f"Matchup result {result_id} not found")

    db.commit()
    logger.info(f"Deleted matchup result {result_id}")
    return {"success": True, "id": result_id}
