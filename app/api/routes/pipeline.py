"""
Automation routes for the settlement pipeline.

Provides endpoints for:
- Pipeline status and last run report (GET)
- Lifecycle actions: start, stop, run_once, configure, initialize (POST)
- Configuration updates (PUT)
- Dropping the orchestrator (DELETE)

The orchestrator handle lives on app.state.pipeline; it is None after a
DELETE until an `initialize` action creates a new one.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, ValidationError

from app.core.exceptions import ConflictError
from app.services.settlement.orchestrator import PipelineConfig, PipelineOrchestrator, create_pipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/automation", tags=["automation"])

PIPELINE_ACTIONS = ("start", "stop", "run_once", "configure", "initialize")


class PipelineAction(BaseModel):
    """Request body for lifecycle actions."""
    action: str
    config: Optional[Dict[str, Any]] = None


def get_pipeline(request: Request) -> Optional[PipelineOrchestrator]:
    return getattr(request.app.state, "pipeline", None)


def _require_pipeline(request: Request) -> PipelineOrchestrator:
    pipeline = get_pipeline(request)
    if pipeline is None:
        raise HTTPException(status_code=404, detail="Pipeline not initialized; POST action 'initialize' first")
    return pipeline


def _apply_config(pipeline: PipelineOrchestrator, config: Dict[str, Any]) -> PipelineConfig:
    try:
        return pipeline.configure(config)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid pipeline config: {e.errors()}")
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=e.message)


@router.get("/pipeline")
async def get_pipeline_status(request: Request) -> Dict:
    """
    Get pipeline status.

    Returns running/started flags, last and next run times, the active
    config and the last run report.
    """
    pipeline = get_pipeline(request)
    if pipeline is None:
        return {"status": "not_initialized"}
    return {"status": "initialized", **pipeline.status()}


@router.post("/pipeline")
async def pipeline_action(body: PipelineAction, request: Request) -> Dict:
    """
    Perform a lifecycle action.

    Actions:
        start: Schedule the recurring run
        stop: Remove the recurring run; an active run finishes its current rounds
        run_once: Execute one run now and return its report (409 if busy)
        configure: Merge `config` into the current config (400 if missing)
        initialize: Create the orchestrator if it does not exist
    """
    if body.action not in PIPELINE_ACTIONS:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown action '{body.action}'; expected one of: {', '.join(PIPELINE_ACTIONS)}",
        )

    if body.action == "initialize":
        pipeline = get_pipeline(request)
        if pipeline is not None:
            return {"success": True, "message": "Pipeline already initialized", **pipeline.status()}

        config = PipelineConfig.from_settings()
        if body.config:
            try:
                config = PipelineConfig(**{**config.model_dump(), **body.config})
            except ValidationError as e:
                raise HTTPException(status_code=400, detail=f"Invalid pipeline config: {e.errors()}")

        pipeline = create_pipeline(scheduler=getattr(request.app.state, "scheduler", None), config=config)
        request.app.state.pipeline = pipeline
        logger.info("Settlement pipeline initialized via API")
        return {"success": True, "message": "Pipeline initialized", **pipeline.status()}

    pipeline = _require_pipeline(request)

    if body.action == "configure":
        if not body.config:
            raise HTTPException(status_code=400, detail="configure requires a 'config' object")
        config = _apply_config(pipeline, body.config)
        return {"success": True, "config": config.model_dump()}

    try:
        if body.action == "start":
            scheduled = pipeline.start()
            return {"success": True, "scheduled": scheduled, **pipeline.status()}

        if body.action == "stop":
            pipeline.stop()
            return {"success": True, **pipeline.status()}

        report = await pipeline.run_once()
        return {"success": report.success, "report": report.to_dict()}
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=e.message)


@router.put("/pipeline")
async def update_pipeline_config(config: Dict[str, Any], request: Request) -> Dict:
    """Update pipeline configuration. Takes effect on the next run."""
    pipeline = _require_pipeline(request)
    if not config:
        raise HTTPException(status_code=400, detail="Empty config")
    updated = _apply_config(pipeline, config)
    return {"success": True, "config": updated.model_dump()}


@router.delete("/pipeline")
async def delete_pipeline(request: Request) -> Dict:
    """Stop and drop the orchestrator."""
    pipeline = get_pipeline(request)
    if pipeline is None:
        return {"success": True, "message": "Pipeline not initialized"}

    await pipeline.dispose()
    request.app.state.pipeline = None
    logger.info("Settlement pipeline removed via API")
    return {"success": True, "message": "Pipeline stopped and removed"}
