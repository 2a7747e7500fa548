"""
Settlement pipeline services.

Round flow: in_progress -> completed -> results_ingested -> settled
"""
from app.services.settlement.round_completion_detector import (
    CompletionCriteria,
    RoundCompletionDetector,
    evaluate_completion,
)
from app.services.settlement.result_ingestion_service import (
    ResultIngestionService,
    determine_matchup_result,
)
from app.services.settlement.settlement_engine import SettlementEngine, determine_pick_outcome
from app.services.settlement.reversal_service import ReversalService
from app.services.settlement.orchestrator import PipelineConfig, PipelineOrchestrator, RunReport, create_pipeline

__all__ = [
    "CompletionCriteria",
    "RoundCompletionDetector",
    "evaluate_completion",
    "ResultIngestionService",
    "determine_matchup_result",
    "SettlementEngine",
    "determine_pick_outcome",
    "ReversalService",
    "PipelineConfig",
    "PipelineOrchestrator",
    "RunReport",
    "create_pipeline",
]
