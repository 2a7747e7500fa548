"""
Settlement pipeline orchestrator.

Sequences detection -> ingestion -> settlement for every round that needs
it and aggregates the outcome into a RunReport. The orchestrator is an
explicit object: the API process keeps it on app.state, the standalone
runner keeps it on the runner, and tests build their own.

Lifecycle: created -> configured -> started / stopped -> disposed

Guarantees:
- At most one run is active; run_once() during a run raises ConflictError
  immediately and writes nothing.
- start()/stop() only add/remove the interval job.
- stop() during a run lets rounds already in flight finish and skips the rest.
- configure() takes effect on the next run, never the one in flight.
- A round whose worker thread outlived its timeout stays in flight; later
  runs skip it with a ConflictError until the thread has finished.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import ConflictError, PersistenceError, SettlementPipelineError, round_key
from app.core.logging import clear_run_id, get_logger, set_run_id
from app.core.metrics import pipeline_running, pipeline_scheduled, record_pipeline_run
from app.core.scheduler import AutomationScheduler
from app.models import RoundStatus
from app.repositories import RoundRepository
from app.services.scoring.live_score_gateway import LiveScoreGateway
from app.services.settlement.result_ingestion_service import ResultIngestionService
from app.services.settlement.round_completion_detector import CompletionCriteria, RoundCompletionDetector
from app.services.settlement.settlement_engine import SettlementEngine
from app.utils.timezone import utcnow

logger = get_logger(__name__)

PIPELINE_JOB_ID = "settlement_pipeline"


class PipelineConfig(BaseModel):
    """Tunables for detection and run execution."""

    enabled: bool = True
    check_interval_minutes: int = Field(60, ge=1)
    min_completion_percentage: float = Field(80.0, ge=0, le=100)
    min_players_required: int = Field(50, ge=1)
    consider_withdrawn_complete: bool = True
    lookback_hours: int = Field(48, ge=0)
    round_timeout_seconds: float = Field(120.0, gt=0)
    run_deadline_seconds: float = Field(900.0, gt=0)
    max_concurrent_rounds: int = Field(4, ge=1)

    @classmethod
    def from_settings(cls) -> "PipelineConfig":
        return cls(
            enabled=settings.PIPELINE_ENABLED,
            check_interval_minutes=settings.PIPELINE_CHECK_INTERVAL_MINUTES,
            min_completion_percentage=settings.PIPELINE_MIN_COMPLETION_PERCENTAGE,
            min_players_required=settings.PIPELINE_MIN_PLAYERS_REQUIRED,
            lookback_hours=settings.PIPELINE_LOOKBACK_HOURS,
            round_timeout_seconds=settings.PIPELINE_ROUND_TIMEOUT_SECONDS,
            run_deadline_seconds=settings.PIPELINE_RUN_DEADLINE_SECONDS,
            max_concurrent_rounds=settings.PIPELINE_MAX_CONCURRENT_ROUNDS,
        )

    def completion_criteria(self) -> CompletionCriteria:
        return CompletionCriteria(
            min_completion_percentage=self.min_completion_percentage,
            min_players_required=self.min_players_required,
            consider_withdrawn_complete=self.consider_withdrawn_complete,
        )


class LifecycleState(str, Enum):
    CREATED = "created"
    CONFIGURED = "configured"
    STARTED = "started"
    STOPPED = "stopped"
    DISPOSED = "disposed"


@dataclass
class RoundReport:
    tournament_id: str
    round_num: int
    results_ingested: int = 0
    picks_settled: int = 0
    parlays_settled: int = 0
    round_status: Optional[str] = None
    settled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tournament_id": self.tournament_id,
            "round_num": self.round_num,
            "results_ingested": self.results_ingested,
            "picks_settled": self.picks_settled,
            "parlays_settled": self.parlays_settled,
            "round_status": self.round_status,
            "settlement_attempted": self.settled,
        }


@dataclass
class RunReport:
    run_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    rounds_checked: int = 0
    rounds_found: int = 0
    rounds_finalized: int = 0
    rounds_retried: int = 0
    rounds_processed: int = 0
    rounds_skipped: int = 0
    results_ingested: int = 0
    picks_settled: int = 0
    parlays_settled: int = 0
    processed_rounds: List[RoundReport] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    aborted: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.aborted is None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)

    def add_error(self, error: Dict[str, Any], round_id: Optional[str] = None) -> None:
        entry = dict(error)
        if round_id:
            entry.setdefault("round", round_id)
        self.errors.append(entry)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "success": self.success,
            "aborted": self.aborted,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "rounds_checked": self.rounds_checked,
            "rounds_found": self.rounds_found,
            "rounds_finalized": self.rounds_finalized,
            "rounds_retried": self.rounds_retried,
            "rounds_processed": self.rounds_processed,
            "rounds_skipped": self.rounds_skipped,
            "results_ingested": self.results_ingested,
            "picks_settled": self.picks_settled,
            "parlays_settled": self.parlays_settled,
            "processed_rounds": [r.to_dict() for r in self.processed_rounds],
            "errors": self.errors,
        }


class PipelineOrchestrator:
    """Owns the settlement pipeline run lifecycle."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        gateway: LiveScoreGateway,
        config: Optional[PipelineConfig] = None,
        scheduler: Optional[AutomationScheduler] = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.scheduler = scheduler
        self.config = config or PipelineConfig.from_settings()
        self.state = LifecycleState.CONFIGURED if config else LifecycleState.CREATED

        self.last_run_time: Optional[datetime] = None
        self.last_report: Optional[RunReport] = None

        self._lock = asyncio.Lock()
        self._stop_requested = False
        # round key -> task awaiting that round's worker thread
        self._rounds_in_flight: Dict[str, asyncio.Future] = {}

    # ========================================================================
    # Lifecycle
    # ========================================================================

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @property
    def is_started(self) -> bool:
        return self.state == LifecycleState.STARTED

    def start(self) -> bool:
        """Register the recurring job. Returns True if a job was scheduled."""
        self._ensure_usable()
        scheduled = False
        if self.scheduler is not None:
            scheduled = self.scheduler.add_interval_job(
                PIPELINE_JOB_ID,
                self._scheduled_run,
                minutes=self.config.check_interval_minutes,
                name="Settlement Pipeline",
            )
        self.state = LifecycleState.STARTED
        self._stop_requested = False
        pipeline_scheduled.set(1)
        logger.info(f"Settlement pipeline started (every {self.config.check_interval_minutes} min)")
        return scheduled

    def stop(self) -> None:
        """Remove the recurring job; an in-flight run finishes its current rounds."""
        self._ensure_usable()
        if self.scheduler is not None:
            self.scheduler.remove_job(PIPELINE_JOB_ID)
        if self.is_running:
            self._stop_requested = True
            logger.info("Stop requested - in-flight run will finish its current rounds")
        self.state = LifecycleState.STOPPED
        pipeline_scheduled.set(0)
        logger.info("Settlement pipeline stopped")

    def configure(self, updates: PipelineConfig | Dict[str, Any]) -> PipelineConfig:
        """
        Replace tunables. Partial dicts are merged over the current config.

        Raises:
            pydantic.ValidationError: Invalid values (nothing is changed)
        """
        self._ensure_usable()
        if isinstance(updates, PipelineConfig):
            new_config = updates
        else:
            new_config = PipelineConfig(**{**self.config.model_dump(), **updates})

        interval_changed = new_config.check_interval_minutes != self.config.check_interval_minutes
        self.config = new_config

        if self.state == LifecycleState.CREATED:
            self.state = LifecycleState.CONFIGURED

        if self.is_started and interval_changed and self.scheduler is not None:
            self.scheduler.add_interval_job(
                PIPELINE_JOB_ID,
                self._scheduled_run,
                minutes=new_config.check_interval_minutes,
                name="Settlement Pipeline",
            )

        logger.info(f"Pipeline configuration updated: {new_config.model_dump()}")
        return new_config

    async def dispose(self) -> None:
        """Stop scheduling and release the gateway. The instance is unusable afterwards."""
        if self.state == LifecycleState.DISPOSED:
            return
        self.stop()
        await self.gateway.close()
        self.state = LifecycleState.DISPOSED
        logger.info("Settlement pipeline disposed")

    def status(self) -> Dict[str, Any]:
        next_run = None
        if self.is_started and self.scheduler is not None:
            next_run = self.scheduler.next_run_time(PIPELINE_JOB_ID)

        return {
            "is_running": self.is_running,
            "is_enabled": self.config.enabled,
            "is_started": self.is_started,
            "lifecycle": self.state.value,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "next_run_time": next_run.isoformat() if next_run else None,
            "config": self.config.model_dump(),
            "rounds_in_flight": sorted(self._rounds_in_flight),
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }

    async def wait_for_rounds_in_flight(self) -> None:
        """Wait for worker threads left running by timed-out rounds."""
        pending = list(self._rounds_in_flight.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _ensure_usable(self) -> None:
        if self.state == LifecycleState.DISPOSED:
            raise ConflictError("Pipeline has been disposed; initialize a new one", entity_type="pipeline")

    # ========================================================================
    # Runs
    # ========================================================================

    async def _scheduled_run(self) -> None:
        try:
            await self.run_once()
        except ConflictError:
            logger.info("⏭️  Previous pipeline run still active - skipping scheduled tick")

    async def run_once(self) -> RunReport:
        """
        Execute one pipeline pass.

        Raises:
            ConflictError: A run is already active, or the pipeline is disposed
        """
        self._ensure_usable()
        if self._lock.locked():
            raise ConflictError("Pipeline run already in progress", entity_type="pipeline")

        async with self._lock:
            return await self._execute(self.config)

    async def _execute(self, config: PipelineConfig) -> RunReport:
        report = RunReport(run_id=str(uuid.uuid4()), start_time=utcnow())
        token = set_run_id(report.run_id)
        self._stop_requested = False
        pipeline_running.set(1)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + config.run_deadline_seconds

        logger.info(f"🏌️ Pipeline run {report.run_id} started")

        try:
            if not config.enabled:
                report.aborted = "Pipeline is disabled"
                logger.info("Pipeline disabled - nothing to do")
                return report

            rounds = await self._collect_rounds(config, report, deadline)
            if report.aborted:
                return report

            semaphore = asyncio.Semaphore(config.max_concurrent_rounds)
            await asyncio.gather(*(
                self._run_round(tournament_id, round_num, config, report, semaphore, deadline)
                for tournament_id, round_num in rounds
            ))
            return report
        finally:
            report.end_time = utcnow()
            self.last_run_time = report.start_time
            self.last_report = report
            pipeline_running.set(0)
            record_pipeline_run(report)
            logger.info(
                f"Pipeline run {report.run_id} finished in {report.duration_ms}ms: "
                f"{report.rounds_found} rounds found, {report.rounds_processed} processed, "
                f"{report.results_ingested} results, {report.picks_settled} picks, "
                f"{report.parlays_settled} parlays, {len(report.errors)} errors"
                + (f" (aborted: {report.aborted})" if report.aborted else "")
            )
            clear_run_id(token)

    async def _collect_rounds(
        self,
        config: PipelineConfig,
        report: RunReport,
        deadline: float,
    ) -> List[Tuple[str, int]]:
        """Newly completed rounds plus earlier rounds still awaiting ingestion or settlement."""
        db = self.session_factory()
        try:
            detector = RoundCompletionDetector(
                db,
                self.gateway,
                criteria=config.completion_criteria(),
                check_timeout_seconds=config.round_timeout_seconds,
            )
            remaining = deadline - asyncio.get_running_loop().time()
            detection = await asyncio.wait_for(
                detector.find_recently_completed_rounds(config.lookback_hours),
                timeout=max(remaining, 0.001),
            )

            pending = RoundRepository(db).find_by_status([RoundStatus.COMPLETED, RoundStatus.RESULTS_INGESTED])
            pending_keys = [(r.tournament_id, r.round_num) for r in pending]
        except asyncio.TimeoutError:
            report.aborted = f"Run deadline of {config.run_deadline_seconds}s exceeded during detection"
            return []
        except SQLAlchemyError as e:
            db.rollback()
            report.aborted = f"Storage unavailable: {e}"
            logger.error(f"Pipeline run aborted, storage unavailable: {e}")
            return []
        finally:
            db.close()

        report.rounds_checked = detection.rounds_checked
        report.rounds_found = len(detection.rounds)
        report.rounds_finalized = len(detection.rounds_finalized)
        for error in detection.errors:
            report.add_error(error)

        ordered: List[Tuple[str, int]] = list(dict.fromkeys(detection.rounds))
        retried = [key for key in pending_keys if key not in ordered]
        report.rounds_retried = len(retried)
        return ordered + retried

    async def _run_round(
        self,
        tournament_id: str,
        round_num: int,
        config: PipelineConfig,
        report: RunReport,
        semaphore: asyncio.Semaphore,
        deadline: float,
    ) -> None:
        key = round_key(tournament_id, round_num)
        async with semaphore:
            if self._stop_requested:
                report.rounds_skipped += 1
                logger.info(f"Skipping {key}: pipeline stopped")
                return

            remaining = deadline - asyncio.get_running_loop().time()
            if remaining <= 0:
                report.rounds_skipped += 1
                report.add_error({
                    "error_type": "DeadlineExceeded",
                    "entity_type": "round",
                    "entity_id": key,
                    "message": f"Round {key} not started: run deadline of {config.run_deadline_seconds}s exceeded",
                })
                return

            if key in self._rounds_in_flight:
                report.rounds_skipped += 1
                report.add_error(ConflictError(
                    f"Round {key} is still being processed by an earlier run",
                    entity_type="round",
                    entity_id=key,
                ).to_dict())
                return

            worker = asyncio.ensure_future(asyncio.to_thread(self._process_round, tournament_id, round_num))
            self._rounds_in_flight[key] = worker
            worker.add_done_callback(lambda _: self._rounds_in_flight.pop(key, None))

            try:
                # Shielded: on timeout the thread keeps running and the round stays in flight
                round_report, errors = await asyncio.wait_for(
                    asyncio.shield(worker),
                    timeout=min(config.round_timeout_seconds, remaining),
                )
            except asyncio.TimeoutError:
                worker.add_done_callback(lambda task: self._log_late_round(key, task))
                report.add_error({
                    "error_type": "RoundTimeout",
                    "entity_type": "round",
                    "entity_id": key,
                    "message": f"Round {key} exceeded {config.round_timeout_seconds}s; results will be reconciled next run",
                })
                return
            except SettlementPipelineError as e:
                report.add_error(e.to_dict(), round_id=key)
                return
            except SQLAlchemyError as e:
                report.add_error(
                    PersistenceError(f"Round {key}: storage failure: {e}", entity_type="round", entity_id=key).to_dict()
                )
                return

        report.rounds_processed += 1
        report.results_ingested += round_report.results_ingested
        report.picks_settled += round_report.picks_settled
        report.parlays_settled += round_report.parlays_settled
        report.processed_rounds.append(round_report)
        for error in errors:
            report.add_error(error, round_id=key)

    @staticmethod
    def _log_late_round(key: str, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Timed-out round {key} failed after its run ended: {error}")
        else:
            logger.info(f"Timed-out round {key} finished after its run ended")

    def _process_round(self, tournament_id: str, round_num: int) -> Tuple[RoundReport, List[Dict[str, Any]]]:
        """Ingest then settle one round in its own session (runs in a worker thread)."""
        db = self.session_factory()
        try:
            round_report = RoundReport(tournament_id=tournament_id, round_num=round_num)
            errors: List[Dict[str, Any]] = []

            ingestion = ResultIngestionService(db).ingest_round_results(tournament_id, round_num)
            round_report.results_ingested = ingestion.saved_count
            round_report.round_status = ingestion.round_status
            errors.extend(ingestion.errors)

            if ingestion.round_status == RoundStatus.RESULTS_INGESTED.value:
                settlement = SettlementEngine(db).settle_parlays_for_round(tournament_id, round_num)
                round_report.settled = True
                round_report.picks_settled = settlement.picks_settled
                round_report.parlays_settled = settlement.parlays_settled
                round_report.round_status = settlement.round_status
                errors.extend(settlement.errors)

            return round_report, errors
        finally:
            db.close()


def create_pipeline(
    scheduler: Optional[AutomationScheduler] = None,
    config: Optional[PipelineConfig] = None,
) -> PipelineOrchestrator:
    """Build an orchestrator wired to the application database and the DataGolf feed."""
    from app.core.database import SessionLocal
    from app.services.scoring.live_score_gateway import DataGolfGateway

    return PipelineOrchestrator(
        session_factory=SessionLocal,
        gateway=DataGolfGateway(),
        config=config or PipelineConfig.from_settings(),
        scheduler=scheduler,
    )
