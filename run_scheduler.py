#!/usr/bin/env python3
"""
Background runner for the settlement pipeline.

Runs the pipeline orchestrator on its own AsyncIOScheduler, outside the API
process. It can be run via systemd, supervisor, or directly.

Usage:
    python run_scheduler.py              # Run in foreground
    python run_scheduler.py --status     # Print round/pick settlement state
    python run_scheduler.py --run-once   # Execute one pipeline pass and exit
    python run_scheduler.py --list-jobs  # List jobs that would be scheduled
"""
import asyncio
import argparse
import json
import signal
import sys
from pathlib import Path
from typing import Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

from app.core.config import settings
from app.core.database import SessionLocal, init_db
from app.core.logging import configure_logging, get_logger
from app.core.scheduler import AutomationScheduler
from app.repositories import ParlayPickRepository, RoundRepository
from app.services.settlement.orchestrator import PipelineOrchestrator, create_pipeline

configure_logging(level=settings.LOG_LEVEL, json_output=settings.is_production())
logger = get_logger(__name__)


class SchedulerRunner:
    """Runner for the settlement pipeline scheduler."""

    def __init__(self):
        self.scheduler: Optional[AutomationScheduler] = None
        self.pipeline: Optional[PipelineOrchestrator] = None
        self.shutdown = False

    async def start(self):
        """Start the scheduler and pipeline and run until shutdown."""
        logger.info("🚀 Starting settlement pipeline runner...")

        init_db()

        self.scheduler = AutomationScheduler()
        await self.scheduler.start()

        self.pipeline = create_pipeline(scheduler=self.scheduler)
        self.pipeline.start()

        logger.info("✅ Settlement pipeline is now running")
        logger.info("Press Ctrl+C to stop")

        # Setup signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._set_shutdown)

        # Keep running until shutdown
        while not self.shutdown:
            await asyncio.sleep(1)

        # Let an in-flight run finish its current rounds
        self.pipeline.stop()
        while self.pipeline.is_running:
            await asyncio.sleep(1)
        await self.pipeline.wait_for_rounds_in_flight()

        await self.pipeline.dispose()
        await self.scheduler.stop()
        logger.info("✅ Settlement pipeline runner stopped")

    def _set_shutdown(self):
        """Set shutdown flag."""
        logger.info("⏹️  Shutdown signal received")
        self.shutdown = True


def run_status_check() -> bool:
    """Print round and pick settlement state from the database."""
    db = SessionLocal()
    try:
        rounds = dict(RoundRepository(db).group_by_and_count("status"))
        picks = ParlayPickRepository(db).count_by_status()
        unsettled = ParlayPickRepository(db).unsettled_by_tournament()
    finally:
        db.close()

    print("=" * 60)
    print("SETTLEMENT STATUS")
    print("=" * 60)
    print()
    print("   Rounds by status:")
    for status, count in sorted(rounds.items()):
        print(f"   • {status}: {count}")
    print()
    print("   Picks by status:")
    for status, count in sorted(picks.items()):
        print(f"   • {status}: {count}")
    print()
    if unsettled:
        print("   Unsettled picks by tournament:")
        for tournament_id, count in sorted(unsettled.items()):
            print(f"   • {tournament_id}: {count}")
    else:
        print("   ✅ No unsettled picks")
    return True


async def run_once() -> bool:
    """Execute one pipeline pass and print the run report."""
    init_db()
    pipeline = create_pipeline()
    try:
        report = await pipeline.run_once()
    finally:
        await pipeline.dispose()

    print(json.dumps(report.to_dict(), indent=2))
    return report.success


async def list_jobs() -> None:
    """Start a scheduler with the pipeline job, list its jobs and exit."""
    scheduler = AutomationScheduler()
    await scheduler.start()
    pipeline = create_pipeline(scheduler=scheduler)
    pipeline.start()

    print("=" * 60)
    print("SCHEDULED AUTOMATION JOBS")
    print("=" * 60)
    print()
    print(f"Total jobs: {scheduler.job_count()}")
    print()

    for job in scheduler.scheduler.get_jobs():
        next_run = job.next_run_time
        next_run_str = next_run.strftime('%Y-%m-%d %H:%M UTC') if next_run else 'Pending'
        print(f"• {job.name} (id={job.id})")
        print(f"  Trigger:  {job.trigger}")
        print(f"  Next run: {next_run_str}")
        print()

    await pipeline.dispose()
    await scheduler.stop()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Run the golf matchup settlement pipeline'
    )

    parser.add_argument(
        '--status',
        action='store_true',
        help='Print settlement status and exit'
    )

    parser.add_argument(
        '--run-once',
        action='store_true',
        help='Execute one pipeline pass and exit'
    )

    parser.add_argument(
        '--list-jobs',
        action='store_true',
        help='List all scheduled jobs and exit'
    )

    args = parser.parse_args()

    if args.status:
        return 0 if run_status_check() else 1

    if args.list_jobs:
        asyncio.run(list_jobs())
        return 0

    if args.run_once:
        return 0 if asyncio.run(run_once()) else 1

    runner = SchedulerRunner()

    try:
        asyncio.run(runner.start())
    except KeyboardInterrupt:
        logger.info("🛑 Received interrupt, shutting down...")
        return 0
    except Exception as e:
        logger.error(f"❌ Scheduler error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
