"""
Prometheus metrics for the golf settlement API.

Metrics exposed:
- Settlement pipeline run counters and duration histogram
- Rounds detected, results ingested, picks/parlays settled, reversals
- DataGolf feed success/failure counters
- Database connection pool gauges
- Pipeline / scheduler status gauges
"""
from prometheus_client import Counter, Gauge, Histogram

# Pipeline Metrics
pipeline_runs_total = Counter(
    "pipeline_runs_total",
    "Total settlement pipeline runs",
    ["status"]
)

pipeline_run_duration_seconds = Histogram(
    "pipeline_run_duration_seconds",
    "Settlement pipeline run duration in seconds"
)

pipeline_running = Gauge(
    "pipeline_running",
    "Whether a settlement pipeline run is in progress (1=running, 0=idle)"
)

pipeline_scheduled = Gauge(
    "pipeline_scheduled",
    "Whether the recurring pipeline job is scheduled (1=started, 0=stopped)"
)

rounds_completed_total = Counter(
    "rounds_completed_total",
    "Total rounds detected as completed"
)

matchup_results_ingested_total = Counter(
    "matchup_results_ingested_total",
    "Total matchup results written by ingestion"
)

picks_settled_total = Counter(
    "picks_settled_total",
    "Total parlay picks settled",
    ["outcome"]
)

parlays_settled_total = Counter(
    "parlays_settled_total",
    "Total parlays settled",
    ["outcome"]
)

settlement_reversals_total = Counter(
    "settlement_reversals_total",
    "Total parlay settlement reversals"
)

pipeline_errors_total = Counter(
    "pipeline_errors_total",
    "Total pipeline errors by type",
    ["error_type"]
)

# External API Metrics
datagolf_requests_success_total = Counter(
    "datagolf_requests_success_total",
    "Total successful DataGolf feed requests"
)

datagolf_requests_failure_total = Counter(
    "datagolf_requests_failure_total",
    "Total failed DataGolf feed requests",
    ["error_type"]
)

# Database Metrics
db_pool_connections = Gauge(
    "db_pool_connections",
    "Number of database connections in the pool"
)

db_pool_connections_checked_out = Gauge(
    "db_pool_connections_checked_out",
    "Number of checked out database connections"
)

# Circuit Breaker Metrics
circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["service"]
)


def update_db_pool_metrics():
    """Update database connection pool metrics from the SQLAlchemy engine."""
    from app.core.database import engine

    pool = engine.pool
    # SQLite pools do not report sizes
    if hasattr(pool, "size") and hasattr(pool, "checkedout"):
        db_pool_connections.set(pool.size())
        db_pool_connections_checked_out.set(pool.checkedout())


def record_pipeline_run(report) -> None:
    """Record counters for a finished pipeline run report."""
    pipeline_runs_total.labels(status="success" if report.success else "failure").inc()
    if report.duration_ms is not None:
        pipeline_run_duration_seconds.observe(report.duration_ms / 1000)
    rounds_completed_total.inc(report.rounds_found)
    matchup_results_ingested_total.inc(report.results_ingested)
    for error in report.errors:
        pipeline_errors_total.labels(error_type=error.get("error_type", "unknown")).inc()


def record_pick_settled(outcome: str) -> None:
    picks_settled_total.labels(outcome=outcome).inc()


def record_parlay_settled(outcome: str) -> None:
    parlays_settled_total.labels(outcome=outcome).inc()


def record_reversal() -> None:
    settlement_reversals_total.inc()


def record_datagolf_request_success():
    """Record a successful DataGolf request."""
    datagolf_requests_success_total.inc()


def record_datagolf_request_failure(error_type: str = "unknown"):
    """Record a failed DataGolf request."""
    datagolf_requests_failure_total.labels(error_type=error_type).inc()
