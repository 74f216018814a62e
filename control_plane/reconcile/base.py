"""Shared pieces for reconciliation loops."""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

import structlog
from prometheus_client import Counter, Histogram

logger = structlog.get_logger(__name__)


# =============================================================================
# Prometheus Metrics
# =============================================================================

RECONCILE_RUNS_TOTAL = Counter(
    "control_plane_reconcile_runs_total",
    "Reconciliation passes executed",
    ["loop", "status"],  # success, partial, failure
)
RECONCILE_JOBS_DISPATCHED = Counter(
    "control_plane_reconcile_jobs_dispatched_total",
    "Jobs dispatched by reconciliation loops",
    ["loop", "job_type"],
)
RECONCILE_ITEM_ERRORS = Counter(
    "control_plane_reconcile_item_errors_total",
    "Items that raised during a reconciliation pass",
    ["loop"],
)
RECONCILE_DURATION = Histogram(
    "control_plane_reconcile_duration_seconds",
    "Duration of one reconciliation pass",
    ["loop"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)


@dataclass
class ReconcileResult:
    """Outcome of one pass."""

    loop: str
    examined: int = 0
    dispatched: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0

    def record_dispatch(self, job_type: str) -> None:
        self.dispatched += 1
        RECONCILE_JOBS_DISPATCHED.labels(loop=self.loop, job_type=job_type).inc()

    def record_error(self, item: str, error: Exception) -> None:
        self.errors.append(f"{item}: {error}")
        RECONCILE_ITEM_ERRORS.labels(loop=self.loop).inc()

    def summary(self) -> str:
        return (
            f"{self.loop}: examined={self.examined} dispatched={self.dispatched} "
            f"skipped={self.skipped} errors={len(self.errors)} "
            f"duration_ms={self.duration_ms}"
        )


@contextmanager
def reconcile_pass(loop: str) -> Iterator[ReconcileResult]:
    """Time a pass, then count it by status and log a summary."""
    result = ReconcileResult(loop=loop)
    started = time.monotonic()
    try:
        yield result
    except Exception:
        RECONCILE_RUNS_TOTAL.labels(loop=loop, status="failure").inc()
        raise
    finally:
        elapsed = time.monotonic() - started
        result.duration_ms = int(elapsed * 1000)
        RECONCILE_DURATION.labels(loop=loop).observe(elapsed)

    status = "partial" if result.errors else "success"
    RECONCILE_RUNS_TOTAL.labels(loop=loop, status=status).inc()
    logger.info(
        "reconcile_pass_completed",
        loop=loop,
        examined=result.examined,
        dispatched=result.dispatched,
        skipped=result.skipped,
        errors=len(result.errors),
        duration_ms=result.duration_ms,
    )
