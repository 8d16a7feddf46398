"""
Monitoring API routes.

Operator views over sync metrics, alerts, health and scheduled jobs.
"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Response, status

from ..deps import ApiKey, Monitor
from ...core.scheduler import get_job_status, scheduler
from ...jobs.monitoring import get_monitoring_job_stats
from ...sync.monitoring import (
    BatchMetrics,
    HealthCheckResult,
    PerformanceAnalysis,
    SyncAlert,
    SyncMetric,
)

router = APIRouter(prefix="/monitoring", tags=["monitoring"])


# ============================================================================
# Metrics Routes
# ============================================================================

@router.get("/performance", response_model=PerformanceAnalysis)
async def get_performance(
    monitor: Monitor,
    api_key: ApiKey,
    window: str = Query("hour", pattern="^(hour|day|week)$"),
) -> PerformanceAnalysis:
    """Success rate, durations, throughput and bottlenecks over a window."""
    return monitor.get_performance_analysis(window)


@router.get("/batch-stats", response_model=BatchMetrics)
async def get_batch_stats(
    monitor: Monitor,
    api_key: ApiKey,
    operation: Optional[str] = None,
    last_minutes: int = Query(60, ge=1, le=24 * 60),
) -> BatchMetrics:
    """Aggregates for one operation (or all) over the last minutes."""
    return monitor.get_batch_metrics(operation, last_minutes)


@router.get("/metrics/recent", response_model=list[SyncMetric])
async def get_recent_metrics(
    monitor: Monitor,
    api_key: ApiKey,
    count: int = Query(50, ge=1, le=1000),
) -> list[SyncMetric]:
    """The most recent metrics, oldest first."""
    return monitor.get_recent_metrics(count)


@router.get("/metrics/export")
async def export_metrics(
    monitor: Monitor,
    api_key: ApiKey,
) -> Response:
    """All buffered metrics as a JSON document."""
    return Response(content=monitor.export_metrics(), media_type="application/json")


@router.get("/health", response_model=HealthCheckResult)
async def get_health(
    monitor: Monitor,
    api_key: ApiKey,
) -> HealthCheckResult:
    """Score sync health from recent response times, errors and throughput."""
    return monitor.perform_health_check()


# ============================================================================
# Alert Routes
# ============================================================================

@router.get("/alerts", response_model=list[SyncAlert])
async def list_alerts(
    monitor: Monitor,
    api_key: ApiKey,
    include_acknowledged: bool = False,
) -> list[SyncAlert]:
    """Current alerts, oldest first."""
    return monitor.get_alerts(include_acknowledged)


@router.post("/alerts/{alert_id}/acknowledge", response_model=SyncAlert)
async def acknowledge_alert(
    alert_id: str,
    monitor: Monitor,
    api_key: ApiKey,
) -> SyncAlert:
    """Mark an alert as seen."""
    alert = monitor.acknowledge_alert(alert_id)
    if not alert:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Alert not found",
        )
    return alert


# ============================================================================
# Job Routes
# ============================================================================

@router.get("/jobs")
async def list_jobs(api_key: ApiKey) -> dict:
    """Status of the scheduled monitoring jobs."""
    jobs = get_job_status()
    return {
        "scheduler_running": scheduler.running,
        "job_count": len(jobs),
        "jobs": jobs,
        "stats": get_monitoring_job_stats(),
    }
