"""
Sync monitoring: operation metrics, alerts, performance analysis, health.

Metrics and alerts live in bounded ring buffers owned by one long-lived
``SyncMonitor``; when full, the oldest entries are evicted first. Nothing
here feeds back into sync decisions.
"""

import json
import logging
import statistics
import time
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, AsyncIterator, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from ..core.config import get_settings

logger = logging.getLogger(__name__)

ANOMALY_SAMPLE_SIZE = 100
ANOMALY_MIN_SAMPLES = 10
ANOMALY_FACTOR = 3
HIGH_ENTITY_COUNT = 1000
BOTTLENECK_AVG_MS = 3000
DUPLICATE_ALERT_WINDOW = timedelta(minutes=5)
METRIC_RETENTION = timedelta(hours=24)
ACKNOWLEDGED_ALERT_RETENTION = timedelta(days=7)

_WINDOW_HOURS = {"hour": 1, "day": 24, "week": 168}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AlertType(str, Enum):
    PERFORMANCE = "performance"
    ERROR = "error"
    THROUGHPUT = "throughput"
    HEALTH = "health"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class SyncMetric(BaseModel):
    """One measured sync operation."""
    operation: str
    entity_type: Optional[str] = None
    duration_ms: float = Field(..., ge=0)
    entity_count: int = 1
    success: bool = True
    error_message: Optional[str] = None
    user_id: Optional[str] = None
    device_id: Optional[str] = None
    batch_size: Optional[int] = None
    concurrency: Optional[int] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    details: dict[str, Any] = Field(default_factory=dict)


class SyncAlert(BaseModel):
    id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    details: Optional[dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    acknowledged: bool = False


class EntityTypeStats(BaseModel):
    operations: int
    entities: int
    average_duration_ms: float
    success_rate: float


class PerformanceAnalysis(BaseModel):
    window: str
    total_operations: int
    success_rate: float
    average_duration_ms: float
    median_duration_ms: float
    throughput_per_hour: float
    error_rate: float
    by_entity_type: dict[str, EntityTypeStats] = Field(default_factory=dict)
    top_bottlenecks: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class BatchMetrics(BaseModel):
    total_duration_ms: float = 0
    average_operation_ms: float = 0
    success_count: int = 0
    failure_count: int = 0
    throughput_per_second: float = 0
    batch_sizes: list[int] = Field(default_factory=list)


class HealthComponent(BaseModel):
    name: str
    score: float
    details: dict[str, Any] = Field(default_factory=dict)


class HealthCheckResult(BaseModel):
    status: HealthStatus
    score: float
    timestamp: datetime
    components: list[HealthComponent] = Field(default_factory=list)


class SyncMonitor:
    """Collects sync metrics and raises alerts."""

    def __init__(
        self,
        max_metrics: int = 10000,
        max_alerts: int = 1000,
        slow_operation_ms: float = 5000,
    ):
        self.metrics: deque[SyncMetric] = deque(maxlen=max_metrics)
        self.alerts: deque[SyncAlert] = deque(maxlen=max_alerts)
        self.slow_operation_ms = slow_operation_ms

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_metric(self, metric: SyncMetric) -> SyncMetric:
        """Store a metric (stamped with the current time) and run realtime checks."""
        metric = metric.model_copy(update={"timestamp": _utcnow()})
        self.metrics.append(metric)

        throughput = metric.entity_count / (metric.duration_ms / 1000) if metric.duration_ms else 0
        logger.debug(
            f"{'OK' if metric.success else 'FAILED'} {metric.operation}: "
            f"{metric.entity_count} entities, {metric.duration_ms:.0f}ms, {throughput:.1f} ops/s"
        )

        if metric.duration_ms > self.slow_operation_ms:
            self.trigger_alert(
                AlertType.PERFORMANCE,
                AlertSeverity.WARNING,
                f"Slow operation detected: {metric.operation} took {metric.duration_ms:.0f}ms",
                metric.model_dump(mode="json"),
            )
        if not metric.success:
            self.trigger_alert(
                AlertType.ERROR,
                AlertSeverity.WARNING,
                f"Operation failed: {metric.operation} - {metric.error_message or 'Unknown error'}",
                metric.model_dump(mode="json"),
            )
        if metric.entity_count > HIGH_ENTITY_COUNT:
            self.trigger_alert(
                AlertType.THROUGHPUT,
                AlertSeverity.INFO,
                f"High throughput operation: {metric.operation} processed {metric.entity_count} entities",
                metric.model_dump(mode="json"),
            )
        return metric

    @asynccontextmanager
    async def measure(
        self,
        operation: str,
        entity_type: Optional[str] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        user_id: Optional[str] = None,
    ) -> AsyncIterator[dict[str, Any]]:
        """
        Time the enclosed block and record it as a metric.

        The yielded dict may be updated with ``entity_count`` and ``details``.
        An exception marks the metric failed and propagates.
        """
        started = time.perf_counter()
        context: dict[str, Any] = {"entity_count": 0, "details": {}}
        error: Optional[BaseException] = None
        try:
            yield context
        except Exception as e:
            error = e
            raise
        finally:
            self.record_metric(
                SyncMetric(
                    operation=operation,
                    entity_type=entity_type,
                    duration_ms=(time.perf_counter() - started) * 1000,
                    entity_count=context.get("entity_count", 0),
                    success=error is None,
                    error_message=str(error) if error else None,
                    user_id=user_id,
                    batch_size=batch_size,
                    concurrency=concurrency,
                    details=context.get("details", {}),
                )
            )

    def trigger_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> Optional[SyncAlert]:
        """Raise an alert unless the same one was raised in the last five minutes."""
        now = _utcnow()
        for existing in self.alerts:
            if (
                existing.type == alert_type
                and existing.message == message
                and now - existing.timestamp < DUPLICATE_ALERT_WINDOW
            ):
                return None

        alert = SyncAlert(
            id=f"alert_{int(now.timestamp() * 1000)}_{uuid4().hex[:8]}",
            type=alert_type,
            severity=severity,
            message=message,
            details=details,
            timestamp=now,
        )
        self.alerts.append(alert)
        log = logger.info if severity == AlertSeverity.INFO else logger.warning
        log(f"[{severity.value.upper()}] {message}")
        return alert

    def acknowledge_alert(self, alert_id: str) -> Optional[SyncAlert]:
        for alert in self.alerts:
            if alert.id == alert_id:
                alert.acknowledged = True
                return alert
        return None

    def get_alerts(self, include_acknowledged: bool = False) -> list[SyncAlert]:
        return [a for a in self.alerts if include_acknowledged or not a.acknowledged]

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def _since(self, cutoff: datetime) -> list[SyncMetric]:
        return [m for m in self.metrics if m.timestamp >= cutoff]

    def get_performance_analysis(self, window: str = "hour") -> PerformanceAnalysis:
        hours = _WINDOW_HOURS.get(window, 1)
        metrics = self._since(_utcnow() - timedelta(hours=hours))
        durations = [m.duration_ms for m in metrics]
        total = len(metrics)
        successes = sum(1 for m in metrics if m.success)

        by_type: dict[str, list[SyncMetric]] = {}
        for metric in metrics:
            by_type.setdefault(metric.entity_type or "unknown", []).append(metric)

        return PerformanceAnalysis(
            window=window if window in _WINDOW_HOURS else "hour",
            total_operations=total,
            success_rate=successes / total if total else 0.0,
            average_duration_ms=statistics.fmean(durations) if durations else 0.0,
            median_duration_ms=statistics.median(durations) if durations else 0.0,
            throughput_per_hour=sum(m.entity_count for m in metrics) / hours if metrics else 0.0,
            error_rate=(total - successes) / total if total else 0.0,
            by_entity_type={
                entity_type: EntityTypeStats(
                    operations=len(group),
                    entities=sum(m.entity_count for m in group),
                    average_duration_ms=statistics.fmean(m.duration_ms for m in group),
                    success_rate=sum(1 for m in group if m.success) / len(group),
                )
                for entity_type, group in by_type.items()
            },
            top_bottlenecks=self._bottlenecks(metrics),
            recommendations=self._recommendations(metrics),
        )

    def _bottlenecks(self, metrics: list[SyncMetric]) -> list[str]:
        by_operation: dict[str, list[float]] = {}
        for metric in metrics:
            by_operation.setdefault(metric.operation, []).append(metric.duration_ms)
        slow = [
            (operation, statistics.fmean(durations))
            for operation, durations in by_operation.items()
            if statistics.fmean(durations) > BOTTLENECK_AVG_MS
        ]
        slow.sort(key=lambda item: item[1], reverse=True)
        return [f"{operation} ({avg:.0f}ms avg)" for operation, avg in slow[:5]]

    def _recommendations(self, metrics: list[SyncMetric]) -> list[str]:
        if not metrics:
            return []
        recommendations = []
        error_rate = sum(1 for m in metrics if not m.success) / len(metrics)
        if error_rate > 0.1:
            recommendations.append("High error rate detected - investigate network connectivity")
        if statistics.fmean(m.duration_ms for m in metrics) > self.slow_operation_ms:
            recommendations.append("High average duration - consider batch size optimization")
        media = [m.duration_ms for m in metrics if m.entity_type == "MediaItem"]
        if media and statistics.fmean(media) > 8000:
            recommendations.append("Media sync is slow - consider compression or parallel uploads")
        return recommendations

    def get_batch_metrics(self, operation: Optional[str] = None, last_minutes: int = 60) -> BatchMetrics:
        cutoff = _utcnow() - timedelta(minutes=last_minutes)
        metrics = [
            m for m in self._since(cutoff)
            if operation is None or m.operation == operation
        ]
        if not metrics:
            return BatchMetrics()

        total_duration = sum(m.duration_ms for m in metrics)
        successes = sum(1 for m in metrics if m.success)
        entities = sum(m.entity_count for m in metrics)
        return BatchMetrics(
            total_duration_ms=total_duration,
            average_operation_ms=total_duration / len(metrics),
            success_count=successes,
            failure_count=len(metrics) - successes,
            throughput_per_second=entities / (total_duration / 1000) if total_duration else 0.0,
            batch_sizes=[m.batch_size for m in metrics if m.batch_size is not None],
        )

    def get_recent_metrics(self, count: int = 50) -> list[SyncMetric]:
        if count <= 0:
            return []
        return list(self.metrics)[-count:]

    def export_metrics(self) -> str:
        return json.dumps([m.model_dump(mode="json") for m in self.metrics], indent=2)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def detect_anomalies(self) -> Optional[SyncAlert]:
        """Alert when the newest duration exceeds three times the recent average."""
        recent = list(self.metrics)[-ANOMALY_SAMPLE_SIZE:]
        if len(recent) < ANOMALY_MIN_SAMPLES:
            return None
        average = statistics.fmean(m.duration_ms for m in recent)
        current = recent[-1].duration_ms
        if current > average * ANOMALY_FACTOR:
            return self.trigger_alert(
                AlertType.PERFORMANCE,
                AlertSeverity.WARNING,
                f"Performance anomaly detected: Current duration {current:.0f}ms "
                f"vs average {average:.0f}ms",
            )
        return None

    def cleanup_old_data(self) -> tuple[int, int]:
        """Drop metrics older than a day and acknowledged alerts older than a week."""
        now = _utcnow()
        metric_cutoff = now - METRIC_RETENTION
        alert_cutoff = now - ACKNOWLEDGED_ALERT_RETENTION

        kept_metrics = [m for m in self.metrics if m.timestamp >= metric_cutoff]
        kept_alerts = [a for a in self.alerts if not a.acknowledged or a.timestamp >= alert_cutoff]
        removed = (len(self.metrics) - len(kept_metrics), len(self.alerts) - len(kept_alerts))

        self.metrics = deque(kept_metrics, maxlen=self.metrics.maxlen)
        self.alerts = deque(kept_alerts, maxlen=self.alerts.maxlen)
        if any(removed):
            logger.info(f"Monitoring cleanup removed {removed[0]} metric(s) and {removed[1]} alert(s)")
        return removed

    def perform_health_check(self) -> HealthCheckResult:
        components = [
            self._check_response_times(),
            self._check_error_rates(),
            self._check_throughput(),
        ]
        score = statistics.fmean(c.score for c in components)
        if score >= 0.8:
            status = HealthStatus.HEALTHY
        elif score >= 0.6:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.UNHEALTHY

        if score < 0.7:
            self.trigger_alert(
                AlertType.HEALTH,
                AlertSeverity.CRITICAL if score < 0.5 else AlertSeverity.WARNING,
                f"System health degraded: {score * 100:.1f}%",
                {c.name: c.details for c in components},
            )
        return HealthCheckResult(status=status, score=score, timestamp=_utcnow(), components=components)

    def _check_response_times(self) -> HealthComponent:
        recent = list(self.metrics)[-50:]
        if not recent:
            return HealthComponent(name="response_times", score=1.0, details={"status": "No recent data"})
        average = statistics.fmean(m.duration_ms for m in recent)
        score = 1.0 if average < 2000 else 0.7 if average < self.slow_operation_ms else 0.3
        return HealthComponent(
            name="response_times",
            score=score,
            details={"average_ms": round(average), "samples": len(recent)},
        )

    def _check_error_rates(self) -> HealthComponent:
        recent = list(self.metrics)[-100:]
        if not recent:
            return HealthComponent(name="error_rates", score=1.0, details={"status": "No recent data"})
        error_rate = sum(1 for m in recent if not m.success) / len(recent)
        score = 1.0 if error_rate < 0.01 else 0.7 if error_rate < 0.05 else 0.3
        return HealthComponent(
            name="error_rates",
            score=score,
            details={"error_rate": round(error_rate, 4), "samples": len(recent)},
        )

    def _check_throughput(self) -> HealthComponent:
        recent = list(self.metrics)[-20:]
        if not recent:
            return HealthComponent(name="throughput", score=1.0, details={"status": "No recent data"})
        per_hour = sum(m.entity_count for m in recent)
        score = 1.0 if per_hour > 100 else 0.7 if per_hour > 50 else 0.5
        return HealthComponent(
            name="throughput",
            score=score,
            details={"entities_per_hour": per_hour, "samples": len(recent)},
        )


# Global monitor instance
_monitor: Optional[SyncMonitor] = None


def get_monitor() -> SyncMonitor:
    """Get the process-wide monitor."""
    global _monitor
    if _monitor is None:
        settings = get_settings()
        _monitor = SyncMonitor(
            max_metrics=settings.monitoring_max_metrics,
            max_alerts=settings.monitoring_max_alerts,
            slow_operation_ms=settings.slow_operation_ms,
        )
    return _monitor
