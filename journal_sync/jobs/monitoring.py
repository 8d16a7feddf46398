"""
Monitoring maintenance jobs.

Anomaly detection runs every 5 minutes, health scoring every 15 minutes
and cleanup of expired metrics and alerts every hour.
"""

import logging
from datetime import datetime, timezone

from ..core.scheduler import register_job
from ..sync.monitoring import get_monitor

logger = logging.getLogger(__name__)

# Track job execution statistics
_stats = {
    'last_anomaly_check': None,
    'anomalies_found': 0,
    'last_cleanup': None,
    'last_health_status': None,
}


@register_job(
    trigger='interval',
    minutes=5,
    id='monitoring_anomaly_detection',
    name='Sync Anomaly Detection',
    timeout_seconds=60,
)
async def anomaly_detection_job():
    """Flag the latest operation if it ran far slower than the recent average."""
    alert = get_monitor().detect_anomalies()
    _stats['last_anomaly_check'] = datetime.now(timezone.utc)
    if alert is not None:
        _stats['anomalies_found'] += 1
    return {'anomaly': alert.message if alert else None}


@register_job(
    trigger='interval',
    minutes=15,
    id='monitoring_health_check',
    name='Sync Health Check',
    timeout_seconds=60,
)
async def health_check_job():
    """Score sync health; degraded health raises an alert."""
    result = get_monitor().perform_health_check()
    _stats['last_health_status'] = result.status.value
    logger.info(f"Sync health: {result.status.value} ({result.score * 100:.1f}%)")
    return {'status': result.status.value, 'score': result.score}


@register_job(
    trigger='interval',
    hours=1,
    id='monitoring_cleanup',
    name='Monitoring Data Cleanup',
    timeout_seconds=60,
)
async def cleanup_job():
    """Drop metrics older than a day and acknowledged alerts older than a week."""
    removed_metrics, removed_alerts = get_monitor().cleanup_old_data()
    _stats['last_cleanup'] = datetime.now(timezone.utc)
    return {'removed_metrics': removed_metrics, 'removed_alerts': removed_alerts}


def get_monitoring_job_stats() -> dict:
    """Get monitoring job statistics."""
    return {
        'last_anomaly_check': _stats['last_anomaly_check'].isoformat() if _stats['last_anomaly_check'] else None,
        'anomalies_found': _stats['anomalies_found'],
        'last_cleanup': _stats['last_cleanup'].isoformat() if _stats['last_cleanup'] else None,
        'last_health_status': _stats['last_health_status'],
    }
