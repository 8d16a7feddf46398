"""
Background Jobs Package.

Available jobs:
- monitoring_anomaly_detection: flags operations far slower than recent ones (every 5 minutes)
- monitoring_cleanup: drops expired metrics and acknowledged alerts (hourly)
- monitoring_health_check: scores sync health and alerts when degraded (every 15 minutes)

Usage:
    from journal_sync.jobs import register_all_jobs

    # Call during app startup, before start_scheduler()
    register_all_jobs()
"""

import logging

logger = logging.getLogger(__name__)

# Track registered jobs
_jobs_registered = False


def register_all_jobs():
    """Register all background jobs with the scheduler."""
    global _jobs_registered

    if _jobs_registered:
        logger.warning("Jobs already registered, skipping...")
        return

    logger.info("Registering background jobs...")

    # Import job modules to trigger registration via decorators
    from . import monitoring  # noqa: F401

    _jobs_registered = True
    logger.info("All background jobs registered")


def get_registered_jobs() -> list[str]:
    """Get list of registered job module names."""
    return ['monitoring']
