import logging
import threading
import time
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy import delete, inspect

from starterkit.jobs.config import MetricsRetentionConfig
from starterkit.jobs.periodic import run_periodically
from starterkit.models.metrics import ContainerMetricsHistory, ServiceUptimeHistory

logger = logging.getLogger("jobs.retention")

RETENTION_INTERVAL = timedelta(hours=24)

# (model, unix-seconds timestamp column)
_RETAINED_TABLES = (
    (ContainerMetricsHistory, ContainerMetricsHistory.recorded_at),
    (ServiceUptimeHistory, ServiceUptimeHistory.checked_at),
)


def run_metrics_retention(session_factory, config: Optional[MetricsRetentionConfig]) -> Dict[str, int]:
    """Delete metrics history rows older than the retention window.

    Tables that do not exist (metrics collection never enabled) are skipped.
    Returns deleted row counts keyed by table name.
    """
    if config is None or not config.enabled:
        logger.info("Metrics retention disabled, skipping cleanup")
        return {}

    cutoff = int(time.time()) - config.retention_days * 86400
    logger.info(
        "Starting metrics retention cleanup",
        extra={"retention_days": config.retention_days, "cutoff_timestamp": cutoff},
    )

    deleted: Dict[str, int] = {}
    with session_factory() as db:
        inspector = inspect(db.get_bind())
        for model, column in _RETAINED_TABLES:
            table = model.__tablename__
            if not inspector.has_table(table):
                continue
            try:
                result = db.execute(delete(model).where(column < cutoff))
                db.commit()
            except Exception:
                db.rollback()
                logger.error(f"Failed to clean {table}")
                raise
            deleted[table] = result.rowcount or 0

    logger.info(
        "Metrics retention cleanup completed",
        extra={"deleted": deleted, "retention_days": config.retention_days},
    )
    return deleted


def start_periodic_retention(
    session_factory, config: Optional[MetricsRetentionConfig], stop_event: threading.Event
) -> Optional[threading.Thread]:
    """Run retention now and then every 24 hours; None when retention is disabled."""
    if config is None or not config.enabled:
        return None
    thread = run_periodically(
        stop_event,
        lambda: run_metrics_retention(session_factory, config),
        RETENTION_INTERVAL,
        name="metrics-retention",
    )
    logger.info(
        "Started periodic metrics retention cleanup (runs every 24 hours)",
        extra={"retention_days": config.retention_days},
    )
    return thread
