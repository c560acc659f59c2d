"""Telemetry retention: deletes events older than the retention horizon.

Only the event log is pruned; check states and alerts are kept indefinitely.
"""

import logging
from datetime import datetime, timedelta

from chief_monitor.store import MonitorStore
from chief_monitor.timestamps import to_iso

logger = logging.getLogger(__name__)


def prune_telemetry(store: MonitorStore, retention_days: int, *, now: datetime) -> int:
    """Delete events with event_at older than ``now - retention_days``. Returns rows removed."""
    cutoff = to_iso(now - timedelta(days=retention_days))
    removed = store.delete_events_before(cutoff)
    if removed:
        logger.info("Pruned %d telemetry event(s) older than %s", removed, cutoff)
    return removed
