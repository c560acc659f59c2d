"""Alert lifecycle: open (deduplicated), close, recovery auto-close, manual close.

Dedupe keys are ``{job}:FAILURE`` and ``{job}:MISSED`` for problem alerts and
``{job}:RECOVERY:{FAILURE|MISSED}`` for the recovery that follows them. The
store refuses a second OPEN alert for the same key, so ``open_alert`` is safe
to call from concurrent ingestion and the evaluator sweep.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from typing_extensions import TypedDict

from chief_monitor.models import AlertRecord, AlertSeverity, AlertType
from chief_monitor.observability.metrics import ALERTS_CLOSED_TOTAL, ALERTS_OPENED_TOTAL
from chief_monitor.store import MonitorStore
from chief_monitor.timestamps import to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_RECOVERY_AUTO_CLOSE_SECONDS = 900

# Every opened alert gets a delivery row; outbound webhooks are not wired up.
STUB_DELIVERY_CHANNEL = "webhook"
STUB_DELIVERY_ERROR = "Webhook integration not configured."


class CloseAlertResult(TypedDict):
    found: bool
    updated: bool
    reason: str | None
    alert: AlertRecord | None


def build_dedupe_key(job_name: str, alert_type: AlertType, source_type: AlertType | None = None) -> str:
    """Build the dedupe key for an alert; recovery keys carry the alert type they recover from."""
    if alert_type == "RECOVERY":
        return f"{job_name}:RECOVERY:{source_type}"
    return f"{job_name}:{alert_type}"


class AlertManager:
    def __init__(self, store: MonitorStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._clock = clock

    def open_alert(
        self,
        *,
        job_name: str,
        alert_type: AlertType,
        severity: AlertSeverity,
        dedupe_key: str,
        title: str,
        details: dict[str, Any],
    ) -> int | None:
        """Open an alert unless one with the same dedupe key is already OPEN.

        A stub delivery attempt is recorded against the new alert's ID as
        returned by the insert.

        Returns:
            The new alert ID, or None when the call was a duplicate.
        """
        now = to_iso(self._clock())
        with self._store.transaction():
            alert_id = self._store.insert_alert(
                job_name=job_name,
                alert_type=alert_type,
                severity=severity,
                dedupe_key=dedupe_key,
                title=title,
                details=details,
                opened_at=now,
            )
            if alert_id is None:
                logger.debug("Alert %s already open, skipping", dedupe_key)
                return None

            self._store.insert_delivery(
                alert_id=alert_id,
                channel=STUB_DELIVERY_CHANNEL,
                attempted_at=now,
                status="STUB",
                error_text=STUB_DELIVERY_ERROR,
            )

        ALERTS_OPENED_TOTAL.labels(alert_type=alert_type).inc()
        logger.info("Opened %s alert #%d (%s): %s", alert_type, alert_id, severity, title)
        return alert_id

    def close_open_alerts(self, job_name: str, alert_type: AlertType) -> int:
        """Close every OPEN alert of the given type for a job. Returns how many were closed."""
        closed = self._store.close_open_alerts(job_name, alert_type, closed_at=to_iso(self._clock()))
        if closed:
            ALERTS_CLOSED_TOTAL.labels(alert_type=alert_type, trigger="automatic").inc(closed)
            logger.info("Closed %d open %s alert(s) for %s", closed, alert_type, job_name)
        return closed

    def close_stale_recovery_alerts(self, ttl_seconds: int = DEFAULT_RECOVERY_AUTO_CLOSE_SECONDS) -> int:
        """Close OPEN RECOVERY alerts opened more than ttl_seconds ago, across all jobs."""
        if ttl_seconds <= 0:
            return 0
        now = self._clock()
        cutoff = to_iso(now - timedelta(seconds=ttl_seconds))
        closed = self._store.close_open_alerts_opened_before("RECOVERY", cutoff, closed_at=to_iso(now))
        if closed:
            ALERTS_CLOSED_TOTAL.labels(alert_type="RECOVERY", trigger="expired").inc(closed)
            logger.info("Auto-closed %d stale recovery alert(s)", closed)
        return closed

    def close_alert_by_id(self, alert_id: int, reason: str | None = None) -> CloseAlertResult:
        """Operator close path.

        Closing an alert that is already CLOSED is a successful no-op
        (``updated`` is False). The reason is an audit annotation: it is
        logged and echoed back, not stored on the alert row.
        """
        with self._store.transaction():
            existing = self._store.get_alert(alert_id)
            if existing is None:
                return CloseAlertResult(found=False, updated=False, reason=reason, alert=None)
            if existing["status"] == "CLOSED":
                return CloseAlertResult(found=True, updated=False, reason=reason, alert=existing)

            self._store.close_alert(alert_id, closed_at=to_iso(self._clock()))
            closed = self._store.get_alert(alert_id)

        ALERTS_CLOSED_TOTAL.labels(alert_type=existing["alert_type"], trigger="manual").inc()
        logger.info("Alert #%d (%s) closed manually: %s", alert_id, existing["dedupe_key"], reason or "no reason given")
        return CloseAlertResult(found=True, updated=True, reason=reason, alert=closed)
