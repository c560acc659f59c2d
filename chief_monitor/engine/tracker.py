"""Check state tracking: applies normalized events to per-job check rows.

Every event that names a job first re-syncs the job's check configuration from
the event metadata, so workers reconfigure their own checks without an admin
channel. ``job.next_scheduled`` only moves the expected next run.
``job.started`` / ``job.completed`` / ``job.failed`` are heartbeats: they mark
the check UP, retire recovery alerts and drive the FAILURE / RECOVERY alerts.
"""

import logging
import math
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from chief_monitor.engine.alerts import AlertManager, build_dedupe_key
from chief_monitor.engine.locks import JobLocks
from chief_monitor.models import (
    HEARTBEAT_EVENT_TYPES,
    NEXT_SCHEDULED_EVENT_TYPE,
    SQLITE_INT_MAX,
    SQLITE_INT_MIN,
    AlertType,
    CheckConfig,
    NormalizedEvent,
)
from chief_monitor.store import MonitorStore
from chief_monitor.timestamps import canonicalize, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 120


def coerce_bool(value: object, default: bool) -> bool:
    """Accept real booleans and the strings "true"/"false" (any case); anything else is the default."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return default


def coerce_int(value: object, default: int) -> int:
    """Accept ints, finite floats (truncated) and base-10 integer strings.

    Values outside the signed 64-bit range cannot be stored and fall back to
    the default.
    """
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        number = value
    elif isinstance(value, float):
        if not math.isfinite(value):
            return default
        number = int(value)
    elif isinstance(value, str):
        try:
            number = int(value.strip(), 10)
        except ValueError:
            return default
    else:
        return default
    return number if SQLITE_INT_MIN <= number <= SQLITE_INT_MAX else default


def check_config_from_metadata(metadata: Mapping[str, Any]) -> CheckConfig:
    """Derive a check's configuration from event metadata, with defaults for anything missing or malformed."""
    return CheckConfig(
        enabled=coerce_bool(metadata.get("check_enabled"), True),
        grace_seconds=max(0, coerce_int(metadata.get("grace_seconds"), DEFAULT_GRACE_SECONDS)),
        alert_on_failure=coerce_bool(metadata.get("alert_on_failure"), True),
        alert_on_miss=coerce_bool(metadata.get("alert_on_miss"), True),
    )


def is_failure(event: NormalizedEvent) -> bool:
    return event["event_type"] == "job.failed" or (
        event["event_type"] == "job.completed" and event["success"] is False
    )


def is_success(event: NormalizedEvent) -> bool:
    return event["event_type"] == "job.completed" and event["success"] is True


class CheckStateTracker:
    def __init__(
        self,
        store: MonitorStore,
        alerts: AlertManager,
        locks: JobLocks,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._alerts = alerts
        self._locks = locks
        self._clock = clock

    def apply(self, event: NormalizedEvent) -> list[int]:
        """Apply one event to its job's check state.

        Runs under the job's lock inside a single store transaction.

        Returns:
            IDs of alerts opened while applying the event (empty for events
            without a job name).
        """
        job_name = event["job_name"]
        if job_name is None:
            return []

        config = check_config_from_metadata(event["metadata"])
        with self._locks.hold(job_name), self._store.transaction():
            return self._apply_locked(job_name, event, config)

    def record(self, event: NormalizedEvent, *, received_at: str) -> list[int]:
        """Insert the event row and apply it in the same transaction.

        If applying fails the event row is rolled back too, so a redelivered
        event is never stored or counted twice.
        """
        job_name = event["job_name"]
        if job_name is None:
            self._store.insert_event(event, received_at=received_at)
            return []

        config = check_config_from_metadata(event["metadata"])
        with self._locks.hold(job_name), self._store.transaction():
            self._store.insert_event(event, received_at=received_at)
            return self._apply_locked(job_name, event, config)

    def _apply_locked(self, job_name: str, event: NormalizedEvent, config: CheckConfig) -> list[int]:
        now = to_iso(self._clock())
        self._store.upsert_check_config(job_name, config, updated_at=now)

        if event["event_type"] == NEXT_SCHEDULED_EVENT_TYPE:
            expected_next_at = canonicalize(event["metadata"].get("next_run_at"))
            self._store.update_check(job_name, updated_at=now, expected_next_at=expected_next_at)
            logger.debug("Check %s next expected at %s", job_name, expected_next_at)
            return []

        if event["event_type"] not in HEARTBEAT_EVENT_TYPES:
            return []

        previous = self._store.get_check(job_name)
        opened: list[int] = []

        # Recovery alerts only last until the next heartbeat, whatever its outcome.
        self._alerts.close_open_alerts(job_name, "RECOVERY")
        self._store.update_check(job_name, updated_at=now, last_heartbeat_at=event["event_at"], status="UP")

        if config["alert_on_miss"] and self._alerts.close_open_alerts(job_name, "MISSED") > 0:
            self._open_recovery(job_name, "MISSED", "missed heartbeat", event, opened)

        if is_failure(event):
            failures = (previous["consecutive_failures"] if previous else 0) + 1
            self._store.update_check(
                job_name,
                updated_at=now,
                last_failure_at=event["event_at"],
                consecutive_failures=failures,
            )
            if config["alert_on_failure"]:
                alert_id = self._alerts.open_alert(
                    job_name=job_name,
                    alert_type="FAILURE",
                    severity="ERROR",
                    dedupe_key=build_dedupe_key(job_name, "FAILURE"),
                    title=f"Job {job_name} failed",
                    details={
                        "eventType": event["event_type"],
                        "returnCode": event["return_code"],
                        "runId": event["run_id"],
                    },
                )
                if alert_id is not None:
                    opened.append(alert_id)
        elif is_success(event):
            self._store.update_check(
                job_name,
                updated_at=now,
                last_success_at=event["event_at"],
                consecutive_failures=0,
            )
            if config["alert_on_failure"] and self._alerts.close_open_alerts(job_name, "FAILURE") > 0:
                self._open_recovery(job_name, "FAILURE", "failure", event, opened)

        return opened

    def _open_recovery(
        self,
        job_name: str,
        source_type: AlertType,
        description: str,
        event: NormalizedEvent,
        opened: list[int],
    ) -> None:
        alert_id = self._alerts.open_alert(
            job_name=job_name,
            alert_type="RECOVERY",
            severity="INFO",
            dedupe_key=build_dedupe_key(job_name, "RECOVERY", source_type),
            title=f"Job {job_name} recovered from {description}",
            details={"recoveredAt": event["event_at"], "sourceEvent": event["event_type"]},
        )
        if alert_id is not None:
            opened.append(alert_id)
