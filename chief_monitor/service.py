"""Monitor service facade.

Wires the store, the engine components and the alert notifier together and
exposes the operations the HTTP layer, the scheduler and the scripts use.
Everything here is synchronous; async callers run it in a worker thread.
"""

import logging
import sqlite3
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime

from typing_extensions import TypedDict

from chief_monitor.config import Settings
from chief_monitor.engine.alerts import DEFAULT_RECOVERY_AUTO_CLOSE_SECONDS, AlertManager, CloseAlertResult
from chief_monitor.engine.evaluator import HeartbeatEvaluator, SweepResult
from chief_monitor.engine.locks import JobLocks
from chief_monitor.engine.normalizer import normalize_events
from chief_monitor.engine.retention import prune_telemetry
from chief_monitor.engine.summary import Summary, build_summary
from chief_monitor.engine.tracker import CheckStateTracker
from chief_monitor.models import AlertRecord, CheckStateRecord, TelemetryEventRecord
from chief_monitor.notify.email import EmailSender
from chief_monitor.notify.notifier import (
    AlertNotifier,
    EmailSettingsView,
    EmailTestResult,
    load_email_settings,
    save_email_settings,
)
from chief_monitor.observability.metrics import EVENTS_INGESTED_TOTAL
from chief_monitor.store import MonitorStore
from chief_monitor.timestamps import canonicalize, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_PAGE_LIMIT = 100
MAX_PAGE_LIMIT = 1000
MAX_PAGE_OFFSET = 1_000_000
JOB_DETAIL_EVENT_LIMIT = 100


class IngestResult(TypedDict):
    inserted: int
    dropped: int


class JobStatus(CheckStateRecord):
    latest_event: TelemetryEventRecord | None


class JobDetails(TypedDict):
    check: CheckStateRecord
    events: list[TelemetryEventRecord]
    open_alerts: list[AlertRecord]


def clamp_page(limit: int | None, offset: int | None) -> tuple[int, int]:
    """Apply paging defaults and caps; non-positive values fall back to the defaults."""
    limit = limit if limit is not None and limit > 0 else DEFAULT_PAGE_LIMIT
    offset = offset if offset is not None and offset > 0 else 0
    return min(limit, MAX_PAGE_LIMIT), min(offset, MAX_PAGE_OFFSET)


def _timestamp_filter(value: str | None, name: str) -> str | None:
    if not value:
        return None
    canonical = canonicalize(value)
    if canonical is None:
        msg = f"{name} must be an ISO 8601 timestamp"
        raise ValueError(msg)
    return canonical


class MonitorService:
    def __init__(
        self,
        store: MonitorStore,
        sender: EmailSender,
        *,
        retention_days: int = 30,
        recovery_ttl_seconds: int = DEFAULT_RECOVERY_AUTO_CLOSE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.retention_days = retention_days
        self._clock = clock
        locks = JobLocks()
        self.alerts = AlertManager(store, clock=clock)
        self.tracker = CheckStateTracker(store, self.alerts, locks, clock=clock)
        self.evaluator = HeartbeatEvaluator(
            store, self.alerts, locks, recovery_ttl_seconds=recovery_ttl_seconds, clock=clock
        )
        self.notifier = AlertNotifier(store, sender, clock=clock)

    @classmethod
    def from_settings(cls, store: MonitorStore, sender: EmailSender, settings: Settings) -> "MonitorService":
        return cls(
            store,
            sender,
            retention_days=settings.monitor_retention_days,
            recovery_ttl_seconds=settings.monitor_recovery_auto_close_seconds,
        )

    # ------------------------------------------------------------------
    # Ingestion and sweeps
    # ------------------------------------------------------------------

    def ingest_events(self, raw_events: Sequence[object]) -> IngestResult:
        """Normalize, persist and apply a batch of raw events.

        Malformed records are dropped and counted, never raised. Each
        accepted record is stored and applied in its own transaction; a
        record the store rejects is rolled back and counted as dropped.
        Alerts opened by the batch are handed to the notifier once the
        check updates are committed.
        """
        now = self._clock()
        normalized = normalize_events(raw_events, now=now)

        received_at = to_iso(now)
        inserted = 0
        opened: list[int] = []
        for event in normalized.events:
            try:
                opened.extend(self.tracker.record(event, received_at=received_at))
            except (sqlite3.Error, OverflowError, ValueError):
                logger.exception("Failed to store %s event for job %s", event["event_type"], event["job_name"])
                continue
            inserted += 1

        dropped = len(raw_events) - inserted
        EVENTS_INGESTED_TOTAL.labels(result="inserted").inc(inserted)
        EVENTS_INGESTED_TOTAL.labels(result="dropped").inc(dropped)
        self._notify(opened)
        return IngestResult(inserted=inserted, dropped=dropped)

    def evaluate_checks(self) -> SweepResult:
        result = self.evaluator.sweep()
        self._notify(result["opened_alert_ids"])
        return result

    def prune_telemetry(self) -> int:
        return prune_telemetry(self.store, self.retention_days, now=self._clock())

    def _notify(self, alert_ids: Iterable[int]) -> None:
        ids = list(alert_ids)
        if not ids:
            return
        result = self.notifier.notify(ids)
        if result["failed"]:
            logger.warning("%d of %d alert email(s) failed", result["failed"], result["attempted"])

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_summary(self) -> Summary:
        return build_summary(self.store, now=self._clock())

    def get_jobs_status(self) -> list[JobStatus]:
        jobs: list[JobStatus] = []
        for check in self.store.list_checks():
            latest = self.store.get_latest_event(job_name=check["job_name"])
            jobs.append(JobStatus(**check, latest_event=latest))
        return jobs

    def get_job_details(self, job_name: str) -> JobDetails | None:
        """Check state, last 100 events and open alerts for one job; None when the job is unknown."""
        check = self.store.get_check(job_name)
        if check is None:
            return None
        return JobDetails(
            check=check,
            events=self.store.list_events(job_name=job_name, limit=JOB_DETAIL_EVENT_LIMIT),
            open_alerts=self.store.list_alerts(job_name=job_name, status="OPEN", limit=MAX_PAGE_LIMIT),
        )

    def list_alerts(
        self,
        *,
        job_name: str | None = None,
        status: str | None = None,
        alert_type: str | None = None,
        severity: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[AlertRecord]:
        limit, offset = clamp_page(limit, offset)
        return self.store.list_alerts(
            job_name=job_name,
            status=status.upper() if status else None,
            alert_type=alert_type.upper() if alert_type else None,
            severity=severity.upper() if severity else None,
            limit=limit,
            offset=offset,
        )

    def list_events(
        self,
        *,
        job_name: str | None = None,
        script_path: str | None = None,
        level: str | None = None,
        event_type: str | None = None,
        since: str | None = None,
        until: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[TelemetryEventRecord]:
        """List events, newest first.

        Raises:
            ValueError: If ``since`` or ``until`` is not a parseable timestamp.
        """
        limit, offset = clamp_page(limit, offset)
        return self.store.list_events(
            job_name=job_name,
            script_path=script_path,
            level=level.upper() if level else None,
            event_type=event_type,
            since=_timestamp_filter(since, "from"),
            until=_timestamp_filter(until, "to"),
            limit=limit,
            offset=offset,
        )

    def close_alert(self, alert_id: int, reason: str | None = None) -> CloseAlertResult:
        return self.alerts.close_alert_by_id(alert_id, reason)

    # ------------------------------------------------------------------
    # Email settings
    # ------------------------------------------------------------------

    def get_alert_email_settings(self) -> EmailSettingsView:
        settings = load_email_settings(self.store)
        return EmailSettingsView(**settings, provider_configured=self.notifier.provider_configured)

    def save_alert_email_settings(
        self, recipients: Iterable[str], enabled_alert_types: Iterable[str]
    ) -> EmailSettingsView:
        """Validate and replace the email settings.

        Raises:
            ConfigurationError: If the settings are invalid or would enable
                notifications that cannot be delivered.
        """
        saved = save_email_settings(
            self.store,
            recipients=recipients,
            enabled_alert_types=enabled_alert_types,
            provider_configured=self.notifier.provider_configured,
            now=self._clock(),
        )
        return EmailSettingsView(**saved, provider_configured=self.notifier.provider_configured)

    def send_test_alert_email(self, requested_by: str | None = None) -> EmailTestResult:
        return self.notifier.send_test_email(requested_by)
