"""TypedDict models and value sets for monitor records."""

from typing import Any, Literal

from typing_extensions import TypedDict

EventLevel = Literal["DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"]
SourceType = Literal["chief", "worker", "monitor"]
CheckStatus = Literal["UP", "LATE", "DOWN"]
AlertType = Literal["FAILURE", "MISSED", "RECOVERY"]
AlertSeverity = Literal["INFO", "WARN", "ERROR", "CRITICAL"]
AlertStatus = Literal["OPEN", "CLOSED"]

EVENT_LEVELS: tuple[EventLevel, ...] = ("DEBUG", "INFO", "WARN", "ERROR", "CRITICAL")
SOURCE_TYPES: tuple[SourceType, ...] = ("chief", "worker", "monitor")
CHECK_STATUSES: tuple[CheckStatus, ...] = ("UP", "LATE", "DOWN")
ALERT_TYPES: tuple[AlertType, ...] = ("FAILURE", "MISSED", "RECOVERY")

HEARTBEAT_EVENT_TYPES = frozenset({"job.started", "job.completed", "job.failed"})
NEXT_SCHEDULED_EVENT_TYPE = "job.next_scheduled"
CHIEF_HEARTBEAT_EVENT_TYPE = "chief.heartbeat"

# SQLite INTEGER columns hold signed 64-bit values.
SQLITE_INT_MIN = -(2**63)
SQLITE_INT_MAX = 2**63 - 1


class NormalizedEvent(TypedDict):
    source_type: SourceType
    event_type: str
    level: EventLevel
    message: str
    event_at: str  # ISO 8601, UTC
    job_name: str | None
    script_path: str | None
    run_id: str | None
    scheduled_for: str | None
    success: bool | None
    return_code: int | None
    duration_ms: int | None
    metadata: dict[str, Any]


class TelemetryEventRecord(NormalizedEvent):
    id: int
    received_at: str  # ISO 8601, UTC


class CheckConfig(TypedDict):
    enabled: bool
    grace_seconds: int
    alert_on_failure: bool
    alert_on_miss: bool


class CheckStateRecord(TypedDict):
    job_name: str
    enabled: bool
    alert_on_failure: bool
    alert_on_miss: bool
    grace_seconds: int
    status: CheckStatus
    last_heartbeat_at: str | None
    expected_next_at: str | None
    last_success_at: str | None
    last_failure_at: str | None
    consecutive_failures: int
    updated_at: str


class AlertRecord(TypedDict):
    id: int
    job_name: str
    alert_type: AlertType
    severity: AlertSeverity
    status: AlertStatus
    opened_at: str
    closed_at: str | None
    dedupe_key: str
    title: str
    details: dict[str, Any]


class AlertDeliveryRecord(TypedDict):
    id: int
    alert_id: int
    channel: str  # webhook | email
    attempted_at: str
    status: str  # STUB | SENT | FAILED
    response_code: int | None
    error_text: str | None


class EmailAlertSettingsRecord(TypedDict):
    recipients: list[str]
    enabled_alert_types: list[AlertType]
    updated_at: str | None
