"""Alert email notifications and the email settings they depend on.

The notifier decides *whether* an alert is mailed: its type must be enabled
in the stored email settings, at least one recipient must be configured and
the provider must be usable. Transport failures are recorded as FAILED
deliveries and reported as counts; they never undo the alert itself.
"""

import logging
import re
from collections.abc import Callable, Iterable
from datetime import datetime

from typing_extensions import TypedDict

from chief_monitor.models import ALERT_TYPES, AlertRecord, AlertType, EmailAlertSettingsRecord
from chief_monitor.notify.email import EmailSender, EmailSendError
from chief_monitor.observability.metrics import EMAIL_DELIVERIES_TOTAL
from chief_monitor.store import MonitorStore
from chief_monitor.timestamps import to_iso, utc_now

logger = logging.getLogger(__name__)

EMAIL_SETTINGS_KEY = "alert_email_settings"
MAX_RECIPIENTS = 50
DEFAULT_ENABLED_ALERT_TYPES: list[AlertType] = ["FAILURE", "MISSED"]
EMAIL_CHANNEL = "email"

_EMAIL_RE = re.compile(r"^[^@\s<>]+@[^@\s<>]+\.[^@\s<>]+$")


class ConfigurationError(ValueError):
    """A notification setting or precondition is missing or invalid."""


class NotifyResult(TypedDict):
    attempted: int
    sent: int
    failed: int


class EmailTestResult(NotifyResult):
    message: str
    provider_message_id: str | None


class EmailSettingsView(EmailAlertSettingsRecord):
    provider_configured: bool


def normalize_recipients(recipients: Iterable[str]) -> list[str]:
    """Trim, lower-case and de-duplicate addresses, preserving first-seen order.

    Raises:
        ConfigurationError: On an invalid address or more than MAX_RECIPIENTS.
    """
    normalized: list[str] = []
    for raw in recipients:
        address = raw.strip().lower()
        if not address:
            continue
        if not _EMAIL_RE.match(address):
            msg = f"Invalid recipient email address: {raw!r}"
            raise ConfigurationError(msg)
        if address not in normalized:
            normalized.append(address)
    if len(normalized) > MAX_RECIPIENTS:
        msg = f"At most {MAX_RECIPIENTS} recipients are allowed (got {len(normalized)})"
        raise ConfigurationError(msg)
    return normalized


def normalize_alert_types(alert_types: Iterable[str]) -> list[AlertType]:
    wanted = {t.strip().upper() for t in alert_types}
    unknown = wanted - set(ALERT_TYPES)
    if unknown:
        msg = f"Unknown alert type(s): {', '.join(sorted(unknown))}"
        raise ConfigurationError(msg)
    return [t for t in ALERT_TYPES if t in wanted]


def load_email_settings(store: MonitorStore) -> EmailAlertSettingsRecord:
    """Read the stored settings, falling back to defaults for a missing or malformed row."""
    stored = store.get_config_value(EMAIL_SETTINGS_KEY)
    if stored is None:
        return EmailAlertSettingsRecord(
            recipients=[], enabled_alert_types=list(DEFAULT_ENABLED_ALERT_TYPES), updated_at=None
        )
    value, updated_at = stored
    value = value if isinstance(value, dict) else {}
    recipients = value.get("recipients")
    alert_types = value.get("enabled_alert_types")
    return EmailAlertSettingsRecord(
        recipients=[r for r in recipients if isinstance(r, str)] if isinstance(recipients, list) else [],
        enabled_alert_types=(
            [t for t in ALERT_TYPES if t in alert_types]
            if isinstance(alert_types, list)
            else list(DEFAULT_ENABLED_ALERT_TYPES)
        ),
        updated_at=updated_at,
    )


def save_email_settings(
    store: MonitorStore,
    *,
    recipients: Iterable[str],
    enabled_alert_types: Iterable[str],
    provider_configured: bool,
    now: datetime,
) -> EmailAlertSettingsRecord:
    """Validate and store the settings wholesale.

    Raises:
        ConfigurationError: If an address or alert type is invalid, if alert
            types are enabled with no recipients, or if recipients are set
            for enabled alert types while no email provider is configured.
    """
    normalized_recipients = normalize_recipients(recipients)
    normalized_types = normalize_alert_types(enabled_alert_types)

    if normalized_types and not normalized_recipients:
        msg = "At least one recipient is required when alert emails are enabled."
        raise ConfigurationError(msg)
    if normalized_types and normalized_recipients and not provider_configured:
        msg = "Email provider is not configured; set RESEND_API_KEY and RESEND_FROM_EMAIL (or SMTP settings)."
        raise ConfigurationError(msg)

    updated_at = to_iso(now)
    store.set_config_value(
        EMAIL_SETTINGS_KEY,
        {"recipients": normalized_recipients, "enabled_alert_types": normalized_types},
        updated_at=updated_at,
    )
    logger.info(
        "Alert email settings saved: %d recipient(s), types=%s",
        len(normalized_recipients),
        ",".join(normalized_types) or "none",
    )
    return EmailAlertSettingsRecord(
        recipients=normalized_recipients, enabled_alert_types=normalized_types, updated_at=updated_at
    )


def should_notify(settings: EmailAlertSettingsRecord, alert_type: AlertType, *, provider_configured: bool) -> bool:
    return provider_configured and bool(settings["recipients"]) and alert_type in settings["enabled_alert_types"]


def format_alert_email(alert: AlertRecord) -> tuple[str, str]:
    """Build the (subject, text) pair for an alert email."""
    subject = f"[{alert['severity']}] {alert['title']}"
    lines = [
        alert["title"],
        "",
        f"Job: {alert['job_name']}",
        f"Alert type: {alert['alert_type']}",
        f"Severity: {alert['severity']}",
        f"Opened at: {alert['opened_at']}",
        f"Alert ID: {alert['id']}",
    ]
    if alert["details"]:
        lines.append("")
        lines.append("Details:")
        lines.extend(f"  {key}: {value}" for key, value in sorted(alert["details"].items()))
    return subject, "\n".join(lines)


class AlertNotifier:
    def __init__(
        self,
        store: MonitorStore,
        sender: EmailSender,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._sender = sender
        self._clock = clock

    @property
    def provider_configured(self) -> bool:
        return self._sender.is_configured()

    def notify(self, alert_ids: Iterable[int]) -> NotifyResult:
        """Email every alert that the current settings say should be mailed.

        One email per alert goes to all recipients; each attempt is recorded
        as an ``email`` delivery row.
        """
        result = NotifyResult(attempted=0, sent=0, failed=0)
        ids = list(alert_ids)
        if not ids:
            return result

        settings = load_email_settings(self._store)
        provider_configured = self.provider_configured
        for alert_id in ids:
            alert = self._store.get_alert(alert_id)
            if alert is None:
                continue
            if not should_notify(settings, alert["alert_type"], provider_configured=provider_configured):
                continue
            result["attempted"] += 1
            if self._deliver(alert, settings["recipients"]):
                result["sent"] += 1
            else:
                result["failed"] += 1
        return result

    def _deliver(self, alert: AlertRecord, recipients: list[str]) -> bool:
        subject, text = format_alert_email(alert)
        attempted_at = to_iso(self._clock())
        try:
            sent = self._sender.send_email(to=recipients, subject=subject, text=text)
        except EmailSendError as exc:
            logger.warning("Alert #%d email failed: %s", alert["id"], exc)
            EMAIL_DELIVERIES_TOTAL.labels(status="failed").inc()
            self._store.insert_delivery(
                alert_id=alert["id"],
                channel=EMAIL_CHANNEL,
                attempted_at=attempted_at,
                status="FAILED",
                response_code=exc.response_code,
                error_text=str(exc),
            )
            return False

        EMAIL_DELIVERIES_TOTAL.labels(status="sent").inc()
        self._store.insert_delivery(
            alert_id=alert["id"],
            channel=EMAIL_CHANNEL,
            attempted_at=attempted_at,
            status="SENT",
            response_code=sent["response_code"],
        )
        logger.info("Alert #%d emailed to %d recipient(s)", alert["id"], len(recipients))
        return True

    def send_test_email(self, requested_by: str | None = None) -> EmailTestResult:
        """Send a test message to the configured recipients.

        Raises:
            ConfigurationError: If no provider or no recipients are configured.
        """
        if not self.provider_configured:
            msg = "Email provider is not configured."
            raise ConfigurationError(msg)
        settings = load_email_settings(self._store)
        recipients = settings["recipients"]
        if not recipients:
            msg = "No alert email recipients configured."
            raise ConfigurationError(msg)

        lines = [
            "This is a test alert email from Chief Monitor.",
            "",
            f"Sent at: {to_iso(self._clock())}",
            f"Enabled alert types: {', '.join(settings['enabled_alert_types']) or 'none'}",
        ]
        if requested_by:
            lines.append(f"Requested by: {requested_by}")

        try:
            sent = self._sender.send_email(to=recipients, subject="Chief Monitor test alert", text="\n".join(lines))
        except EmailSendError as exc:
            logger.warning("Test alert email failed: %s", exc)
            EMAIL_DELIVERIES_TOTAL.labels(status="failed").inc()
            return EmailTestResult(
                attempted=len(recipients),
                sent=0,
                failed=len(recipients),
                message=str(exc),
                provider_message_id=None,
            )

        EMAIL_DELIVERIES_TOTAL.labels(status="sent").inc()
        return EmailTestResult(
            attempted=len(recipients),
            sent=len(recipients),
            failed=0,
            message=f"Test email sent to {len(recipients)} recipient(s).",
            provider_message_id=sent["provider_message_id"],
        )
