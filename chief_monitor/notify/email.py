"""Email transports for alert notifications.

Two providers share one small interface: the Resend HTTP API (via httpx) and
plain SMTP with STARTTLS (stdlib smtplib). Both raise ``EmailSendError`` on
failure; deciding *whether* to send is the notifier's job, not theirs.
"""

import logging
import smtplib
from email.mime.text import MIMEText
from typing import Any, Protocol

import httpx
from typing_extensions import TypedDict

from chief_monitor.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 15
DEFAULT_FROM_NAME = "Chief Monitor"
DEFAULT_RESEND_API_BASE = "https://api.resend.com"


class SendEmailResult(TypedDict):
    provider_message_id: str | None
    response_code: int | None


class EmailSendError(Exception):
    """Raised when a provider is unconfigured or rejects / fails to accept a message."""

    def __init__(self, message: str, response_code: int | None = None) -> None:
        super().__init__(message)
        self.response_code = response_code


class EmailSender(Protocol):
    def is_configured(self) -> bool: ...

    def send_email(self, *, to: list[str], subject: str, text: str) -> SendEmailResult: ...


def format_from_address(from_email: str) -> str:
    """Wrap a bare address as ``Chief Monitor <addr>``; leave ``Name <addr>`` forms alone."""
    from_email = from_email.strip()
    if not from_email:
        return ""
    if "<" in from_email and ">" in from_email:
        return from_email
    return f"{DEFAULT_FROM_NAME} <{from_email}>"


def _resend_error_message(body: Any, fallback: str) -> str:
    if not isinstance(body, dict):
        return fallback
    message = body.get("message")
    if isinstance(message, str) and message.strip():
        return message.strip()
    error = body.get("error")
    if isinstance(error, dict):
        nested = error.get("message")
        if isinstance(nested, str) and nested.strip():
            return nested.strip()
    return fallback


class ResendEmailSender:
    """Send mail through the Resend ``POST /emails`` API."""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        api_base: str = DEFAULT_RESEND_API_BASE,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._api_key = api_key.strip()
        self._from_email = from_email.strip()
        self._from_address = format_from_address(self._from_email)
        self._api_base = (api_base.strip() or DEFAULT_RESEND_API_BASE).rstrip("/")
        self._timeout = timeout

    def is_configured(self) -> bool:
        return bool(self._api_key and self._from_email)

    def send_email(self, *, to: list[str], subject: str, text: str) -> SendEmailResult:
        """Send one message to all recipients.

        Raises:
            EmailSendError: If the sender is unconfigured, the request fails,
                or Resend answers with a non-2xx status.
        """
        if not self.is_configured():
            raise EmailSendError("EMAIL_NOT_CONFIGURED")

        try:
            with httpx.Client(timeout=self._timeout) as client:
                resp = client.post(
                    f"{self._api_base}/emails",
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    json={"from": self._from_address, "to": to, "subject": subject, "text": text},
                )
        except httpx.HTTPError as exc:
            raise EmailSendError(f"Resend request failed: {exc}") from exc

        try:
            body: Any = resp.json()
        except ValueError:
            body = None

        if not resp.is_success:
            message = _resend_error_message(body, f"RESEND_REQUEST_FAILED_{resp.status_code}")
            raise EmailSendError(message, resp.status_code)

        message_id = body.get("id") if isinstance(body, dict) else None
        return SendEmailResult(
            provider_message_id=message_id if isinstance(message_id, str) else None,
            response_code=resp.status_code,
        )


class SmtpEmailSender:
    """Send plain-text mail via SMTP with STARTTLS."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        from_email: str = "",
        timeout: float = 30,
    ) -> None:
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._from_address = format_from_address(from_email or username)
        self._timeout = timeout

    def is_configured(self) -> bool:
        return bool(self._host and self._username and self._password)

    def send_email(self, *, to: list[str], subject: str, text: str) -> SendEmailResult:
        if not self.is_configured():
            raise EmailSendError("EMAIL_NOT_CONFIGURED")

        msg = MIMEText(text, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self._from_address
        msg["To"] = ", ".join(to)

        try:
            with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
                _ = server.starttls()
                server.login(self._username, self._password)
                server.send_message(msg)
        except smtplib.SMTPResponseException as exc:
            raise EmailSendError(f"SMTP error: {exc.smtp_error!r}", exc.smtp_code) from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise EmailSendError(f"SMTP delivery failed: {exc}") from exc

        return SendEmailResult(provider_message_id=msg["Message-ID"], response_code=250)


def build_email_sender(settings: Settings) -> EmailSender:
    """Resend when its API key is set, SMTP when that is configured, else an unconfigured Resend sender."""
    if settings.resend_api_key:
        return ResendEmailSender(settings.resend_api_key, settings.resend_from_email, settings.resend_api_base)
    if settings.smtp_host:
        return SmtpEmailSender(
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_username,
            settings.smtp_password,
            settings.smtp_from_email,
        )
    return ResendEmailSender("", settings.resend_from_email, settings.resend_api_base)
