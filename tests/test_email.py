"""Tests for the email transports, with the Resend API mocked by respx."""

import json
import smtplib
from typing import Any
from unittest.mock import MagicMock, patch

import httpx
import pytest
import respx

from chief_monitor.notify.email import (
    EmailSendError,
    ResendEmailSender,
    SmtpEmailSender,
    build_email_sender,
    format_from_address,
)

BASE = "https://resend.test"


def _resend(**overrides: Any) -> ResendEmailSender:
    kwargs: dict[str, Any] = {"api_key": "re_test_key", "from_email": "alerts@example.com", "api_base": f"{BASE}/"}
    kwargs.update(overrides)
    return ResendEmailSender(**kwargs)


class TestFormatFromAddress:
    def test_wraps_bare_address(self) -> None:
        assert format_from_address("alerts@example.com") == "Chief Monitor <alerts@example.com>"

    def test_keeps_display_name(self) -> None:
        assert format_from_address("Ops <ops@example.com>") == "Ops <ops@example.com>"

    def test_blank(self) -> None:
        assert format_from_address("   ") == ""


class TestResendEmailSender:
    def test_is_configured(self) -> None:
        assert _resend().is_configured() is True
        assert _resend(api_key="").is_configured() is False
        assert _resend(from_email=" ").is_configured() is False

    def test_unconfigured_raises(self) -> None:
        with pytest.raises(EmailSendError, match="EMAIL_NOT_CONFIGURED"):
            _resend(api_key="").send_email(to=["a@example.com"], subject="s", text="t")

    @respx.mock
    def test_success(self) -> None:
        route = respx.post(f"{BASE}/emails").mock(return_value=httpx.Response(200, json={"id": "email-123"}))

        result = _resend().send_email(to=["a@example.com", "b@example.com"], subject="Hello", text="Body")

        assert result == {"provider_message_id": "email-123", "response_code": 200}
        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer re_test_key"
        payload = json.loads(request.content)
        assert payload == {
            "from": "Chief Monitor <alerts@example.com>",
            "to": ["a@example.com", "b@example.com"],
            "subject": "Hello",
            "text": "Body",
        }

    @respx.mock
    def test_error_message_from_body(self) -> None:
        respx.post(f"{BASE}/emails").mock(
            return_value=httpx.Response(422, json={"message": "Invalid `to` field"})
        )

        with pytest.raises(EmailSendError, match="Invalid `to` field") as exc_info:
            _resend().send_email(to=["a@example.com"], subject="s", text="t")
        assert exc_info.value.response_code == 422

    @respx.mock
    def test_nested_error_message(self) -> None:
        respx.post(f"{BASE}/emails").mock(
            return_value=httpx.Response(403, json={"error": {"message": "Domain not verified"}})
        )

        with pytest.raises(EmailSendError, match="Domain not verified"):
            _resend().send_email(to=["a@example.com"], subject="s", text="t")

    @respx.mock
    def test_error_without_body(self) -> None:
        respx.post(f"{BASE}/emails").mock(return_value=httpx.Response(500, text="oops"))

        with pytest.raises(EmailSendError, match="RESEND_REQUEST_FAILED_500"):
            _resend().send_email(to=["a@example.com"], subject="s", text="t")

    @respx.mock
    def test_connect_error(self) -> None:
        respx.post(f"{BASE}/emails").mock(side_effect=httpx.ConnectError("Connection refused"))

        with pytest.raises(EmailSendError, match="Connection refused") as exc_info:
            _resend().send_email(to=["a@example.com"], subject="s", text="t")
        assert exc_info.value.response_code is None


class TestSmtpEmailSender:
    def _sender(self) -> SmtpEmailSender:
        return SmtpEmailSender("smtp.test.com", 587, "user@test.com", "secret")

    def test_sends_with_starttls(self) -> None:
        server = MagicMock()
        with patch("chief_monitor.notify.email.smtplib.SMTP") as smtp_cls:
            smtp_cls.return_value.__enter__.return_value = server
            result = self._sender().send_email(to=["a@example.com"], subject="Hi", text="Body")

        smtp_cls.assert_called_once_with("smtp.test.com", 587, timeout=30)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("user@test.com", "secret")
        msg = server.send_message.call_args.args[0]
        assert msg["From"] == "Chief Monitor <user@test.com>"
        assert msg["To"] == "a@example.com"
        assert result["response_code"] == 250

    def test_auth_error_wrapped(self) -> None:
        server = MagicMock()
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
        with patch("chief_monitor.notify.email.smtplib.SMTP") as smtp_cls:
            smtp_cls.return_value.__enter__.return_value = server
            with pytest.raises(EmailSendError) as exc_info:
                self._sender().send_email(to=["a@example.com"], subject="Hi", text="Body")

        assert exc_info.value.response_code == 535

    def test_connection_error_wrapped(self) -> None:
        with patch("chief_monitor.notify.email.smtplib.SMTP", side_effect=OSError("unreachable")):
            with pytest.raises(EmailSendError, match="unreachable"):
                self._sender().send_email(to=["a@example.com"], subject="Hi", text="Body")

    def test_unconfigured(self) -> None:
        assert SmtpEmailSender("", 587, "", "").is_configured() is False


class TestBuildEmailSender:
    def test_prefers_resend(self, mock_settings: Any) -> None:
        mock_settings.resend_api_key = "re_key"
        mock_settings.resend_from_email = "alerts@example.com"
        mock_settings.smtp_host = "smtp.test.com"
        assert isinstance(build_email_sender(mock_settings), ResendEmailSender)

    def test_falls_back_to_smtp(self, mock_settings: Any) -> None:
        mock_settings.smtp_host = "smtp.test.com"
        mock_settings.smtp_username = "user@test.com"
        mock_settings.smtp_password = "secret"
        sender = build_email_sender(mock_settings)
        assert isinstance(sender, SmtpEmailSender)
        assert sender.is_configured() is True

    def test_unconfigured_default(self, mock_settings: Any) -> None:
        sender = build_email_sender(mock_settings)
        assert sender.is_configured() is False
