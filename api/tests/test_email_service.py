"""Tests for transactional email delivery."""

from __future__ import annotations

import uuid
from unittest.mock import MagicMock, patch

import pytest
from api.services.email_service import (
    send_badge_email,
    send_transactional_email,
    send_verification_email,
    send_welcome_email,
    smtp_is_configured,
)
from chartsense.config import Settings, get_settings, reset_settings_cache
from chartsense.models import User


@pytest.fixture
def smtp_env(monkeypatch):
    monkeypatch.setenv("SMTP_ENABLED", "true")
    monkeypatch.setenv("SMTP_HOST", "smtp.example.com")
    monkeypatch.setenv("SMTP_PORT", "587")
    monkeypatch.setenv("SMTP_FROM_EMAIL", "noreply@example.com")
    monkeypatch.setenv("SITE_URL", "https://chartsense.test/")
    reset_settings_cache()


def _user() -> User:
    return User(id=uuid.uuid4(), email="ada@example.com", name="Ada")


def test_smtp_is_configured_requires_host_sender_and_port():
    assert smtp_is_configured(
        Settings(SMTP_HOST="smtp.example.com", SMTP_FROM_EMAIL="a@example.com")
    )
    assert not smtp_is_configured(Settings(SMTP_HOST=" ", SMTP_FROM_EMAIL="a@example.com"))
    assert not smtp_is_configured(Settings(SMTP_HOST="smtp.example.com", SMTP_FROM_EMAIL=""))
    assert not smtp_is_configured(
        Settings(SMTP_HOST="smtp.example.com", SMTP_FROM_EMAIL="a@example.com", SMTP_PORT=0)
    )


@pytest.mark.asyncio
async def test_send_transactional_email_skips_when_disabled():
    with patch("api.services.email_service._send_email_sync") as send_mock:
        delivered = await send_transactional_email(
            to_email="qa@example.com", subject="Subject", text_body="Body"
        )
    assert delivered is False
    send_mock.assert_not_called()


@pytest.mark.asyncio
async def test_send_transactional_email_skips_when_incomplete(monkeypatch):
    monkeypatch.setenv("SMTP_ENABLED", "true")
    reset_settings_cache()
    with patch("api.services.email_service._send_email_sync") as send_mock:
        delivered = await send_transactional_email(
            to_email="qa@example.com", subject="Subject", text_body="Body"
        )
    assert delivered is False
    send_mock.assert_not_called()


@pytest.mark.asyncio
async def test_send_transactional_email_normalizes_recipient(smtp_env):
    with patch("api.services.email_service._send_email_sync") as send_mock:
        delivered = await send_transactional_email(
            to_email=" QA@Example.com ", subject=" Subject ", text_body="Body"
        )
    assert delivered is True
    kwargs = send_mock.call_args.kwargs
    assert kwargs["to_email"] == "qa@example.com"
    assert kwargs["subject"] == "Subject"
    assert kwargs["settings"] is get_settings()


@pytest.mark.asyncio
async def test_send_transactional_email_swallows_delivery_errors(smtp_env):
    with patch(
        "api.services.email_service._send_email_sync",
        side_effect=OSError("connection refused"),
    ):
        delivered = await send_transactional_email(
            to_email="qa@example.com", subject="Subject", text_body="Body"
        )
    assert delivered is False


@pytest.mark.asyncio
async def test_smtp_session_uses_starttls_and_login(smtp_env, monkeypatch):
    monkeypatch.setenv("SMTP_USERNAME", "mailer")
    monkeypatch.setenv("SMTP_PASSWORD", "secret")
    reset_settings_cache()
    smtp = MagicMock()
    smtp.__enter__.return_value = smtp
    with patch("api.services.email_service.smtplib.SMTP", return_value=smtp) as smtp_cls:
        delivered = await send_transactional_email(
            to_email="qa@example.com", subject="Subject", text_body="Body"
        )
    assert delivered is True
    smtp_cls.assert_called_once_with(host="smtp.example.com", port=587, timeout=15)
    smtp.starttls.assert_called_once()
    smtp.login.assert_called_once_with("mailer", "secret")
    message = smtp.send_message.call_args.args[0]
    assert message["From"] == "ChartSense <noreply@example.com>"
    assert message["To"] == "qa@example.com"


@pytest.mark.asyncio
async def test_verification_email_links_to_site(smtp_env):
    with patch("api.services.email_service._send_email_sync") as send_mock:
        delivered = await send_verification_email(_user(), "abc+123")
    assert delivered is True
    body = send_mock.call_args.kwargs["text_body"]
    assert "https://chartsense.test/verify-email?token=abc%2B123" in body
    assert send_mock.call_args.kwargs["to_email"] == "ada@example.com"


@pytest.mark.asyncio
async def test_welcome_and_badge_emails(smtp_env):
    with patch("api.services.email_service._send_email_sync") as send_mock:
        assert await send_welcome_email(_user()) is True
        assert await send_badge_email(_user(), "First Chart") is True
    subjects = [call.kwargs["subject"] for call in send_mock.call_args_list]
    assert subjects == ["Welcome to ChartSense", "You earned the First Chart badge"]
    assert "https://chartsense.test/login" in send_mock.call_args_list[0].kwargs["text_body"]
