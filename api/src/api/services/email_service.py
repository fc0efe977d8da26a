"""Transactional email over SMTP (verification, welcome, badge notices)."""

from __future__ import annotations

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from urllib.parse import quote

from chartsense.config import Settings, get_settings
from chartsense.models import User

logger = logging.getLogger(__name__)


def smtp_is_configured(settings: Settings) -> bool:
    if not settings.smtp_host.strip():
        return False
    if not settings.smtp_from_email.strip():
        return False
    return 0 < settings.smtp_port <= 65535


def _build_sender(from_email: str, from_name: str) -> str:
    if not from_name:
        return from_email
    return f"{from_name} <{from_email}>"


def _send_email_sync(
    *,
    settings: Settings,
    to_email: str,
    subject: str,
    text_body: str,
    html_body: str | None = None,
) -> None:
    message = EmailMessage()
    message["From"] = _build_sender(settings.smtp_from_email.strip(), settings.smtp_from_name)
    message["To"] = to_email
    message["Subject"] = subject
    message.set_content(text_body)
    if html_body:
        message.add_alternative(html_body, subtype="html")

    if settings.smtp_use_ssl:
        smtp_client: smtplib.SMTP = smtplib.SMTP_SSL(
            host=settings.smtp_host, port=settings.smtp_port, timeout=15
        )
    else:
        smtp_client = smtplib.SMTP(host=settings.smtp_host, port=settings.smtp_port, timeout=15)

    with smtp_client as smtp:
        smtp.ehlo()
        if settings.smtp_use_starttls and not settings.smtp_use_ssl:
            smtp.starttls()
            smtp.ehlo()
        if settings.smtp_username:
            smtp.login(settings.smtp_username, settings.smtp_password)
        smtp.send_message(message)


async def send_transactional_email(
    *,
    to_email: str,
    subject: str,
    text_body: str,
    html_body: str | None = None,
) -> bool:
    """Send one email; returns False instead of raising when delivery is skipped or fails."""
    settings = get_settings()
    if not settings.smtp_enabled:
        logger.info("SMTP is disabled; skipping transactional email send")
        return False
    if not smtp_is_configured(settings):
        logger.warning(
            "SMTP is enabled but not fully configured; skipping transactional email send"
        )
        return False

    try:
        await asyncio.to_thread(
            _send_email_sync,
            settings=settings,
            to_email=to_email.strip().lower(),
            subject=subject.strip(),
            text_body=text_body,
            html_body=html_body,
        )
        return True
    except Exception:
        logger.exception("Failed sending transactional email to %s", to_email)
        return False


async def send_verification_email(user: User, token: str) -> bool:
    settings = get_settings()
    link = f"{settings.site_url.rstrip('/')}/verify-email?token={quote(token)}"
    return await send_transactional_email(
        to_email=user.email,
        subject="Verify your ChartSense email",
        text_body=(
            f"Hi {user.name},\n\n"
            f"Confirm your email address to finish setting up your account:\n{link}\n\n"
            "If you did not create an account you can ignore this message."
        ),
    )


async def send_welcome_email(user: User) -> bool:
    settings = get_settings()
    return await send_transactional_email(
        to_email=user.email,
        subject="Welcome to ChartSense",
        text_body=(
            f"Hi {user.name},\n\n"
            "Your subscription is active. Sign in to start practising:\n"
            f"{settings.site_url.rstrip('/')}/login\n"
        ),
    )


async def send_badge_email(user: User, badge: str) -> bool:
    return await send_transactional_email(
        to_email=user.email,
        subject=f"You earned the {badge} badge",
        text_body=f"Hi {user.name},\n\nCongratulations, you just earned the {badge} badge.\n",
    )
