"""Outbound messages: verification codes, new-device alerts, welcome emails.

Email goes out through Resend; phone numbers get an SMS placeholder that only
logs. Callers depend on ``NotificationSender`` so tests can swap in a recorder.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
from typing import Any

import resend
from jinja2 import Environment, FileSystemLoader, select_autoescape

from portier.core.config import settings
from portier.core.i18n import normalize_language, translate
from portier.core.logging_config import anonymise

logger = logging.getLogger(__name__)

TEMPLATES_DIR = os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")

EMAIL_RE = re.compile(r"^[^@<>\s]+@[^@<>\s]+\.[^@<>\s]+$")
NAME_EMAIL_RE = re.compile(r"^.+ <[^@<>\s]+@[^@<>\s]+\.[^@<>\s]+>$")

_templates = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(["html"]),
)


class NotificationError(Exception):
    """The message could not be handed to the transport."""


class NotificationSender:
    """Interface for everything the sign-in flow sends to a person."""

    async def send_verification_code(
        self, recipient: str, kind: str, code: str, *, language: str, expires_minutes: int
    ) -> None:
        raise NotImplementedError

    async def send_new_device_alert(
        self, recipient: str, kind: str, *, language: str, device: dict[str, Any]
    ) -> None:
        raise NotImplementedError

    async def send_welcome(self, recipient: str, kind: str, *, language: str) -> None:
        raise NotImplementedError


def _from_field() -> str:
    """Accept ``user@example.com`` or ``Name <user@example.com>`` for the sender."""
    from_raw = (settings.RESEND_FROM_EMAIL or "").strip()
    if EMAIL_RE.match(from_raw):
        return f"{settings.APP_NAME} <{from_raw}>"
    if NAME_EMAIL_RE.match(from_raw):
        return from_raw
    logger.warning("RESEND_FROM_EMAIL value '%s' is invalid; falling back to noreply", from_raw)
    return f"{settings.APP_NAME} <noreply@example.com>"


def render_email(template: str, language: str, **context: Any) -> str:
    language = normalize_language(language)

    def _(message: str, **params: Any) -> str:
        return translate(message, language, **params)

    return _templates.get_template(template).render(
        _=_,
        language=language,
        app_name=settings.APP_NAME,
        client_url=settings.CLIENT_URL,
        **context,
    )


class ResendEmailSender:
    """Thin wrapper around the Resend client."""

    async def send(self, to: str, subject: str, html: str) -> None:
        if not settings.RESEND_API_KEY:
            if settings.DEBUG:
                logger.info("Email delivery disabled; would send %r to %s", subject, anonymise(to))
                return
            raise NotificationError("Email delivery is not configured")

        resend.api_key = settings.RESEND_API_KEY
        params = {"from": _from_field(), "to": to, "subject": subject, "html": html}
        try:
            # The Resend client is synchronous; keep it off the event loop.
            await asyncio.to_thread(resend.Emails.send, params)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to send email to %s", anonymise(to), exc_info=exc)
            raise NotificationError("Email delivery failed") from exc


class SmsPlaceholder:
    """No SMS gateway yet; record what would have been sent."""

    async def send(self, to: str, text: str) -> None:
        logger.info("SMS to %s (placeholder): %d chars", anonymise(to), len(text))


class DefaultNotificationSender(NotificationSender):
    def __init__(self, email: ResendEmailSender | None = None, sms: SmsPlaceholder | None = None) -> None:
        self.email = email or ResendEmailSender()
        self.sms = sms or SmsPlaceholder()

    async def send_verification_code(
        self, recipient: str, kind: str, code: str, *, language: str, expires_minutes: int
    ) -> None:
        if kind == "phone":
            text = translate(
                "Your {app} verification code is {code}. It expires in {minutes} minutes.",
                language,
                app=settings.APP_NAME,
                code=code,
                minutes=expires_minutes,
            )
            await self.sms.send(recipient, text)
            return

        html = render_email("email/verification_code.html", language, code=code, minutes=expires_minutes)
        subject = translate("Your verification code", language)
        await self.email.send(recipient, subject, html)

    async def send_new_device_alert(
        self, recipient: str, kind: str, *, language: str, device: dict[str, Any]
    ) -> None:
        if kind == "phone":
            text = translate(
                "New sign-in to your {app} account from {device}.",
                language,
                app=settings.APP_NAME,
                device=device.get("device_name") or device.get("device_type") or "Unknown",
            )
            await self.sms.send(recipient, text)
            return

        html = render_email("email/new_device.html", language, device=device)
        subject = translate("New sign-in to your account", language)
        await self.email.send(recipient, subject, html)

    async def send_welcome(self, recipient: str, kind: str, *, language: str) -> None:
        if kind == "phone":
            await self.sms.send(recipient, translate("Welcome to {app}!", language, app=settings.APP_NAME))
            return

        html = render_email("email/welcome.html", language)
        subject = translate("Welcome to {app}!", language, app=settings.APP_NAME)
        await self.email.send(recipient, subject, html)


notification_sender: NotificationSender = DefaultNotificationSender()


def get_notification_sender() -> NotificationSender:
    """Dependency hook; tests override it with an in-memory recorder."""
    return notification_sender


__all__ = [
    "DefaultNotificationSender",
    "NotificationError",
    "NotificationSender",
    "get_notification_sender",
    "render_email",
]
