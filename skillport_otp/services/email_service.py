"""
Outbound email for the OTP service.

`EmailService.send(to, kind, variables)` is the only entry point the OTP flow
uses. Kinds: otp, registration_welcome, first_login, password_reset.

Delivery goes through aiosmtplib when SMTP credentials are configured and
ENV is not "test"; otherwise messages are logged and reported as delivered.
"""
from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import aiosmtplib

from ..config import Settings, get_settings
from ..observability.logging import mask_email
from ..observability.metrics import EMAIL_SENT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class UnknownTemplate(ValueError):
    pass


# ---------- templates: kind -> (subject, text, html) ----------

def _name(v: Dict[str, Any]) -> str:
    return " ".join(p for p in (v.get("first_name"), v.get("last_name")) if p) or "there"


def _otp(v: Dict[str, Any]) -> Tuple[str, str, str]:
    name, code, minutes = _name(v), v["otp"], v.get("ttl_minutes", 10)
    text = (
        f"Hi {name},\n\n"
        f"Your SkillPort verification code is {code}.\n"
        f"It expires in {minutes} minutes. If you did not request it, ignore this email.\n"
    )
    body = (
        f"<p>Hi {html.escape(name)},</p>"
        f"<p>Your SkillPort verification code is:</p>"
        f"<p style=\"font-size:32px;font-weight:bold;letter-spacing:8px\">{html.escape(code)}</p>"
        f"<p>It expires in {minutes} minutes. If you did not request it, ignore this email.</p>"
    )
    return "Verify Your Email - SkillPort", text, body


def _registration_welcome(v: Dict[str, Any]) -> Tuple[str, str, str]:
    name = _name(v)
    text = f"Hi {name},\n\nYour SkillPort account is ready. Welcome aboard!\n"
    body = f"<p>Hi {html.escape(name)},</p><p>Your SkillPort account is ready. Welcome aboard!</p>"
    return "Welcome to SkillPort - Your Journey Begins!", text, body


def _first_login(v: Dict[str, Any]) -> Tuple[str, str, str]:
    name = _name(v)
    text = f"Hi {name},\n\nThanks for signing in to SkillPort for the first time.\n"
    body = f"<p>Hi {html.escape(name)},</p><p>Thanks for signing in to SkillPort for the first time.</p>"
    return "Welcome Back to SkillPort!", text, body


def _password_reset(v: Dict[str, Any]) -> Tuple[str, str, str]:
    name, link = _name(v), v["reset_link"]
    text = (
        f"Hi {name},\n\n"
        f"Use the link below to reset your SkillPort password:\n{link}\n\n"
        f"If you did not ask for a reset, you can ignore this email.\n"
    )
    body = (
        f"<p>Hi {html.escape(name)},</p>"
        f"<p><a href=\"{html.escape(link, quote=True)}\">Reset your SkillPort password</a></p>"
        f"<p>If you did not ask for a reset, you can ignore this email.</p>"
    )
    return "Reset Your SkillPort Password", text, body


TEMPLATES: Dict[str, Callable[[Dict[str, Any]], Tuple[str, str, str]]] = {
    "otp": _otp,
    "registration_welcome": _registration_welcome,
    "first_login": _first_login,
    "password_reset": _password_reset,
}


def render(kind: str, variables: Dict[str, Any]) -> Tuple[str, str, str]:
    try:
        tpl = TEMPLATES[kind]
    except KeyError:
        raise UnknownTemplate(f"unknown email template: {kind}") from None
    return tpl(variables)


# ---------- transports ----------

class EmailTransport(Protocol):
    async def deliver(self, message: EmailMessage) -> None: ...

    async def check(self) -> None: ...


class SmtpEmailTransport:
    def __init__(self, settings: Settings) -> None:
        self._host = settings.SMTP_HOST
        self._port = settings.SMTP_PORT
        self._user = settings.SMTP_USER
        self._password = settings.SMTP_PASSWORD
        self._timeout = settings.SMTP_TIMEOUT_SEC

    async def deliver(self, message: EmailMessage) -> None:
        await aiosmtplib.send(
            message,
            hostname=self._host,
            port=self._port,
            username=self._user,
            password=self._password,
            start_tls=True,
            timeout=self._timeout,
        )

    async def check(self) -> None:
        client = aiosmtplib.SMTP(hostname=self._host, port=self._port, start_tls=True, timeout=self._timeout)
        async with client:
            await client.login(self._user, self._password)


class LogEmailTransport:
    """DEV transport: logs instead of sending."""

    async def deliver(self, message: EmailMessage) -> None:
        logger.info(
            "[DEV] email to %s: %s\n%s",
            message["To"], message["Subject"], message.get_body(("plain",)).get_content(),
        )

    async def check(self) -> None:
        return None


# ---------- service ----------

class EmailService:
    def __init__(self, transport: Optional[EmailTransport] = None, settings: Optional[Settings] = None) -> None:
        settings = settings or get_settings()
        self._from = formataddr((settings.EMAIL_FROM_NAME, settings.EMAIL_FROM))
        self._msgid_domain = settings.EMAIL_FROM.partition("@")[2] or None
        if transport is not None:
            self._transport = transport
        elif settings.smtp_configured and settings.ENV != "test":
            self._transport = SmtpEmailTransport(settings)
        else:
            # test runs never reach a real mailbox
            if settings.ENV == "prod":
                logger.warning("SMTP disabled in prod; missing SMTP_USER/SMTP_PASSWORD, emails will be logged only")
            else:
                logger.info("SMTP disabled (ENV=%s); emails will be logged only", settings.ENV)
            self._transport = LogEmailTransport()

    def build_message(self, to_address: str, kind: str, variables: Dict[str, Any]) -> EmailMessage:
        subject, text, body = render(kind, variables)
        msg = EmailMessage()
        msg["From"] = self._from
        msg["To"] = to_address
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid(domain=self._msgid_domain)
        msg.set_content(text)
        msg.add_alternative(body, subtype="html")
        return msg

    async def send(self, to_address: str, template_kind: str, variables: Dict[str, Any]) -> EmailResult:
        """Render and deliver. Never raises; failures come back as EmailResult(success=False)."""
        try:
            msg = self.build_message(to_address, template_kind, variables)
        except (UnknownTemplate, KeyError) as exc:
            logger.error("email render failed kind=%s: %r", template_kind, exc)
            EMAIL_SENT.labels(kind=template_kind, status="render_error").inc()
            return EmailResult(success=False, error=str(exc))

        try:
            await self._transport.deliver(msg)
        except Exception as exc:
            logger.warning("email send failed kind=%s to=%s: %s", template_kind, mask_email(to_address), exc)
            EMAIL_SENT.labels(kind=template_kind, status="failed").inc()
            return EmailResult(success=False, error=str(exc))

        EMAIL_SENT.labels(kind=template_kind, status="sent").inc()
        logger.info("email sent kind=%s to=%s", template_kind, mask_email(to_address))
        return EmailResult(success=True, message_id=msg["Message-ID"])

    async def test_connection(self) -> EmailResult:
        try:
            await self._transport.check()
        except Exception as exc:
            logger.error("email transport check failed: %s", exc)
            return EmailResult(success=False, error=str(exc))
        return EmailResult(success=True)
