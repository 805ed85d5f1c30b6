"""SMTP mail transport.

Sends one rendered message per call.  Attachments arrive as time-limited
URLs (or local paths) and are fetched right before the message is built.

Failure mapping:
- recipient refused with a 5xx code -> ``RecipientRejected`` (bounce)
- any other SMTP, socket or attachment fetch error -> ``DeliveryError``

Retries are not attempted here; the queue's retry planner owns them.
Safety: recipient addresses are never logged.
"""
from __future__ import annotations

import logging
import mimetypes
import smtplib
import time
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from pathlib import Path
from typing import Protocol

import httpx

from report_dispatch.core.errors import DeliveryError, RecipientRejected
from report_dispatch.core.settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundAttachment:
    filename: str
    location: str


@dataclass(frozen=True)
class OutboundMessage:
    to: str
    subject: str
    html: str | None
    text: str | None
    to_name: str | None = None
    attachments: list[OutboundAttachment] = field(default_factory=list)


@dataclass
class SendResult:
    success: bool
    message_id: str | None
    provider_response: dict = field(default_factory=dict)
    error: str | None = None


class MailTransport(Protocol):
    def send(self, message: OutboundMessage) -> SendResult: ...


def _is_permanent(code: int) -> bool:
    return 500 <= code < 600


class SmtpMailTransport:
    """Deliver messages through an SMTP relay."""

    def __init__(
        self,
        smtp_host: str,
        smtp_port: int = 587,
        mail_from: str = "noreply@school.local",
        username: str | None = None,
        password: str | None = None,
        use_tls: bool = True,
        timeout: float = 30.0,
        enabled: bool = True,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.mail_from = mail_from
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout
        self.enabled = enabled

    @classmethod
    def from_settings(cls, settings: Settings) -> SmtpMailTransport:
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            mail_from=settings.mail_from,
            username=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
            timeout=settings.smtp_timeout_seconds,
            enabled=settings.email_sending_enabled,
        )

    # -- send ---------------------------------------------------------------

    def send(self, message: OutboundMessage) -> SendResult:
        if not self.enabled:
            logger.info("Email sending disabled; message %r not sent", message.subject)
            return SendResult(
                success=True,
                message_id=f"disabled-{int(time.time() * 1000)}",
                provider_response={
                    "blocked": True,
                    "reason": "Email sending disabled via EMAIL_SENDING_ENABLED",
                },
            )

        msg = self._build(message)
        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.username:
                    server.login(self.username, self.password or "")
                refused = server.send_message(msg)
        except smtplib.SMTPRecipientsRefused as exc:
            codes = [code for code, _ in exc.recipients.values()]
            detail = "; ".join(
                f"{code} {reply.decode(errors='replace') if isinstance(reply, bytes) else reply}"
                for code, reply in exc.recipients.values()
            )
            if codes and all(_is_permanent(code) for code in codes):
                raise RecipientRejected(f"Recipient refused: {detail}") from exc
            raise DeliveryError(f"Recipient temporarily refused: {detail}") from exc
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"SMTP error: {exc}") from exc

        logger.info("Delivered message %s (%d attachments)", msg["Message-ID"], len(message.attachments))
        return SendResult(
            success=True,
            message_id=msg["Message-ID"],
            provider_response={
                "accepted": 0 if refused else 1,
                "rejected": sorted(str(code) for code, _ in refused.values()),
                "host": self.smtp_host,
            },
        )

    # -- message building ---------------------------------------------------

    def _build(self, message: OutboundMessage) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = message.subject
        msg["From"] = self.mail_from
        msg["To"] = formataddr((message.to_name or "", message.to))
        msg["Message-ID"] = make_msgid(domain=self.mail_from.rpartition("@")[2] or None)

        msg.set_content(message.text or "")
        if message.html:
            msg.add_alternative(message.html, subtype="html")

        for attachment in message.attachments:
            data = self._fetch(attachment)
            mime, _ = mimetypes.guess_type(attachment.filename)
            maintype, subtype = (mime or "application/octet-stream").split("/", 1)
            msg.add_attachment(data, maintype=maintype, subtype=subtype, filename=attachment.filename)
        return msg

    def _fetch(self, attachment: OutboundAttachment) -> bytes:
        location = attachment.location
        try:
            if location.startswith(("http://", "https://")):
                response = httpx.get(location, timeout=self.timeout, follow_redirects=True)
                response.raise_for_status()
                return response.content
            return Path(location).read_bytes()
        except (httpx.HTTPError, OSError) as exc:
            raise DeliveryError(f"Could not fetch attachment {attachment.filename!r}: {exc}") from exc
