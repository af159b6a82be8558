"""Email delivery for price alerts.

Every hosted provider is reached through its SMTP relay; only the endpoint
and credentials differ. The ``test`` provider keeps messages in memory.
"""

import asyncio
import logging
import smtplib
import ssl
import time
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Optional, Sequence

from price_tracker.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

EMAIL_PROVIDERS = ("smtp", "gmail", "sendgrid", "ses", "mailgun", "mailru", "test")


@dataclass
class EmailResult:
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class SmtpEndpoint:
    host: str
    port: int
    secure: bool  # implicit TLS (SMTP_SSL) instead of STARTTLS
    user: str = ""
    password: str = ""


def smtp_endpoint_for(settings: Settings) -> SmtpEndpoint:
    """
    SMTP endpoint for the configured provider.

    Raises:
        ValueError: If the provider is unknown or is the test provider
    """
    provider = settings.email_provider.lower()
    if provider == "smtp":
        return SmtpEndpoint(
            settings.smtp_host, settings.smtp_port, settings.smtp_secure,
            settings.smtp_user, settings.smtp_pass,
        )
    if provider == "gmail":
        return SmtpEndpoint("smtp.gmail.com", 465, True, settings.gmail_user, settings.gmail_app_password)
    if provider == "sendgrid":
        return SmtpEndpoint("smtp.sendgrid.net", 587, False, "apikey", settings.sendgrid_api_key)
    if provider == "ses":
        return SmtpEndpoint(
            f"email-smtp.{settings.aws_ses_region}.amazonaws.com", 587, False,
            settings.aws_ses_smtp_user, settings.aws_ses_smtp_password,
        )
    if provider == "mailgun":
        return SmtpEndpoint(
            "smtp.mailgun.org", 587, False,
            f"postmaster@{settings.mailgun_domain}", settings.mailgun_api_key,
        )
    if provider == "mailru":
        return SmtpEndpoint("smtp.mail.ru", 465, True, settings.mailru_user, settings.mailru_app_password)
    raise ValueError(f"Unknown SMTP email provider: {provider}")


class EmailSender:
    """Provider-agnostic sender; subclasses implement _deliver."""

    provider = "base"

    def __init__(self, from_address: str, from_name: str = ""):
        self.from_address = from_address
        self.from_name = from_name

    def build_message(
        self,
        to: Sequence[str],
        subject: str,
        text: str,
        html: Optional[str] = None,
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = formataddr((self.from_name, self.from_address)) if self.from_name else self.from_address
        msg["To"] = ", ".join(to)
        msg["Message-ID"] = make_msgid(domain=self.from_address.split("@")[-1] or None)
        msg.set_content(text)
        if html:
            msg.add_alternative(html, subtype="html")
        return msg

    async def send(
        self,
        to: Sequence[str],
        subject: str,
        text: str,
        html: Optional[str] = None,
    ) -> EmailResult:
        """Send a message; never raises, failures are returned."""
        if not to:
            return EmailResult(success=False, error="No recipients")
        msg = self.build_message(to, subject, text, html)
        try:
            message_id = await self._deliver(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Email delivery via {self.provider} failed: {e}")
            return EmailResult(success=False, error=str(e))
        logger.info(f"Email sent via {self.provider} to {', '.join(to)} (subject={subject})")
        return EmailResult(success=True, message_id=message_id)

    async def _deliver(self, msg: EmailMessage) -> str:
        raise NotImplementedError

    async def verify(self) -> bool:
        return True


class SmtpEmailSender(EmailSender):
    """Sends through an SMTP server (STARTTLS on 587, implicit TLS on 465)."""

    def __init__(self, endpoint: SmtpEndpoint, from_address: str, from_name: str = "", provider: str = "smtp", timeout: float = 20.0):
        super().__init__(from_address, from_name)
        self.endpoint = endpoint
        self.provider = provider
        self.timeout = timeout

    def _connect(self) -> smtplib.SMTP:
        ep = self.endpoint
        if ep.secure:
            server = smtplib.SMTP_SSL(ep.host, ep.port, context=ssl.create_default_context(), timeout=self.timeout)
        else:
            server = smtplib.SMTP(ep.host, ep.port, timeout=self.timeout)
            server.ehlo()
            if server.has_extn("starttls"):
                server.starttls(context=ssl.create_default_context())
                server.ehlo()
        if ep.user:
            server.login(ep.user, ep.password)
        return server

    def _send_sync(self, msg: EmailMessage) -> str:
        with self._connect() as server:
            server.send_message(msg)
        return msg["Message-ID"]

    async def _deliver(self, msg: EmailMessage) -> str:
        return await asyncio.to_thread(self._send_sync, msg)

    def _verify_sync(self) -> None:
        with self._connect() as server:
            server.noop()

    async def verify(self) -> bool:
        """Open a connection and authenticate without sending."""
        try:
            await asyncio.to_thread(self._verify_sync)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Email configuration check failed for {self.provider}: {e}")
            return False
        return True


class TestEmailSender(EmailSender):
    """Keeps messages in ``outbox`` instead of sending them."""

    provider = "test"
    __test__ = False  # not a pytest test class

    def __init__(self, from_address: str = "test@localhost", from_name: str = ""):
        super().__init__(from_address, from_name)
        self.outbox: list[EmailMessage] = []

    async def _deliver(self, msg: EmailMessage) -> str:
        self.outbox.append(msg)
        logger.info(f"Test email captured: {msg['Subject']}")
        return f"test-{int(time.time() * 1000)}"


def create_email_sender(settings: Optional[Settings] = None) -> Optional[EmailSender]:
    """Sender for the configured provider, or None when email is disabled."""
    settings = settings or default_settings
    if not settings.email_enabled:
        return None

    provider = settings.email_provider.lower()
    if provider not in EMAIL_PROVIDERS:
        raise ValueError(f"Unknown email provider: {provider}. Available: {', '.join(EMAIL_PROVIDERS)}")
    if provider == "test":
        return TestEmailSender(settings.email_from, settings.email_from_name)
    return SmtpEmailSender(
        smtp_endpoint_for(settings),
        settings.email_from,
        settings.email_from_name,
        provider=provider,
    )
