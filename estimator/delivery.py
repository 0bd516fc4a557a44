import logging
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import List, Optional, Protocol

from estimator.errors import DeliveryError
from estimator.models import Job
from estimator.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class OutboundEmail:
    to: List[str]
    subject: str
    html: str
    text: str = field(default="")


class Mailer(Protocol):
    def send(self, message: OutboundEmail) -> None:
        ...


def recipients_for(job: Job, internal_copy: Optional[str]) -> List[str]:
    """Customer first, then the internal oversight copy, without duplicates."""
    out: List[str] = []
    seen = set()
    for addr in (job.email, internal_copy):
        a = (addr or "").strip()
        if a and a.lower() not in seen:
            seen.add(a.lower())
            out.append(a)
    return out


class SmtpMailer:
    def __init__(
        self,
        host: str,
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        sender: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender or user
        self.timeout = timeout

    def send(self, message: OutboundEmail) -> None:
        if not message.to:
            raise DeliveryError("No recipients")
        if not self.sender:
            raise DeliveryError("EMAIL_FROM (or SMTP_USER) is not set")

        msg = EmailMessage()
        msg["Subject"] = message.subject
        msg["From"] = self.sender
        msg["To"] = ", ".join(message.to)
        msg.set_content(message.text or "This estimate is best viewed in an HTML-capable mail client.")
        msg.add_alternative(message.html, subtype="html")

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                server.starttls()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(f"SMTP send to {', '.join(message.to)} failed: {e}") from e


class LogMailer:
    """Dev mode: no SMTP host configured, so the email is only logged."""

    def send(self, message: OutboundEmail) -> None:
        if not message.to:
            raise DeliveryError("No recipients")
        logger.info(
            "=== [DEV EMAIL - NO SMTP_HOST] === to=%s subject=%r html=%s chars",
            ", ".join(message.to), message.subject, len(message.html),
        )


def build_mailer(settings: Settings) -> Mailer:
    if not settings.smtp_host:
        return LogMailer()
    return SmtpMailer(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        sender=settings.email_from,
    )
