"""
auth/notifier.py -- Outbound account emails.

Two Notifier implementations:
  SmtpNotifier -- smtplib over STARTTLS or implicit TLS.
  LogNotifier  -- dev mode: logs the message instead of sending it. Used when
                  SMTP_HOST is empty so local setups work without a mail server.

Message bodies are rendered from Jinja2 templates in auth/templates/ by
render_message(). Flows treat delivery as fire-and-forget: a failed send
raises NotificationError, which the flow logs and reports in its receipt but
never uses to undo the database write that preceded it.

Email addresses are redacted in log lines; bodies are never logged by the
SMTP path because they carry one-time links.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from auth.errors import NotificationError
from core.config import Settings

logger = logging.getLogger("keyward.notifier")

_templates = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=select_autoescape(["html"]),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)


def render_message(template: str, **context) -> str:
    """Render auth/templates/<template> with the given context."""
    return _templates.get_template(template).render(**context)


def redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class LogNotifier:
    """Writes each message to the log instead of delivering it."""

    def send(self, recipient: str, subject: str, body: str) -> None:
        logger.info("Email (dev mode) to=%s subject=%r\n%s", redact_email(recipient), subject, body)


class SmtpNotifier:
    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        from_email: str = "",
        from_name: str = "Keyward",
        timeout: float = 30.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.from_email = from_email or username
        self.from_name = from_name
        self.timeout = timeout

    def send(self, recipient: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = recipient
        msg.set_content(body)

        context = ssl.create_default_context()
        try:
            if self.use_tls:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.username and self.password:
                        server.login(self.username, self.password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP_SSL(self.host, self.port, context=context, timeout=self.timeout) as server:
                    if self.username and self.password:
                        server.login(self.username, self.password)
                    server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Email to %s failed: %s", redact_email(recipient), exc)
            raise NotificationError(f"Could not deliver email: {exc}") from exc
        logger.info("Email sent to=%s subject=%r", redact_email(recipient), subject)


def deliver(notifier, recipient: str, subject: str, body: str) -> bool:
    """Send through notifier; log and swallow NotificationError.

    Returns True on success. Flows call this after their database write has
    committed, so a delivery failure is reported in the receipt instead.
    """
    try:
        notifier.send(recipient, subject, body)
    except NotificationError as exc:
        logger.warning("Notification %r to %s not delivered: %s", subject, redact_email(recipient), exc.message)
        return False
    return True


def notifier_from_settings(settings: Settings):
    """Pick SmtpNotifier when SMTP_HOST is configured, LogNotifier otherwise."""
    if not settings.smtp_host:
        logger.warning("SMTP_HOST not set -- emails will be logged, not sent")
        return LogNotifier()
    return SmtpNotifier(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_user,
        password=settings.smtp_password,
        use_tls=settings.smtp_use_tls,
        from_email=settings.mail_from,
        from_name=settings.mail_from_name,
    )
