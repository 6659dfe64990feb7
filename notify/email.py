"""
notify/email.py -- Transactional email: template rendering and delivery backends.

Every email the service sends is a Jinja2 HTML template in notify/templates/,
addressed by its key (the file name without .html). Managers never build
HTML themselves; they call EmailSender.send(to, subject, template_key, data).

Backends:
  ConsoleEmailSender  -- logs the rendered message. Development default.
  SmtpEmailSender     -- smtplib with optional STARTTLS and login.
  SendGridEmailSender -- SendGrid v3 HTTP API over a pooled requests.Session.

Every backend raises EmailDeliveryError when the transport refuses a message.
Callers decide whether that is fatal; the session and invite managers treat it
as a warning once the state change it announces has been committed.

Layer rule: may import from core/ only.
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional, Protocol

import requests
from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape

from core.config import Settings
from core.errors import EmailDeliveryError

logger = logging.getLogger("teampass.notify")

TEMPLATE_DIR = Path(__file__).parent / "templates"

SENDGRID_API = "https://api.sendgrid.com/v3/mail/send"


class EmailSender(Protocol):
    def send(self, to: str, subject: str, template_key: str, data: dict[str, Any]) -> None: ...


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


@lru_cache
def _environment() -> Environment:
    # Autoescape: names, company and invite messages are user-supplied.
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html"]),
        keep_trailing_newline=True,
    )


def render_template(template_key: str, data: dict[str, Any]) -> str:
    """Render notify/templates/<template_key>.html with data.

    An unknown key is a programming error, but it surfaces at send time, so it
    is reported as a delivery failure rather than crashing the request.
    """
    try:
        template = _environment().get_template(f"{template_key}.html")
    except TemplateNotFound as exc:
        raise EmailDeliveryError(f"Unknown email template {template_key!r}") from exc
    return template.render(**data)


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class ConsoleEmailSender:
    """Writes emails to the log instead of sending them."""

    def __init__(self, from_email: str = "no-reply@example.com") -> None:
        self.from_email = from_email

    def send(self, to: str, subject: str, template_key: str, data: dict[str, Any]) -> None:
        html = render_template(template_key, data)
        logger.info("Email (console) to=%s subject=%r template=%s\n%s", to, subject, template_key, html)


class SmtpEmailSender:
    """Delivers email via SMTP.

    Synchronous; FastAPI runs the sync route handlers that reach this in its
    thread pool.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        from_email: str = "no-reply@example.com",
        from_name: str = "TeamPass",
        use_tls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_email = from_email
        self.from_name = from_name
        self.use_tls = use_tls
        self.timeout = timeout

    def send(self, to: str, subject: str, template_key: str, data: dict[str, Any]) -> None:
        html = render_template(template_key, data)
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        msg.attach(MIMEText(html, "html"))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                if self.use_tls:
                    server.starttls()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.sendmail(self.from_email, [to], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning("SMTP delivery to %s failed: %s", to, exc)
            raise EmailDeliveryError(f"SMTP delivery failed: {exc}") from exc
        logger.info("Email sent to=%s template=%s", to, template_key)


class SendGridEmailSender:
    """Delivers email through the SendGrid v3 mail/send endpoint."""

    def __init__(
        self,
        api_key: str,
        from_email: str,
        session: Optional[requests.Session] = None,
        timeout: float = 10.0,
    ) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.timeout = timeout
        # One pooled session per sender. max_redirects=3: this is a known
        # public API and never legitimately redirects far.
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    def send(self, to: str, subject: str, template_key: str, data: dict[str, Any]) -> None:
        html = render_template(template_key, data)
        payload = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self.from_email},
            "subject": subject,
            "content": [{"type": "text/html", "value": html}],
        }
        try:
            resp = self._session.post(
                SENDGRID_API,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("SendGrid delivery to %s failed: %s", to, exc)
            raise EmailDeliveryError(f"SendGrid delivery failed: {exc}") from exc
        logger.info("Email sent to=%s template=%s", to, template_key)


def build_email_sender(settings: Settings) -> EmailSender:
    """Pick the backend named by EMAIL_BACKEND."""
    if settings.email_backend == "smtp":
        return SmtpEmailSender(
            settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user or None,
            password=settings.smtp_password or None,
            from_email=settings.email_from,
            from_name=settings.app_name,
            use_tls=settings.smtp_use_tls,
        )
    if settings.email_backend == "sendgrid":
        if not settings.sendgrid_api_key:
            logger.warning("EMAIL_BACKEND=sendgrid but SENDGRID_API_KEY is empty; deliveries will fail")
        return SendGridEmailSender(settings.sendgrid_api_key, settings.email_from)
    return ConsoleEmailSender(settings.email_from)


def base_template_data(settings: Settings) -> dict[str, Any]:
    """Branding fields every template footer uses."""
    return {
        "appName": settings.app_name,
        "logoUrl": settings.logo_url,
        "companyName": settings.company_name,
        "companyAddress": settings.company_address,
        "supportEmail": settings.support_email,
    }
