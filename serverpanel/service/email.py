from __future__ import annotations

import html
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from string import Template
from typing import Any, Mapping, Optional

from serverpanel.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class EmailTemplate:
    subject: str
    body: str


TEMPLATES: dict[str, EmailTemplate] = {
    "emailChanged": EmailTemplate(
        subject="Your ServerPanel email address was changed",
        body=(
            "The email address on your ServerPanel account was changed to ${NEW_EMAIL}.\n\n"
            "If you did not make this change, contact your panel administrator immediately."
        ),
    ),
    "passwordChanged": EmailTemplate(
        subject="Your ServerPanel password was changed",
        body=(
            "The password for your ServerPanel account was changed.\n\n"
            "If you did not make this change, contact your panel administrator immediately."
        ),
    ),
    "otpEnabled": EmailTemplate(
        subject="Two-factor authentication enabled",
        body=(
            "Two-factor authentication has been enabled on your ServerPanel account.\n\n"
            "You will now need a code from your authenticator app when signing in."
        ),
    ),
    "otpDisabled": EmailTemplate(
        subject="Two-factor authentication disabled",
        body=(
            "Two-factor authentication has been disabled on your ServerPanel account.\n\n"
            "If you did not make this change, contact your panel administrator immediately."
        ),
    ),
    "oauthCreated": EmailTemplate(
        subject="New OAuth2 client created",
        body=(
            "A new OAuth2 client was created on your ServerPanel account.\n\n"
            "Clients can act on your behalf; delete any you do not recognise."
        ),
    ),
    "oauthDeleted": EmailTemplate(
        subject="OAuth2 client deleted",
        body="An OAuth2 client was deleted from your ServerPanel account.",
    ),
}


class EmailService:
    """Transactional email over SMTP.

    When no SMTP host is configured the rendered message is logged instead of
    sent.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "ServerPanel",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:8080"

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def render(
        self, template_key: str, variables: Optional[Mapping[str, Any]] = None
    ) -> tuple[str, str, str]:
        """Return ``(subject, text_body, html_body)`` for a known template."""
        template = TEMPLATES.get(template_key)
        if template is None:
            raise ValueError(f"unknown email template: {template_key}")
        values = {"BASE_URL": self.base_url, **(variables or {})}
        text = Template(template.body).safe_substitute(values)
        text_body = f"{text}\n\n---\n{self.from_name}\n{self.base_url}\n"
        paragraphs = "".join(f"<p>{html.escape(p)}</p>" for p in text.split("\n\n"))
        html_body = (
            '<!DOCTYPE html><html><head><meta charset="utf-8"></head><body>'
            f"<h1>{html.escape(template.subject)}</h1>{paragraphs}"
            f'<p style="font-size: 12px; color: #5b6470;">{html.escape(self.from_name)}</p>'
            "</body></html>"
        )
        return template.subject, text_body, html_body

    def send_email(
        self,
        address: str,
        template_key: str,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        subject, text_body, html_body = self.render(template_key, variables)
        return self._send_email(address, subject, html_body, text_body)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True
