"""Outbound email for account lifecycle notifications (SMTP)."""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .config import Settings, get_settings

logger = logging.getLogger(__name__)


class EmailService:
    """Send transactional emails; disabled deployments only log what would be sent."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def send_email(self, to_email: str, subject: str, html_content: str, text_content: str | None = None) -> bool:
        """Send an email and return ``True`` when it was handed to the SMTP server."""
        settings = self._settings
        if not settings.email_enabled:
            logger.info("email disabled, would send %r to %s", subject, to_email)
            return False

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = settings.email_from
        msg["To"] = to_email
        if text_content:
            msg.attach(MIMEText(text_content, "plain"))
        msg.attach(MIMEText(html_content, "html"))

        try:
            with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
                server.starttls()
                if settings.smtp_username and settings.smtp_password:
                    server.login(settings.smtp_username, settings.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError):
            logger.exception("failed to send email to %s", to_email)
            return False
        logger.info("email sent to %s", to_email)
        return True

    def send_welcome_email(self, to_email: str, first_name: str) -> bool:
        subject = "Velkommen!"
        text = f"Hei {first_name},\n\nVelkommen! Kontoen din er klar til bruk."
        html = f"<p>Hei {first_name},</p><p>Velkommen! Kontoen din er klar til bruk.</p>"
        return self.send_email(to_email, subject, html, text)

    def send_password_reset_email(self, to_email: str, first_name: str, reset_token: str, tenant_name: str) -> bool:
        """Send the one-time reset link. The token itself is never logged."""
        reset_url = f"{self._settings.frontend_url.rstrip('/')}/reset-password?token={reset_token}"
        minutes = max(1, self._settings.password_reset_ttl_seconds // 60)
        subject = "Tilbakestill passordet ditt"
        text = (
            f"Hei {first_name},\n\n"
            f"Vi har mottatt en forespørsel om å tilbakestille passordet ditt hos {tenant_name}.\n"
            f"Åpne lenken under for å velge et nytt passord. Lenken er gyldig i {minutes} minutter.\n\n"
            f"{reset_url}\n\n"
            "Hvis du ikke ba om dette, kan du se bort fra denne e-posten."
        )
        html = (
            f"<p>Hei {first_name},</p>"
            f"<p>Vi har mottatt en forespørsel om å tilbakestille passordet ditt hos {tenant_name}.</p>"
            f'<p><a href="{reset_url}">Tilbakestill passord</a></p>'
            f"<p>Lenken er gyldig i {minutes} minutter. Hvis du ikke ba om dette, kan du se bort fra denne e-posten.</p>"
        )
        return self.send_email(to_email, subject, html, text)
