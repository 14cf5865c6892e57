from __future__ import annotations

import smtplib
from email.mime.text import MIMEText

from . import db
from .settings import settings


def email_configured() -> bool:
    return settings.enable_email and all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    )


def send_email(subject: str, body: str) -> bool:
    """Send an apply-failure alert if SMTP settings are configured.

    Environment variables:
      - DCR_ENABLE_EMAIL=true
      - DCR_SMTP_HOST / DCR_SMTP_PORT
      - DCR_SMTP_USER / DCR_SMTP_PASSWORD
      - DCR_EMAIL_FROM / DCR_EMAIL_TO (comma separated)
    """
    if not email_configured():
        return False

    recipients = [a.strip() for a in (settings.email_to or "").split(",") if a.strip()]
    msg = MIMEText(body, "plain", "utf-8")
    msg["From"] = settings.email_from
    msg["To"] = ", ".join(recipients)
    msg["Subject"] = subject

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.email_from, recipients, msg.as_string())
        return True
    except (smtplib.SMTPException, OSError) as e:
        db.log_event("WARN", f"Alert e-mail not sent: {type(e).__name__}: {e}")
        return False
