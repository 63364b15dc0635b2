from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .events import RolloutEvent
from .settings import settings

ALERT_STATES = {"Failed", "RolledBack"}


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - RRC_ENABLE_EMAIL=true
      - RRC_SMTP_HOST / RRC_SMTP_PORT
      - RRC_SMTP_USER / RRC_SMTP_PASSWORD
      - RRC_EMAIL_FROM / RRC_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = settings.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (OSError, smtplib.SMTPException):
        return False


def alert_sink(event: RolloutEvent) -> None:
    """Event subscriber: mail when a rollout ends Failed or RolledBack."""
    if event.kind != "state" or event.data.get("state") not in ALERT_STATES:
        return
    subject = f"Rollout {event.data['state']}: {event.target} ({event.rollout_id})"
    body = f"Target: {event.target}\nRollout: {event.rollout_id}\nAt: {event.ts}\nDetail: {event.message}"
    send_email(subject, body)
