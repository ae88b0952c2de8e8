import logging
import os
import smtplib
from email.message import EmailMessage

logger = logging.getLogger(__name__)


def _smtp_settings() -> dict | None:
    """SMTP settings from the environment, or None when alerts are not configured."""
    settings = {
        "host": os.environ.get("SMTP_HOST", ""),
        "port": int(os.environ.get("SMTP_PORT", "587")),
        "user": os.environ.get("SMTP_USER", ""),
        "password": os.environ.get("SMTP_PASS", ""),
        "from_addr": os.environ.get("ALERT_FROM", ""),
        "to_addr": os.environ.get("ALERT_TO", ""),
    }
    if not (settings["host"] and settings["from_addr"] and settings["to_addr"]):
        return None
    return settings


def send_alert(subject: str, body: str) -> bool:
    """Email an operator alert. Returns False without sending when SMTP is not configured."""
    settings = _smtp_settings()
    if settings is None:
        logger.info(f"Alert not sent (SMTP not configured): {subject}")
        return False

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings["from_addr"]
    msg["To"] = settings["to_addr"]
    msg.set_content(body)

    try:
        with smtplib.SMTP(settings["host"], settings["port"]) as smtp:
            smtp.starttls()
            if settings["user"] and settings["password"]:
                smtp.login(settings["user"], settings["password"])
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send alert email: {e}")
        return False
    logger.info(f"Alert sent: {subject}")
    return True
