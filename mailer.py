"""
Outgoing email over SMTP.

Configured by EMAIL_HOST, EMAIL_PORT, EMAIL_USER and EMAIL_PASS. When no host
is configured, messages are skipped and a warning is logged so local
development works without a mail server.
"""
import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Optional

logger = logging.getLogger(__name__)

EMAIL_HOST = os.getenv("EMAIL_HOST")
EMAIL_PORT = int(os.getenv("EMAIL_PORT", "465"))
EMAIL_USER = os.getenv("EMAIL_USER", "")
EMAIL_PASS = os.getenv("EMAIL_PASS", "")

OTP_SUBJECTS = {
    "signup": "GBConnect Email Verification OTP",
    "password_reset": "GBConnect Password Reset OTP",
}
OTP_ACTIONS = {
    "signup": "email verification",
    "password_reset": "password reset",
}


def send_email(to: str, subject: str, text: str, html: Optional[str] = None) -> bool:
    """Send a message. Returns False when mail is not configured.

    SMTP and socket errors propagate to the caller. Callers treat False as
    an undelivered message.
    """
    if not EMAIL_HOST:
        logger.warning("EMAIL_HOST not set; not sending '%s' to %s", subject, to)
        return False

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = f"GBConnect <{EMAIL_USER}>"
    msg["To"] = to
    msg.set_content(text)
    if html:
        msg.add_alternative(html, subtype="html")

    # Port 465 is implicit TLS; anything else upgrades with STARTTLS.
    if EMAIL_PORT == 465:
        with smtplib.SMTP_SSL(EMAIL_HOST, EMAIL_PORT) as server:
            server.login(EMAIL_USER, EMAIL_PASS)
            server.send_message(msg)
    else:
        with smtplib.SMTP(EMAIL_HOST, EMAIL_PORT) as server:
            server.starttls()
            server.login(EMAIL_USER, EMAIL_PASS)
            server.send_message(msg)
    logger.info("Sent '%s' to %s", subject, to)
    return True


def send_otp_email(to: str, otp: str, purpose: str, ttl_minutes: int) -> bool:
    action = OTP_ACTIONS.get(purpose, "verification")
    text = f"Your OTP for {action} is: {otp}\nThis code is valid for {ttl_minutes} minutes."
    html = (
        f"<p>Your OTP for {action} is: <b>{otp}</b></p>"
        f"<p>This code is valid for {ttl_minutes} minutes.</p>"
    )
    return send_email(to, OTP_SUBJECTS.get(purpose, "GBConnect OTP"), text, html)
