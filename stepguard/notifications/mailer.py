"""
Outbound email for two-factor challenges.

MAIL_BACKEND selects the transport:
- smtp: STARTTLS relay configured by SMTP_HOST/SMTP_PORT/SMTP_USER/SMTP_PASS
- log: development only, logs the masked recipient and never the code
"""
import os
import ssl
import smtplib
import logging
from email.message import EmailMessage
from typing import Optional, Protocol

from ..auth.codes import mask_email
from ..utils.secrets import get_smtp_password

logger = logging.getLogger(__name__)

DISABLE_HEADING = "Disabling two-step verification"


class Mailer(Protocol):
    def send_two_factor_code(self, email: str, code: str, heading: str = DISABLE_HEADING) -> None:
        ...


def _render(code: str, heading: str) -> tuple[str, str]:
    text = (
        f"{heading}\n\n"
        f"Your verification code is: {code}\n\n"
        "It expires in 10 minutes. If you did not request this, "
        "change your password and keep two-step verification on."
    )
    html = (
        f"<h2>{heading}</h2>"
        f"<p>Your verification code is:</p>"
        f"<p style=\"font-size:24px;letter-spacing:4px\"><strong>{code}</strong></p>"
        "<p>It expires in 10 minutes. If you did not request this, "
        "change your password and keep two-step verification on.</p>"
    )
    return text, html


class SmtpMailer:
    """Sends mail through an SMTP relay with STARTTLS."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
        timeout: int = 10,
    ):
        self.host = host or os.getenv("SMTP_HOST", "localhost")
        self.port = port or int(os.getenv("SMTP_PORT", "587"))
        self.user = user if user is not None else os.getenv("SMTP_USER")
        self.password = password if password is not None else get_smtp_password()
        self.from_email = from_email or os.getenv("MAIL_FROM", self.user or "no-reply@example.com")
        self.from_name = from_name or os.getenv("MAIL_FROM_NAME", "StepGuard")
        self.timeout = timeout

    def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        if text:
            msg.set_content(text)
        msg.add_alternative(html, subtype="html")

        ctx = ssl.create_default_context()
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as s:
            s.starttls(context=ctx)
            if self.user and self.password:
                s.login(self.user, self.password)
            s.send_message(msg)

    def send_two_factor_code(self, email: str, code: str, heading: str = DISABLE_HEADING) -> None:
        text, html = _render(code, heading)
        self.send(email, f"{heading}: verification code", html, text)
        logger.info(f"Sent two-factor email code to {mask_email(email)}")


class LogMailer:
    """Development mailer: records that a code was sent without sending anything."""

    def send_two_factor_code(self, email: str, code: str, heading: str = DISABLE_HEADING) -> None:
        logger.info(f"[mail:log] {heading}: code issued for {mask_email(email)}")


def get_mailer() -> Mailer:
    """Mailer for the configured MAIL_BACKEND (default: smtp)."""
    backend = os.getenv("MAIL_BACKEND", "smtp").strip().lower()
    if backend == "log":
        return LogMailer()
    if backend != "smtp":
        logger.warning(f"Unknown MAIL_BACKEND '{backend}', using smtp")
    return SmtpMailer()
