"""
Outbound notifications (verification emails).
"""
from .mailer import Mailer, SmtpMailer, LogMailer, get_mailer

__all__ = ["Mailer", "SmtpMailer", "LogMailer", "get_mailer"]
