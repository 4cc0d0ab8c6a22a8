"""
auth/email.py -- Outbound mail for the auth flows.

Transport:
  SmtpTransport -- smtplib with STARTTLS and optional login; one connection
                   per message (auth mail volume is tiny).
  LogTransport  -- development fallback when SMTP_HOST is empty. Writes the
                   subject and recipient to the log; bodies stay out of the
                   log because they contain codes and reset links.

Mailer renders the few messages the auth flows send and hands them to the
transport. Callers decide whether a delivery failure is fatal: OTP delivery
propagates, welcome / password-changed notices are logged and dropped.
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.text import MIMEText
from typing import Protocol

from auth.tokens import mask_email
from core.config import Settings

logger = logging.getLogger("folio.email")


class MailTransport(Protocol):
    def send(self, to: str, subject: str, body: str) -> None: ...


class SmtpTransport:
    def __init__(self, host: str, port: int, sender: str, username: str = "", password: str = "") -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.username = username
        self.password = password

    def send(self, to: str, subject: str, body: str) -> None:
        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = to
        with smtplib.SMTP(self.host, self.port, timeout=10) as server:
            server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)
        logger.info("Email sent to %s: %s", mask_email(to), subject)


class LogTransport:
    def send(self, to: str, subject: str, body: str) -> None:
        logger.info("Email (not sent, SMTP_HOST unset) to %s: %s", mask_email(to), subject)


class Mailer:
    def __init__(self, transport: MailTransport, app_url: str, product_name: str = "Folio") -> None:
        self.transport = transport
        self.app_url = app_url.rstrip("/")
        self.product_name = product_name

    @classmethod
    def from_settings(cls, settings: Settings) -> "Mailer":
        if settings.smtp_host:
            transport: MailTransport = SmtpTransport(
                settings.smtp_host,
                settings.smtp_port,
                settings.smtp_from,
                settings.smtp_username,
                settings.smtp_password,
            )
        else:
            transport = LogTransport()
        return cls(transport, settings.app_url, settings.totp_issuer)

    def send_otp(self, to: str, name: str, code: str, expire_minutes: int) -> None:
        self.transport.send(
            to,
            f"{self.product_name} verification code",
            f"Hi {name},\n\nYour verification code is {code}.\n"
            f"It expires in {expire_minutes} minutes and can be used once.\n",
        )

    def send_password_reset(self, to: str, name: str, token: str) -> None:
        self.transport.send(
            to,
            f"Reset your {self.product_name} password",
            f"Hi {name},\n\nUse the link below to choose a new password. It is valid for one hour.\n\n"
            f"{self.app_url}/reset-password?token={token}\n\n"
            "If you did not ask for this, ignore this email.\n",
        )

    def send_password_changed(self, to: str, name: str) -> None:
        self.transport.send(
            to,
            f"Your {self.product_name} password was changed",
            f"Hi {name},\n\nYour password was just changed and all sessions were signed out.\n",
        )

    def send_welcome(self, to: str, name: str) -> None:
        self.transport.send(
            to,
            f"Welcome to {self.product_name}",
            f"Hi {name},\n\nYour account is ready.\n",
        )
