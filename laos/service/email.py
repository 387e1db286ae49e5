from __future__ import annotations

import hmac
import secrets
import smtplib
import ssl
import string
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Dict, Optional

from laos.logging import get_logger

logger = get_logger(__name__)

CODE_LENGTH = 6
_CODE_ALPHABET = string.ascii_letters + string.digits


def redact_email(email: str) -> str:
    """Redact an email address for logging."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailService:
    """SMTP delivery of verification codes.

    Falls back to logging the message when SMTP is not configured (dev mode).
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
        from_name: str = "Laos",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build_message(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        return msg

    def _send_email(self, to_email: str, subject: str, html_body: str, text_body: str) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info("email_dev_mode", to=redact_email(to_email), subject=subject)
            return True

        msg = self._build_message(to_email, subject, html_body, text_body)
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
                "email_auth_failed", to=redact_email(to_email), host=self.smtp_host, error=str(e)
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_verification_code(self, to_email: str, code: str, ttl_minutes: int) -> bool:
        subject = "Your Laos verification code"
        text_body = (
            f"Your verification code is {code}.\n"
            f"It expires in {ttl_minutes} minutes and can be used once."
        )
        html_body = f"""
<!DOCTYPE html>
<html>
<body style="font-family: sans-serif; color: #1f2933;">
    <p>Your verification code is:</p>
    <p style="font-size: 24px; font-weight: bold; letter-spacing: 4px;">{code}</p>
    <p>It expires in {ttl_minutes} minutes and can be used once.</p>
</body>
</html>
"""
        return self._send_email(to_email, subject, html_body, text_body)


@dataclass
class _PendingCode:
    code: str
    expires_at: float


class EmailVerificationService:
    """Short-lived, single-use codes proving control of an email address."""

    def __init__(
        self,
        *,
        ttl: timedelta = timedelta(minutes=5),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._codes: Dict[str, _PendingCode] = {}
        self._lock = threading.Lock()
        self._last_purge = clock()

    @staticmethod
    def _key(email: str) -> str:
        return email.strip().lower()

    def issue_code(self, email: str) -> str:
        self.maybe_purge()
        code = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(CODE_LENGTH))
        with self._lock:
            self._codes[self._key(email)] = _PendingCode(
                code=code, expires_at=self._clock() + self.ttl.total_seconds()
            )
        logger.info("email_code_issued", to=redact_email(email))
        return code

    def verify_code(self, email: str, code: Optional[str]) -> bool:
        if not code:
            return False
        key = self._key(email)
        with self._lock:
            pending = self._codes.get(key)
            if pending is None:
                return False
            if self._clock() >= pending.expires_at:
                self._codes.pop(key, None)
                return False
            if not hmac.compare_digest(pending.code.encode(), code.strip().encode()):
                return False
            # Single use
            self._codes.pop(key, None)
        return True

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, pending in self._codes.items() if now >= pending.expires_at]
            for key in expired:
                self._codes.pop(key, None)
        return len(expired)

    def maybe_purge(self, interval: timedelta = timedelta(minutes=5)) -> int:
        """Purge expired codes if ``interval`` has passed since the last purge."""
        now = self._clock()
        if now - self._last_purge < interval.total_seconds():
            return 0
        self._last_purge = now
        purged = self.purge_expired()
        if purged:
            logger.info("email_codes_purged", purged=purged)
        return purged
