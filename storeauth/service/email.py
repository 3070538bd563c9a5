from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Callable, Optional, Protocol

from storeauth.logging import get_logger, mask_email

logger = get_logger(__name__)


class Notifier(Protocol):
    def send_password_reset(self, to_email: str, token: str) -> bool: ...

    def send_email_verification(self, to_email: str, token: str) -> bool: ...

    def send_two_factor_enabled(self, to_email: str) -> bool: ...


class NotificationDispatcher:
    """Runs blocking notifier calls in the background.

    Callers never wait on delivery and never see its failures; those are
    logged here.
    """

    def __init__(self) -> None:
        self._pending: set[asyncio.Task] = set()

    def dispatch(self, kind: str, send: Callable[..., bool], *args: str) -> None:
        async def _deliver() -> None:
            try:
                delivered = await asyncio.to_thread(send, *args)
            except Exception as exc:
                logger.error("notification_failed", kind=kind, error=str(exc))
                return
            if not delivered:
                logger.warning("notification_not_delivered", kind=kind)

        task = asyncio.get_running_loop().create_task(_deliver())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for deliveries started so far."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class EmailService:
    """Transactional mail for account security events.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - Password reset links
    - Email verification links
    - Two-factor enrollment notices
    - Fallback to logging when SMTP is not configured (dev mode)
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
        from_name: str = "Bookstore",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

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
            # Dev mode: record that a message would have gone out, without its body
            logger.info("email_dev_mode", to=mask_email(to_email), subject=subject)
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
                to=mask_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused:
            logger.error("email_recipient_refused", to=mask_email(to_email))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (OSError, ssl.SSLError) as e:
            logger.error(
                "email_connect_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=mask_email(to_email), subject=subject)
        return True

    def send_password_reset(self, to_email: str, token: str) -> bool:
        """Send password reset email with reset link."""
        reset_url = f"{self.base_url}/reset-password?token={token}"
        subject = "Reset your Bookstore password"
        html_body = f"""
<!DOCTYPE html>
<html>
<body>
    <h2>Password reset</h2>
    <p>We received a request to reset the password for your account.</p>
    <p><a href="{reset_url}">Choose a new password</a></p>
    <p>The link expires soon and can be used once. If you did not ask for a reset,
    you can ignore this message; your password stays the same.</p>
</body>
</html>
"""
        text_body = (
            "We received a request to reset the password for your account.\n\n"
            f"Choose a new password: {reset_url}\n\n"
            "The link expires soon and can be used once. If you did not ask for a "
            "reset, you can ignore this message."
        )
        return self._send_email(to_email, subject, html_body, text_body)

    def send_email_verification(self, to_email: str, token: str) -> bool:
        verify_url = f"{self.base_url}/verify-email?token={token}"
        subject = "Confirm your Bookstore email address"
        html_body = f"""
<!DOCTYPE html>
<html>
<body>
    <h2>Confirm your email</h2>
    <p><a href="{verify_url}">Confirm this address</a> to finish setting up your account.</p>
</body>
</html>
"""
        text_body = f"Confirm your email address: {verify_url}"
        return self._send_email(to_email, subject, html_body, text_body)

    def send_two_factor_enabled(self, to_email: str) -> bool:
        subject = "Two-factor authentication is on"
        html_body = """
<!DOCTYPE html>
<html>
<body>
    <p>Two-factor authentication was just enabled on your account. If this was not you,
    reset your password and contact support.</p>
</body>
</html>
"""
        text_body = (
            "Two-factor authentication was just enabled on your account. If this was "
            "not you, reset your password and contact support."
        )
        return self._send_email(to_email, subject, html_body, text_body)
