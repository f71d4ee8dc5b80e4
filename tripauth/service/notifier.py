from __future__ import annotations

import asyncio
import functools
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Set

from tripauth.config import Settings
from tripauth.logging import get_logger

logger = get_logger(__name__)

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class Notifier:
    """Transactional email for account events.

    Sends are fire-and-forget: ``notify_*`` schedule the SMTP work on a worker
    thread and return immediately. Delivery failures are logged, never raised.
    When SMTP is not configured the message is logged instead (dev mode).
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
        from_name: str = "Trip Planner",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:3000"
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "Notifier":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            base_url=settings.app_base_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
        *,
        sensitive: bool = False,
    ) -> bool:
        """Send an email via SMTP. Returns True if sent (or logged in dev mode).

        ``sensitive`` bodies carry a one-time link and are never previewed in logs.
        """
        if not self.is_configured:
            preview = text_body[:200] if text_body else html_body[:200]
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview="[redacted]" if sensitive else preview,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def _dispatch(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
        *,
        sensitive: bool = False,
    ) -> None:
        send = functools.partial(
            self._send_email, to_email, subject, html_body, text_body, sensitive=sensitive
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (sync caller): send inline
            send()
            return
        task = loop.create_task(asyncio.to_thread(send))
        self._pending.add(task)
        task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("email_task_failed", error_type=type(exc).__name__, error=str(exc))

    async def drain(self) -> None:
        """Wait for in-flight sends; used at shutdown and by tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def notify_welcome(self, to_email: str, name: str) -> None:
        subject = "Welcome to Trip Planner"
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Welcome, {name}!</h1>
        <p>Your Trip Planner account is ready. Start planning your next trip at
        <a href="{self.base_url}">{self.base_url}</a>.</p>
        <div class="footer"><p>Trip Planner</p></div>
    </div>
</body>
</html>
"""
        text_body = f"""Welcome, {name}!

Your Trip Planner account is ready. Start planning your next trip at {self.base_url}

---
Trip Planner
"""
        self._dispatch(to_email, subject, html_body, text_body)

    def notify_security_alert(self, to_email: str, event: str, detail: str = "") -> None:
        subject = f"Security alert: {event.replace('_', ' ')}"
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>Security alert</h1>
        <p>We noticed the following activity on your Trip Planner account: <strong>{event.replace('_', ' ')}</strong>.</p>
        <p>{detail}</p>
        <p>If this wasn't you, change your password immediately.</p>
        <div class="footer"><p>Trip Planner</p></div>
    </div>
</body>
</html>
"""
        text_body = f"""Security alert

We noticed the following activity on your Trip Planner account: {event.replace('_', ' ')}.
{detail}

If this wasn't you, change your password immediately.

---
Trip Planner
"""
        self._dispatch(to_email, subject, html_body, text_body)

    def _link_email(self, heading: str, intro: str, action: str, link: str, outro: str) -> tuple[str, str]:
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>{heading}</h1>
        <p>{intro}</p>
        <p><a href="{link}">{action}</a></p>
        <p>{outro}</p>
        <div class="footer"><p>Trip Planner</p></div>
    </div>
</body>
</html>
"""
        text_body = f"""{heading}

{intro}

{action}: {link}

{outro}

---
Trip Planner
"""
        return html_body, text_body

    def notify_email_verification(
        self, to_email: str, name: str, token: str, *, expires_hours: int = 24
    ) -> None:
        link = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._link_email(
            f"Confirm your email, {name}",
            "Please confirm the email address for your Trip Planner account.",
            "Verify email",
            link,
            f"This link expires in {expires_hours} hours.",
        )
        self._dispatch(
            to_email, "Verify your Trip Planner email", html_body, text_body, sensitive=True
        )

    def notify_password_reset(
        self, to_email: str, name: str, token: str, *, expires_minutes: int = 60
    ) -> None:
        link = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._link_email(
            "Reset your password",
            f"Hi {name}, we received a request to reset your Trip Planner password.",
            "Choose a new password",
            link,
            f"This link expires in {expires_minutes} minutes. If you didn't ask for a reset, "
            "you can ignore this email.",
        )
        self._dispatch(
            to_email, "Reset your Trip Planner password", html_body, text_body, sensitive=True
        )
