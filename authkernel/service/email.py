from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol

from authkernel.logging import get_logger, mask_email

logger = get_logger(__name__)


class Notifier(Protocol):
    """Outbound transactional messages the auth flows depend on."""

    @property
    def is_configured(self) -> bool: ...

    def send_verification(
        self, to_email: str, token: str, url: str, ttl_hours: int, *, name: Optional[str] = None
    ) -> bool: ...

    def send_password_reset(self, to_email: str, url: str, ttl_minutes: int) -> bool: ...

    def send_welcome(
        self, to_email: str, dashboard_url: str, *, name: Optional[str] = None
    ) -> bool: ...


_HTML_LAYOUT = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        {paragraphs}
        <p style="margin: 30px 0;"><a href="{url}" class="button">{action}</a></p>
        {footnotes}
        <div class="footer">
            <p>{sender}</p>
            <p>If the button doesn't work, copy and paste this URL: {url}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """SMTP sender for verification, password reset and welcome emails.

    Never raises into the caller: every failure is logged by type and
    reported as ``False``. Without an SMTP host the message is logged
    instead of sent (dev mode).
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
        from_name: str = "AuthKernel",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        return mask_email(email)

    def _render(
        self,
        *,
        title: str,
        paragraphs: list[str],
        url: str,
        action: str,
        footnotes: list[str] | None = None,
    ) -> tuple[str, str]:
        """Build the (html, text) bodies for a single call-to-action email."""
        footnotes = footnotes or []
        html_body = _HTML_LAYOUT.format(
            title=html.escape(title),
            paragraphs="\n        ".join(f"<p>{html.escape(p)}</p>" for p in paragraphs),
            footnotes="\n        ".join(f"<p>{html.escape(p)}</p>" for p in footnotes),
            url=html.escape(url, quote=True),
            action=html.escape(action),
            sender=html.escape(self.from_name),
        )
        text_body = "\n\n".join([title, *paragraphs, url, *footnotes, f"---\n{self.from_name}"])
        return html_body, text_body + "\n"

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
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
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
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_email(to_email),
            )

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
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                refused=len(getattr(e, "recipients", {}) or {}),
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
        except (ssl.SSLError, TimeoutError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except Exception as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_verification(
        self,
        to_email: str,
        token: str,
        url: str,
        ttl_hours: int,
        *,
        name: Optional[str] = None,
    ) -> bool:
        """Send the email verification link.

        ``token`` is already embedded in ``url``; it is accepted so senders
        that deliver a code instead of a link have it at hand.
        """
        greeting = f"Hi {name}," if name else "Hi,"
        html_body, text_body = self._render(
            title="Verify your email",
            paragraphs=[
                greeting,
                "Thanks for signing up! Please confirm your email address to activate your account.",
            ],
            url=url,
            action="Verify Email",
            footnotes=[f"This link will expire in {ttl_hours} hours."],
        )
        return self._send_email(
            to_email, f"Verify your {self.from_name} email", html_body, text_body
        )

    def send_password_reset(self, to_email: str, url: str, ttl_minutes: int) -> bool:
        html_body, text_body = self._render(
            title="Reset your password",
            paragraphs=[
                "We received a request to reset your password. Use the link below to choose a new one."
            ],
            url=url,
            action="Reset Password",
            footnotes=[
                f"This link will expire in {ttl_minutes} minutes.",
                "If you didn't request this, you can safely ignore this email.",
            ],
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )

    def send_welcome(
        self, to_email: str, dashboard_url: str, *, name: Optional[str] = None
    ) -> bool:
        greeting = f"Welcome, {name}!" if name else "Welcome!"
        html_body, text_body = self._render(
            title=greeting,
            paragraphs=["Your account is ready. Head to your dashboard to get started."],
            url=dashboard_url,
            action="Open Dashboard",
        )
        return self._send_email(
            to_email, f"Welcome to {self.from_name}", html_body, text_body
        )
