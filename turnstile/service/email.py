from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from turnstile.logging import get_logger, redact_email
from turnstile.storage.models import OTPPurpose

logger = get_logger(__name__)

_SUBJECTS = {
    OTPPurpose.EMAIL_VERIFY: "Your {name} verification code",
    OTPPurpose.PASSWORD_RESET: "Your {name} password reset code",
}

_INTROS = {
    OTPPurpose.EMAIL_VERIFY: "Use this code to verify your email address:",
    OTPPurpose.PASSWORD_RESET: "Use this code to reset your password:",
}


class EmailService:
    """Delivers one-time codes over SMTP.

    Without an SMTP host the message is logged (without the code) instead
    of sent, which keeps local runs working.
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
        from_name: str = "Turnstile",
        code_ttl_minutes: int = 10,
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.code_ttl_minutes = code_ttl_minutes
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def deliver_code(self, destination: str, purpose: OTPPurpose, code: str) -> bool:
        purpose = OTPPurpose(purpose)
        subject = _SUBJECTS[purpose].format(name=self.from_name)
        intro = _INTROS[purpose]
        text_body = (
            f"{intro}\n\n    {code}\n\n"
            f"The code expires in {self.code_ttl_minutes} minutes. "
            "If you did not ask for it, ignore this email.\n\n---\n"
            f"{self.from_name}\n"
        )
        html_body = f"""
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #1f2933;">
    <p>{intro}</p>
    <p style="font-size: 28px; letter-spacing: 6px; font-weight: 600;">{code}</p>
    <p>The code expires in {self.code_ttl_minutes} minutes. If you did not ask for it, ignore this email.</p>
    <p style="font-size: 12px; color: #5b6470;">{self.from_name}</p>
</body>
</html>
"""
        return self._send_email(destination, subject, html_body, text_body, purpose=purpose)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
        *,
        purpose: OTPPurpose,
    ) -> bool:
        """Send via SMTP. Returns True if sent (or logged in dev mode)."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                purpose=purpose.value,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=e.smtp_code,
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                refused=len(e.recipients),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            # Connection refused, DNS failure, socket timeout
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), purpose=purpose.value)
        return True
