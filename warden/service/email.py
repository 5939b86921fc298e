from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from warden.logging import get_logger, redact_email
from warden.storage.models import MFAPurpose

logger = get_logger(__name__)

_PURPOSE_SUBJECTS = {
    MFAPurpose.LOGIN: "Your sign-in verification code",
    MFAPurpose.ENABLE: "Confirm two-factor authentication setup",
    MFAPurpose.DISABLE: "Confirm disabling two-factor authentication",
    MFAPurpose.DELETE_ACCOUNT: "Confirm account deletion",
}

_PURPOSE_LEADS = {
    MFAPurpose.LOGIN: "Use this code to finish signing in:",
    MFAPurpose.ENABLE: "Use this code to turn on two-factor authentication:",
    MFAPurpose.DISABLE: "Use this code to turn off two-factor authentication:",
    MFAPurpose.DELETE_ACCOUNT: "Use this code to permanently delete your account:",
}


class EmailService:
    """Delivers one-time MFA codes over SMTP.

    Without an SMTP host nothing leaves the process. With ``dev_log_body`` the
    message text, code included, is logged and reported as delivered so local
    sign-ins can proceed; otherwise the send is reported as undelivered.
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
        from_name: str = "Warden",
        dev_log_body: bool = False,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.dev_log_body = dev_log_body

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
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
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            if not self.dev_log_body:
                logger.warning(
                    "email_not_configured", to=redact_email(to_email), subject=subject
                )
                return False
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
                body_preview=text_body[:200] if text_body else html_body[:200],
            )
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
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
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
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_mfa_code(
        self,
        to_email: str,
        code: str,
        *,
        purpose: MFAPurpose = MFAPurpose.LOGIN,
        expires_minutes: int = 5,
    ) -> bool:
        """Send a one-time verification code."""
        purpose = MFAPurpose(purpose)
        subject = _PURPOSE_SUBJECTS[purpose]
        lead = _PURPOSE_LEADS[purpose]

        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .code {{ font-size: 32px; letter-spacing: 8px; font-weight: 700; margin: 30px 0; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{subject}</h1>
        <p>{lead}</p>
        <p class="code">{code}</p>
        <p>This code expires in {expires_minutes} minutes and can be used once.</p>
        <p>If you didn't request this, you can safely ignore this email.</p>
        <div class="footer">
            <p>{self.from_name}</p>
        </div>
    </div>
</body>
</html>
"""

        text_body = f"""{subject}

{lead}

    {code}

This code expires in {expires_minutes} minutes and can be used once.

If you didn't request this, you can safely ignore this email.

---
{self.from_name}
"""

        return self._send_email(to_email, subject, html_body, text_body)
