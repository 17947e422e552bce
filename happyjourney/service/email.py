from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from happyjourney.logging import get_logger, redact_email

logger = get_logger(__name__)

_LAYOUT = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
        .header {{ background: linear-gradient(135deg, #667eea 0%, #764ba2 100%); padding: 30px; text-align: center; border-radius: 10px 10px 0 0; }}
        .header h1 {{ color: white; margin: 0; }}
        .content {{ background: #f9f9f9; padding: 30px; border-radius: 0 0 10px 10px; }}
        .otp-code {{ font-size: 32px; font-weight: bold; letter-spacing: 8px; color: #667eea; text-align: center; }}
        .footer {{ text-align: center; padding: 20px; color: #666; font-size: 12px; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="header"><h1>{brand}</h1></div>
        <div class="content">{content}</div>
        <div class="footer"><p>{brand}</p></div>
    </div>
</body>
</html>
"""


class EmailService:
    """Transactional mail for one-time codes and account welcome messages.

    Logs the message instead of sending when SMTP is not configured.
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
        from_name: str = "Happiness Journey",
        base_url: Optional[str] = None,
        otp_ttl_minutes: int = 10,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = base_url or "http://localhost:3000"
        self.otp_ttl_minutes = otp_ttl_minutes

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _render(self, content: str) -> str:
        return _LAYOUT.format(brand=self.from_name, content=content)

    def _deliver(self, msg: MIMEMultipart, to_email: str) -> None:
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

    def _send_email(
        self, to_email: str, subject: str, html_body: str, text_body: str
    ) -> bool:
        """Send one message. Returns False on any delivery failure."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            self._deliver(msg, to_email)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
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
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to_email), subject=subject)
        return True

    def send_otp(self, to_email: str, code: str, purpose: str = "email_verification") -> bool:
        if purpose == "password_reset":
            subject = "Password Reset OTP"
            heading = "Reset Your Password"
            lead = "You requested to reset your password. Use the code below to proceed."
        else:
            subject = f"Your OTP for {self.from_name}"
            heading = "Verify Your Email"
            lead = f"Thank you for registering with {self.from_name}. Use the code below to verify your email address."

        html_body = self._render(
            f"""
            <h2>{heading}</h2>
            <p>{lead}</p>
            <p class="otp-code">{code}</p>
            <p>This code expires in {self.otp_ttl_minutes} minutes. Do not share it with anyone.</p>
            <p>If you didn't request this, you can ignore this email.</p>
            """
        )
        text_body = f"""{heading}

{lead}

    {code}

This code expires in {self.otp_ttl_minutes} minutes. Do not share it with anyone.
If you didn't request this, you can ignore this email.

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)

    def send_welcome(self, to_email: str, name: str) -> bool:
        subject = f"Welcome to {self.from_name}!"
        dashboard_url = f"{self.base_url}/dashboard"
        html_body = self._render(
            f"""
            <h2>Welcome, {name or 'friend'}!</h2>
            <p>Your email is verified and your account is ready.</p>
            <p>Complete your registration from your <a href="{dashboard_url}">dashboard</a>.</p>
            """
        )
        text_body = f"""Welcome, {name or 'friend'}!

Your email is verified and your account is ready.
Complete your registration from your dashboard: {dashboard_url}

---
{self.from_name}
"""
        return self._send_email(to_email, subject, html_body, text_body)
