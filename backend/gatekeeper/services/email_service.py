import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from gatekeeper.core.config import Settings

logger = logging.getLogger(__name__)


class EmailService:
    """
    Sends account emails through an SMTP relay.

    With EMAIL_BACKEND="console" messages are written to the log instead,
    which is what development and tests use. Delivery failures are logged
    and reported as False; they never fail the calling request.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def send_email(self, to: str, subject: str, html: str) -> bool:
        if self.settings.EMAIL_BACKEND == "console":
            logger.info(f"[console email] to={to} subject={subject!r}\n{html}")
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.settings.EMAIL_FROM
        msg["To"] = to
        msg.attach(MIMEText(html, "html"))

        try:
            with smtplib.SMTP(self.settings.SMTP_HOST, self.settings.SMTP_PORT, timeout=10) as server:
                if self.settings.SMTP_USE_TLS:
                    server.starttls()
                if self.settings.SMTP_USER and self.settings.SMTP_PASSWORD:
                    server.login(self.settings.SMTP_USER, self.settings.SMTP_PASSWORD)
                server.sendmail(self.settings.EMAIL_FROM, [to], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Error sending email to {to}: {str(e)}")
            return False

        logger.info(f"Email sent to {to}")
        return True

    def send_verification_email(self, to: str, name: str, token: str) -> bool:
        url = f"{self.settings.FRONTEND_URL}/verify-email?token={token}"
        body = (
            f"<h1>Email Verification</h1>"
            f"<p>Hello {html.escape(name)},</p>"
            f"<p>Please verify your email address by clicking the link below:</p>"
            f"<a href=\"{url}\">Verify Email</a>"
            f"<p>This link will expire in {self.settings.VERIFICATION_TOKEN_EXPIRE_HOURS} hours.</p>"
            f"<p>If you did not create an account, please ignore this email.</p>"
        )
        return self.send_email(to, "Email Verification", body)

    def send_password_reset_email(self, to: str, name: str, token: str) -> bool:
        url = f"{self.settings.FRONTEND_URL}/reset-password?token={token}"
        body = (
            f"<h1>Password Reset</h1>"
            f"<p>Hello {html.escape(name)},</p>"
            f"<p>You requested a password reset. Click the link below to set a new password:</p>"
            f"<a href=\"{url}\">Reset Password</a>"
            f"<p>This link will expire in {self.settings.PASSWORD_RESET_EXPIRE_MINUTES} minutes.</p>"
            f"<p>If you did not request a password reset, please ignore this email.</p>"
        )
        return self.send_email(to, "Password Reset", body)

    def send_two_factor_setup_email(self, to: str, name: str, secret: str) -> bool:
        body = (
            f"<h1>Two-Factor Authentication Setup</h1>"
            f"<p>Hello {html.escape(name)},</p>"
            f"<p>Two-factor authentication setup was started for your account.</p>"
            f"<p>Your secret key is: <strong>{secret}</strong></p>"
            f"<p>Add it to your authenticator app, then confirm with a code to finish.</p>"
            f"<p>If you did not request this, please contact support immediately.</p>"
        )
        return self.send_email(to, "Two-Factor Authentication Setup", body)
