# booking_auth/auth/email.py
import logging
import smtplib
import ssl
from email.message import EmailMessage

from starlette.concurrency import run_in_threadpool

from booking_auth.config import Settings

logger = logging.getLogger(__name__)


def redact_email(email: str) -> str:
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class EmailSender:
    """
    Transactional mail over SMTP. Without an SMTP host the message is only logged,
    which is what development and the test suite run with.
    """

    def __init__(
        self,
        smtp_host: str | None = None,
        smtp_port: int = 587,
        smtp_user: str | None = None,
        smtp_password: str | None = None,
        use_tls: bool = True,
        from_email: str = "noreply@appointmentbooking.com",
        frontend_url: str = "http://localhost:5173",
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.use_tls = use_tls
        self.from_email = from_email
        self.frontend_url = frontend_url.rstrip("/")

    @classmethod
    def from_settings(cls, cfg: Settings) -> "EmailSender":
        return cls(
            smtp_host=cfg.SMTP_HOST,
            smtp_port=cfg.SMTP_PORT,
            smtp_user=cfg.SMTP_USER,
            smtp_password=cfg.SMTP_PASSWORD,
            use_tls=cfg.SMTP_USE_TLS,
            from_email=cfg.EMAIL_FROM,
            frontend_url=cfg.FRONTEND_URL,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host)

    def _deliver(self, message: EmailMessage) -> None:
        context = ssl.create_default_context()
        if self.use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)
        else:
            with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(message)

    async def send(self, to_email: str, subject: str, text_body: str) -> bool:
        """Returns False when delivery failed; callers never fail a request over email."""
        if not self.is_configured:
            logger.info("SMTP not configured, email to %s not sent: %s", redact_email(to_email), subject)
            return True

        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.from_email
        message["To"] = to_email
        message.set_content(text_body)
        try:
            await run_in_threadpool(self._deliver, message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send email to %s: %s", redact_email(to_email), exc)
            return False
        logger.info("Email sent to %s: %s", redact_email(to_email), subject)
        return True

    async def send_verification_email(self, to_email: str, full_name: str, token: str) -> bool:
        link = f"{self.frontend_url}/verify-email?token={token}"
        body = (
            f"Hi {full_name},\n\n"
            "Please confirm your email address by opening the link below:\n\n"
            f"{link}\n\n"
            "The link expires in 24 hours. If you did not create an account, ignore this email.\n"
        )
        return await self.send(to_email, "Verify your email address", body)

    async def send_password_reset_email(self, to_email: str, full_name: str, token: str) -> bool:
        link = f"{self.frontend_url}/reset-password?token={token}"
        body = (
            f"Hi {full_name},\n\n"
            "We received a request to reset your password. Open the link below to choose a new one:\n\n"
            f"{link}\n\n"
            "The link expires in 1 hour and can be used once. "
            "If you did not ask for a reset, you can ignore this email.\n"
        )
        return await self.send(to_email, "Reset your password", body)
