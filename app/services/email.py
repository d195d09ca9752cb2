# app/services/email.py
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Optional

from fastapi.concurrency import run_in_threadpool
from jinja2 import Environment, FileSystemLoader, select_autoescape

from app.core.config import settings
from app.core.errors import EmailDeliveryError, InvalidArgument
from app.models.tokens import Token, TokenPurpose
from app.models.users import AuthStrategy, User

logger = logging.getLogger(__name__)

TEMPLATES_PATH = Path(__file__).resolve().parent.parent / "templates"
jinja_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_PATH)),
    autoescape=select_autoescape(["html"]),
)


def render_template(template_name: str, **context) -> str:
    return jinja_env.get_template(template_name).render(**context)


def _redact_email(email: str) -> str:
    """log 時遮蔽 email，避免 PII 外洩"""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


@dataclass
class EmailMessage:
    to: str
    subject: str
    html_body: str
    text_body: str


class EmailSender:
    """
    SMTP 寄信。
    未設定 SMTP_HOST 時（開發模式）只寫 log 不寄出。
    寄送失敗一律轉成 EmailDeliveryError（可重試）。
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = settings.SMTP_HOST,
        smtp_port: int = settings.SMTP_PORT,
        smtp_user: Optional[str] = settings.SMTP_USER,
        smtp_password: Optional[str] = settings.SMTP_PASSWORD,
        smtp_use_tls: bool = settings.SMTP_USE_TLS,
        from_email: Optional[str] = settings.EMAIL_SENDER,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    async def send(self, message: EmailMessage) -> None:
        if not self.is_configured:
            logger.info(
                "Email not sent (SMTP not configured): to=%s subject=%s body=%s",
                _redact_email(message.to), message.subject, message.text_body[:200],
            )
            return
        try:
            await run_in_threadpool(self._send_sync, message)
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            raise EmailDeliveryError(
                f"Failed to send email to {_redact_email(message.to)}", cause=e,
            ) from e
        logger.info("Email sent: to=%s subject=%s", _redact_email(message.to), message.subject)

    def _send_sync(self, message: EmailMessage) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = self.from_email
        msg["To"] = message.to
        msg.attach(MIMEText(message.text_body, "plain"))
        msg.attach(MIMEText(message.html_body, "html"))

        context = ssl.create_default_context()
        if self.smtp_use_tls:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                server.starttls(context=context)
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, message.to, msg.as_string())
        else:
            with smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=30) as server:
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, message.to, msg.as_string())


def build_verification_email(user: User, token: Token) -> EmailMessage:
    if user.id != token.user_id:
        raise InvalidArgument(f"User ID does not match token user ID: {user.id}")
    if token.purpose != TokenPurpose.VERIFY_EMAIL:
        raise InvalidArgument(f"Invalid token purpose: {token.purpose}")
    if user.auth_strategy != AuthStrategy.LOCAL:
        raise InvalidArgument(
            f"Can not send verification email to user with auth strategy: {user.auth_strategy.value}"
        )
    if user.is_email_verified:
        raise InvalidArgument(f"User email is already verified: {user.id}")

    verification_url = f"{settings.FRONTEND_URL}{settings.API_V1_PREFIX}/auth/verify-email/{token.token}"
    return EmailMessage(
        to=user.email,
        subject="Verify your email",
        text_body=f"Please click the link to verify your email:\n {verification_url}",
        html_body=render_template(
            "verification_email.html",
            name=user.name,
            verification_url=verification_url,
            ttl_hours=max(1, settings.VERIFY_EMAIL_TOKEN_TTL_SEC // 3600),
            home_url=settings.FRONTEND_URL,
        ),
    )


def build_reset_password_email(user: User, token: Token) -> EmailMessage:
    if user.id != token.user_id:
        raise InvalidArgument(f"User ID does not match token user ID: {user.id}")
    if token.purpose != TokenPurpose.RESET_PASSWORD:
        raise InvalidArgument(f"Invalid token purpose: {token.purpose}")

    reset_url = f"{settings.FRONTEND_URL}/reset-password?token={token.token}"
    return EmailMessage(
        to=user.email,
        subject="Reset your password",
        text_body=f"Use the link below to reset your password:\n {reset_url}",
        html_body=render_template(
            "reset_password_email.html",
            name=user.name,
            reset_url=reset_url,
            ttl_minutes=max(1, settings.RESET_PASSWORD_TOKEN_TTL_SEC // 60),
            home_url=settings.FRONTEND_URL,
        ),
    )


_default_sender: Optional[EmailSender] = None


def get_email_sender() -> EmailSender:
    """FastAPI 依賴；測試可用 dependency_overrides 換成假的寄信器"""
    global _default_sender
    if _default_sender is None:
        _default_sender = EmailSender()
    return _default_sender
