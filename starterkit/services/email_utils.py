"""Template-based email sending over SMTP (aiosmtplib).

The service is optional: without an SMTP host it reports itself unavailable and
``send`` becomes a logged no-op, so callers never need to special-case dev setups.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Any, Dict, Optional

import aiosmtplib
from jinja2 import DictLoader, Environment, StrictUndefined, TemplateNotFound

logger = logging.getLogger(__name__)


class EmailError(Exception):
    """Raised when an email cannot be rendered or delivered."""


# name -> (subject, plain-text body); both rendered with the SendParams data
EMAIL_TEMPLATES: Dict[str, tuple] = {
    "verification": (
        "Verify your email for {{ app_name }}",
        "Hi {{ Name }},\n\n"
        "Please verify your email address by opening the link below:\n"
        "{{ VerificationURL }}\n\n"
        "If you did not create an account, you can ignore this email.\n",
    ),
    "password_reset": (
        "Reset your {{ app_name }} password",
        "Hi {{ Name }},\n\n"
        "We received a request to reset your password. Use the link below:\n"
        "{{ ResetURL }}\n\n"
        "If you did not request a reset, you can ignore this email.\n",
    ),
    "announcement": (
        "{{ Title }}",
        "Hi {{ Name }},\n\n"
        "{{ Message }}\n"
        "{% if LinkURL %}\n{{ LinkText or 'Learn more' }}: {{ LinkURL }}\n{% endif %}"
        "\nYou are receiving this because you opted in to {{ Category }} updates.\n",
    ),
    "account_locked": (
        "Your {{ app_name }} account has been temporarily locked",
        "Hi {{ Name }},\n\n"
        "Your account was locked for {{ LockDuration }} after {{ FailedAttempts }} "
        "failed sign-in attempts.\n\n"
        "If this was you, wait and try again or reset your password:\n"
        "{{ LoginURL }}\n\n"
        "If this was not you, please reset your password as soon as possible.\n",
    ),
    "data_export_ready": (
        "Your Data Export is Ready",
        "Hello,\n\n"
        "Your data export ({{ FileSize }}) is ready to download:\n"
        "{{ DownloadLink }}\n\n"
        "The download link expires in {{ ExpiresIn }}.\n",
    ),
}


@dataclass
class SendParams:
    to: str
    template_name: str
    data: Dict[str, Any] = field(default_factory=dict)
    subject: Optional[str] = None  # overrides the template subject


class EmailService:
    def __init__(
        self,
        host: str = "",
        port: int = 587,
        username: str = "",
        password: str = "",
        from_addr: str = "",
        start_tls: bool = True,
        dev_mode: bool = False,
        app_name: str = "Starter Kit",
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_addr = from_addr or username
        self.start_tls = start_tls
        self.dev_mode = dev_mode
        self.app_name = app_name
        self._env = Environment(
            loader=DictLoader(
                {
                    f"{name}.{part}": text
                    for name, (subject, body) in EMAIL_TEMPLATES.items()
                    for part, text in (("subject", subject), ("txt", body))
                }
            ),
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )

    @classmethod
    def from_settings(cls, settings) -> "EmailService":
        return cls(
            host=settings.SMTP_HOST,
            port=int(settings.SMTP_PORT),
            username=settings.SMTP_USER,
            password=settings.SMTP_PASSWORD,
            from_addr=settings.SMTP_FROM,
            start_tls=bool(settings.SMTP_START_TLS),
            dev_mode=bool(settings.EMAIL_DEV_MODE),
            app_name=settings.APP_NAME,
        )

    def is_available(self) -> bool:
        """True when emails will actually be delivered (or logged in dev mode)."""
        return self.dev_mode or bool(self.host and self.from_addr)

    def render(self, template_name: str, data: Dict[str, Any]) -> tuple:
        ctx = {"app_name": self.app_name, **(data or {})}
        try:
            subject = self._env.get_template(f"{template_name}.subject").render(ctx)
            body = self._env.get_template(f"{template_name}.txt").render(ctx)
        except TemplateNotFound:
            raise EmailError(f"unknown email template: {template_name}")
        except Exception as e:
            raise EmailError(f"failed to render {template_name}: {e}") from e
        return subject.strip(), body

    async def send(self, params: SendParams) -> None:
        if not params.to:
            raise EmailError("recipient email is required")

        subject, body = self.render(params.template_name, params.data)
        if params.subject:
            subject = params.subject

        if self.dev_mode:
            logger.info(
                "email.dev_mode",
                extra={"to": params.to, "template": params.template_name, "subject": subject},
            )
            return
        if not self.is_available():
            logger.debug(
                "email.noop",
                extra={"to": params.to, "template": params.template_name},
            )
            return

        msg = EmailMessage()
        msg["From"] = self.from_addr
        msg["To"] = params.to
        msg["Subject"] = subject
        msg.set_content(body)

        try:
            await aiosmtplib.send(
                msg,
                hostname=self.host,
                port=self.port,
                start_tls=self.start_tls,
                username=self.username or None,
                password=self.password or None,
            )
        except aiosmtplib.SMTPException as e:
            raise EmailError(f"smtp send failed: {e}") from e
        logger.info("email.sent", extra={"to": params.to, "template": params.template_name})

    def send_blocking(self, params: SendParams) -> None:
        """Send from synchronous code such as job worker threads."""
        asyncio.run(self.send(params))
