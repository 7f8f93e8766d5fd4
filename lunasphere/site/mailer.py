"""
Outgoing mail for the contact form.

Sends through SMTP when SMTP_HOST is configured. Without it, messages are
written to the log instead, which is what development setups use.
"""
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from starlette.concurrency import run_in_threadpool

from lunasphere.base_service import BaseService, mask_email
from lunasphere.config import Settings


class Mailer(BaseService):
    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "LunaSphere",
        timeout: int = 30,
    ):
        super().__init__("mail")
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user or "noreply@lunasphere.com"
        self.from_name = from_name
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "Mailer":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host)

    def _build(self, to_email: str, subject: str, text_body: str, html_body: Optional[str]) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        if html_body:
            msg.attach(MIMEText(html_body, "html"))
        return msg

    def send_sync(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str] = None,
    ) -> bool:
        """
        Send one message.

        Returns:
            True if the message was sent (or logged in dev mode), False if
            the SMTP exchange failed
        """
        if not self.is_configured:
            self.log_event("mail.logged", {
                "to": mask_email(to_email),
                "subject": subject,
                "body_preview": text_body[:200],
            })
            return True

        msg = self._build(to_email, subject, text_body, html_body)
        try:
            context = ssl.create_default_context()
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
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            self.log_error(e, f"send to {mask_email(to_email)} via {self.smtp_host}:{self.smtp_port}")
            return False

        self.log_event("mail.sent", {"to": mask_email(to_email), "subject": subject})
        return True

    async def send(
        self,
        to_email: str,
        subject: str,
        text_body: str,
        html_body: Optional[str] = None,
    ) -> bool:
        """Async wrapper; the blocking SMTP exchange runs in the threadpool."""
        return await run_in_threadpool(self.send_sync, to_email, subject, text_body, html_body)
