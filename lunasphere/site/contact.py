"""
Contact form.

Submissions are validated, checked against a list of spam patterns and a
per-client cooldown, stored, and mailed to the site's inbox.
"""
import html
import re
import secrets
import string
import time
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, field_validator

from lunasphere.base_service import BaseService, mask_email, utcnow
from lunasphere.errors import DuplicateSubmission, SpamDetected
from lunasphere.site.mailer import Mailer
from lunasphere.storage.base import ContactRepository
from lunasphere.storage.models import ContactSubmission

SERVICES = ["web-development", "mobile-app", "digital-transformation", "consultation", "other"]

NAME_PATTERN = re.compile(r"^[a-zA-Z\s\-'.]+$")
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{0,15}$")

SPAM_PATTERNS = [
    re.compile(r"viagra|cialis|pharmacy", re.IGNORECASE),
    re.compile(r"make money|earn money|work from home", re.IGNORECASE),
    re.compile(r"bitcoin|cryptocurrency|investment opportunity", re.IGNORECASE),
    re.compile(r"click here|visit now|act now", re.IGNORECASE),
    re.compile(r"congratulations.*won|lottery.*winner", re.IGNORECASE),
    re.compile(r"nigerian prince|inheritance|beneficiary", re.IGNORECASE),
    re.compile(r"urgent.*reply|immediate.*action", re.IGNORECASE),
]

_BASE36 = string.digits + string.ascii_lowercase


class ContactRequest(BaseModel):
    """Model for a contact form submission."""
    name: str
    email: EmailStr
    phone: Optional[str] = None
    service: str
    message: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not 2 <= len(v) <= 100:
            raise ValueError("Name must be between 2 and 100 characters")
        if not NAME_PATTERN.match(v):
            raise ValueError("Name contains invalid characters")
        return v

    @field_validator("email")
    @classmethod
    def validate_email_length(cls, v: str) -> str:
        if len(v) > 254:
            raise ValueError("Email address is too long")
        return v

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not PHONE_PATTERN.match(v):
            raise ValueError("Please provide a valid phone number")
        return v

    @field_validator("service")
    @classmethod
    def validate_service(cls, v: str) -> str:
        v = v.strip()
        if v not in SERVICES:
            raise ValueError("Please select a valid service")
        return v

    @field_validator("message")
    @classmethod
    def validate_message(cls, v: str) -> str:
        v = v.strip()
        if not 10 <= len(v) <= 2000:
            raise ValueError("Message must be between 10 and 2000 characters")
        return v


def contains_spam(text: str) -> bool:
    return any(pattern.search(text) for pattern in SPAM_PATTERNS)


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_submission_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return "LUNA_" + to_base36(int(time.time() * 1000)) + suffix


def render_notification(submission: ContactSubmission) -> Dict[str, str]:
    phone = submission.phone or "Not provided"
    text = (
        "New Contact Form Submission - LunaSphere\n\n"
        f"Name: {submission.name}\n"
        f"Email: {submission.email}\n"
        f"Phone: {phone}\n"
        f"Service: {submission.service}\n"
        f"Message: {submission.message}\n\n"
        f"Submitted on: {submission.submitted_at.isoformat()}"
    )
    message_html = html.escape(submission.message).replace("\n", "<br>")
    body = (
        "<h2>New Contact Form Submission</h2>"
        f"<p><b>Name:</b> {html.escape(submission.name)}</p>"
        f"<p><b>Email:</b> {html.escape(submission.email)}</p>"
        f"<p><b>Phone:</b> {html.escape(phone)}</p>"
        f"<p><b>Service:</b> {html.escape(submission.service)}</p>"
        f"<p><b>Message:</b><br>{message_html}</p>"
        f"<p>Submission ID: {submission.submission_id}</p>"
    )
    return {"text": text, "html": body}


def render_auto_reply(name: str) -> str:
    return (
        f"Hi {name},\n\n"
        "Thank you for reaching out to LunaSphere! We've received your message "
        "and will get back to you within 24 hours.\n\n"
        "Best regards,\n"
        "The LunaSphere Team\n\n"
        "--\n"
        "This is an automated response. Please do not reply to this email."
    )


class ContactService(BaseService):
    def __init__(
        self,
        repository: ContactRepository,
        mailer: Mailer,
        recipient: str,
        cooldown_seconds: int = 60,
        send_auto_reply: bool = False,
    ):
        super().__init__("contact")
        self._contacts = repository
        self.mailer = mailer
        self.recipient = recipient
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.send_auto_reply = send_auto_reply
        # "{client_ip}_{email}" -> time of the last accepted submission
        self._recent: Dict[str, datetime] = {}

    def _cooldown_key(self, client_ip: str, email: str) -> str:
        return f"contact_{client_ip}_{email.lower()}"

    def _in_cooldown(self, key: str, now: datetime) -> bool:
        last = self._recent.get(key)
        return last is not None and now - last < self.cooldown

    async def submit(self, data: ContactRequest, client_ip: str = "unknown") -> ContactSubmission:
        """
        Accept a validated submission.

        Raises:
            SpamDetected: Name or message matches a spam pattern
            DuplicateSubmission: Same client and email within the cooldown
        """
        email = str(data.email)
        if contains_spam(data.message) or contains_spam(data.name):
            self.log_event("contact.spam", {"email": mask_email(email), "ip": client_ip})
            raise SpamDetected()

        now = utcnow()
        key = self._cooldown_key(client_ip, email)
        if self._in_cooldown(key, now):
            self.log_event("contact.duplicate", {"email": mask_email(email), "ip": client_ip})
            raise DuplicateSubmission()
        self._recent[key] = now

        submission = ContactSubmission(
            submission_id=generate_submission_id(),
            name=data.name,
            email=email,
            phone=data.phone,
            service=data.service,
            message=data.message,
            client_ip=client_ip,
            submitted_at=now,
        )
        rendered = render_notification(submission)
        submission.delivered = await self.mailer.send(
            self.recipient,
            f"New Contact Form Submission - {submission.service}",
            rendered["text"],
            rendered["html"],
        )
        if self.send_auto_reply:
            await self.mailer.send(
                email, "Thank you for contacting LunaSphere", render_auto_reply(submission.name)
            )
        await self._contacts.add(submission)

        self.log_event("contact.submitted", {
            "submission_id": submission.submission_id,
            "service": submission.service,
            "email": mask_email(email),
            "delivered": submission.delivered,
        })
        return submission

    async def stats(self) -> Dict[str, Any]:
        submissions = await self._contacts.list()
        now = utcnow()
        this_month = [
            s for s in submissions
            if s.submitted_at.year == now.year and s.submitted_at.month == now.month
        ]
        top: List[Dict[str, Any]] = [
            {"service": service, "count": count}
            for service, count in Counter(s.service for s in submissions).most_common()
        ]
        return {
            "totalSubmissions": len(submissions),
            "submissionsThisMonth": len(this_month),
            "topServices": top,
        }

    def cleanup(self) -> int:
        """Forget cooldown entries that have expired."""
        now = utcnow()
        expired = [k for k, t in self._recent.items() if now - t >= self.cooldown]
        for key in expired:
            del self._recent[key]
        return len(expired)
