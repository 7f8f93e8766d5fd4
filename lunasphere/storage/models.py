"""
Records persisted by the storage backends.

These are plain pydantic models shared by every backend; the SQL backend
maps them onto its ORM tables.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

AccountStatus = Literal["active", "disabled"]


def normalize_roles(roles: List[str]) -> List[str]:
    """Strip and de-duplicate roles, keeping the first occurrence order."""
    seen = []
    for role in roles:
        role = role.strip()
        if role and role not in seen:
            seen.append(role)
    return seen


class UserRecord(BaseModel):
    """A registered account. roles[0] is the primary role."""

    username: str
    password_hash: str
    roles: List[str]
    account_status: AccountStatus = "active"
    registered_at: datetime
    last_login: Optional[datetime] = None
    visit_count: int = 0
    assigned_by: str = "self-registration"
    role_assigned_at: datetime
    created_from: str = "unknown"

    @field_validator("roles")
    @classmethod
    def roles_must_not_be_empty(cls, v: List[str]) -> List[str]:
        roles = normalize_roles(v)
        if not roles:
            raise ValueError("roles must not be empty")
        return roles

    @property
    def key(self) -> str:
        return self.username.lower()

    @property
    def is_active(self) -> bool:
        return self.account_status == "active"


class RefreshTokenRecord(BaseModel):
    token: str
    username: str
    issued_at: datetime
    expires_at: datetime


class AnalyticsCounters(BaseModel):
    total_visitors: int = 0
    page_views: int = 0
    registered_users: int = 0
    online_now: int = 0


class VisitorRecord(BaseModel):
    """One (ip, user agent) sighting."""

    id: str
    ip: str
    user_agent: str
    location: str = "Unknown"
    first_seen: datetime
    last_activity: datetime
    pages: List[str] = Field(default_factory=list)


class ContactSubmission(BaseModel):
    submission_id: str
    name: str
    email: str
    phone: Optional[str] = None
    service: str
    message: str
    client_ip: str = "unknown"
    submitted_at: datetime
    delivered: bool = False


class CatalogEntry(BaseModel):
    """A service offered on the marketing site."""

    id: str
    title: str
    description: str
    category: str = "general"
    price: Optional[str] = None
    image_url: Optional[str] = None
    created_at: datetime
    created_by: str
