"""
User management service.

This module provides functionality for:
- User registration
- User lookup and listing
- Login bookkeeping (last login, visit count)
- Account status changes
"""
import re
from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from lunasphere.auth.passwords import PasswordHasher
from lunasphere.auth.roles import DEFAULT_ROLE, coerce_roles, is_admin
from lunasphere.base_service import utcnow
from lunasphere.errors import Forbidden, NotFound, ValidationError
from lunasphere.locks import KeyedLock
from lunasphere.storage.base import UserRepository
from lunasphere.storage.models import AccountStatus, UserRecord

USERNAME_PATTERN = r"^[A-Za-z0-9_.@-]+$"
USERNAME_MIN_LEN = 3
USERNAME_MAX_LEN = 50
PASSWORD_MIN_LEN = 6
PASSWORD_MAX_LEN = 128


# Request bodies keep every field optional so that missing values produce
# the same 400 message as malformed ones instead of a schema error.
class UserCreate(BaseModel):
    """Model for user registration."""
    username: Optional[str] = None
    password: Optional[str] = None
    roles: Union[str, List[str], None] = None


class UserLogin(BaseModel):
    """Model for user login."""
    username: Optional[str] = None
    password: Optional[str] = None


class StatusUpdate(BaseModel):
    accountStatus: Optional[str] = None


class UserOut(BaseModel):
    """Model for user information returned to clients."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    username: str
    roles: List[str]
    primary_role: str
    account_status: AccountStatus
    registered_at: datetime
    last_login: Optional[datetime] = None
    visit_count: int = 0
    assigned_by: str
    role_assigned_at: datetime

    @classmethod
    def from_record(cls, user: UserRecord) -> "UserOut":
        return cls(
            username=user.username,
            roles=list(user.roles),
            primary_role=user.roles[0],
            account_status=user.account_status,
            registered_at=user.registered_at,
            last_login=user.last_login,
            visit_count=user.visit_count,
            assigned_by=user.assigned_by,
            role_assigned_at=user.role_assigned_at,
        )

    def public(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


def validate_signup(username: Optional[str], password: Optional[str]) -> str:
    """Check signup input; returns the trimmed username."""
    if not username or not password:
        raise ValidationError("Username and password are required")
    username = username.strip()
    if len(username) < USERNAME_MIN_LEN:
        raise ValidationError(f"Username must be at least {USERNAME_MIN_LEN} characters long")
    if len(username) > USERNAME_MAX_LEN:
        raise ValidationError(f"Username must be at most {USERNAME_MAX_LEN} characters long")
    if not re.match(USERNAME_PATTERN, username):
        raise ValidationError(
            "Username may only contain letters, numbers, dots, underscores, hyphens or @"
        )
    if len(password) < PASSWORD_MIN_LEN:
        raise ValidationError(f"Password must be at least {PASSWORD_MIN_LEN} characters long")
    if len(password) > PASSWORD_MAX_LEN:
        raise ValidationError(f"Password must be at most {PASSWORD_MAX_LEN} characters long")
    return username


class UserService:
    """
    Service for user management operations.
    """

    def __init__(self, repository: UserRepository, hasher: PasswordHasher, locks: KeyedLock):
        self._users = repository
        self._hasher = hasher
        self._locks = locks

    async def register(
        self,
        data: UserCreate,
        created_from: str = "unknown",
        actor: Optional[UserRecord] = None,
    ) -> UserRecord:
        """
        Register a new user.

        Args:
            data: Registration data
            created_from: Client address the signup came from
            actor: Live record of the authenticated caller, if any

        Returns:
            The stored user record

        Raises:
            ValidationError: Missing or malformed input
            Forbidden: Non-default roles requested without admin rights
            DuplicateUsername: Username taken (case-insensitive)
        """
        username = validate_signup(data.username, data.password)
        roles = coerce_roles(data.roles) or [DEFAULT_ROLE]
        admin_assigned = actor is not None and is_admin(actor.roles)
        if roles != [DEFAULT_ROLE] and not admin_assigned:
            raise Forbidden("Admin access required to assign roles")

        password_hash = await self._hasher.hash(data.password)
        now = utcnow()
        user = UserRecord(
            username=username,
            password_hash=password_hash,
            roles=roles,
            account_status="active",
            registered_at=now,
            last_login=None,
            visit_count=0,
            assigned_by=actor.username if admin_assigned else "self-registration",
            role_assigned_at=now,
            created_from=created_from,
        )
        async with self._locks.hold(username):
            return await self._users.create(user)

    async def find(self, username: str) -> Optional[UserRecord]:
        return await self._users.get(username)

    async def get(self, username: str) -> UserRecord:
        user = await self._users.get(username)
        if user is None:
            raise NotFound("User not found")
        return user

    async def list(self) -> List[UserRecord]:
        return await self._users.list()

    async def count(self) -> int:
        return await self._users.count()

    async def record_login(self, username: str) -> UserRecord:
        """Stamp last_login and bump visit_count on the live record."""
        async with self._locks.hold(username):
            user = await self.get(username)
            user.last_login = utcnow()
            user.visit_count += 1
            return await self._users.update(user)

    async def set_status(self, username: str, status: Optional[str]) -> UserRecord:
        if status not in ("active", "disabled"):
            raise ValidationError("accountStatus must be 'active' or 'disabled'")
        async with self._locks.hold(username):
            user = await self.get(username)
            user.account_status = status
            return await self._users.update(user)

    async def ensure_admin(self, username: str, password: str) -> bool:
        """Create the bootstrap super admin if it does not exist yet."""
        if await self._users.get(username) is not None:
            return False
        now = utcnow()
        await self._users.create(UserRecord(
            username=username,
            password_hash=await self._hasher.hash(password),
            roles=["super_admin"],
            registered_at=now,
            assigned_by="system",
            role_assigned_at=now,
            created_from="system",
        ))
        return True
