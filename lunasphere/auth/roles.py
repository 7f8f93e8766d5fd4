"""
Role catalog, role predicates and role mutation.

A user holds an ordered, non-empty list of roles; the first one is the
primary role. Mutations are serialised per username and stamp who made the
change and when.
"""
from typing import Iterable, List, Optional, Union

from pydantic import BaseModel

from lunasphere.base_service import utcnow
from lunasphere.errors import (
    AlreadyHasRole,
    LastRoleViolation,
    NotFound,
    RoleNotHeld,
    ValidationError,
)
from lunasphere.locks import KeyedLock
from lunasphere.storage.base import UserRepository
from lunasphere.storage.models import UserRecord, normalize_roles

AVAILABLE_ROLES = [
    "super_admin",
    "admin",
    "moderator",
    "member",
    "customer",
    "premium_customer",
    "vip_customer",
    "user",
    "guest",
]
ADMIN_ROLES = ["super_admin", "admin"]
DEFAULT_ROLE = "user"


def satisfies_any(user_roles: Iterable[str], required: Iterable[str]) -> bool:
    """True when the user holds at least one of the required roles."""
    held = set(user_roles)
    return any(role in held for role in required)


def satisfies_all(user_roles: Iterable[str], required: Iterable[str]) -> bool:
    """True when the user holds every required role."""
    held = set(user_roles)
    return all(role in held for role in required)


def is_admin(user_roles: Iterable[str]) -> bool:
    return satisfies_any(user_roles, ADMIN_ROLES)


def coerce_roles(roles: Union[str, List[str], None]) -> List[str]:
    """Accept a single role string or a list; validate against the catalog."""
    if roles is None:
        return []
    if isinstance(roles, str):
        roles = [roles]
    roles = normalize_roles(roles)
    unknown = [r for r in roles if r not in AVAILABLE_ROLES]
    if unknown:
        raise ValidationError(f"Unknown role(s): {', '.join(unknown)}")
    return roles


class RoleSetRequest(BaseModel):
    roles: Union[str, List[str], None] = None
    assignedBy: Optional[str] = None


class RoleAddRequest(BaseModel):
    role: Optional[str] = None
    assignedBy: Optional[str] = None


class RoleCheckRequest(BaseModel):
    roles: Union[str, List[str], None] = None
    requireAll: bool = False


class RoleManager:
    """Role mutation and evaluation against the live credential store."""

    def __init__(self, repository: UserRepository, locks: KeyedLock):
        self._users = repository
        self._locks = locks

    async def _load(self, username: str) -> UserRecord:
        user = await self._users.get(username)
        if user is None:
            raise NotFound("User not found")
        return user

    async def _save(self, user: UserRecord, roles: List[str], assigned_by: str) -> UserRecord:
        user.roles = roles
        user.assigned_by = assigned_by
        user.role_assigned_at = utcnow()
        return await self._users.update(user)

    async def set_roles(self, username: str, roles: Union[str, List[str], None], assigned_by: str) -> UserRecord:
        """Replace the whole role list. Rejects an empty list."""
        new_roles = coerce_roles(roles)
        if not new_roles:
            raise ValidationError("Roles must be a non-empty array or string")
        async with self._locks.hold(username):
            user = await self._load(username)
            return await self._save(user, new_roles, assigned_by)

    async def add_role(self, username: str, role: Optional[str], assigned_by: str) -> UserRecord:
        if not role or not role.strip():
            raise ValidationError("Role is required")
        (role,) = coerce_roles(role)
        async with self._locks.hold(username):
            user = await self._load(username)
            if role in user.roles:
                raise AlreadyHasRole()
            return await self._save(user, user.roles + [role], assigned_by)

    async def remove_role(self, username: str, role: str, assigned_by: str) -> UserRecord:
        """Remove one role. The last remaining role can never be removed."""
        async with self._locks.hold(username):
            user = await self._load(username)
            if role not in user.roles:
                raise RoleNotHeld()
            if len(user.roles) == 1:
                raise LastRoleViolation()
            return await self._save(user, [r for r in user.roles if r != role], assigned_by)

    async def check(self, username: str, roles: Union[str, List[str], None], require_all: bool = False) -> dict:
        if not roles:
            raise ValidationError("Roles to check are required")
        checked = [roles] if isinstance(roles, str) else list(roles)
        user = await self._load(username)
        has_role = satisfies_all(user.roles, checked) if require_all else satisfies_any(user.roles, checked)
        return {
            "username": user.username,
            "userRoles": user.roles,
            "checkedRoles": checked,
            "hasRole": has_role,
            "requireAll": require_all,
        }
