"""
Authentication router.

This module provides the FastAPI router for authentication endpoints:
- Signup, login, token refresh and logout
- Current user profile
- User listing and account status (admin)
- Role management (admin)
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel

from lunasphere.auth.jwt import AccessClaims
from lunasphere.auth.middleware import get_current_claims, get_optional_claims, require_admin
from lunasphere.auth.roles import (
    AVAILABLE_ROLES,
    RoleAddRequest,
    RoleCheckRequest,
    RoleSetRequest,
)
from lunasphere.auth.users import StatusUpdate, UserCreate, UserLogin, UserOut
from lunasphere.base_service import BaseService
from lunasphere.dependencies import AppServices, get_services
from lunasphere.storage.models import UserRecord

router = APIRouter(tags=["auth"])

base_service = BaseService("auth")


class RefreshRequest(BaseModel):
    refreshToken: Optional[str] = None


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


# --- Session endpoints ---

@router.post("/login")
async def login(
    body: UserLogin,
    request: Request,
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """
    Authenticate a user and return an access/refresh token pair.

    Args:
        body: Username and password

    Returns:
        Dict with tokens and the user profile
    """
    user, tokens = await services.sessions.login(body, client_ip(request))
    return base_service.success_response(
        "Login successful",
        tokens=tokens.public(),
        user=UserOut.from_record(user).public(),
    )


@router.post("/refresh")
async def refresh(
    body: RefreshRequest,
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """
    Exchange a refresh token for a new token pair.

    The presented refresh token is revoked; reuse fails.
    """
    tokens = await services.sessions.refresh(body.refreshToken)
    return base_service.success_response(tokens=tokens.public())


@router.post("/logout")
async def logout(
    body: Optional[RefreshRequest] = None,
    claims: AccessClaims = Depends(get_current_claims),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """Revoke the given refresh token. The access token expires on its own."""
    await services.sessions.logout(claims, body.refreshToken if body else None)
    return base_service.success_response("Logged out successfully")


@router.post("/logout-all")
async def logout_all(
    claims: AccessClaims = Depends(get_current_claims),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """Revoke every refresh token of the caller."""
    revoked = await services.sessions.logout_all(claims)
    return base_service.success_response("Logged out from all devices", revoked=revoked)


@router.get("/me")
async def me(
    claims: AccessClaims = Depends(get_current_claims),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """
    Get the current user, read live from storage.

    Returns:
        Dict with the live user profile and the role snapshot in the token
    """
    return base_service.success_response(**await services.sessions.me(claims))


# --- Users ---

@router.post("/users", status_code=status.HTTP_201_CREATED)
async def signup(
    body: UserCreate,
    request: Request,
    claims: Optional[AccessClaims] = Depends(get_optional_claims),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """
    Register a new user.

    Anonymous signups always get the default role; other roles need an
    admin bearer token.
    """
    actor = None
    if claims is not None:
        actor = await services.users.find(claims.username)
        if actor is not None and not actor.is_active:
            actor = None
    user = await services.users.register(body, client_ip(request), actor)
    base_service.log_event("user.registered", {"username": user.username, "roles": user.roles})
    return base_service.success_response(
        "Account created successfully",
        user=UserOut.from_record(user).public(),
    )


@router.get("/users")
async def list_users(
    admin: UserRecord = Depends(require_admin),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """List all users without password hashes (admin only)."""
    users = await services.users.list()
    return base_service.success_response(users=[UserOut.from_record(u).public() for u in users])


@router.get("/users/count")
async def user_count(services: AppServices = Depends(get_services)) -> Dict[str, Any]:
    """Public registered-user count."""
    count = await services.users.count()
    return base_service.success_response("Current registered user count", count=count)


@router.put("/users/{username}/status")
async def set_account_status(
    username: str,
    body: StatusUpdate,
    admin: UserRecord = Depends(require_admin),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """Enable or disable an account (admin only)."""
    user = await services.sessions.set_status(username, body.accountStatus, admin.username)
    return base_service.success_response(user=UserOut.from_record(user).public())


# --- Role Management ---

@router.get("/roles")
async def list_roles() -> Dict[str, Any]:
    """Static catalog of assignable roles."""
    return base_service.success_response("Available user roles", roles=AVAILABLE_ROLES)


@router.put("/users/{username}/roles")
async def set_user_roles(
    username: str,
    body: RoleSetRequest,
    admin: UserRecord = Depends(require_admin),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """
    Replace a user's roles (admin only).

    Args:
        username: Target user
        body: New roles and optional assignedBy
    """
    assigned_by = body.assignedBy or admin.username
    user = await services.roles.set_roles(username, body.roles, assigned_by)
    base_service.log_event("user.roles.set", {
        "username": user.username, "roles": user.roles, "by": assigned_by,
    })
    return base_service.success_response(user=UserOut.from_record(user).public())


@router.post("/users/{username}/roles")
async def add_user_role(
    username: str,
    body: RoleAddRequest,
    admin: UserRecord = Depends(require_admin),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """Add one role to a user (admin only). 400 if already held."""
    assigned_by = body.assignedBy or admin.username
    user = await services.roles.add_role(username, body.role, assigned_by)
    base_service.log_event("user.role.added", {
        "username": user.username, "role": body.role, "by": assigned_by,
    })
    return base_service.success_response(user=UserOut.from_record(user).public())


@router.delete("/users/{username}/roles/{role}")
async def remove_user_role(
    username: str,
    role: str,
    assignedBy: Optional[str] = None,
    admin: UserRecord = Depends(require_admin),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """Remove one role from a user (admin only). The last role cannot be removed."""
    assigned_by = assignedBy or admin.username
    user = await services.roles.remove_role(username, role, assigned_by)
    base_service.log_event("user.role.removed", {
        "username": user.username, "role": role, "by": assigned_by,
    })
    return base_service.success_response(user=UserOut.from_record(user).public())


@router.post("/users/{username}/check-role")
async def check_user_role(
    username: str,
    body: RoleCheckRequest,
    admin: UserRecord = Depends(require_admin),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """Evaluate an any-of / all-of role predicate for a user (admin only)."""
    result = await services.roles.check(username, body.roles, body.requireAll)
    return base_service.success_response(**result)
