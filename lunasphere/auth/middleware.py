"""
Authentication dependencies.

This module provides FastAPI dependencies for:
- Bearer access token validation
- Role-based access control against the live user record
"""
from typing import List, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from lunasphere.auth.jwt import AccessClaims
from lunasphere.auth.roles import ADMIN_ROLES, satisfies_any
from lunasphere.dependencies import AppServices, get_services
from lunasphere.errors import Forbidden, InvalidToken, LunaSphereError
from lunasphere.storage.models import UserRecord

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: AppServices = Depends(get_services),
) -> AccessClaims:
    """
    Decode the bearer access token.

    Raises:
        InvalidToken: No token, bad signature or wrong token type
        ExpiredToken: Token past its expiry
    """
    if credentials is None or not credentials.credentials:
        raise InvalidToken("Access token required")
    return services.issuer.verify_access(credentials.credentials)


async def get_optional_claims(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: AppServices = Depends(get_services),
) -> Optional[AccessClaims]:
    """Like get_current_claims but anonymous callers (or bad tokens) yield None."""
    if credentials is None or not credentials.credentials:
        return None
    try:
        return services.issuer.verify_access(credentials.credentials)
    except LunaSphereError:
        return None


class RBACMiddleware:
    """
    Role-Based Access Control dependencies.

    Role checks re-read the user from storage so that role changes and
    account disabling take effect before the access token expires.
    """

    @staticmethod
    async def _live_user(claims: AccessClaims, services: AppServices) -> UserRecord:
        user = await services.users.find(claims.username)
        if user is None:
            raise InvalidToken("User not found")
        if not user.is_active:
            raise Forbidden("Account is disabled")
        return user

    @staticmethod
    def has_roles(roles: List[str], message: Optional[str] = None):
        """
        Dependency to check if the user has any of the specified roles.

        Args:
            roles: Role names, any match is sufficient

        Returns:
            Dependency function yielding the live UserRecord
        """
        async def verify_roles(
            claims: AccessClaims = Depends(get_current_claims),
            services: AppServices = Depends(get_services),
        ) -> UserRecord:
            user = await RBACMiddleware._live_user(claims, services)
            if not satisfies_any(user.roles, roles):
                raise Forbidden(message or f"Role required: {', '.join(roles)}")
            return user

        return verify_roles


require_admin = RBACMiddleware.has_roles(ADMIN_ROLES, "Admin access required")
