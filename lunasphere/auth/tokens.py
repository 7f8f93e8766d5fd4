"""
Refresh token registry.

Membership in the store is the source of truth for revocation: a token that
has been removed is rejected even if its signature and expiry still verify.
"""
from datetime import datetime

from lunasphere.base_service import utcnow
from lunasphere.storage.base import TokenRepository
from lunasphere.storage.models import RefreshTokenRecord


class TokenStore:
    def __init__(self, repository: TokenRepository):
        self._repository = repository

    async def remember(self, token: str, username: str, expires_at: datetime) -> None:
        await self._repository.add(RefreshTokenRecord(
            token=token,
            username=username,
            issued_at=utcnow(),
            expires_at=expires_at,
        ))

    async def revoke(self, token: str) -> bool:
        return await self._repository.remove(token)

    async def is_valid(self, token: str) -> bool:
        """Existence check only; expiry is checked by the TokenIssuer."""
        return await self._repository.exists(token)

    async def revoke_all(self, username: str) -> int:
        return await self._repository.remove_for_user(username)

    async def purge_expired(self) -> int:
        return await self._repository.purge_expired(utcnow())
