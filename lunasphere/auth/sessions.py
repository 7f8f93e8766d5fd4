"""
Session handling: login, refresh, logout and the current-user view.

Lifecycle of a client session:
    Anonymous -> Authenticated (login)
    Authenticated -> AccessExpired (15 minutes pass)
    AccessExpired -> Authenticated (refresh, rotating the refresh token)
    any -> Anonymous (logout, failed refresh)
"""
from typing import Any, Dict, Optional, Tuple

from lunasphere.auth.jwt import AccessClaims, TokenIssuer, TokenPair
from lunasphere.auth.passwords import PasswordHasher
from lunasphere.auth.tokens import TokenStore
from lunasphere.auth.users import UserLogin, UserOut, UserService
from lunasphere.base_service import BaseService
from lunasphere.errors import (
    AccountDisabled,
    Forbidden,
    InvalidCredentials,
    InvalidRefreshToken,
    InvalidToken,
    ValidationError,
)
from lunasphere.storage.models import UserRecord


class SessionService(BaseService):
    def __init__(
        self,
        users: UserService,
        hasher: PasswordHasher,
        issuer: TokenIssuer,
        token_store: TokenStore,
    ):
        super().__init__("auth")
        self.users = users
        self.hasher = hasher
        self.issuer = issuer
        self.token_store = token_store

    async def _issue(self, user: UserRecord) -> TokenPair:
        tokens = self.issuer.issue(user)
        await self.token_store.remember(tokens.refresh_token, user.username, tokens.refresh_expires_at)
        return tokens

    async def login(self, data: UserLogin, client_ip: str = "unknown") -> Tuple[UserRecord, TokenPair]:
        """
        Authenticate a user and issue a token pair.

        Unknown usernames and wrong passwords fail identically, and both pay
        for one bcrypt verification. The disabled check only happens after
        the password matched, so it reveals nothing to a guesser.

        Raises:
            ValidationError: Missing username or password
            InvalidCredentials: Unknown user or wrong password
            AccountDisabled: Correct password, disabled account
        """
        if not data.username or not data.password:
            raise ValidationError("Username and password are required")

        user = await self.users.find(data.username)
        if user is None:
            await self.hasher.dummy_verify(data.password)
            self.log_event("user.login.failed", {"username": data.username, "ip": client_ip})
            raise InvalidCredentials()

        if not await self.hasher.verify(data.password, user.password_hash):
            self.log_event("user.login.failed", {"username": data.username, "ip": client_ip})
            raise InvalidCredentials()

        if not user.is_active:
            self.log_event("user.login.disabled", {"username": user.username, "ip": client_ip})
            raise AccountDisabled()

        user = await self.users.record_login(user.username)
        tokens = await self._issue(user)
        self.log_event("user.login", {"username": user.username, "roles": user.roles, "ip": client_ip})
        return user, tokens

    async def refresh(self, refresh_token: Optional[str]) -> TokenPair:
        """
        Exchange a refresh token for a new pair. The old token is revoked.

        Raises:
            InvalidToken: No refresh token supplied
            InvalidRefreshToken: Token unknown, revoked, expired, forged,
                or its user is gone or inactive
        """
        if not refresh_token:
            raise InvalidToken("Refresh token required")

        if not await self.token_store.is_valid(refresh_token):
            raise InvalidRefreshToken("Invalid refresh token")

        try:
            claims = self.issuer.verify_refresh(refresh_token)
        except InvalidToken:
            await self.token_store.revoke(refresh_token)
            raise InvalidRefreshToken()

        # Revoking first means a concurrent second use of the same token fails.
        if not await self.token_store.revoke(refresh_token):
            raise InvalidRefreshToken("Invalid refresh token")

        user = await self.users.find(claims.username)
        if user is None or not user.is_active:
            raise InvalidRefreshToken("User not found or account inactive")

        tokens = await self._issue(user)
        self.log_event("token.refreshed", {"username": user.username})
        return tokens

    async def logout(self, claims: AccessClaims, refresh_token: Optional[str] = None) -> None:
        """Revoke the given refresh token. The access token stays valid until it expires."""
        if refresh_token:
            try:
                owner = self.issuer.verify_refresh(refresh_token).username
            except InvalidToken:
                owner = None
            if owner is not None:
                if owner.lower() != claims.username.lower():
                    raise Forbidden("Refresh token belongs to another user")
                await self.token_store.revoke(refresh_token)
        self.log_event("user.logout", {"username": claims.username})

    async def logout_all(self, claims: AccessClaims) -> int:
        revoked = await self.token_store.revoke_all(claims.username)
        self.log_event("user.logout_all", {"username": claims.username, "revoked": revoked})
        return revoked

    async def me(self, claims: AccessClaims) -> Dict[str, Any]:
        """Live view of the caller, re-read from the store, plus the token's role snapshot."""
        user = await self.users.get(claims.username)
        return {"user": UserOut.from_record(user).public(), "tokenRoles": claims.roles}

    async def set_status(self, username: str, status: Optional[str], actor: str) -> UserRecord:
        """Enable or disable an account. Disabling revokes every refresh token."""
        user = await self.users.set_status(username, status)
        revoked = 0
        if not user.is_active:
            revoked = await self.token_store.revoke_all(user.username)
        self.log_event("user.status.changed", {
            "username": user.username,
            "status": user.account_status,
            "by": actor,
            "revoked_tokens": revoked,
        })
        return user
