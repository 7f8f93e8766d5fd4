"""
JWT token handling for authentication.

This module provides functionality for:
- Creating access and refresh token pairs
- Validating access tokens
- Validating refresh tokens

Access and refresh tokens are signed with different secrets so that leaking
one key does not let an attacker mint the other kind of token.
"""
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, PyJWTError
from pydantic import BaseModel

from lunasphere.errors import ExpiredToken, InvalidToken
from lunasphere.storage.models import UserRecord

logger = logging.getLogger("lunasphere.auth")

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


class TokenPair(BaseModel):
    """Freshly minted access/refresh pair."""
    access_token: str
    refresh_token: str
    expires_in: str
    refresh_expires_at: datetime

    def public(self) -> Dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
        }


class AccessClaims(BaseModel):
    """Access token payload: identity plus the role/status snapshot."""
    username: str
    roles: List[str]
    account_status: str
    exp: int
    iat: Optional[int] = None
    jti: Optional[str] = None


class RefreshClaims(BaseModel):
    username: str
    exp: int
    jti: Optional[str] = None


class TokenIssuer:
    """
    Mints and verifies signed, time-bound tokens.

    Args:
        access_secret: Key for access tokens; random per process when None
        refresh_secret: Key for refresh tokens; random per process when None
        algorithm: JWT signing algorithm
        access_minutes: Access token lifetime
        refresh_days: Refresh token lifetime
    """

    def __init__(
        self,
        access_secret: Optional[str] = None,
        refresh_secret: Optional[str] = None,
        algorithm: str = "HS256",
        access_minutes: int = 15,
        refresh_days: int = 30,
    ):
        if access_secret is None or refresh_secret is None:
            logger.warning(
                "JWT secrets not configured; using random per-process keys. "
                "Issued tokens will not survive a restart."
            )
        self._access_secret = access_secret or secrets.token_hex(64)
        self._refresh_secret = refresh_secret or secrets.token_hex(64)
        if self._access_secret == self._refresh_secret:
            raise ValueError("Access and refresh signing keys must differ")
        self.algorithm = algorithm
        self.access_ttl = timedelta(minutes=access_minutes)
        self.refresh_ttl = timedelta(days=refresh_days)

    def _encode(self, payload: Dict[str, Any], secret: str, ttl: timedelta) -> tuple:
        now = datetime.now(timezone.utc)
        expires = now + ttl
        to_encode = dict(payload)
        to_encode.update({"iat": now, "exp": expires, "jti": uuid.uuid4().hex})
        return jwt.encode(to_encode, secret, algorithm=self.algorithm), expires

    def issue(self, user: UserRecord) -> TokenPair:
        """
        Create an access and refresh token for a user.

        Args:
            user: The authenticated user

        Returns:
            TokenPair with both tokens and expiry metadata
        """
        access_token, _ = self._encode(
            {
                "sub": user.username,
                "type": ACCESS_TOKEN_TYPE,
                "roles": list(user.roles),
                "account_status": user.account_status,
            },
            self._access_secret,
            self.access_ttl,
        )
        refresh_token, refresh_expires = self._encode(
            {"sub": user.username, "type": REFRESH_TOKEN_TYPE},
            self._refresh_secret,
            self.refresh_ttl,
        )
        minutes = int(self.access_ttl.total_seconds() // 60)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=f"{minutes}m",
            refresh_expires_at=refresh_expires,
        )

    def _decode(self, token: str, secret: str, expected_type: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "sub", "type"]},
            )
        except ExpiredSignatureError:
            raise ExpiredToken()
        except PyJWTError:
            raise InvalidToken()
        if payload.get("type") != expected_type:
            raise InvalidToken()
        return payload

    def verify_access(self, token: str) -> AccessClaims:
        """Verify an access token. Raises ExpiredToken or InvalidToken."""
        payload = self._decode(token, self._access_secret, ACCESS_TOKEN_TYPE)
        return AccessClaims(
            username=payload["sub"],
            roles=payload.get("roles") or [],
            account_status=payload.get("account_status", "active"),
            exp=payload["exp"],
            iat=payload.get("iat"),
            jti=payload.get("jti"),
        )

    def verify_refresh(self, token: str) -> RefreshClaims:
        """Verify a refresh token's signature and expiry only."""
        payload = self._decode(token, self._refresh_secret, REFRESH_TOKEN_TYPE)
        return RefreshClaims(username=payload["sub"], exp=payload["exp"], jti=payload.get("jti"))
