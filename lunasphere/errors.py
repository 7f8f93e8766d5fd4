"""
Domain errors for LunaSphere.

Every error carries the HTTP status and the stable error code that the
request boundary turns into a JSON error body.
"""
from typing import Any, Dict, Optional


class LunaSphereError(Exception):
    """Base class for errors mapped to HTTP responses."""

    status_code: int = 400
    code: str = "BAD_REQUEST"
    default_message: str = "Bad request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(LunaSphereError):
    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class SpamDetected(ValidationError):
    code = "SPAM_DETECTED"
    default_message = "Message contains inappropriate content"


class InvalidCredentials(LunaSphereError):
    """Unknown username or wrong password; deliberately indistinguishable."""

    status_code = 401
    code = "INVALID_CREDENTIALS"
    default_message = "Invalid credentials"


class AccountDisabled(LunaSphereError):
    status_code = 401
    code = "ACCOUNT_DISABLED"
    default_message = "Account is disabled"


class InvalidToken(LunaSphereError):
    status_code = 401
    code = "INVALID_TOKEN"
    default_message = "Invalid token"


class ExpiredToken(InvalidToken):
    code = "TOKEN_EXPIRED"
    default_message = "Token expired"


class InvalidRefreshToken(LunaSphereError):
    status_code = 403
    code = "INVALID_REFRESH_TOKEN"
    default_message = "Invalid or expired refresh token"


class Forbidden(LunaSphereError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Admin access required"


class NotFound(LunaSphereError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class DuplicateUsername(LunaSphereError):
    status_code = 409
    code = "DUPLICATE_USERNAME"
    default_message = "Username already exists"


class AlreadyHasRole(LunaSphereError):
    status_code = 400
    code = "ALREADY_HAS_ROLE"
    default_message = "User already has this role"


class RoleNotHeld(LunaSphereError):
    status_code = 400
    code = "ROLE_NOT_HELD"
    default_message = "User does not have this role"


class LastRoleViolation(LunaSphereError):
    status_code = 400
    code = "LAST_ROLE_VIOLATION"
    default_message = "Cannot remove the last role from user"


class DuplicateSubmission(LunaSphereError):
    status_code = 429
    code = "DUPLICATE_SUBMISSION"
    default_message = "Please wait before submitting another message"


class StorageError(LunaSphereError):
    status_code = 500
    code = "STORAGE_ERROR"
    default_message = "Storage failure"
