"""
Base utilities for LunaSphere services.

This module provides common functionality for all services:
- Logging setup
- Structured event/error logging
- Standard success response formatting
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def mask_email(email: str) -> str:
    """Partially mask an email address for logging."""
    if "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


class BaseService:
    """Base service with common logging helpers."""

    def __init__(self, service_name: str = "core"):
        self.service_name = service_name
        self.logger = logging.getLogger(f"lunasphere.{service_name}")

    def log_event(self, event_name: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Log a structured event."""
        log_data = {
            "timestamp": utcnow().isoformat(),
            "service": self.service_name,
            "event": event_name,
            "data": data or {},
        }
        self.logger.info(f"EVENT: {json.dumps(log_data, default=str)}")
        return log_data

    def log_error(self, error: Exception, context: Optional[str] = None) -> Dict[str, Any]:
        """Log an error with optional context."""
        error_data = {
            "timestamp": utcnow().isoformat(),
            "service": self.service_name,
            "error": str(error),
            "error_type": error.__class__.__name__,
            "context": context or "unknown",
        }
        self.logger.error(f"ERROR: {json.dumps(error_data, default=str)}")
        return error_data

    def success_response(self, message: Optional[str] = None, **fields: Any) -> Dict[str, Any]:
        """Format a standard success response body."""
        response: Dict[str, Any] = {"success": True}
        if message is not None:
            response["message"] = message
        response.update(fields)
        return response
