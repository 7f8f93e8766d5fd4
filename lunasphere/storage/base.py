"""
Repository interfaces.

Each backend (memory, json, sql) implements these. Every single method call
is atomic with respect to other calls on the same backend; callers that
need read-modify-write across calls serialise on top (see KeyedLock).
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from lunasphere.storage.models import (
    AnalyticsCounters,
    CatalogEntry,
    ContactSubmission,
    RefreshTokenRecord,
    UserRecord,
    VisitorRecord,
)


class UserRepository(ABC):
    @abstractmethod
    async def get(self, username: str) -> Optional[UserRecord]:
        """Case-insensitive lookup."""

    @abstractmethod
    async def create(self, user: UserRecord) -> UserRecord:
        """Insert a user. Raises DuplicateUsername on a case-insensitive clash."""

    @abstractmethod
    async def update(self, user: UserRecord) -> UserRecord:
        """Persist all fields of an existing user. Raises NotFound."""

    @abstractmethod
    async def list(self) -> List[UserRecord]:
        ...

    @abstractmethod
    async def count(self) -> int:
        ...


class TokenRepository(ABC):
    @abstractmethod
    async def add(self, record: RefreshTokenRecord) -> None:
        ...

    @abstractmethod
    async def remove(self, token: str) -> bool:
        """Remove a token; returns whether it was present."""

    @abstractmethod
    async def exists(self, token: str) -> bool:
        ...

    @abstractmethod
    async def remove_for_user(self, username: str) -> int:
        ...

    @abstractmethod
    async def purge_expired(self, now: datetime) -> int:
        ...


class AnalyticsRepository(ABC):
    @abstractmethod
    async def get_counters(self) -> AnalyticsCounters:
        ...

    @abstractmethod
    async def save_counters(self, counters: AnalyticsCounters) -> None:
        ...

    @abstractmethod
    async def get_visitor(self, visitor_id: str) -> Optional[VisitorRecord]:
        ...

    @abstractmethod
    async def save_visitor(self, visitor: VisitorRecord) -> None:
        ...

    @abstractmethod
    async def list_visitors(self) -> List[VisitorRecord]:
        """All sightings, most recently active first."""

    @abstractmethod
    async def prune_visitors(self, before: datetime) -> int:
        """Drop sightings whose last activity is older than `before`."""


class ContactRepository(ABC):
    @abstractmethod
    async def add(self, submission: ContactSubmission) -> None:
        ...

    @abstractmethod
    async def list(self) -> List[ContactSubmission]:
        ...


class CatalogRepository(ABC):
    @abstractmethod
    async def list(self) -> List[CatalogEntry]:
        ...

    @abstractmethod
    async def get(self, entry_id: str) -> Optional[CatalogEntry]:
        ...

    @abstractmethod
    async def add(self, entry: CatalogEntry) -> None:
        ...

    @abstractmethod
    async def remove(self, entry_id: str) -> bool:
        ...


class Storage(ABC):
    """Bundle of repositories sharing one backend."""

    users: UserRepository
    tokens: TokenRepository
    analytics: AnalyticsRepository
    contacts: ContactRepository
    catalog: CatalogRepository

    @abstractmethod
    async def open(self) -> None:
        """Create files/tables and load persisted state."""

    async def close(self) -> None:
        return None
