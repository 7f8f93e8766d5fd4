"""
In-memory storage, optionally persisted as flat JSON files.

With `data_dir=None` everything lives in process memory (tests, throwaway
runs). With a data directory each collection is one JSON document that is
rewritten wholesale, via temp file + rename, after every mutation.
"""
import asyncio
import copy
import json
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from fastapi.concurrency import run_in_threadpool

from lunasphere.errors import DuplicateUsername, NotFound, StorageError
from lunasphere.storage.base import (
    AnalyticsRepository,
    CatalogRepository,
    ContactRepository,
    Storage,
    TokenRepository,
    UserRepository,
)
from lunasphere.storage.migrations import is_legacy_user_document
from lunasphere.storage.models import (
    AnalyticsCounters,
    CatalogEntry,
    ContactSubmission,
    RefreshTokenRecord,
    UserRecord,
    VisitorRecord,
)

logger = logging.getLogger("lunasphere.storage")

USERS_FILE = "users.json"
TOKENS_FILE = "refresh_tokens.json"
ANALYTICS_FILE = "analytics.json"
VISITORS_FILE = "visitors.json"
SERVICES_FILE = "services.json"
CONTACTS_FILE = "contact_submissions.json"

# File name -> _State attribute it persists
_COLLECTIONS = {
    USERS_FILE: "users",
    TOKENS_FILE: "tokens",
    ANALYTICS_FILE: "counters",
    VISITORS_FILE: "visitors",
    SERVICES_FILE: "services",
    CONTACTS_FILE: "contacts",
}


def write_json_atomic(path: Path, data: Any) -> None:
    """Replace `path` with `data` serialised as JSON."""
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except (OSError, json.JSONDecodeError) as e:
        raise StorageError(f"Could not read {path.name}: {e}")


class _State:
    """Collections shared by the memory repositories plus their lock."""

    def __init__(self, data_dir: Optional[Path]):
        self.data_dir = data_dir
        self.lock = asyncio.Lock()
        self.users: Dict[str, UserRecord] = {}
        self.tokens: Dict[str, RefreshTokenRecord] = {}
        self.counters = AnalyticsCounters()
        self.visitors: Dict[str, VisitorRecord] = {}
        self.services: Dict[str, CatalogEntry] = {}
        self.contacts: List[ContactSubmission] = []

    def _snapshot(self, filename: str) -> Any:
        if filename == USERS_FILE:
            return [u.model_dump(mode="json") for u in self.users.values()]
        if filename == TOKENS_FILE:
            return [t.model_dump(mode="json") for t in self.tokens.values()]
        if filename == ANALYTICS_FILE:
            return self.counters.model_dump(mode="json")
        if filename == VISITORS_FILE:
            return [v.model_dump(mode="json") for v in self.visitors.values()]
        if filename == SERVICES_FILE:
            return [s.model_dump(mode="json") for s in self.services.values()]
        if filename == CONTACTS_FILE:
            return [c.model_dump(mode="json") for c in self.contacts]
        raise KeyError(filename)

    def _write(self, filename: str, snapshot: Any) -> None:
        try:
            write_json_atomic(self.data_dir / filename, snapshot)
        except OSError as e:
            raise StorageError(f"Could not write {filename}: {e}")

    async def persist(self, filename: str) -> None:
        if self.data_dir is None:
            return
        # Snapshot under the lock, write off the event loop.
        await run_in_threadpool(self._write, filename, self._snapshot(filename))

    @asynccontextmanager
    async def change(self, filename: str) -> AsyncIterator[None]:
        """
        Mutate one collection and persist it. Callers hold `lock`.

        If the body or the write fails the collection is put back as it
        was, so memory never runs ahead of what is on disk.
        """
        attr = _COLLECTIONS[filename]
        before = copy.copy(getattr(self, attr))
        try:
            yield
            await self.persist(filename)
        except Exception:
            setattr(self, attr, before)
            raise

    def load(self) -> None:
        if self.data_dir is None:
            return
        self.data_dir.mkdir(parents=True, exist_ok=True)
        try:
            user_docs = read_json(self.data_dir / USERS_FILE, [])
            legacy = [d.get("username", "?") for d in user_docs if is_legacy_user_document(d)]
            if legacy:
                raise StorageError(
                    f"{USERS_FILE} holds {len(legacy)} legacy user record(s); "
                    "run migrate_users.py before starting the server"
                )
            users = [UserRecord.model_validate(d) for d in user_docs]
            self.users = {u.key: u for u in users}
            tokens = [RefreshTokenRecord.model_validate(d)
                      for d in read_json(self.data_dir / TOKENS_FILE, [])]
            self.tokens = {t.token: t for t in tokens}
            self.counters = AnalyticsCounters.model_validate(
                read_json(self.data_dir / ANALYTICS_FILE, {})
            )
            visitors = [VisitorRecord.model_validate(d)
                        for d in read_json(self.data_dir / VISITORS_FILE, [])]
            self.visitors = {v.id: v for v in visitors}
            services = [CatalogEntry.model_validate(d)
                        for d in read_json(self.data_dir / SERVICES_FILE, [])]
            self.services = {s.id: s for s in services}
            self.contacts = [ContactSubmission.model_validate(d)
                             for d in read_json(self.data_dir / CONTACTS_FILE, [])]
        except PydanticValidationError as e:
            raise StorageError(f"Corrupt data in {self.data_dir}: {e}")

        for filename in (USERS_FILE, TOKENS_FILE, ANALYTICS_FILE, VISITORS_FILE,
                         SERVICES_FILE, CONTACTS_FILE):
            if not (self.data_dir / filename).exists():
                self._write(filename, self._snapshot(filename))
        logger.info(
            "Loaded %d users and %d refresh tokens from %s",
            len(self.users), len(self.tokens), self.data_dir,
        )


class MemoryUserRepository(UserRepository):
    def __init__(self, state: _State):
        self._state = state

    async def get(self, username: str) -> Optional[UserRecord]:
        async with self._state.lock:
            user = self._state.users.get(username.strip().lower())
            return user.model_copy(deep=True) if user else None

    async def create(self, user: UserRecord) -> UserRecord:
        async with self._state.lock:
            if user.key in self._state.users:
                raise DuplicateUsername()
            async with self._state.change(USERS_FILE):
                self._state.users[user.key] = user.model_copy(deep=True)
            return user

    async def update(self, user: UserRecord) -> UserRecord:
        async with self._state.lock:
            if user.key not in self._state.users:
                raise NotFound("User not found")
            async with self._state.change(USERS_FILE):
                self._state.users[user.key] = user.model_copy(deep=True)
            return user

    async def list(self) -> List[UserRecord]:
        async with self._state.lock:
            return [u.model_copy(deep=True) for u in self._state.users.values()]

    async def count(self) -> int:
        async with self._state.lock:
            return len(self._state.users)


class MemoryTokenRepository(TokenRepository):
    def __init__(self, state: _State):
        self._state = state

    async def add(self, record: RefreshTokenRecord) -> None:
        async with self._state.lock:
            async with self._state.change(TOKENS_FILE):
                self._state.tokens[record.token] = record

    async def remove(self, token: str) -> bool:
        async with self._state.lock:
            if token not in self._state.tokens:
                return False
            async with self._state.change(TOKENS_FILE):
                del self._state.tokens[token]
            return True

    async def exists(self, token: str) -> bool:
        async with self._state.lock:
            return token in self._state.tokens

    async def _remove_where(self, doomed: List[str]) -> int:
        if doomed:
            async with self._state.change(TOKENS_FILE):
                for token in doomed:
                    del self._state.tokens[token]
        return len(doomed)

    async def remove_for_user(self, username: str) -> int:
        key = username.strip().lower()
        async with self._state.lock:
            doomed = [t for t, r in self._state.tokens.items() if r.username.lower() == key]
            return await self._remove_where(doomed)

    async def purge_expired(self, now: datetime) -> int:
        async with self._state.lock:
            doomed = [t for t, r in self._state.tokens.items() if r.expires_at <= now]
            return await self._remove_where(doomed)


class MemoryAnalyticsRepository(AnalyticsRepository):
    def __init__(self, state: _State):
        self._state = state

    async def get_counters(self) -> AnalyticsCounters:
        async with self._state.lock:
            return self._state.counters.model_copy()

    async def save_counters(self, counters: AnalyticsCounters) -> None:
        async with self._state.lock:
            async with self._state.change(ANALYTICS_FILE):
                self._state.counters = counters.model_copy()

    async def get_visitor(self, visitor_id: str) -> Optional[VisitorRecord]:
        async with self._state.lock:
            visitor = self._state.visitors.get(visitor_id)
            return visitor.model_copy(deep=True) if visitor else None

    async def save_visitor(self, visitor: VisitorRecord) -> None:
        async with self._state.lock:
            async with self._state.change(VISITORS_FILE):
                self._state.visitors[visitor.id] = visitor.model_copy(deep=True)

    async def list_visitors(self) -> List[VisitorRecord]:
        async with self._state.lock:
            visitors = [v.model_copy(deep=True) for v in self._state.visitors.values()]
        return sorted(visitors, key=lambda v: v.last_activity, reverse=True)

    async def prune_visitors(self, before: datetime) -> int:
        async with self._state.lock:
            doomed = [k for k, v in self._state.visitors.items() if v.last_activity < before]
            if doomed:
                async with self._state.change(VISITORS_FILE):
                    for key in doomed:
                        del self._state.visitors[key]
            return len(doomed)


class MemoryContactRepository(ContactRepository):
    def __init__(self, state: _State):
        self._state = state

    async def add(self, submission: ContactSubmission) -> None:
        async with self._state.lock:
            async with self._state.change(CONTACTS_FILE):
                self._state.contacts.append(submission)

    async def list(self) -> List[ContactSubmission]:
        async with self._state.lock:
            return list(self._state.contacts)


class MemoryCatalogRepository(CatalogRepository):
    def __init__(self, state: _State):
        self._state = state

    async def list(self) -> List[CatalogEntry]:
        async with self._state.lock:
            return list(self._state.services.values())

    async def get(self, entry_id: str) -> Optional[CatalogEntry]:
        async with self._state.lock:
            return self._state.services.get(entry_id)

    async def add(self, entry: CatalogEntry) -> None:
        async with self._state.lock:
            async with self._state.change(SERVICES_FILE):
                self._state.services[entry.id] = entry

    async def remove(self, entry_id: str) -> bool:
        async with self._state.lock:
            if entry_id not in self._state.services:
                return False
            async with self._state.change(SERVICES_FILE):
                del self._state.services[entry_id]
            return True


class MemoryStorage(Storage):
    """Memory backend; pass `data_dir` to get the flat-JSON backend."""

    def __init__(self, data_dir: Optional[str] = None):
        self._state = _State(Path(data_dir) if data_dir else None)
        self.users = MemoryUserRepository(self._state)
        self.tokens = MemoryTokenRepository(self._state)
        self.analytics = MemoryAnalyticsRepository(self._state)
        self.contacts = MemoryContactRepository(self._state)
        self.catalog = MemoryCatalogRepository(self._state)

    async def open(self) -> None:
        async with self._state.lock:
            self._state.load()
