"""
SQLAlchemy (async) storage backend.

Works against any async driver SQLAlchemy supports; production uses
postgresql+asyncpg, tests use sqlite+aiosqlite.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from lunasphere.errors import DuplicateUsername, NotFound, StorageError
from lunasphere.storage.base import (
    AnalyticsRepository,
    CatalogRepository,
    ContactRepository,
    Storage,
    TokenRepository,
    UserRepository,
)
from lunasphere.storage.models import (
    AnalyticsCounters,
    CatalogEntry,
    ContactSubmission,
    RefreshTokenRecord,
    UserRecord,
    VisitorRecord,
)

Base = declarative_base()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, nullable=False)
    username_key = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    roles = Column(JSON, nullable=False)
    account_status = Column(String, nullable=False, default="active")
    registered_at = Column(DateTime(timezone=True), nullable=False)
    last_login = Column(DateTime(timezone=True), nullable=True)
    visit_count = Column(Integer, nullable=False, default=0)
    assigned_by = Column(String, nullable=False)
    role_assigned_at = Column(DateTime(timezone=True), nullable=False)
    created_from = Column(String, nullable=False, default="unknown")

    def to_record(self) -> UserRecord:
        return UserRecord(
            username=self.username,
            password_hash=self.password_hash,
            roles=list(self.roles),
            account_status=self.account_status,
            registered_at=_aware(self.registered_at),
            last_login=_aware(self.last_login),
            visit_count=self.visit_count,
            assigned_by=self.assigned_by,
            role_assigned_at=_aware(self.role_assigned_at),
            created_from=self.created_from,
        )

    def apply(self, user: UserRecord) -> None:
        self.username = user.username
        self.username_key = user.key
        self.password_hash = user.password_hash
        self.roles = list(user.roles)
        self.account_status = user.account_status
        self.registered_at = user.registered_at
        self.last_login = user.last_login
        self.visit_count = user.visit_count
        self.assigned_by = user.assigned_by
        self.role_assigned_at = user.role_assigned_at
        self.created_from = user.created_from


class RefreshTokenRow(Base):
    __tablename__ = "refresh_tokens"

    token = Column(Text, primary_key=True)
    username_key = Column(String, index=True, nullable=False)
    username = Column(String, nullable=False)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), index=True, nullable=False)


class AnalyticsRow(Base):
    __tablename__ = "analytics"

    id = Column(Integer, primary_key=True)
    total_visitors = Column(Integer, nullable=False, default=0)
    page_views = Column(Integer, nullable=False, default=0)
    registered_users = Column(Integer, nullable=False, default=0)
    online_now = Column(Integer, nullable=False, default=0)


class VisitorRow(Base):
    __tablename__ = "visitors"

    id = Column(String, primary_key=True)
    ip = Column(String, nullable=False)
    user_agent = Column(String, nullable=False)
    location = Column(String, nullable=False, default="Unknown")
    first_seen = Column(DateTime(timezone=True), nullable=False)
    last_activity = Column(DateTime(timezone=True), index=True, nullable=False)
    pages = Column(JSON, nullable=False)


class ContactRow(Base):
    __tablename__ = "contact_submissions"

    submission_id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    service = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    client_ip = Column(String, nullable=False)
    submitted_at = Column(DateTime(timezone=True), index=True, nullable=False)
    delivered = Column(Integer, nullable=False, default=0)


class CatalogRow(Base):
    __tablename__ = "catalog_services"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String, nullable=False)
    price = Column(String, nullable=True)
    image_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    created_by = Column(String, nullable=False)


class _SQLRepository:
    def __init__(self, session_factory):
        self._sessions = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Open a session; driver and SQL failures surface as StorageError."""
        try:
            async with self._sessions() as session:
                yield session
        except SQLAlchemyError as e:
            raise StorageError(f"Database operation failed: {e.__class__.__name__}") from e


class SQLUserRepository(_SQLRepository, UserRepository):
    async def get(self, username: str) -> Optional[UserRecord]:
        async with self._session() as session:
            result = await session.execute(
                select(UserRow).where(UserRow.username_key == username.strip().lower())
            )
            row = result.scalar_one_or_none()
            return row.to_record() if row else None

    async def create(self, user: UserRecord) -> UserRecord:
        async with self._session() as session:
            try:
                async with session.begin():
                    existing = await session.execute(
                        select(UserRow.id).where(UserRow.username_key == user.key)
                    )
                    if existing.first() is not None:
                        raise DuplicateUsername()
                    row = UserRow()
                    row.apply(user)
                    session.add(row)
            except IntegrityError:
                raise DuplicateUsername()
        return user

    async def update(self, user: UserRecord) -> UserRecord:
        async with self._session() as session:
            async with session.begin():
                result = await session.execute(
                    select(UserRow).where(UserRow.username_key == user.key)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    raise NotFound("User not found")
                row.apply(user)
        return user

    async def list(self) -> List[UserRecord]:
        async with self._session() as session:
            result = await session.execute(select(UserRow).order_by(UserRow.id))
            return [row.to_record() for row in result.scalars().all()]

    async def count(self) -> int:
        async with self._session() as session:
            result = await session.execute(select(func.count(UserRow.id)))
            return int(result.scalar_one())


class SQLTokenRepository(_SQLRepository, TokenRepository):
    async def add(self, record: RefreshTokenRecord) -> None:
        async with self._session() as session:
            async with session.begin():
                await session.merge(RefreshTokenRow(
                    token=record.token,
                    username=record.username,
                    username_key=record.username.lower(),
                    issued_at=record.issued_at,
                    expires_at=record.expires_at,
                ))

    async def remove(self, token: str) -> bool:
        async with self._session() as session:
            async with session.begin():
                result = await session.execute(
                    delete(RefreshTokenRow).where(RefreshTokenRow.token == token)
                )
                return result.rowcount > 0

    async def exists(self, token: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                select(RefreshTokenRow.token).where(RefreshTokenRow.token == token)
            )
            return result.first() is not None

    async def remove_for_user(self, username: str) -> int:
        async with self._session() as session:
            async with session.begin():
                result = await session.execute(
                    delete(RefreshTokenRow).where(RefreshTokenRow.username_key == username.strip().lower())
                )
                return result.rowcount

    async def purge_expired(self, now: datetime) -> int:
        async with self._session() as session:
            async with session.begin():
                result = await session.execute(
                    delete(RefreshTokenRow).where(RefreshTokenRow.expires_at <= now)
                )
                return result.rowcount


class SQLAnalyticsRepository(_SQLRepository, AnalyticsRepository):
    async def get_counters(self) -> AnalyticsCounters:
        async with self._session() as session:
            row = await session.get(AnalyticsRow, 1)
            if row is None:
                return AnalyticsCounters()
            return AnalyticsCounters(
                total_visitors=row.total_visitors,
                page_views=row.page_views,
                registered_users=row.registered_users,
                online_now=row.online_now,
            )

    async def save_counters(self, counters: AnalyticsCounters) -> None:
        async with self._session() as session:
            async with session.begin():
                await session.merge(AnalyticsRow(id=1, **counters.model_dump()))

    async def get_visitor(self, visitor_id: str) -> Optional[VisitorRecord]:
        async with self._session() as session:
            row = await session.get(VisitorRow, visitor_id)
            return self._to_record(row) if row else None

    async def save_visitor(self, visitor: VisitorRecord) -> None:
        async with self._session() as session:
            async with session.begin():
                await session.merge(VisitorRow(**visitor.model_dump()))

    async def list_visitors(self) -> List[VisitorRecord]:
        async with self._session() as session:
            result = await session.execute(
                select(VisitorRow).order_by(VisitorRow.last_activity.desc())
            )
            return [self._to_record(row) for row in result.scalars().all()]

    async def prune_visitors(self, before: datetime) -> int:
        async with self._session() as session:
            async with session.begin():
                result = await session.execute(
                    delete(VisitorRow).where(VisitorRow.last_activity < before)
                )
                return result.rowcount

    @staticmethod
    def _to_record(row: VisitorRow) -> VisitorRecord:
        return VisitorRecord(
            id=row.id,
            ip=row.ip,
            user_agent=row.user_agent,
            location=row.location,
            first_seen=_aware(row.first_seen),
            last_activity=_aware(row.last_activity),
            pages=list(row.pages or []),
        )


class SQLContactRepository(_SQLRepository, ContactRepository):
    async def add(self, submission: ContactSubmission) -> None:
        values = submission.model_dump()
        values["delivered"] = int(submission.delivered)
        async with self._session() as session:
            async with session.begin():
                session.add(ContactRow(**values))

    async def list(self) -> List[ContactSubmission]:
        async with self._session() as session:
            result = await session.execute(select(ContactRow).order_by(ContactRow.submitted_at))
            return [
                ContactSubmission(
                    submission_id=row.submission_id,
                    name=row.name,
                    email=row.email,
                    phone=row.phone,
                    service=row.service,
                    message=row.message,
                    client_ip=row.client_ip,
                    submitted_at=_aware(row.submitted_at),
                    delivered=bool(row.delivered),
                )
                for row in result.scalars().all()
            ]


class SQLCatalogRepository(_SQLRepository, CatalogRepository):
    async def list(self) -> List[CatalogEntry]:
        async with self._session() as session:
            result = await session.execute(select(CatalogRow).order_by(CatalogRow.created_at))
            return [self._to_entry(row) for row in result.scalars().all()]

    async def get(self, entry_id: str) -> Optional[CatalogEntry]:
        async with self._session() as session:
            row = await session.get(CatalogRow, entry_id)
            return self._to_entry(row) if row else None

    async def add(self, entry: CatalogEntry) -> None:
        async with self._session() as session:
            async with session.begin():
                session.add(CatalogRow(**entry.model_dump()))

    async def remove(self, entry_id: str) -> bool:
        async with self._session() as session:
            async with session.begin():
                result = await session.execute(delete(CatalogRow).where(CatalogRow.id == entry_id))
                return result.rowcount > 0

    @staticmethod
    def _to_entry(row: CatalogRow) -> CatalogEntry:
        return CatalogEntry(
            id=row.id,
            title=row.title,
            description=row.description,
            category=row.category,
            price=row.price,
            image_url=row.image_url,
            created_at=_aware(row.created_at),
            created_by=row.created_by,
        )


class SQLStorage(Storage):
    def __init__(self, database_url: str, echo: bool = False):
        self.engine = create_async_engine(database_url, echo=echo, future=True)
        self._sessions = sessionmaker(self.engine, expire_on_commit=False, class_=AsyncSession)
        self.users = SQLUserRepository(self._sessions)
        self.tokens = SQLTokenRepository(self._sessions)
        self.analytics = SQLAnalyticsRepository(self._sessions)
        self.contacts = SQLContactRepository(self._sessions)
        self.catalog = SQLCatalogRepository(self._sessions)

    async def open(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not initialise database: {e}")

    async def close(self) -> None:
        await self.engine.dispose()
