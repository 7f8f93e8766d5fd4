"""
Service wiring.

One AppServices instance is built per application and stored on
`app.state.services`; route dependencies pull it from the request.
"""
from typing import Optional

from fastapi import Request

from lunasphere.auth.jwt import TokenIssuer
from lunasphere.auth.passwords import PasswordHasher
from lunasphere.auth.roles import RoleManager
from lunasphere.auth.sessions import SessionService
from lunasphere.auth.tokens import TokenStore
from lunasphere.auth.users import UserService
from lunasphere.config import Settings
from lunasphere.locks import KeyedLock
from lunasphere.site.analytics import AnalyticsService
from lunasphere.site.catalog import CatalogService
from lunasphere.site.contact import ContactService
from lunasphere.site.mailer import Mailer
from lunasphere.storage.base import Storage


class AppServices:
    """Everything a request handler may need, built from one Settings."""

    def __init__(self, settings: Settings, storage: Storage, mailer: Optional[Mailer] = None):
        self.settings = settings
        self.storage = storage
        self.user_locks = KeyedLock()
        self.hasher = PasswordHasher(settings.bcrypt_rounds)
        self.issuer = TokenIssuer(
            access_secret=settings.jwt_access_secret,
            refresh_secret=settings.jwt_refresh_secret,
            algorithm=settings.jwt_algorithm,
            access_minutes=settings.access_token_expire_minutes,
            refresh_days=settings.refresh_token_expire_days,
        )
        self.token_store = TokenStore(storage.tokens)
        self.users = UserService(storage.users, self.hasher, self.user_locks)
        self.roles = RoleManager(storage.users, self.user_locks)
        self.sessions = SessionService(self.users, self.hasher, self.issuer, self.token_store)
        self.analytics = AnalyticsService(
            storage.analytics,
            storage.users,
            retention_hours=settings.visitor_retention_hours,
            online_window_minutes=settings.online_window_minutes,
        )
        self.mailer = mailer or Mailer.from_settings(settings)
        self.contact = ContactService(
            storage.contacts,
            self.mailer,
            recipient=settings.email_to,
            cooldown_seconds=settings.contact_cooldown_seconds,
            send_auto_reply=settings.send_auto_reply,
        )
        self.catalog = CatalogService(
            storage.catalog,
            upload_dir=settings.upload_dir,
            max_upload_bytes=settings.max_upload_bytes,
        )


def get_services(request: Request) -> AppServices:
    return request.app.state.services
