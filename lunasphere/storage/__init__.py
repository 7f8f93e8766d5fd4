"""
Storage backends for LunaSphere.

The backend is chosen by configuration:
- memory: process-local collections
- json: one JSON document per collection under DATA_DIR
- sql: SQLAlchemy async tables at DATABASE_URL
"""
from lunasphere.config import Settings
from lunasphere.storage.base import Storage


def create_storage(settings: Settings) -> Storage:
    """Build the storage backend named by `settings.storage_backend`."""
    if settings.storage_backend == "sql":
        from lunasphere.storage.sql import SQLStorage
        return SQLStorage(settings.database_url)

    from lunasphere.storage.memory import MemoryStorage
    if settings.storage_backend == "json":
        return MemoryStorage(settings.data_dir)
    return MemoryStorage()


__all__ = ["Storage", "create_storage"]
