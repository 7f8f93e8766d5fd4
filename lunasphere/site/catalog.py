"""
Services catalog shown on the marketing site.

Admins add entries with an optional image; images are stored under the
upload directory and served from /uploads.
"""
import uuid
from pathlib import Path
from typing import List, Optional

from fastapi import UploadFile
from pydantic.alias_generators import to_camel
from starlette.concurrency import run_in_threadpool

from lunasphere.base_service import BaseService, utcnow
from lunasphere.errors import NotFound, ValidationError
from lunasphere.storage.base import CatalogRepository
from lunasphere.storage.models import CatalogEntry

IMAGE_TYPES = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}
TITLE_MAX_LEN = 100
DESCRIPTION_MAX_LEN = 2000


class CatalogService(BaseService):
    def __init__(self, repository: CatalogRepository, upload_dir: str = "uploads",
                 max_upload_bytes: int = 5 * 1024 * 1024):
        super().__init__("catalog")
        self._catalog = repository
        self.upload_dir = Path(upload_dir)
        self.max_upload_bytes = max_upload_bytes

    async def list(self) -> List[CatalogEntry]:
        entries = await self._catalog.list()
        return sorted(entries, key=lambda e: e.created_at)

    async def _store_image(self, entry_id: str, image: UploadFile) -> str:
        content_type = (image.content_type or "").split(";")[0].strip().lower()
        if content_type not in IMAGE_TYPES:
            raise ValidationError("File type not allowed", details={"contentType": content_type})

        contents = await image.read(self.max_upload_bytes + 1)
        if len(contents) > self.max_upload_bytes:
            raise ValidationError(
                "File size exceeds limit", details={"maxBytes": self.max_upload_bytes}
            )
        if not contents:
            raise ValidationError("Uploaded image is empty")

        filename = entry_id + IMAGE_TYPES[content_type]
        await run_in_threadpool(self._write, self.upload_dir / filename, contents)
        return f"/uploads/{filename}"

    def _write(self, path: Path, contents: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(contents)

    async def add(
        self,
        title: Optional[str],
        description: Optional[str],
        actor: str,
        category: Optional[str] = None,
        price: Optional[str] = None,
        image: Optional[UploadFile] = None,
    ) -> CatalogEntry:
        """
        Create a catalog entry.

        Raises:
            ValidationError: Missing title/description, or a bad image
        """
        title = (title or "").strip()
        description = (description or "").strip()
        if not title or not description:
            raise ValidationError("Title and description are required")
        if len(title) > TITLE_MAX_LEN:
            raise ValidationError(f"Title must be at most {TITLE_MAX_LEN} characters")
        if len(description) > DESCRIPTION_MAX_LEN:
            raise ValidationError(f"Description must be at most {DESCRIPTION_MAX_LEN} characters")

        entry_id = uuid.uuid4().hex
        image_url = None
        if image is not None and image.filename:
            image_url = await self._store_image(entry_id, image)

        entry = CatalogEntry(
            id=entry_id,
            title=title,
            description=description,
            category=(category or "").strip() or "general",
            price=(price or "").strip() or None,
            image_url=image_url,
            created_at=utcnow(),
            created_by=actor,
        )
        await self._catalog.add(entry)
        self.log_event("catalog.added", {"id": entry.id, "title": entry.title, "by": actor})
        return entry

    async def remove(self, entry_id: str, actor: str) -> None:
        entry = await self._catalog.get(entry_id)
        if entry is None or not await self._catalog.remove(entry_id):
            raise NotFound("Service not found")
        if entry.image_url:
            path = self.upload_dir / Path(entry.image_url).name
            await run_in_threadpool(path.unlink, missing_ok=True)
        self.log_event("catalog.removed", {"id": entry_id, "by": actor})


def entry_out(entry: CatalogEntry) -> dict:
    return {to_camel(k): v for k, v in entry.model_dump(mode="json").items()}
