"""Image access: conversation images as freshly signed, time-limited URLs."""

import asyncio
from dataclasses import dataclass
from datetime import datetime

from ..logging_config import get_logger
from ..models import Attachment, ImageFile
from ..storage import IObjectStore, IStorage, normalize_key

logger = get_logger(__name__)

DEFAULT_IMAGE_LIMIT = 4
DEFAULT_IMAGE_TTL = 900


@dataclass
class ImageRef:
    """A conversation image resolved to a signed URL."""

    id: str
    url: str
    mime_type: str
    filename: str
    created_at: datetime | None
    message_id: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "url": self.url,
            "mime_type": self.mime_type,
            "filename": self.filename,
            "uploaded_at": self.created_at.isoformat() if self.created_at else None,
        }


def _is_absolute_url(value: str) -> bool:
    return value.startswith(("http://", "https://", "data:"))


class ImageAccess:
    """Resolves conversation images by recency, similarity or explicit id."""

    def __init__(self, storage: IStorage, object_store: IObjectStore):
        self._storage = storage
        self._object_store = object_store

    async def _sign_rows(self, rows: list[ImageFile], ttl: float) -> list[ImageRef]:
        async def sign(row: ImageFile) -> ImageRef | None:
            try:
                url = await self._object_store.sign(row.storage_key, ttl)
            except Exception as e:
                logger.warning(
                    f"Failed to sign image {row.id}: {e}",
                    extra={"context": {"image_id": row.id}},
                )
                return None
            return ImageRef(
                id=row.id,
                url=url,
                mime_type=row.mime_type,
                filename=row.filename,
                created_at=row.created_at,
                message_id=row.message_id,
            )

        signed = await asyncio.gather(*(sign(row) for row in rows))
        return [ref for ref in signed if ref is not None]

    async def _resolve_attachment(
        self, attachment: Attachment, ttl: float
    ) -> str | None:
        key = attachment.storage_key
        if not key and attachment.url and not _is_absolute_url(attachment.url):
            key = normalize_key(attachment.url)
        if not key:
            return attachment.url or None
        return await self._object_store.sign(key, ttl)

    async def _from_attachments(
        self, conversation_id: str, limit: int, ttl: float
    ) -> list[ImageRef]:
        messages = await self._storage.get_recent_image_messages(conversation_id, limit)
        refs: list[ImageRef] = []
        for message in messages:
            for attachment in message.attachments:
                if len(refs) >= limit:
                    return refs
                try:
                    url = await self._resolve_attachment(attachment, ttl)
                except Exception as e:
                    logger.warning(
                        f"Skipping attachment {attachment.id}: {e}",
                        extra={"context": {"message_id": message.id}},
                    )
                    continue
                if not url:
                    continue
                refs.append(
                    ImageRef(
                        id=attachment.id or message.id,
                        url=url,
                        mime_type=attachment.mime_type,
                        filename=attachment.filename,
                        created_at=message.created_at,
                        message_id=message.id,
                    )
                )
        return refs

    async def recent_images(
        self,
        conversation_id: str,
        limit: int = DEFAULT_IMAGE_LIMIT,
        ttl: float = DEFAULT_IMAGE_TTL,
    ) -> list[ImageRef]:
        """Newest images first.

        Falls back to the attachments of recent IMAGE messages when the
        conversation has no ImageFile rows.
        """
        if limit <= 0:
            return []
        rows = await self._storage.get_recent_image_files(conversation_id, limit)
        if rows:
            return await self._sign_rows(rows, ttl)
        return await self._from_attachments(conversation_id, limit, ttl)

    async def images_by_similarity(
        self,
        conversation_id: str,
        query_embedding: list[float] | None,
        limit: int = DEFAULT_IMAGE_LIMIT,
        ttl: float = DEFAULT_IMAGE_TTL,
    ) -> list[ImageRef]:
        """Embedded images closest to the query embedding first."""
        if not query_embedding:
            return []
        rows = await self._storage.find_images_by_embedding(
            conversation_id, query_embedding, limit
        )
        return await self._sign_rows(rows, ttl)

    async def images_by_ids(
        self,
        conversation_id: str,
        image_ids: list[str],
        ttl: float = DEFAULT_IMAGE_TTL,
    ) -> list[ImageRef]:
        """Images explicitly selected by the client, scoped to the conversation."""
        rows = await self._storage.get_image_files_by_ids(conversation_id, image_ids)
        return await self._sign_rows(rows, ttl)
