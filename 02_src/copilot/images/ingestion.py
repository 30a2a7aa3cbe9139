"""Image upload flow: object storage, IMAGE message, image rows, enrichment."""

import asyncio
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePath

from ..exceptions import ConversationNotFoundError, ValidationError
from ..llm import IEmbeddingProvider
from ..logging_config import get_logger
from ..models import (
    Attachment,
    ContentType,
    ImageFile,
    Message,
    SenderType,
    StructuredSummary,
)
from ..storage import IObjectStore, IStorage, ProbeConfig, wait_until_readable
from ..tracker import ITracker
from .summarizer import ImageSummarizer

logger = get_logger(__name__)

UNKNOWN_COMPANY = "unknown-company"

# Signed URLs handed to the summarizer must outlive the readiness probe
ENRICHMENT_URL_TTL = 900


@dataclass
class UploadedImage:
    """Raw bytes of one uploaded image."""

    filename: str
    mime_type: str
    data: bytes


def safe_basename(filename: str) -> tuple[str, str]:
    """Split a filename into a key-safe base and its extension."""
    path = PurePath(filename or "")
    ext = path.suffix if path.suffix and path.stem else ""
    base = path.stem if ext else path.name
    base = re.sub(r"[^a-zA-Z0-9_-]", "-", base)
    base = re.sub(r"-+", "-", base).strip("-")
    return base or "image", ext


def build_storage_key(
    company_id: str | None,
    conversation_id: str,
    message_id: str,
    filename: str,
    timestamp_ms: int | None = None,
) -> str:
    """Durable object key for an uploaded image."""
    base, ext = safe_basename(filename)
    ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    company = company_id or UNKNOWN_COMPANY
    return (
        f"companies/{company}/conversations/{conversation_id}"
        f"/messages/{message_id}/{ts}-{base}{ext}"
    )


class ImageIngestion:
    """Stores uploaded images and enriches them with summaries and embeddings."""

    def __init__(
        self,
        storage: IStorage,
        object_store: IObjectStore,
        summarizer: ImageSummarizer,
        embeddings: IEmbeddingProvider,
        tracker: ITracker | None = None,
        probe_config: ProbeConfig | None = None,
    ):
        self._storage = storage
        self._object_store = object_store
        self._summarizer = summarizer
        self._embeddings = embeddings
        self._tracker = tracker
        self._probe_config = probe_config

    async def upload_images(
        self,
        conversation_id: str,
        question: str,
        files: list[UploadedImage],
        sender_id: str | None = None,
        company_id: str | None = None,
        enrich: bool = True,
    ) -> Message:
        """
        Upload images and record them as one IMAGE message.

        Bytes go to object storage under durable keys; the message's
        attachments carry those keys in metadata.storage_key and ImageFile
        rows are written after the message. Enrichment failures never fail
        the upload.

        Raises:
            ValidationError: no files or empty question
            ConversationNotFoundError: unknown conversation
        """
        if not files:
            raise ValidationError("No images were uploaded")
        if not question or not question.strip():
            raise ValidationError("question must not be empty")

        conversation = await self._storage.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)

        message_id = str(uuid.uuid4())
        started = time.monotonic()

        async def store(file: UploadedImage) -> tuple[Attachment, ImageFile]:
            key = build_storage_key(company_id, conversation_id, message_id, file.filename)
            key = await self._object_store.put(key, file.data, file.mime_type)
            url = await self._object_store.sign(key)
            attachment = Attachment(
                id=str(uuid.uuid4()),
                url=url,
                mime_type=file.mime_type,
                filename=file.filename,
                size=len(file.data),
                metadata={"storage_key": key},
            )
            image_file = ImageFile(
                id=str(uuid.uuid4()),
                conversation_id=conversation_id,
                message_id=message_id,
                storage_key=key,
                mime_type=file.mime_type,
                filename=file.filename,
                size=len(file.data),
                created_at=datetime.now(timezone.utc),
            )
            return attachment, image_file

        uploads = await asyncio.gather(*(store(f) for f in files))
        attachments = [a for a, _ in uploads]
        image_files = [i for _, i in uploads]

        message = await self._storage.create_with_conversation_update(
            Message(
                id=message_id,
                conversation_id=conversation_id,
                sender_type=SenderType.USER,
                sender_id=sender_id,
                content=question.strip(),
                content_type=ContentType.IMAGE,
                attachments=attachments,
                metadata={"upload_count": len(files)},
                created_at=datetime.now(timezone.utc),
            )
        )
        await self._storage.save_image_files(image_files)

        logger.info(
            "Images uploaded",
            extra={
                "context": {
                    "conversation_id": conversation_id,
                    "message_id": message_id,
                    "count": len(files),
                    "duration_ms": int((time.monotonic() - started) * 1000),
                }
            },
        )
        if self._tracker:
            await self._tracker.track(
                "images_uploaded",
                "image_ingestion",
                {
                    "conversation_id": conversation_id,
                    "message_id": message_id,
                    "image_ids": [i.id for i in image_files],
                },
            )

        if enrich:
            summaries = await self.enrich(message, image_files)
            if summaries:
                message.metadata["image_summaries"] = summaries

        return message

    async def enrich(
        self, message: Message, image_files: list[ImageFile]
    ) -> list[dict]:
        """Summarize and embed uploaded images. Best effort; never raises.

        Returns the summaries written to the message metadata.
        """
        results = await asyncio.gather(
            *(self._enrich_one(image) for image in image_files),
            return_exceptions=True,
        )

        summaries: list[dict] = []
        for image, result in zip(image_files, results):
            if isinstance(result, Exception):
                logger.warning(
                    f"Image enrichment failed: {result}",
                    extra={"context": {"image_id": image.id}},
                )
                continue
            if result is not None:
                summaries.append({"id": image.id, **result.to_dict()})

        if summaries:
            try:
                await self._storage.update_message_metadata(
                    message.id, {"image_summaries": summaries}
                )
            except Exception as e:
                logger.warning(
                    f"Failed to store image summaries: {e}",
                    extra={"context": {"message_id": message.id}},
                )
                return []
        return summaries

    async def _enrich_one(self, image: ImageFile) -> StructuredSummary | None:
        url = await self._object_store.sign(image.storage_key, ENRICHMENT_URL_TTL)
        if not await wait_until_readable(url, self._probe_config):
            return None

        summary = await self._summarizer.summarize(url)
        if summary is None:
            return None

        try:
            embedding = await self._embeddings.embed_text(summary.summary)
            if embedding:
                await self._storage.update_image_embedding(image.id, embedding)
        except Exception as e:
            logger.warning(
                f"Image embedding failed: {e}",
                extra={"context": {"image_id": image.id}},
            )
        return summary
