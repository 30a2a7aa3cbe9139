"""Conversation, message history and image upload routes."""

import base64
import binascii
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from ...app import Application
from ...exceptions import ConversationNotFoundError, ValidationError
from ...images import UploadedImage
from ...logging_config import get_logger
from ..serializers import conversation_to_dict, message_to_dict, tool_call_to_dict

logger = get_logger(__name__)

MAX_UPLOAD_IMAGES = 4


class ConversationRequest(BaseModel):
    """Get-or-create request for a (user, job) conversation."""

    job_id: str
    user_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ImagePayload(BaseModel):
    filename: str = "image"
    mime_type: str = "image/jpeg"
    data: str  # base64


class ImageUploadRequest(BaseModel):
    question: str
    images: list[ImagePayload]
    sender_id: str | None = None
    company_id: str | None = None


def decode_images(payloads: list[ImagePayload]) -> list[UploadedImage]:
    """Decode base64 upload payloads, rejecting anything that is not an image."""
    if not payloads:
        raise ValidationError("No images were uploaded")
    if len(payloads) > MAX_UPLOAD_IMAGES:
        raise ValidationError(f"At most {MAX_UPLOAD_IMAGES} images per upload")

    images = []
    for payload in payloads:
        if not payload.mime_type.startswith("image/"):
            raise ValidationError(f"Unsupported file type: {payload.mime_type}")
        data = payload.data
        if data.startswith("data:"):
            data = data.partition(",")[2]
        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError(f"Invalid base64 data for {payload.filename}")
        if not raw:
            raise ValidationError(f"Empty image: {payload.filename}")
        images.append(
            UploadedImage(filename=payload.filename, mime_type=payload.mime_type, data=raw)
        )
    return images


def create_conversations_router(app: Application) -> APIRouter:
    """Create conversations router."""
    router = APIRouter(prefix="/api/conversations", tags=["conversations"])

    async def require_conversation(conversation_id: str):
        conversation = await app.storage.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    @router.post("")
    async def open_conversation(request: ConversationRequest) -> dict:
        """Get the ACTIVE conversation for a user and job, creating it if needed."""
        conversation, created = await app.dialogue_agent.open_conversation(
            user_id=request.user_id, job_id=request.job_id, metadata=request.metadata
        )
        return {"conversation": conversation_to_dict(conversation), "created": created}

    @router.get("/{conversation_id}")
    async def get_conversation(conversation_id: str) -> dict:
        return conversation_to_dict(await require_conversation(conversation_id))

    @router.post("/{conversation_id}/close")
    async def close_conversation(conversation_id: str) -> dict:
        conversation = await app.dialogue_agent.close_conversation(conversation_id)
        return conversation_to_dict(conversation)

    @router.get("/{conversation_id}/messages")
    async def list_messages(
        conversation_id: str,
        limit: int = Query(50, ge=1, le=200),
        before: str | None = Query(None, description="ISO timestamp filter"),
    ) -> list[dict]:
        """Messages oldest first."""
        await require_conversation(conversation_id)
        before_dt = None
        if before:
            try:
                before_dt = datetime.fromisoformat(before)
            except ValueError:
                raise ValidationError("Invalid before timestamp format")
        messages = await app.storage.list_messages(
            conversation_id, limit=limit, before=before_dt
        )
        return [message_to_dict(m) for m in messages]

    @router.get("/{conversation_id}/messages/{message_id}/tool-calls")
    async def list_tool_calls(conversation_id: str, message_id: str) -> list[dict]:
        await require_conversation(conversation_id)
        tool_calls = await app.storage.get_tool_calls(message_id)
        return [tool_call_to_dict(t) for t in tool_calls]

    @router.post("/{conversation_id}/images")
    async def upload_images(conversation_id: str, request: ImageUploadRequest) -> dict:
        """Store up to four images with the question asked about them."""
        files = decode_images(request.images)
        message = await app.image_ingestion.upload_images(
            conversation_id,
            request.question,
            files,
            sender_id=request.sender_id,
            company_id=request.company_id,
        )
        return message_to_dict(message)

    @router.get("/{conversation_id}/images")
    async def recent_images(
        conversation_id: str, limit: int = Query(4, ge=1, le=20)
    ) -> list[dict]:
        """Freshly signed URLs of the conversation's latest images."""
        await require_conversation(conversation_id)
        images = await app.image_access.recent_images(conversation_id, limit=limit)
        return [image.to_dict() for image in images]

    return router
