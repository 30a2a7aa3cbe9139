"""Chat routes: blocking send and SSE streaming."""

import asyncio
import json
from collections.abc import AsyncIterator

from fastapi import APIRouter
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from ...agent import InlineImage
from ...app import Application
from ...exceptions import ConversationNotFoundError, ValidationError
from ...logging_config import get_logger
from ...models import StreamCallbacks
from ..serializers import chat_result_to_dict, message_to_dict

logger = get_logger(__name__)

HEARTBEAT_SECONDS = 25.0

# Turns whose stream client disconnected; held so they are not garbage collected
detached_turns: set[asyncio.Task] = set()

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class InlineImagePayload(BaseModel):
    data: str  # data URL or raw base64
    mime_type: str | None = None


class ChatRequest(BaseModel):
    """A chat turn. Without sender_id the text is stored as an AI message."""

    text: str
    sender_id: str | None = None
    images: list[InlineImagePayload] = Field(default_factory=list)
    selected_image_ids: list[str] = Field(default_factory=list)

    def inline_images(self) -> list[InlineImage]:
        return [InlineImage(data=i.data, mime_type=i.mime_type) for i in self.images]

    def image_ids(self) -> list[str]:
        return [i.strip() for i in self.selected_image_ids if i and i.strip()]


def sse_event(payload: dict) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


def create_chat_router(app: Application) -> APIRouter:
    """Create chat router."""
    router = APIRouter(prefix="/api/chat", tags=["chat"])

    @router.post("/{conversation_id}/send")
    async def send_message(conversation_id: str, request: ChatRequest) -> dict:
        """Run one chat turn and return both stored messages."""
        result = await app.dialogue_agent.handle_message(
            conversation_id,
            request.text,
            sender_id=request.sender_id,
            inline_images=request.inline_images(),
            selected_image_ids=request.image_ids(),
        )
        return chat_result_to_dict(result)

    @router.post("/{conversation_id}/stream")
    async def stream_message(conversation_id: str, request: ChatRequest) -> StreamingResponse:
        """
        Run one chat turn as server-sent events.

        Events: user_message, thinking, chunk, tool_call, then done with the
        stored AI message, or error. A comment line is sent every 25 seconds
        to keep idle connections open.
        """
        # Reject bad input before the stream starts so it maps to 400/404
        if not request.text or not request.text.strip():
            raise ValidationError("text must not be empty")
        if await app.storage.get_conversation(conversation_id) is None:
            raise ConversationNotFoundError(conversation_id)

        return StreamingResponse(
            stream_turn(app, conversation_id, request),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    return router


async def stream_turn(
    app: Application, conversation_id: str, request: ChatRequest
) -> AsyncIterator[str]:
    queue: asyncio.Queue[dict | None] = asyncio.Queue()
    callbacks = StreamCallbacks(
        on_user_message=lambda m: queue.put_nowait(
            {"type": "user_message", "data": message_to_dict(m)}
        ),
        on_thinking=lambda: queue.put_nowait({"type": "thinking"}),
        on_text_chunk=lambda chunk, _full: queue.put_nowait(
            {"type": "chunk", "content": chunk}
        ),
        on_tool_call=lambda name: queue.put_nowait({"type": "tool_call", "tool": name}),
    )

    async def run_turn() -> None:
        try:
            result = await app.dialogue_agent.handle_message(
                conversation_id,
                request.text,
                sender_id=request.sender_id,
                inline_images=request.inline_images(),
                selected_image_ids=request.image_ids(),
                callbacks=callbacks,
            )
            done = result.ai_message or result.user_message
            queue.put_nowait({"type": "done", "data": message_to_dict(done)})
            logger.info(
                "Chat stream completed",
                extra={"context": {"conversation_id": conversation_id, "message_id": done.id}},
            )
        except Exception as e:
            logger.error(
                f"Chat stream error: {e}",
                extra={"context": {"conversation_id": conversation_id}},
            )
            queue.put_nowait({"type": "error", "error": "Stream failed"})
        finally:
            queue.put_nowait(None)

    task = asyncio.create_task(run_turn())
    try:
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                yield ":\n\n"
                continue
            if event is None:
                break
            yield sse_event(event)
    finally:
        # Client went away mid-turn: the turn still finishes and is stored
        if not task.done():
            detached_turns.add(task)
            task.add_done_callback(detached_turns.discard)
            logger.info(
                "Chat stream closed before turn finished",
                extra={"context": {"conversation_id": conversation_id}},
            )
