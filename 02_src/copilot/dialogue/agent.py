"""DialogueAgent implementation: the request-level chat pipeline."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from ..agent import AgentOrchestrator, InlineImage
from ..exceptions import ConversationNotFoundError, PersistenceError, ValidationError
from ..images import ImageAccess, ImageRef
from ..llm import estimate_tokens
from ..logging_config import get_logger
from ..models import (
    AgentContext,
    AgentResponse,
    ContentType,
    ContextType,
    Conversation,
    ConversationStatus,
    Message,
    SenderType,
    StreamCallbacks,
    Turn,
)
from ..storage import IStorage
from ..tracker import ITracker
from .history import HistoryAssembler

logger = get_logger(__name__)

ACTOR = "dialogue_agent"
TOOL_CALL_NOTE = {"note": "recorded from agent run metadata"}


@dataclass
class ChatResult:
    """Outcome of one chat turn."""

    user_message: Message
    ai_message: Message | None = None
    response: AgentResponse | None = None
    images: list[ImageRef] = field(default_factory=list)


class IDialogueAgent(Protocol):
    """Managing conversations and chat turns."""

    async def open_conversation(
        self, user_id: str | None, job_id: str, metadata: dict | None = None
    ) -> tuple[Conversation, bool]:
        """Get or create the ACTIVE conversation for a (user, job) pair."""
        ...

    async def handle_message(
        self,
        conversation_id: str,
        text: str,
        sender_id: str | None = None,
        inline_images: list[InlineImage] | None = None,
        selected_image_ids: list[str] | None = None,
        callbacks: StreamCallbacks | None = None,
    ) -> ChatResult:
        """Persist the user turn, run the agent, persist the AI reply."""
        ...

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...


class DialogueAgent:
    """Runs chat turns: user message in, AI message and tool calls out."""

    def __init__(
        self,
        storage: IStorage,
        orchestrator: AgentOrchestrator,
        history: HistoryAssembler,
        image_access: ImageAccess,
        tracker: ITracker,
        history_limit: int = 15,
        vision_image_limit: int = 1,
    ):
        self._storage = storage
        self._orchestrator = orchestrator
        self._history = history
        self._image_access = image_access
        self._tracker = tracker
        self._history_limit = history_limit
        self._vision_image_limit = vision_image_limit
        self._running = False

    async def start(self) -> None:
        logger.info("Starting DialogueAgent")
        self._running = True

    async def stop(self) -> None:
        logger.info("Stopping DialogueAgent")
        self._running = False

    # Conversations

    async def open_conversation(
        self, user_id: str | None, job_id: str, metadata: dict | None = None
    ) -> tuple[Conversation, bool]:
        """Get or create the ACTIVE conversation for a (user, job) pair.

        A job snapshot in the metadata is also stored as JOB_SNAPSHOT context
        when the conversation is created.
        """
        if job_id is None or not str(job_id).strip():
            raise ValidationError("job_id is required")

        conversation, created = await self._storage.get_or_create_conversation(
            user_id=user_id, job_id=str(job_id), metadata=metadata
        )
        snapshot = (metadata or {}).get("job_snapshot")
        if created and snapshot:
            await self._storage.upsert_context_by_type(
                conversation.id,
                ContextType.JOB_SNAPSHOT,
                content=str(snapshot),
                metadata={"source": "conversation_start"},
            )
        return conversation, created

    async def close_conversation(self, conversation_id: str) -> Conversation:
        return await self._storage.update_conversation_status(
            conversation_id, ConversationStatus.CLOSED
        )

    # Chat

    async def handle_message(
        self,
        conversation_id: str,
        text: str,
        sender_id: str | None = None,
        inline_images: list[InlineImage] | None = None,
        selected_image_ids: list[str] | None = None,
        callbacks: StreamCallbacks | None = None,
    ) -> ChatResult:
        """
        Run one chat turn.

        Messages without a sender id are stored as AI messages and not
        answered. Otherwise the user message is stored (or an identical
        just-uploaded IMAGE message is reused), the agent runs in plain or
        vision mode, and the reply plus its tool calls are written.

        Raises:
            ValidationError: empty text
            ConversationNotFoundError: unknown conversation
            PersistenceError: the reply was generated but could not be stored
        """
        if not self._running:
            raise RuntimeError("DialogueAgent not started")
        if not text or not text.strip():
            raise ValidationError("text must not be empty")
        text = text.strip()
        callbacks = callbacks or StreamCallbacks()

        conversation = await self._storage.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)

        if not sender_id:
            ai_message = await self._storage.create_with_conversation_update(
                self._new_message(conversation_id, SenderType.AI, text)
            )
            return ChatResult(user_message=ai_message)

        user_message, reused = await self._store_user_message(
            conversation_id, sender_id, text
        )
        if callbacks.on_user_message:
            callbacks.on_user_message(user_message)

        await self._tracker.track(
            event_type="turn_started",
            actor=ACTOR,
            data={
                "conversation_id": conversation_id,
                "message_id": user_message.id,
                "reused_image_message": reused,
                "text": text[:200],
            },
        )

        context = AgentContext(conversation_id=conversation_id, user_id=sender_id)
        images: list[ImageRef] = []
        try:
            if inline_images:
                prompt_turns = [Turn.text("user", text)]
                response = await self._orchestrator.run_with_inline_images(
                    text, inline_images, context, callbacks
                )
            else:
                images = await self._vision_images(
                    conversation_id, selected_image_ids, reused
                )
                if images:
                    prompt_turns = [Turn.text("user", text)]
                    response = await self._orchestrator.run_vision(
                        text, [image.url for image in images], context, callbacks
                    )
                else:
                    history = await self._history.build_history(
                        conversation_id,
                        self._history_limit,
                        exclude_message_ids={user_message.id},
                    )
                    prompt_turns = [*history, Turn.text("user", text)]
                    response = await self._orchestrator.run_text(
                        text, history, context, callbacks
                    )
        except Exception as e:
            await self._tracker.track(
                event_type="turn_failed",
                actor=ACTOR,
                data={"conversation_id": conversation_id, "error": str(e)},
            )
            raise

        if response.metadata.get("guardrail_tripped"):
            await self._tracker.track(
                event_type="guardrail_deflected",
                actor=ACTOR,
                data={"conversation_id": conversation_id, "message_id": user_message.id},
            )

        ai_message = await self._store_ai_message(
            conversation_id,
            response,
            metadata={
                **response.metadata,
                "agent_message_id": response.message_id,
                "inline_image_count": len(inline_images or []),
                "image_file_ids": [image.id for image in images],
                "prompt_tokens_estimate": estimate_tokens(
                    prompt_turns, response.metadata.get("model", "")
                ),
            },
        )
        await self._record_tool_calls(ai_message, response.tools_used)

        await self._tracker.track(
            event_type="turn_completed",
            actor=ACTOR,
            data={
                "conversation_id": conversation_id,
                "message_id": ai_message.id,
                "tools_used": response.tools_used,
                "duration_ms": response.metadata.get("duration_ms"),
            },
        )
        return ChatResult(
            user_message=user_message,
            ai_message=ai_message,
            response=response,
            images=images,
        )

    @staticmethod
    def _new_message(
        conversation_id: str,
        sender_type: SenderType,
        content: str,
        sender_id: str | None = None,
        metadata: dict | None = None,
    ) -> Message:
        return Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender_type=sender_type,
            sender_id=sender_id,
            content=content,
            content_type=ContentType.TEXT,
            metadata=dict(metadata or {}),
            created_at=datetime.now(timezone.utc),
        )

    async def _store_user_message(
        self, conversation_id: str, sender_id: str, text: str
    ) -> tuple[Message, bool]:
        """Store the user turn, reusing an identical IMAGE message from the upload."""
        last_image = await self._storage.find_last_user_image_message(conversation_id)
        if (
            last_image is not None
            and last_image.content.strip() == text
            and (last_image.sender_id is None or last_image.sender_id == sender_id)
        ):
            return last_image, True

        message = await self._storage.create_with_conversation_update(
            self._new_message(conversation_id, SenderType.USER, text, sender_id)
        )
        return message, False

    async def _vision_images(
        self,
        conversation_id: str,
        selected_image_ids: list[str] | None,
        answering_upload: bool,
    ) -> list[ImageRef]:
        """Images for a vision turn: the client's selection, else the latest
        upload when this turn answers the question sent with it."""
        if selected_image_ids:
            return await self._image_access.images_by_ids(
                conversation_id, selected_image_ids
            )
        if not answering_upload:
            return []
        return await self._image_access.recent_images(
            conversation_id, limit=self._vision_image_limit
        )

    async def _store_ai_message(
        self, conversation_id: str, response: AgentResponse, metadata: dict
    ) -> Message:
        try:
            return await self._storage.create_with_conversation_update(
                self._new_message(
                    conversation_id, SenderType.AI, response.content, metadata=metadata
                )
            )
        except Exception as e:
            logger.error(
                "AI response generated but not persisted",
                extra={
                    "context": {
                        "conversation_id": conversation_id,
                        "response": response.content,
                        "error": str(e),
                    }
                },
            )
            try:
                await self._tracker.track(
                    event_type="persistence_failed",
                    actor=ACTOR,
                    data={
                        "conversation_id": conversation_id,
                        "response": response.content,
                        "error": str(e),
                    },
                )
            except Exception as track_error:
                logger.warning(f"Failed to record persistence failure: {track_error}")
            raise PersistenceError(
                f"Failed to persist AI response for conversation {conversation_id}"
            ) from e

    async def _record_tool_calls(self, message: Message, tool_names: list[str]) -> None:
        for name in tool_names:
            try:
                tool_call = await self._storage.record_tool_call(message.id, name, {})
                await self._storage.mark_tool_call_running(tool_call.id)
                await self._storage.complete_tool_call(tool_call.id, TOOL_CALL_NOTE)
            except Exception as e:
                logger.warning(
                    f"Failed to record tool call {name}: {e}",
                    extra={"context": {"message_id": message.id}},
                )
                continue
            await self._tracker.track(
                event_type="tool_called",
                actor=ACTOR,
                data={"message_id": message.id, "tool_name": name},
            )
