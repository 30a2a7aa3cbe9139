"""History assembly: bounded, ordered turn lists for the agent."""

import asyncio
from collections.abc import Collection

from ..logging_config import get_logger
from ..models import (
    Conversation,
    Message,
    SenderType,
    TechnicianProfile,
    Turn,
)
from ..storage import IStorage

logger = get_logger(__name__)

DEFAULT_HISTORY_LIMIT = 15


def render_profile(profile: TechnicianProfile) -> str | None:
    """Technician profile as a single context line, or None when empty."""
    parts = []
    if profile.first_name:
        parts.append(f"first name {profile.first_name}")
    if profile.last_name:
        parts.append(f"last name {profile.last_name}")
    if profile.role:
        parts.append(f"role {profile.role}")
    if not parts:
        return None
    return "Technician profile: " + ", ".join(parts) + "."


def _text_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item not in (None, "")]


def render_image_summary(summary: dict, fallback_id: str) -> str | None:
    """Render one stored image summary, omitting absent fields."""
    if not isinstance(summary, dict):
        return None

    image_id = summary.get("id") or fallback_id
    text = summary.get("summary") if isinstance(summary.get("summary"), str) else ""
    parts = [f"Image summary ({image_id}): {text}".rstrip()]

    objects = _text_list(summary.get("objects"))
    if objects:
        parts.append("Objects: " + ", ".join(objects) + ".")
    observations = _text_list(summary.get("observations"))
    if observations:
        parts.append("Observations: " + "; ".join(observations) + ".")
    issue = summary.get("inferred_issue")
    if isinstance(issue, str) and issue.strip():
        parts.append(f"Inferred issue: {issue.strip()}")
    entities = _text_list(summary.get("linked_entities"))
    if entities:
        parts.append("Linked entities: " + ", ".join(entities) + ".")

    if len(parts) == 1 and not text:
        return None
    return " ".join(parts)


def message_turns(message: Message) -> list[Turn]:
    """Turns for one message: its image summaries first, then the message."""
    turns: list[Turn] = []

    summaries = message.metadata.get("image_summaries") if message.metadata else None
    if isinstance(summaries, dict):
        summaries = [summaries]
    if isinstance(summaries, list):
        for summary in summaries:
            rendered = render_image_summary(summary, message.id)
            if rendered:
                turns.append(Turn.text("assistant", rendered))

    content = (message.content or "").strip()
    if not content:
        return turns

    if message.sender_type == SenderType.AI:
        turns.append(Turn.text("assistant", content))
    elif message.sender_type == SenderType.SYSTEM:
        turns.append(Turn.text("user", f"[system] {content}"))
    else:
        turns.append(Turn.text("user", content))
    return turns


class HistoryAssembler:
    """Builds the bounded turn list sent to the agent. Read-only."""

    def __init__(self, storage: IStorage, default_limit: int = DEFAULT_HISTORY_LIMIT):
        self._storage = storage
        self._default_limit = default_limit

    async def _profile_for(self, conversation: Conversation | None) -> TechnicianProfile | None:
        if conversation is None or not conversation.user_id:
            return None
        return await self._storage.get_technician_profile(conversation.user_id)

    async def build_history(
        self,
        conversation_id: str,
        limit: int | None = None,
        exclude_message_ids: Collection[str] = (),
    ) -> list[Turn]:
        """
        Build the history for a conversation.

        Args:
            conversation_id: Conversation to read
            limit: Number of most recent messages (defaults to HISTORY_LIMIT)
            exclude_message_ids: Messages to leave out (e.g. the turn being answered)

        Returns:
            Optional profile turn, then per message (oldest first) its image
            summary turns followed by its own turn.
        """
        limit = self._default_limit if limit is None else limit

        async def load_profile() -> TechnicianProfile | None:
            conversation = await self._storage.get_conversation(conversation_id)
            return await self._profile_for(conversation)

        # Excluded messages do not count against the limit
        profile, messages = await asyncio.gather(
            load_profile(),
            self._storage.get_last_messages(conversation_id, limit + len(exclude_message_ids)),
        )
        messages = [m for m in messages if m.id not in exclude_message_ids]
        if limit > 0:
            messages = messages[-limit:]
        else:
            messages = []

        turns: list[Turn] = []
        if profile:
            rendered = render_profile(profile)
            if rendered:
                turns.append(Turn.text("user", rendered))

        for message in messages:
            turns.extend(message_turns(message))

        logger.debug(
            "History built",
            extra={
                "context": {
                    "conversation_id": conversation_id,
                    "messages": len(messages),
                    "turns": len(turns),
                }
            },
        )
        return turns
