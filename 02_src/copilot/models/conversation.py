"""Conversation-related data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ConversationStatus(str, Enum):
    """Lifecycle status of a conversation."""

    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"
    ARCHIVED = "ARCHIVED"


class ContextType(str, Enum):
    """Kinds of per-conversation context entries."""

    SUMMARY = "SUMMARY"
    MEMORY = "MEMORY"
    EMBEDDING = "EMBEDDING"
    JOB_SNAPSHOT = "JOB_SNAPSHOT"
    SYSTEM_PROMPT = "SYSTEM_PROMPT"


@dataclass
class Conversation:
    """A conversation thread between a technician and the copilot."""

    id: str
    job_id: str
    created_at: datetime
    updated_at: datetime
    user_id: str | None = None  # None for shared threads
    channel_type: str = "MESSAGING"
    status: ConversationStatus = ConversationStatus.ACTIVE
    members: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)  # device, location, job snapshot


@dataclass
class ConversationContext:
    """A typed context entry attached to a conversation."""

    id: str
    conversation_id: str
    context_type: ContextType
    content: str
    created_at: datetime
    embedding: list[float] | None = None
    token_count: int = 0
    metadata: dict = field(default_factory=dict)
    expires_at: datetime | None = None


@dataclass
class TechnicianProfile:
    """Profile facts about the technician owning a conversation."""

    user_id: str
    first_name: str = ""
    last_name: str = ""
    role: str = ""
