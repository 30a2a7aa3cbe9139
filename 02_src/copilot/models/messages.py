"""Message-related data models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SenderType(str, Enum):
    """Who authored a message."""

    USER = "USER"
    AI = "AI"
    SYSTEM = "SYSTEM"


class ContentType(str, Enum):
    """Kind of payload carried by a message."""

    TEXT = "TEXT"
    IMAGE = "IMAGE"
    AUDIO = "AUDIO"
    VIDEO = "VIDEO"
    FILE = "FILE"
    TOOL_CALL = "TOOL_CALL"
    TOOL_RESULT = "TOOL_RESULT"
    ERROR = "ERROR"


class MessageStatus(str, Enum):
    """Delivery status of a message."""

    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"
    EDITED = "EDITED"
    DELETED = "DELETED"


class ToolCallStatus(str, Enum):
    """Lifecycle status of a tool invocation."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class Attachment:
    """An attachment to a message (image, file, audio)."""

    id: str
    url: str
    mime_type: str
    filename: str = ""
    size: int = 0
    metadata: dict = field(default_factory=dict)  # storage_key for uploads

    @property
    def storage_key(self) -> str | None:
        return self.metadata.get("storage_key")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "url": self.url,
            "mime_type": self.mime_type,
            "filename": self.filename,
            "size": self.size,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Attachment":
        return cls(
            id=data.get("id", ""),
            url=data.get("url", ""),
            mime_type=data.get("mime_type") or data.get("type") or "",
            filename=data.get("filename", ""),
            size=int(data.get("size") or 0),
            metadata=data.get("metadata") or {},
        )


@dataclass
class Message:
    """A single message in a conversation."""

    id: str
    conversation_id: str
    sender_type: SenderType
    content: str
    created_at: datetime
    sender_id: str | None = None  # None for AI and system messages
    content_type: ContentType = ContentType.TEXT
    attachments: list[Attachment] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    status: MessageStatus = MessageStatus.SENT
    updated_at: datetime | None = None


@dataclass
class ToolCall:
    """A recorded tool invocation tied to an AI message."""

    id: str
    message_id: str
    tool_name: str
    tool_input: dict
    started_at: datetime
    status: ToolCallStatus = ToolCallStatus.PENDING
    tool_output: dict | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ToolCallStatus.COMPLETED, ToolCallStatus.FAILED)


@dataclass
class ImageFile:
    """An uploaded image, identified by its durable storage key."""

    id: str
    conversation_id: str
    storage_key: str
    mime_type: str
    created_at: datetime
    message_id: str | None = None  # weak back-reference, no cascade
    filename: str = ""
    size: int = 0
    embedding: list[float] | None = None
