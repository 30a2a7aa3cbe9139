"""Core data models for the field copilot."""

from .agents import (
    AgentContext,
    AgentResponse,
    BusMessage,
    ContentBlock,
    GuardrailResult,
    ImageBlock,
    MessageCompleted,
    StreamCallbacks,
    StreamEvent,
    TextBlock,
    TextDelta,
    ToolCallStarted,
    Turn,
    VoiceTopic,
)
from .conversation import (
    ContextType,
    Conversation,
    ConversationContext,
    ConversationStatus,
    TechnicianProfile,
)
from .messages import (
    Attachment,
    ContentType,
    ImageFile,
    Message,
    MessageStatus,
    SenderType,
    ToolCall,
    ToolCallStatus,
)
from .summary import StructuredSummary, normalize_summary
from .tracing import TraceEvent

__all__ = [
    # Conversations
    "Conversation",
    "ConversationStatus",
    "ConversationContext",
    "ContextType",
    "TechnicianProfile",
    # Messages
    "Message",
    "Attachment",
    "SenderType",
    "ContentType",
    "MessageStatus",
    "ToolCall",
    "ToolCallStatus",
    "ImageFile",
    # Summaries
    "StructuredSummary",
    "normalize_summary",
    # Agents
    "Turn",
    "TextBlock",
    "ImageBlock",
    "ContentBlock",
    "TextDelta",
    "ToolCallStarted",
    "MessageCompleted",
    "StreamEvent",
    "AgentContext",
    "AgentResponse",
    "GuardrailResult",
    "StreamCallbacks",
    "BusMessage",
    "VoiceTopic",
    # Tracing
    "TraceEvent",
]
