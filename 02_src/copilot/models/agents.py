"""Agent-related data models: turns, stream events, callbacks, bus messages."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Literal, Union

from .messages import Message


# Turn content blocks


@dataclass
class TextBlock:
    """Plain text content of a turn."""

    text: str


@dataclass
class ImageBlock:
    """Image content of a turn, by URL or inline base64 data."""

    url: str | None = None
    data: str | None = None  # base64 payload without the data: prefix
    media_type: str = "image/png"


ContentBlock = Union[TextBlock, ImageBlock]


@dataclass
class Turn:
    """One entry of the message list sent to the generation capability."""

    role: Literal["user", "assistant"]
    content: list[ContentBlock]

    @classmethod
    def text(cls, role: Literal["user", "assistant"], text: str) -> "Turn":
        return cls(role=role, content=[TextBlock(text=text)])

    @property
    def plain_text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))


# Decoded stream events


@dataclass
class TextDelta:
    """A chunk of streamed output text."""

    text: str


@dataclass
class ToolCallStarted:
    """The model began a tool call."""

    name: str
    call_id: str | None = None


@dataclass
class MessageCompleted:
    """A model message finished; carries its full text."""

    text: str


StreamEvent = Union[TextDelta, ToolCallStarted, MessageCompleted]


# Run context, results and callbacks


@dataclass
class AgentContext:
    """Per-turn scope passed to tools and guardrails."""

    conversation_id: str
    user_id: str | None = None


@dataclass
class GuardrailResult:
    """Outcome of the in-domain check."""

    allowed: bool
    deflection_message: str | None = None
    reasoning: str = ""


@dataclass
class AgentResponse:
    """Finalized agent output for one turn."""

    message_id: str
    content: str
    metadata: dict = field(default_factory=dict)  # model, tools_used, duration_ms

    @property
    def tools_used(self) -> list[str]:
        return list(self.metadata.get("tools_used", []))


@dataclass
class StreamCallbacks:
    """Optional caller hooks invoked while a turn runs."""

    on_thinking: Callable[[], None] | None = None
    on_text_chunk: Callable[[str, str], None] | None = None  # (chunk, full_text)
    on_tool_call: Callable[[str], None] | None = None
    on_complete: Callable[[AgentResponse], None] | None = None
    on_error: Callable[[Exception], None] | None = None
    on_user_message: Callable[[Message], None] | None = None  # chat pipeline only


# Voice session bus


class VoiceTopic(str, Enum):
    """EventBus topics of a voice session."""

    TRANSCRIPT_PARTIAL = "transcript_partial"
    TRANSCRIPT_FINAL = "transcript_final"
    AUDIO = "audio"
    ASSISTANT_TEXT = "assistant_text"


@dataclass
class BusMessage:
    """A message exchanged through a voice session EventBus."""

    id: str
    topic: VoiceTopic
    payload: dict  # varies by topic
    source: str  # component that published
    timestamp: datetime
