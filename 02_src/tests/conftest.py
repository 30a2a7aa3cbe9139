"""Pytest configuration and fixtures."""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from copilot.agent import AgentDefinition, RunStream  # noqa: E402
from copilot.exceptions import GuardrailTripped  # noqa: E402
from copilot.models import (  # noqa: E402
    ContentType,
    GuardrailResult,
    Message,
    MessageCompleted,
    SenderType,
    TextDelta,
    ToolCallStarted,
)


@pytest.fixture(autouse=True)
def offline_token_estimate(monkeypatch):
    """Keep tiktoken from downloading encodings during chat turns."""
    monkeypatch.setattr(
        "copilot.dialogue.agent.estimate_tokens",
        lambda turns, model: sum(len(t.plain_text.split()) for t in turns),
    )


@pytest_asyncio.fixture
async def storage():
    """Create in-memory storage for testing."""
    from copilot.storage import Storage

    st = Storage(":memory:")
    await st.init()
    yield st
    await st.close()


@pytest.fixture
def event_bus():
    """Create a voice session EventBus."""
    from copilot.event_bus import EventBus

    return EventBus()


@pytest.fixture
def tracker(storage):
    """Create Tracker with storage."""
    from copilot.tracker import Tracker

    return Tracker(storage)


@pytest.fixture
def mock_llm():
    """Create mock LLM provider."""
    llm = Mock()
    llm.complete = AsyncMock(return_value="Test response")
    return llm


@pytest_asyncio.fixture
async def conversation(storage):
    """An ACTIVE conversation for tech-1 on job 42."""
    conv, _ = await storage.get_or_create_conversation(user_id="tech-1", job_id="42")
    return conv


class FakeObjectStore:
    """In-memory IObjectStore that signs keys into recognisable URLs."""

    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.sign_calls: list[tuple[str, float | None]] = []
        self.failing_keys: set[str] = set()

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        self.objects[key] = (data, content_type)
        return key

    async def sign(self, key: str, ttl: float | None = None) -> str:
        self.sign_calls.append((key, ttl))
        if key in self.failing_keys:
            raise RuntimeError(f"cannot sign {key}")
        return f"https://storage.example.com/bucket/{key}?X-Goog-Signature=sig"

    async def exists(self, key: str) -> bool:
        return key in self.objects


@pytest.fixture
def object_store():
    return FakeObjectStore()


class ScriptedRunner:
    """IGenerationRunner that replays a fixed list of stream events."""

    def __init__(
        self,
        events=None,
        final_output: str | None = None,
        error: Exception | None = None,
        deflection: str | None = None,
    ):
        self.events = list(events or [])
        self.final_output = final_output
        self.error = error
        self.deflection = deflection
        self.calls: list[tuple] = []

    async def run(self, definition, turns, context) -> RunStream:
        self.calls.append((definition, turns, context))
        if self.deflection is not None:
            raise GuardrailTripped(
                GuardrailResult(allowed=False, deflection_message=self.deflection)
            )

        async def produce(stream: RunStream):
            for event in self.events:
                yield event
            if self.error is not None:
                raise self.error
            stream.final_output = self.final_output

        return RunStream(produce)


def text_events(*chunks: str, tools: tuple[str, ...] = ()) -> list:
    """Stream events for a reply made of chunks, with tool calls up front."""
    events = [ToolCallStarted(name=name) for name in tools]
    events.extend(TextDelta(text=chunk) for chunk in chunks)
    events.append(MessageCompleted(text="".join(chunks)))
    return events


@pytest.fixture
def scripted_runner():
    return ScriptedRunner(events=text_events("Check the ", "capacitor."))


@pytest.fixture
def agent_definition():
    return AgentDefinition(
        name="field-copilot",
        instructions="Be helpful.",
        model="claude-test",
        tools=(),
    )


@pytest.fixture
def orchestrator(agent_definition, scripted_runner):
    from copilot.agent import AgentOrchestrator

    vision = AgentDefinition(
        name="field-copilot-vision",
        instructions="Look closely.",
        model="claude-test",
        tools=(),
    )
    return AgentOrchestrator(agent_definition, scripted_runner, vision_definition=vision)


class FakeTransport:
    """IDuplexTransport driven by the test through push()."""

    def __init__(self):
        self.config = None
        self.audio: list[tuple[bytes, bool]] = []
        self.messages: list[str] = []
        self.spoken: list[str] = []
        self.close_count = 0
        self._queue: asyncio.Queue = asyncio.Queue()

    async def connect(self, config) -> None:
        self.config = config

    async def events(self):
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def push(self, event) -> None:
        self._queue.put_nowait(event)

    def end(self) -> None:
        self._queue.put_nowait(None)

    async def send_audio(self, audio: bytes, commit: bool = False) -> None:
        self.audio.append((audio, commit))

    async def send_message(self, text: str) -> None:
        self.messages.append(text)

    async def speak(self, text: str) -> None:
        self.spoken.append(text)

    async def close(self) -> None:
        self.close_count += 1


@pytest.fixture
def fake_transport():
    return FakeTransport()


def make_message(
    conversation_id: str,
    content: str,
    sender_type: SenderType = SenderType.USER,
    sender_id: str | None = "tech-1",
    content_type: ContentType = ContentType.TEXT,
    offset_seconds: int = 0,
    **kwargs,
) -> Message:
    """Build a message with a created_at offset from a fixed base time."""
    base = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    return Message(
        id=kwargs.pop("id", f"msg-{content_type.value}-{offset_seconds}"),
        conversation_id=conversation_id,
        sender_type=sender_type,
        sender_id=sender_id if sender_type == SenderType.USER else None,
        content=content,
        content_type=content_type,
        created_at=base + timedelta(seconds=offset_seconds),
        **kwargs,
    )
