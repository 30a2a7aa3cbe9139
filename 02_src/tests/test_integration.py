"""Integration tests for the copilot end-to-end flow."""

import os
import tempfile
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from conftest import FakeObjectStore, ScriptedRunner, text_events
from copilot.app import Application
from copilot.config import Settings
from copilot.images import UploadedImage


@pytest_asyncio.fixture
async def app(monkeypatch, mock_llm):
    """Create and start a test application on a file database."""
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    app = Application(
        db_path=db_path,
        settings=Settings(agent_model="claude-test"),
        llm_provider=mock_llm,
        object_store=FakeObjectStore(),
    )
    await app.start()
    app._orchestrator._runner = ScriptedRunner(events=text_events("Joint looks ", "cracked."))

    yield app

    await app.stop()
    os.unlink(db_path)


@pytest.mark.asyncio
async def test_upload_then_ask(app: Application):
    """Test upload, vision answer and follow-up on one conversation."""
    conversation, _ = await app.dialogue_agent.open_conversation(
        "tech-1", "42", metadata={"job_snapshot": "Leak under RTU-2"}
    )

    with patch("copilot.images.ingestion.wait_until_readable", new=AsyncMock(return_value=True)):
        upload = await app.image_ingestion.upload_images(
            conversation.id,
            "Is this joint cracked?",
            [UploadedImage(filename="joint.jpg", mime_type="image/jpeg", data=b"jpeg")],
            sender_id="tech-1",
        )

    result = await app.dialogue_agent.handle_message(
        conversation.id, "Is this joint cracked?", sender_id="tech-1"
    )

    assert result.user_message.id == upload.id
    assert len(result.images) == 1
    assert result.ai_message.content == "Joint looks cracked."

    follow_up = await app.dialogue_agent.handle_message(
        conversation.id, "What fitting do I need?", sender_id="tech-1"
    )
    assert follow_up.images == []

    _, turns, _ = app._orchestrator._runner.calls[-1]
    assert [t.plain_text for t in turns] == [
        "Is this joint cracked?",
        "Joint looks cracked.",
        "What fitting do I need?",
    ]

    event_types = {e.event_type for e in await app.storage.get_trace_events(limit=100)}
    assert {"images_uploaded", "turn_started", "turn_completed"} <= event_types


@pytest.mark.asyncio
async def test_reset(app: Application):
    """Test reset functionality."""
    conversation, _ = await app.dialogue_agent.open_conversation("tech-2", "7")
    await app.dialogue_agent.handle_message(conversation.id, "Test before reset", "tech-2")

    events = await app.storage.get_trace_events(limit=10)
    assert len(events) > 0

    await app.reset()

    assert await app.storage.get_trace_events(limit=10) == []
    assert await app.storage.get_conversation(conversation.id) is None
