"""Tests for the HTTP API."""

import asyncio
import base64
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from conftest import FakeTransport, ScriptedRunner, text_events
from copilot.agent import AgentOrchestrator, RunStream
from copilot.api import create_fastapi_app
from copilot.api.routes.chat import ChatRequest, detached_turns, sse_event, stream_turn
from copilot.app import Application
from copilot.config import Settings
from copilot.dialogue import DialogueAgent, HistoryAssembler
from copilot.images import ImageAccess
from copilot.models import SenderType

PNG = base64.b64encode(b"\x89PNG\r\n\x1a\nfake").decode("ascii")


@pytest.fixture
def application(monkeypatch, mock_llm, object_store):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    return Application(
        db_path=":memory:",
        settings=Settings(agent_model="claude-test"),
        llm_provider=mock_llm,
        object_store=object_store,
    )


@pytest.fixture
def runner():
    return ScriptedRunner(events=text_events("Check the ", "capacitor.", tools=("web_search",)))


@pytest.fixture
def client(application, runner):
    with patch(
        "copilot.images.ingestion.wait_until_readable", new=AsyncMock(return_value=False)
    ):
        with TestClient(create_fastapi_app(application)) as test_client:
            application._orchestrator._runner = runner
            application._voice_sessions._transport_factory = FakeTransport
            yield test_client


@pytest.fixture
def conversation_id(client):
    response = client.post("/api/conversations", json={"job_id": "42", "user_id": "tech-1"})
    return response.json()["conversation"]["id"]


class SlowRunner(ScriptedRunner):
    """Runner that pauses between deltas like a model streaming over the network."""

    def __init__(self):
        super().__init__(events=text_events("Check the ", "capacitor."))

    async def run(self, definition, turns, context) -> RunStream:
        self.calls.append((definition, turns, context))

        async def produce(stream: RunStream):
            for event in self.events:
                await asyncio.sleep(0.05)
                yield event

        return RunStream(produce)


def read_sse(response) -> list[dict]:
    events = []
    for block in response.text.split("\n\n"):
        for line in block.splitlines():
            if line.startswith("data: "):
                events.append(json.loads(line[len("data: ") :]))
    return events


class TestConversationRoutes:
    """Tests for /api/conversations."""

    def test_open_is_idempotent(self, client):
        """Test get-or-create of the ACTIVE conversation."""
        first = client.post("/api/conversations", json={"job_id": "42", "user_id": "tech-1"})
        second = client.post("/api/conversations", json={"job_id": "42", "user_id": "tech-1"})

        assert first.status_code == 200
        assert first.json()["created"] is True
        assert second.json()["created"] is False
        assert second.json()["conversation"]["id"] == first.json()["conversation"]["id"]
        assert first.json()["conversation"]["status"] == "ACTIVE"

    def test_unknown_conversation(self, client):
        """Test the 404 error body."""
        response = client.get("/api/conversations/missing")
        assert response.status_code == 404
        assert response.json() == {"error": "Conversation not found"}

    def test_close_twice_conflicts(self, client, conversation_id):
        """Test that closing a closed conversation is a 409."""
        assert client.post(f"/api/conversations/{conversation_id}/close").json()["status"] == "CLOSED"
        assert client.post(f"/api/conversations/{conversation_id}/close").status_code == 409

    def test_messages_and_tool_calls(self, client, conversation_id):
        """Test message listing and tool calls of the AI reply."""
        client.post(
            f"/api/chat/{conversation_id}/send", json={"text": "Unit won't start", "sender_id": "tech-1"}
        )

        messages = client.get(f"/api/conversations/{conversation_id}/messages").json()
        assert [m["sender_type"] for m in messages] == ["USER", "AI"]

        ai_id = messages[1]["id"]
        tool_calls = client.get(
            f"/api/conversations/{conversation_id}/messages/{ai_id}/tool-calls"
        ).json()
        assert [t["tool_name"] for t in tool_calls] == ["web_search"]
        assert tool_calls[0]["status"] == "COMPLETED"

    def test_invalid_before(self, client, conversation_id):
        """Test that a malformed timestamp is a 400."""
        response = client.get(
            f"/api/conversations/{conversation_id}/messages", params={"before": "yesterday"}
        )
        assert response.status_code == 400


class TestImageRoutes:
    """Tests for image upload and listing."""

    def test_upload_and_list(self, client, conversation_id, object_store):
        """Test that an upload stores an IMAGE message and is listed."""
        response = client.post(
            f"/api/conversations/{conversation_id}/images",
            json={
                "question": "Is this joint cracked?",
                "images": [
                    {"filename": "joint.png", "mime_type": "image/png", "data": f"data:image/png;base64,{PNG}"}
                ],
                "sender_id": "tech-1",
                "company_id": "acme",
            },
        )

        assert response.status_code == 200
        message = response.json()
        assert message["content_type"] == "IMAGE"
        assert len(object_store.objects) == 1

        images = client.get(f"/api/conversations/{conversation_id}/images").json()
        assert len(images) == 1
        assert images[0]["filename"] == "joint.png"
        assert images[0]["url"].startswith("https://storage.example.com/bucket/companies/acme/")

    @pytest.mark.parametrize(
        "image",
        [
            {"filename": "notes.pdf", "mime_type": "application/pdf", "data": PNG},
            {"filename": "bad.png", "mime_type": "image/png", "data": "%%%not-base64"},
        ],
    )
    def test_rejected_uploads(self, client, conversation_id, image):
        """Test that non-images and bad base64 are 400s."""
        response = client.post(
            f"/api/conversations/{conversation_id}/images",
            json={"question": "q", "images": [image]},
        )
        assert response.status_code == 400
        assert "error" in response.json()

    def test_too_many_images(self, client, conversation_id):
        """Test the per-upload image limit."""
        image = {"filename": "a.png", "mime_type": "image/png", "data": PNG}
        response = client.post(
            f"/api/conversations/{conversation_id}/images",
            json={"question": "q", "images": [image] * 5},
        )
        assert response.status_code == 400


class TestChatRoutes:
    """Tests for /api/chat."""

    def test_send(self, client, conversation_id):
        """Test a blocking chat turn."""
        response = client.post(
            f"/api/chat/{conversation_id}/send",
            json={"text": "Unit won't start", "sender_id": "tech-1"},
        )

        body = response.json()
        assert response.status_code == 200
        assert body["user_message"]["content"] == "Unit won't start"
        assert body["ai_message"]["content"] == "Check the capacitor."
        assert body["response"]["tools_used"] == ["web_search"]
        assert body["images"] == []

    def test_send_empty_text(self, client, conversation_id):
        """Test that empty text is a 400."""
        response = client.post(f"/api/chat/{conversation_id}/send", json={"text": " "})
        assert response.status_code == 400

    def test_stream(self, client, conversation_id):
        """Test the server-sent event sequence of a turn."""
        response = client.post(
            f"/api/chat/{conversation_id}/stream",
            json={"text": "Unit won't start", "sender_id": "tech-1"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = read_sse(response)
        assert [e["type"] for e in events] == [
            "user_message",
            "thinking",
            "tool_call",
            "chunk",
            "chunk",
            "done",
        ]
        assert events[0]["data"]["content"] == "Unit won't start"
        assert events[2]["tool"] == "web_search"
        assert events[-1]["data"]["content"] == "Check the capacitor."

    def test_stream_failure_event(self, client, conversation_id, application):
        """Test that a failed turn ends with a generic error event."""
        application._orchestrator._runner = ScriptedRunner(error=RuntimeError("secret internals"))

        events = read_sse(
            client.post(
                f"/api/chat/{conversation_id}/stream",
                json={"text": "hello", "sender_id": "tech-1"},
            )
        )

        assert events[-1] == {"type": "error", "error": "Stream failed"}
        assert "secret internals" not in json.dumps(events)

    def test_stream_rejects_before_streaming(self, client, conversation_id):
        """Test that bad input is answered with a plain error response."""
        assert client.post(f"/api/chat/{conversation_id}/stream", json={"text": ""}).status_code == 400
        assert client.post("/api/chat/missing/stream", json={"text": "hi"}).status_code == 404

    @pytest.mark.asyncio
    async def test_disconnect_keeps_turn_running(
        self, storage, tracker, object_store, conversation, agent_definition
    ):
        """Test that a client leaving the stream does not lose the reply."""
        orchestrator = AgentOrchestrator(agent_definition, SlowRunner())
        agent = DialogueAgent(
            storage,
            orchestrator,
            HistoryAssembler(storage),
            ImageAccess(storage, object_store),
            tracker,
        )
        await agent.start()

        events = stream_turn(
            SimpleNamespace(dialogue_agent=agent),
            conversation.id,
            ChatRequest(text="Unit hums, no cooling", sender_id="tech-1"),
        )
        first = json.loads((await events.__anext__())[len("data: ") :])
        await events.aclose()

        assert first["type"] == "user_message"
        assert len(detached_turns) == 1
        await asyncio.gather(*list(detached_turns))

        messages = await storage.list_messages(conversation.id)
        assert [(m.sender_type, m.content) for m in messages] == [
            (SenderType.USER, "Unit hums, no cooling"),
            (SenderType.AI, "Check the capacitor."),
        ]
        assert "turn_completed" in [
            e.event_type for e in await storage.get_trace_events(actor="dialogue_agent")
        ]
        await asyncio.sleep(0)
        assert not detached_turns

    def test_sse_event_format(self):
        """Test the event framing."""
        assert sse_event({"type": "thinking"}) == 'data: {"type": "thinking"}\n\n'


class TestVoiceRoutes:
    """Tests for /api/voice."""

    def test_session_lifecycle(self, client, conversation_id, application):
        """Test start, text, audio and stop of a voice session."""
        started = client.post(
            "/api/voice/session/start",
            json={"conversation_id": conversation_id, "user_id": "tech-1", "turn_detection": "server"},
        )
        assert started.status_code == 200
        session_id = started.json()["session_id"]
        session = application.voice_sessions.get(session_id)
        assert session.bridge._transport.config.turn_detection["type"] == "server_vad"

        audio = base64.b64encode(b"\x00\x01").decode("ascii")
        assert client.post(
            "/api/voice/audio", json={"session_id": session_id, "audio_base64": audio, "commit": True}
        ).json() == {"ok": True}
        assert session.bridge._transport.audio == [(b"\x00\x01", True)]

        assert client.post(
            "/api/voice/text", json={"session_id": session_id, "text": "no heat upstairs"}
        ).json() == {"ok": True}

        assert client.post("/api/voice/session/stop", json={"session_id": session_id}).status_code == 200
        assert client.post("/api/voice/session/stop", json={"session_id": session_id}).status_code == 404

    def test_start_unknown_conversation(self, client):
        """Test that a voice session needs an existing conversation."""
        response = client.post(
            "/api/voice/session/start", json={"conversation_id": "missing", "user_id": "tech-1"}
        )
        assert response.status_code == 404

    def test_bad_audio(self, client):
        """Test that invalid base64 audio is a 400."""
        response = client.post(
            "/api/voice/audio", json={"session_id": "s", "audio_base64": "%%%"}
        )
        assert response.status_code == 400

    def test_expire(self, client):
        """Test the idle expiry endpoint."""
        assert client.post("/api/voice/sessions/expire", json={}).json() == {"expired": []}


class TestObservabilityRoutes:
    """Tests for trace events and health."""

    def test_trace_events(self, client, conversation_id):
        """Test filtering trace events by type."""
        client.post(
            f"/api/chat/{conversation_id}/send", json={"text": "hello", "sender_id": "tech-1"}
        )

        events = client.get("/api/trace-events", params={"event_type": "turn_completed"}).json()
        assert len(events) == 1
        assert events[0]["actor"] == "dialogue_agent"

    def test_invalid_after(self, client):
        """Test that a malformed timestamp is a 400."""
        assert client.get("/api/trace-events", params={"after": "soon"}).status_code == 400

    def test_health(self, client):
        """Test the health endpoint."""
        assert client.get("/api/health").json() == {"status": "ok", "voice_sessions": 0}
