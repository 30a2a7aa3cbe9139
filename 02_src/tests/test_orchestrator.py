"""Tests for AgentOrchestrator."""

import pytest

from conftest import ScriptedRunner, text_events
from copilot.agent import DEFLECTIONS, AgentOrchestrator, InlineImage
from copilot.agent.orchestrator import inline_image_block
from copilot.exceptions import ValidationError
from copilot.models import (
    AgentContext,
    ImageBlock,
    MessageCompleted,
    StreamCallbacks,
    TextBlock,
    Turn,
)

CONTEXT = AgentContext(conversation_id="c1", user_id="tech-1")


class Recorder:
    """StreamCallbacks that record every call in order."""

    def __init__(self):
        self.calls: list[tuple] = []

    def callbacks(self) -> StreamCallbacks:
        return StreamCallbacks(
            on_thinking=lambda: self.calls.append(("thinking",)),
            on_text_chunk=lambda chunk, full: self.calls.append(("chunk", chunk, full)),
            on_tool_call=lambda name: self.calls.append(("tool", name)),
            on_complete=lambda response: self.calls.append(("complete", response.content)),
            on_error=lambda error: self.calls.append(("error", str(error))),
        )


class TestRun:
    """Tests for AgentOrchestrator.run() and run_text()."""

    @pytest.mark.asyncio
    async def test_streams_and_finalizes(self, orchestrator, scripted_runner):
        """Test callback order and the finalized response."""
        recorder = Recorder()
        history = [Turn.text("assistant", "Earlier advice")]

        response = await orchestrator.run_text(
            "  The unit trips after a minute  ", history, CONTEXT, recorder.callbacks()
        )

        assert response.content == "Check the capacitor."
        assert response.metadata["model"] == "claude-test"
        assert response.tools_used == []
        assert response.message_id.startswith("msg-")
        assert recorder.calls == [
            ("thinking",),
            ("chunk", "Check the ", "Check the "),
            ("chunk", "capacitor.", "Check the capacitor."),
            ("complete", "Check the capacitor."),
        ]

        definition, turns, context = scripted_runner.calls[0]
        assert definition.name == "field-copilot"
        assert [t.plain_text for t in turns] == ["Earlier advice", "The unit trips after a minute"]
        assert context is CONTEXT

    @pytest.mark.asyncio
    async def test_tool_names_deduplicated(self, agent_definition):
        """Test that repeated tool calls are listed once, in first-seen order."""
        runner = ScriptedRunner(
            events=text_events("Done.", tools=("web_search", "get_images", "web_search"))
        )
        recorder = Recorder()
        response = await AgentOrchestrator(agent_definition, runner).run_text(
            "look it up", [], CONTEXT, recorder.callbacks()
        )

        assert response.tools_used == ["web_search", "get_images"]
        assert [c for c in recorder.calls if c[0] == "tool"] == [
            ("tool", "web_search"),
            ("tool", "get_images"),
            ("tool", "web_search"),
        ]

    @pytest.mark.asyncio
    async def test_final_output_preferred(self, agent_definition):
        """Test that the run's final output wins over the streamed text."""
        runner = ScriptedRunner(
            events=text_events("Searching... ", "Found it."), final_output="Found it."
        )
        response = await AgentOrchestrator(agent_definition, runner).run_text("q", [], CONTEXT)
        assert response.content == "Found it."

    @pytest.mark.asyncio
    async def test_completed_message_without_deltas(self, agent_definition):
        """Test that a completed message is used when nothing was streamed."""
        runner = ScriptedRunner(events=[MessageCompleted(text="Whole answer")])
        response = await AgentOrchestrator(agent_definition, runner).run_text("q", [], CONTEXT)
        assert response.content == "Whole answer"

    @pytest.mark.asyncio
    async def test_guardrail_deflection(self, agent_definition):
        """Test that a tripped guardrail becomes the whole response."""
        runner = ScriptedRunner(
            events=text_events("never", tools=("web_search",)), deflection=DEFLECTIONS[1]
        )
        recorder = Recorder()

        response = await AgentOrchestrator(agent_definition, runner).run_text(
            "What's the weather tomorrow?", [], CONTEXT, recorder.callbacks()
        )

        assert response.content in DEFLECTIONS
        assert response.tools_used == []
        assert response.metadata["guardrail_tripped"] is True
        assert recorder.calls == [("thinking",), ("complete", DEFLECTIONS[1])]

    @pytest.mark.asyncio
    async def test_failure_reported_and_raised(self, agent_definition):
        """Test that a run failure calls on_error and propagates."""
        runner = ScriptedRunner(events=text_events("partial"), error=RuntimeError("stream reset"))
        recorder = Recorder()

        with pytest.raises(RuntimeError, match="stream reset"):
            await AgentOrchestrator(agent_definition, runner).run_text(
                "q", [], CONTEXT, recorder.callbacks()
            )

        assert recorder.calls[-1] == ("error", "stream reset")
        assert ("complete", "partial") not in recorder.calls

    @pytest.mark.parametrize("text", ["", "   "])
    @pytest.mark.asyncio
    async def test_empty_text_rejected(self, orchestrator, scripted_runner, text):
        """Test that empty input never reaches the runner."""
        with pytest.raises(ValidationError):
            await orchestrator.run_text(text, [], CONTEXT)
        assert scripted_runner.calls == []

    @pytest.mark.asyncio
    async def test_last_turn_must_have_text(self, orchestrator):
        """Test that run() rejects a turn list ending without text."""
        with pytest.raises(ValidationError):
            await orchestrator.run([Turn(role="user", content=[ImageBlock(url="https://x")])], CONTEXT)
        with pytest.raises(ValidationError):
            await orchestrator.run([], CONTEXT)


class TestVision:
    """Tests for vision turns."""

    @pytest.mark.asyncio
    async def test_inline_images_use_vision_definition(self, orchestrator, scripted_runner):
        """Test that inline images are attached to the user turn."""
        await orchestrator.run_with_inline_images(
            "What breaker is this?",
            [
                InlineImage(data="data:image/jpeg;base64,QUJD"),
                InlineImage(data="REVG", mime_type="image/webp"),
            ],
            CONTEXT,
        )

        definition, turns, _ = scripted_runner.calls[0]
        assert definition.name == "field-copilot-vision"
        assert len(turns) == 1
        content = turns[0].content
        assert content[0] == TextBlock(text="What breaker is this?")
        assert content[1] == ImageBlock(data="QUJD", media_type="image/jpeg")
        assert content[2] == ImageBlock(data="REVG", media_type="image/webp")

    @pytest.mark.asyncio
    async def test_vision_by_url(self, orchestrator, scripted_runner):
        """Test that URL images are listed in the prompt and attached."""
        urls = ["https://storage.example.com/a.jpg", "https://storage.example.com/b.jpg"]
        await orchestrator.run_vision("Which one is corroded?", urls, CONTEXT)

        _, turns, _ = scripted_runner.calls[0]
        assert len(turns) == 1
        prompt = turns[0].plain_text
        assert prompt.startswith("Which one is corroded?")
        assert "1. https://storage.example.com/a.jpg" in prompt
        assert "2. https://storage.example.com/b.jpg" in prompt
        assert [b.url for b in turns[0].content if isinstance(b, ImageBlock)] == urls

    @pytest.mark.asyncio
    async def test_vision_history_only_when_passed(self, orchestrator, scripted_runner):
        """Test that prior history is included only on request."""
        history = [Turn.text("user", "earlier")]
        await orchestrator.run_vision("q", ["https://x"], CONTEXT, history=history)
        _, turns, _ = scripted_runner.calls[0]
        assert turns[0].plain_text == "earlier"
        assert len(turns) == 2

    def test_inline_block_defaults_mime(self):
        """Test the default mime type for raw base64."""
        assert inline_image_block(InlineImage(data=" QUJD ")) == ImageBlock(
            data="QUJD", media_type="image/png"
        )
