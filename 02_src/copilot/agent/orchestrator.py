"""Agent orchestrator: runs one turn, streams it to the caller, finalizes the response."""

import time
from dataclasses import dataclass

from ..exceptions import GuardrailTripped, ValidationError
from ..logging_config import get_logger
from ..models import (
    AgentContext,
    AgentResponse,
    GuardrailResult,
    ImageBlock,
    MessageCompleted,
    StreamCallbacks,
    TextBlock,
    TextDelta,
    ToolCallStarted,
    Turn,
)
from ..prompts import vision_prompt
from .definition import AgentDefinition
from .guardrail import GENERIC_DEFLECTION
from .runner import IGenerationRunner

logger = get_logger(__name__)

DEFAULT_IMAGE_MIME = "image/png"


@dataclass
class InlineImage:
    """Inline image input: a data URL, or raw base64 plus a mime type."""

    data: str
    mime_type: str | None = None


def inline_image_block(image: InlineImage) -> ImageBlock:
    """Build an image block from a data URL or raw base64 payload."""
    data = image.data.strip()
    if data.startswith("data:"):
        header, _, payload = data.partition(",")
        media_type = header[len("data:") :].split(";", 1)[0] or DEFAULT_IMAGE_MIME
        return ImageBlock(data=payload, media_type=media_type)
    return ImageBlock(data=data, media_type=image.mime_type or DEFAULT_IMAGE_MIME)


def dedupe_preserving_order(names: list[str]) -> list[str]:
    return list(dict.fromkeys(names))


def _now_ms() -> int:
    return int(time.time() * 1000)


def _require_text(text: str) -> str:
    if not text or not text.strip():
        raise ValidationError("Empty message")
    return text.strip()


def _call(callback, *args) -> None:
    if callback is not None:
        callback(*args)


class AgentOrchestrator:
    """Runs a turn against the generation capability.

    Holds the process-wide agent definitions; every call uses a fresh text
    buffer and tool list.
    """

    def __init__(
        self,
        definition: AgentDefinition,
        runner: IGenerationRunner,
        vision_definition: AgentDefinition | None = None,
    ):
        self._definition = definition
        self._vision_definition = vision_definition or definition
        self._runner = runner

    @property
    def definition(self) -> AgentDefinition:
        return self._definition

    # Input construction

    async def run_text(
        self,
        text: str,
        history: list[Turn],
        context: AgentContext,
        callbacks: StreamCallbacks | None = None,
    ) -> AgentResponse:
        """Plain turn: history followed by the new user text."""
        text = _require_text(text)
        turns = [*history, Turn.text("user", text)]
        return await self.run(turns, context, callbacks)

    async def run_with_inline_images(
        self,
        text: str,
        images: list[InlineImage],
        context: AgentContext,
        callbacks: StreamCallbacks | None = None,
        history: list[Turn] | None = None,
    ) -> AgentResponse:
        """Vision turn carrying the images inline."""
        text = _require_text(text)
        turn = Turn(
            role="user",
            content=[TextBlock(text=text), *(inline_image_block(i) for i in images)],
        )
        turns = [*(history or []), turn]
        return await self.run(turns, context, callbacks, self._vision_definition)

    async def run_vision(
        self,
        question: str,
        image_urls: list[str],
        context: AgentContext,
        callbacks: StreamCallbacks | None = None,
        history: list[Turn] | None = None,
    ) -> AgentResponse:
        """Vision turn referencing images by URL.

        Prior history is only included when the caller passes it.
        """
        question = _require_text(question)
        turn = Turn(
            role="user",
            content=[
                TextBlock(text=vision_prompt(question, image_urls)),
                *(ImageBlock(url=url) for url in image_urls),
            ],
        )
        turns = [*(history or []), turn]
        return await self.run(turns, context, callbacks, self._vision_definition)

    # Run

    async def run(
        self,
        turns: list[Turn],
        context: AgentContext,
        callbacks: StreamCallbacks | None = None,
        definition: AgentDefinition | None = None,
    ) -> AgentResponse:
        """
        Run one turn and return the finalized response.

        Text deltas are forwarded to on_text_chunk as (chunk, full_text);
        tool names are reported as they start and deduplicated at the end.
        A tripped guardrail returns its deflection as the whole response.
        Any other failure calls on_error and is re-raised.
        """
        definition = definition or self._definition
        callbacks = callbacks or StreamCallbacks()
        if not turns or not turns[-1].plain_text.strip():
            raise ValidationError("Empty message")

        started = time.monotonic()
        full_text = ""
        tools_used: list[str] = []

        _call(callbacks.on_thinking)
        try:
            stream = await self._runner.run(definition, turns, context)
            async for event in stream:
                if isinstance(event, TextDelta):
                    full_text += event.text
                    _call(callbacks.on_text_chunk, event.text, full_text)
                elif isinstance(event, ToolCallStarted):
                    tools_used.append(event.name)
                    _call(callbacks.on_tool_call, event.name)
                elif isinstance(event, MessageCompleted):
                    if event.text and not full_text:
                        full_text = event.text
            await stream.completed()
        except GuardrailTripped as tripped:
            return self._deflection_response(tripped, definition, started, callbacks)
        except Exception as e:
            logger.error(
                f"Agent run failed: {e}",
                extra={"context": {"conversation_id": context.conversation_id}},
                exc_info=True,
            )
            _call(callbacks.on_error, e)
            raise

        content = stream.final_output if stream.final_output else full_text
        response = AgentResponse(
            message_id=f"msg-{_now_ms()}",
            content=content,
            metadata={
                "model": definition.model,
                "tools_used": dedupe_preserving_order(tools_used),
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        _call(callbacks.on_complete, response)
        return response

    @staticmethod
    def _deflection_response(
        tripped: GuardrailTripped,
        definition: AgentDefinition,
        started: float,
        callbacks: StreamCallbacks,
    ) -> AgentResponse:
        output = tripped.output
        message = (
            output.deflection_message
            if isinstance(output, GuardrailResult) and output.deflection_message
            else GENERIC_DEFLECTION
        )
        response = AgentResponse(
            message_id=f"guardrail-{_now_ms()}",
            content=message,
            metadata={
                "model": definition.model,
                "tools_used": [],
                "duration_ms": int((time.monotonic() - started) * 1000),
                "guardrail_tripped": True,
            },
        )
        _call(callbacks.on_complete, response)
        return response
