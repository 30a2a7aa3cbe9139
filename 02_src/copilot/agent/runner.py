"""Generation runner: executes an AgentDefinition against the Claude streaming API."""

from collections.abc import AsyncIterator
from typing import Any, Callable, Protocol

from ..exceptions import GuardrailTripped
from ..llm import ILLMProvider
from ..logging_config import get_logger
from ..models import (
    AgentContext,
    ImageBlock,
    MessageCompleted,
    StreamEvent,
    TextBlock,
    TextDelta,
    ToolCallStarted,
    Turn,
)
from .definition import AgentDefinition
from .tools import HostedTool, serialize_output, tool_spec

logger = get_logger(__name__)

HISTORY_PREAMBLE = "Conversation so far:"


def _block_param(block) -> dict:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ImageBlock):
        if block.url:
            return {"type": "image", "source": {"type": "url", "url": block.url}}
        return {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": block.media_type,
                "data": block.data,
            },
        }
    raise TypeError(f"Unsupported content block: {type(block).__name__}")


def to_messages(turns: list[Turn]) -> list[dict]:
    """
    Convert turns to the provider's message list.

    Consecutive turns of the same role are merged, empty text is dropped and
    a short user preamble is added when the list would open with the assistant.
    """
    messages: list[dict] = []
    for turn in turns:
        content = [
            _block_param(block)
            for block in turn.content
            if not (isinstance(block, TextBlock) and not block.text.strip())
        ]
        if not content:
            continue
        if messages and messages[-1]["role"] == turn.role:
            messages[-1]["content"].extend(content)
        else:
            messages.append({"role": turn.role, "content": content})

    if messages and messages[0]["role"] == "assistant":
        messages.insert(
            0, {"role": "user", "content": [{"type": "text", "text": HISTORY_PREAMBLE}]}
        )
    return messages


def decode_event(event: Any) -> StreamEvent | None:
    """Decode a raw SDK stream event into a typed event, or None to skip it."""
    event_type = getattr(event, "type", None)
    if event_type == "content_block_delta":
        delta = event.delta
        if getattr(delta, "type", None) == "text_delta" and delta.text:
            return TextDelta(text=delta.text)
    elif event_type == "content_block_start":
        block = event.content_block
        if getattr(block, "type", None) in ("tool_use", "server_tool_use"):
            return ToolCallStarted(name=block.name, call_id=getattr(block, "id", None))
    return None


def message_text(message: Any) -> str:
    return "".join(
        block.text for block in message.content if getattr(block, "type", None) == "text"
    )


class RunStream:
    """Decoded event stream of one run.

    Iterate it for TextDelta / ToolCallStarted / MessageCompleted events, then
    ``await stream.completed()``; ``final_output`` holds the last model
    message's text once the run has finished.
    """

    def __init__(self, producer: Callable[["RunStream"], AsyncIterator[StreamEvent]]):
        self.final_output: str | None = None
        self._events = producer(self)
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def __aiter__(self) -> "RunStream":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._finished:
            raise StopAsyncIteration
        try:
            return await self._events.__anext__()
        except StopAsyncIteration:
            self._finished = True
            raise

    async def completed(self) -> None:
        """Drain any remaining events and wait for the run to finish."""
        async for _ in self:
            pass


class IGenerationRunner(Protocol):
    """Generation capability used by the orchestrator."""

    async def run(
        self, definition: AgentDefinition, turns: list[Turn], context: AgentContext
    ) -> RunStream:
        """Run guardrails, then return the streamed run.

        Raises:
            GuardrailTripped: an input guardrail vetoed the turn
        """
        ...


class AnthropicRunner:
    """Runs an agent definition with local function tools and hosted web search."""

    def __init__(self, llm_provider: ILLMProvider):
        self._llm = llm_provider

    async def run(
        self, definition: AgentDefinition, turns: list[Turn], context: AgentContext
    ) -> RunStream:
        await self._check_guardrails(definition, turns, context)
        messages = to_messages(turns)

        async def produce(stream: RunStream) -> AsyncIterator[StreamEvent]:
            async for event in self._generate(definition, messages, context, stream):
                yield event

        return RunStream(produce)

    async def _check_guardrails(
        self, definition: AgentDefinition, turns: list[Turn], context: AgentContext
    ) -> None:
        if not definition.guardrails:
            return
        user_turn = next((t for t in reversed(turns) if t.role == "user"), None)
        if user_turn is None:
            return
        for guardrail in definition.guardrails:
            result = await guardrail.evaluate(user_turn, context)
            if not result.allowed:
                raise GuardrailTripped(result)

    async def _generate(
        self,
        definition: AgentDefinition,
        messages: list[dict],
        context: AgentContext,
        run_stream: RunStream,
    ) -> AsyncIterator[StreamEvent]:
        tools = [tool_spec(tool) for tool in definition.tools]
        function_tools = {
            tool.name: tool for tool in definition.tools if not isinstance(tool, HostedTool)
        }
        last_text = ""

        for round_index in range(definition.max_tool_rounds + 1):
            async with self._llm.stream(
                messages=messages,
                system=definition.instructions,
                tools=tools,
                max_tokens=definition.max_tokens,
                model=definition.model,
            ) as stream:
                async for raw_event in stream:
                    decoded = decode_event(raw_event)
                    if decoded is not None:
                        yield decoded
                final = await stream.get_final_message()

            last_text = message_text(final)
            if last_text:
                yield MessageCompleted(text=last_text)

            if final.stop_reason == "tool_use":
                results = await self._execute_tools(final.content, function_tools, context)
                messages.append({"role": "assistant", "content": final.content})
                messages.append({"role": "user", "content": results})
                continue
            if final.stop_reason == "pause_turn":
                # Hosted tool paused a long turn; resume it as-is
                messages.append({"role": "assistant", "content": final.content})
                continue
            break
        else:
            logger.warning(
                "Tool round limit reached",
                extra={
                    "context": {
                        "conversation_id": context.conversation_id,
                        "max_tool_rounds": definition.max_tool_rounds,
                    }
                },
            )

        run_stream.final_output = last_text

    async def _execute_tools(
        self, content: list[Any], function_tools: dict, context: AgentContext
    ) -> list[dict]:
        results = []
        for block in content:
            if getattr(block, "type", None) != "tool_use":
                continue
            tool = function_tools.get(block.name)
            if tool is None:
                results.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": block.id,
                        "content": f"Unknown tool: {block.name}",
                        "is_error": True,
                    }
                )
                continue

            output = await tool.execute(dict(block.input or {}), context)
            tool_content: list[dict] = [{"type": "text", "text": serialize_output(output)}]
            for image in output.get("images", []) if isinstance(output, dict) else []:
                url = image.get("url") if isinstance(image, dict) else None
                if url and url.startswith("https://"):
                    tool_content.append({"type": "image", "source": {"type": "url", "url": url}})
            results.append(
                {"type": "tool_result", "tool_use_id": block.id, "content": tool_content}
            )
        return results
