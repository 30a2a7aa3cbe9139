"""Immutable agent definitions."""

from dataclasses import dataclass, field
from typing import Protocol

from ..models import AgentContext, GuardrailResult, Turn
from ..prompts import AGENT_INSTRUCTIONS, VISION_INSTRUCTIONS
from .tools import AgentTool


class IInputGuardrail(Protocol):
    """Gate evaluated on the latest user turn before generation starts."""

    async def evaluate(self, user_turn: Turn, context: AgentContext) -> GuardrailResult:
        ...


@dataclass(frozen=True)
class AgentDefinition:
    """Shared, immutable configuration of one agent variant.

    Built once per process; all per-turn state lives in the runner call.
    """

    name: str
    instructions: str
    model: str
    tools: tuple[AgentTool, ...] = ()
    guardrails: tuple[IInputGuardrail, ...] = field(default=())
    max_tokens: int = 2048
    max_tool_rounds: int = 5

    @property
    def tool_names(self) -> list[str]:
        return [tool.name for tool in self.tools]


def build_agent_definition(
    model: str,
    tools: tuple[AgentTool, ...],
    guardrails: tuple[IInputGuardrail, ...] = (),
    max_tool_rounds: int = 5,
) -> AgentDefinition:
    """Main field copilot agent."""
    return AgentDefinition(
        name="field-copilot",
        instructions=AGENT_INSTRUCTIONS,
        model=model,
        tools=tools,
        guardrails=guardrails,
        max_tool_rounds=max_tool_rounds,
    )


def build_vision_definition(
    model: str,
    tools: tuple[AgentTool, ...],
    guardrails: tuple[IInputGuardrail, ...] = (),
) -> AgentDefinition:
    """Photo analysis agent; only keeps the image fetch tool."""
    return AgentDefinition(
        name="field-copilot-vision",
        instructions=VISION_INSTRUCTIONS,
        model=model,
        tools=tuple(tool for tool in tools if tool.name == "get_images"),
        guardrails=guardrails,
        max_tool_rounds=2,
    )
