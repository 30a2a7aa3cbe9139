"""Agent definition, tools, guardrail, generation runner and orchestrator."""

from .definition import (
    AgentDefinition,
    IInputGuardrail,
    build_agent_definition,
    build_vision_definition,
)
from .guardrail import DEFLECTIONS, GENERIC_DEFLECTION, GuardrailEvaluator
from .orchestrator import AgentOrchestrator, InlineImage
from .runner import AnthropicRunner, IGenerationRunner, RunStream
from .tools import (
    DocumentSearchTool,
    GetImagesTool,
    HostedTool,
    build_tools,
    web_search_tool,
)

__all__ = [
    "AgentDefinition",
    "IInputGuardrail",
    "build_agent_definition",
    "build_vision_definition",
    "GuardrailEvaluator",
    "DEFLECTIONS",
    "GENERIC_DEFLECTION",
    "AgentOrchestrator",
    "InlineImage",
    "IGenerationRunner",
    "AnthropicRunner",
    "RunStream",
    "HostedTool",
    "GetImagesTool",
    "DocumentSearchTool",
    "build_tools",
    "web_search_tool",
]
