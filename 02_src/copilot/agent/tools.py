"""Tools available to the agent."""

import json
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

from openai import AsyncOpenAI

from ..images import ImageAccess
from ..logging_config import get_logger, redact_url
from ..models import AgentContext

logger = get_logger(__name__)

NO_IMAGES_MESSAGE = "No images found for this conversation."
IMAGE_FETCH_FAILED_MESSAGE = (
    "Failed to fetch images for this conversation. "
    "Please try again or upload the images again."
)


@dataclass(frozen=True)
class HostedTool:
    """A tool executed by the model provider (e.g. web search)."""

    name: str
    spec: dict = field(default_factory=dict)


class FunctionTool(Protocol):
    """A tool executed locally between model rounds."""

    name: str
    description: str
    input_schema: dict

    async def execute(self, arguments: dict, context: AgentContext) -> dict:
        ...


AgentTool = Union[HostedTool, FunctionTool]


def tool_spec(tool: AgentTool) -> dict:
    """Provider tool declaration for a hosted or function tool."""
    if isinstance(tool, HostedTool):
        return tool.spec
    return {
        "name": tool.name,
        "description": tool.description,
        "input_schema": tool.input_schema,
    }


def web_search_tool(max_uses: int = 5) -> HostedTool:
    return HostedTool(
        name="web_search",
        spec={"type": "web_search_20250305", "name": "web_search", "max_uses": max_uses},
    )


class GetImagesTool:
    """Returns the conversation's recent images as signed URLs."""

    name = "get_images"
    description = (
        "Fetch recent images for this conversation. Use it when the technician "
        "refers to photos they uploaded earlier."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "conversation_id": {
                "type": "string",
                "description": "Conversation to fetch images for",
            }
        },
    }

    def __init__(self, image_access: ImageAccess, limit: int = 4, ttl: int = 900):
        self._image_access = image_access
        self._limit = limit
        self._ttl = ttl

    async def execute(self, arguments: dict, context: AgentContext) -> dict:
        """Never raises; failures come back as a user-safe message."""
        requested = arguments.get("conversation_id")
        if requested and requested != context.conversation_id:
            logger.warning(
                "get_images asked for another conversation; using the current one",
                extra={"context": {"requested": requested}},
            )
        conversation_id = context.conversation_id

        try:
            images = await self._image_access.recent_images(
                conversation_id, limit=self._limit, ttl=self._ttl
            )
        except Exception as e:
            logger.error(
                f"get_images failed: {e}",
                extra={"context": {"conversation_id": conversation_id}},
            )
            return {"message": IMAGE_FETCH_FAILED_MESSAGE, "images": []}

        logger.info(
            "get_images fetched images",
            extra={
                "context": {
                    "conversation_id": conversation_id,
                    "count": len(images),
                    "urls": [redact_url(image.url) for image in images],
                }
            },
        )
        if not images:
            return {"message": NO_IMAGES_MESSAGE, "images": []}
        return {
            "message": f"Fetched {len(images)} image(s).",
            "images": [image.to_dict() for image in images],
        }


class DocumentSearchTool:
    """Searches the company knowledge base (OpenAI vector stores)."""

    name = "document_search"
    description = (
        "Search the knowledge base of manuals, procedures and equipment documents "
        "for HVAC, plumbing, electrical and fire protection work."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "What to look for"},
        },
        "required": ["query"],
    }

    def __init__(
        self,
        client: AsyncOpenAI,
        vector_store_ids: tuple[str, ...],
        max_results: int = 5,
    ):
        self._client = client
        self._vector_store_ids = vector_store_ids
        self._max_results = max_results

    async def execute(self, arguments: dict, context: AgentContext) -> dict:
        query = str(arguments.get("query") or "").strip()
        if not query:
            return {"results": []}

        results: list[dict[str, Any]] = []
        for store_id in self._vector_store_ids:
            try:
                page = await self._client.vector_stores.search(
                    vector_store_id=store_id,
                    query=query,
                    max_num_results=self._max_results,
                )
            except Exception as e:
                logger.error(
                    f"document_search failed: {e}",
                    extra={
                        "context": {
                            "conversation_id": context.conversation_id,
                            "vector_store_id": store_id,
                        }
                    },
                )
                continue
            for item in page.data:
                text = "\n".join(
                    part.text for part in item.content if getattr(part, "type", "") == "text"
                )
                results.append(
                    {"filename": item.filename, "score": item.score, "text": text}
                )

        results.sort(key=lambda r: r["score"], reverse=True)
        return {"results": results[: self._max_results]}


def build_tools(
    image_access: ImageAccess,
    openai_client: AsyncOpenAI | None = None,
    vector_store_ids: tuple[str, ...] = (),
) -> tuple[AgentTool, ...]:
    """Tool set for the main agent.

    Web search is always present; document search only when knowledge-base
    ids are configured.
    """
    tools: list[AgentTool] = [web_search_tool(), GetImagesTool(image_access)]
    if vector_store_ids and openai_client is not None:
        tools.append(DocumentSearchTool(openai_client, vector_store_ids))
    return tuple(tools)


def serialize_output(output: dict) -> str:
    return json.dumps(output, default=str)
