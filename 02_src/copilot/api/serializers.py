"""JSON shapes of domain objects returned by the API."""

from datetime import datetime

from ..dialogue import ChatResult
from ..models import AgentResponse, Conversation, Message, ToolCall


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def conversation_to_dict(conversation: Conversation) -> dict:
    return {
        "id": conversation.id,
        "job_id": conversation.job_id,
        "user_id": conversation.user_id,
        "channel_type": conversation.channel_type,
        "status": conversation.status.value,
        "members": conversation.members,
        "metadata": conversation.metadata,
        "created_at": _iso(conversation.created_at),
        "updated_at": _iso(conversation.updated_at),
    }


def message_to_dict(message: Message) -> dict:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "sender_type": message.sender_type.value,
        "sender_id": message.sender_id,
        "content": message.content,
        "content_type": message.content_type.value,
        "attachments": [a.to_dict() for a in message.attachments],
        "metadata": message.metadata,
        "status": message.status.value,
        "created_at": _iso(message.created_at),
        "updated_at": _iso(message.updated_at),
    }


def tool_call_to_dict(tool_call: ToolCall) -> dict:
    return {
        "id": tool_call.id,
        "message_id": tool_call.message_id,
        "tool_name": tool_call.tool_name,
        "tool_input": tool_call.tool_input,
        "tool_output": tool_call.tool_output,
        "status": tool_call.status.value,
        "error": tool_call.error,
        "duration_ms": tool_call.duration_ms,
        "started_at": _iso(tool_call.started_at),
        "completed_at": _iso(tool_call.completed_at),
    }


def response_to_dict(response: AgentResponse) -> dict:
    return {
        "message_id": response.message_id,
        "content": response.content,
        "tools_used": response.tools_used,
        "metadata": response.metadata,
    }


def chat_result_to_dict(result: ChatResult) -> dict:
    return {
        "user_message": message_to_dict(result.user_message),
        "ai_message": message_to_dict(result.ai_message) if result.ai_message else None,
        "response": response_to_dict(result.response) if result.response else None,
        "images": [image.to_dict() for image in result.images],
    }
