"""Custom exceptions for the field copilot core."""

from typing import Any


class ValidationError(ValueError):
    """Raised when input to a core operation is malformed."""


class ConversationNotFoundError(LookupError):
    """Raised when a conversation id does not resolve to a stored conversation."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class InvalidTransitionError(RuntimeError):
    """Raised when a lifecycle status change is not allowed."""

    def __init__(self, entity: str, current: str, requested: str):
        self.entity = entity
        self.current = current
        self.requested = requested
        super().__init__(f"{entity} cannot move from {current} to {requested}")


class GuardrailTripped(Exception):
    """Raised by the generation runner when an input guardrail vetoes a turn."""

    def __init__(self, output: Any):
        self.output = output
        super().__init__("Input guardrail tripped")


class PersistenceError(RuntimeError):
    """Raised when a generated response could not be written."""


class StorageNotConfiguredError(RuntimeError):
    """Raised when the object store is used without a bucket."""


class VoiceSessionNotFoundError(LookupError):
    """Raised when a voice session id is unknown."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Voice session not found: {session_id}")
