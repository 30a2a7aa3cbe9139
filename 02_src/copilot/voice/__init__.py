"""Voice module: realtime transport, agent bridge and session registry."""

from .bridge import VoiceBridge, VoiceHooks, VoiceState
from .sessions import VoiceSession, VoiceSessionRegistry
from .transport import (
    AssistantText,
    AudioChunk,
    IDuplexTransport,
    OpenAIRealtimeTransport,
    RealtimeEventDecoder,
    TranscriptFinal,
    TranscriptPartial,
    TransportError,
    TransportEvent,
    VoiceConfig,
    semantic_vad,
    server_vad,
)

__all__ = [
    "AssistantText",
    "AudioChunk",
    "IDuplexTransport",
    "OpenAIRealtimeTransport",
    "RealtimeEventDecoder",
    "TranscriptFinal",
    "TranscriptPartial",
    "TransportError",
    "TransportEvent",
    "VoiceBridge",
    "VoiceConfig",
    "VoiceHooks",
    "VoiceSession",
    "VoiceSessionRegistry",
    "VoiceState",
    "semantic_vad",
    "server_vad",
]
