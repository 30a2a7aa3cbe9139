"""Duplex voice transport over the OpenAI Realtime API."""

import base64
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, Union

from openai import AsyncOpenAI

from ..logging_config import get_logger
from ..prompts import VOICE_INSTRUCTIONS

logger = get_logger(__name__)

PCM_RATE = 24000


def semantic_vad(eagerness: str = "medium") -> dict:
    """Semantic turn detection. Replies come from the bridge, not the model."""
    return {
        "type": "semantic_vad",
        "eagerness": eagerness,
        "create_response": False,
        "interrupt_response": True,
    }


def server_vad(silence_duration_ms: int = 400) -> dict:
    """Silence-based turn detection."""
    return {
        "type": "server_vad",
        "silence_duration_ms": silence_duration_ms,
        "create_response": False,
        "interrupt_response": True,
    }


@dataclass
class VoiceConfig:
    """Connection settings of a voice session."""

    model: str = "gpt-realtime"
    voice: str = "alloy"
    input_format: dict = field(
        default_factory=lambda: {"type": "audio/pcm", "rate": PCM_RATE}
    )
    transcription_model: str = "gpt-4o-mini-transcribe"
    language: str = "en"
    turn_detection: dict = field(default_factory=semantic_vad)
    instructions: str = VOICE_INSTRUCTIONS

    def session_payload(self) -> dict:
        return {
            "type": "realtime",
            "model": self.model,
            "instructions": self.instructions,
            "output_modalities": ["audio"],
            "audio": {
                "input": {
                    "format": self.input_format,
                    "transcription": {
                        "model": self.transcription_model,
                        "language": self.language,
                    },
                    "turn_detection": self.turn_detection,
                },
                "output": {
                    "format": {"type": "audio/pcm", "rate": PCM_RATE},
                    "voice": self.voice,
                },
            },
        }


# Decoded transport events


@dataclass
class TranscriptPartial:
    text: str  # running transcript of the current utterance
    item_id: str | None = None


@dataclass
class TranscriptFinal:
    text: str
    item_id: str | None = None


@dataclass
class AudioChunk:
    audio: str  # base64 PCM


@dataclass
class AssistantText:
    text: str


@dataclass
class TransportError:
    message: str


TransportEvent = Union[
    TranscriptPartial, TranscriptFinal, AudioChunk, AssistantText, TransportError
]


class RealtimeEventDecoder:
    """Turns raw realtime server events into TransportEvents.

    Transcription deltas are accumulated per item so partials carry the
    running text of the utterance.
    """

    def __init__(self):
        self._partials: dict[str, str] = {}

    def decode(self, event: Any) -> TransportEvent | None:
        event_type = getattr(event, "type", "")

        if event_type == "conversation.item.input_audio_transcription.delta":
            item_id = getattr(event, "item_id", None) or ""
            text = self._partials.get(item_id, "") + (getattr(event, "delta", "") or "")
            self._partials[item_id] = text
            return TranscriptPartial(text=text, item_id=item_id or None)

        if event_type == "conversation.item.input_audio_transcription.completed":
            item_id = getattr(event, "item_id", None) or ""
            self._partials.pop(item_id, None)
            return TranscriptFinal(
                text=getattr(event, "transcript", "") or "", item_id=item_id or None
            )

        if event_type in ("response.output_audio.delta", "response.audio.delta"):
            return AudioChunk(audio=event.delta)

        if event_type in (
            "response.output_audio_transcript.done",
            "response.audio_transcript.done",
        ):
            return AssistantText(text=getattr(event, "transcript", "") or "")

        if event_type in ("response.output_text.done", "response.text.done"):
            return AssistantText(text=getattr(event, "text", "") or "")

        if event_type == "error":
            error = getattr(event, "error", None)
            return TransportError(message=getattr(error, "message", None) or str(error))

        return None


class IDuplexTransport(Protocol):
    """Full-duplex audio/text session with speech-to-text and text-to-speech."""

    async def connect(self, config: VoiceConfig) -> None:
        ...

    def events(self) -> AsyncIterator[TransportEvent]:
        """Decoded events until the connection closes."""
        ...

    async def send_audio(self, audio: bytes, commit: bool = False) -> None:
        """Append PCM audio to the input buffer, committing it when asked."""
        ...

    async def send_message(self, text: str) -> None:
        """Add pre-transcribed user text to the session."""
        ...

    async def speak(self, text: str) -> None:
        """Have the session voice the given text."""
        ...

    async def close(self) -> None:
        ...


class OpenAIRealtimeTransport:
    """IDuplexTransport on the openai SDK's realtime websocket connection."""

    def __init__(self, client: AsyncOpenAI):
        self._client = client
        self._connection = None
        self._decoder = RealtimeEventDecoder()

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def connect(self, config: VoiceConfig) -> None:
        self._connection = await self._client.realtime.connect(model=config.model).enter()
        await self._connection.session.update(session=config.session_payload())
        logger.info(
            "Realtime voice session connected", extra={"context": {"model": config.model}}
        )

    def _require_connection(self):
        if self._connection is None:
            raise RuntimeError("Realtime transport not connected")
        return self._connection

    async def events(self) -> AsyncIterator[TransportEvent]:
        connection = self._require_connection()
        async for raw in connection:
            decoded = self._decoder.decode(raw)
            if decoded is not None:
                yield decoded

    async def send_audio(self, audio: bytes, commit: bool = False) -> None:
        connection = self._require_connection()
        await connection.input_audio_buffer.append(
            audio=base64.b64encode(audio).decode("ascii")
        )
        if commit:
            await connection.input_audio_buffer.commit()

    async def send_message(self, text: str) -> None:
        connection = self._require_connection()
        await connection.conversation.item.create(
            item={
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": text}],
            }
        )

    async def speak(self, text: str) -> None:
        connection = self._require_connection()
        await connection.response.create(
            response={
                "instructions": f"Say the following to the technician, word for word:\n{text}",
                "output_modalities": ["audio"],
            }
        )

    async def close(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()
            logger.info("Realtime voice session closed")
