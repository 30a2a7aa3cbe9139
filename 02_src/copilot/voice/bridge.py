"""Voice bridge: feeds realtime transcripts to the agent and speaks the replies."""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from ..agent import AgentOrchestrator
from ..dialogue import HistoryAssembler
from ..exceptions import ValidationError
from ..logging_config import get_logger
from ..models import AgentContext
from .transport import (
    AssistantText,
    AudioChunk,
    IDuplexTransport,
    TranscriptFinal,
    TranscriptPartial,
    TransportError,
    TransportEvent,
    VoiceConfig,
)

logger = get_logger(__name__)

TextHook = Callable[[str], Awaitable[None]]


class VoiceState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LISTENING = "listening"
    TRANSCRIBING = "transcribing"
    REASONING = "reasoning"
    SPEAKING = "speaking"


@dataclass
class VoiceHooks:
    """Async callbacks for what the session hears and says."""

    on_transcript_partial: TextHook | None = None
    on_transcript_final: TextHook | None = None
    on_audio: TextHook | None = None  # base64 PCM chunk
    on_assistant_text: TextHook | None = None


class VoiceBridge:
    """
    Bridges one realtime voice session to the agent orchestrator.

    Partial and final transcripts go through the same handler. While a turn
    is running, partial-triggered turns are dropped. A final transcript
    replaces a turn that was started from a partial; behind a turn started
    from a final it waits, and only the latest waiting final runs.
    """

    def __init__(
        self,
        session_id: str,
        conversation_id: str,
        user_id: str | None,
        transport: IDuplexTransport,
        orchestrator: AgentOrchestrator,
        history: HistoryAssembler | None = None,
        config: VoiceConfig | None = None,
        hooks: VoiceHooks | None = None,
        respond_to_partials: bool = True,
        history_limit: int = 15,
    ):
        self.session_id = session_id
        self.conversation_id = conversation_id
        self.user_id = user_id
        self._transport = transport
        self._orchestrator = orchestrator
        self._history = history
        self._config = config or VoiceConfig()
        self._hooks = hooks or VoiceHooks()
        self._respond_to_partials = respond_to_partials
        self._history_limit = history_limit

        self.state = VoiceState.DISCONNECTED
        self._reader: asyncio.Task | None = None
        self._turn: asyncio.Task | None = None
        self._turn_from_final = False
        self._pending_final: str | None = None
        self._stopped = False

    @property
    def turn_in_flight(self) -> bool:
        return self._turn is not None and not self._turn.done()

    async def start(self) -> None:
        """Connect the transport and begin reading its events."""
        if self._stopped:
            raise RuntimeError("Voice session already stopped")
        self.state = VoiceState.CONNECTING
        try:
            await self._transport.connect(self._config)
        except Exception:
            self.state = VoiceState.DISCONNECTED
            raise
        self.state = VoiceState.CONNECTED
        self._reader = asyncio.create_task(self._read_events())
        self.state = VoiceState.LISTENING
        logger.info(
            "Voice session started",
            extra={
                "context": {
                    "session_id": self.session_id,
                    "conversation_id": self.conversation_id,
                }
            },
        )

    async def stop(self) -> None:
        """Cancel outstanding work and close the transport. Safe to call twice."""
        if self._stopped:
            return
        self._stopped = True
        self._pending_final = None

        tasks = [t for t in (self._turn, self._reader) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._transport.close()
        self.state = VoiceState.DISCONNECTED
        logger.info("Voice session stopped", extra={"context": {"session_id": self.session_id}})

    # Send paths

    async def send_text(self, text: str) -> None:
        """Pre-transcribed user text; runs a turn like a final transcript."""
        if not text or not text.strip():
            raise ValidationError("text must not be empty")
        self._require_live()
        await self._transport.send_message(text.strip())
        await self.handle_transcript(text, final=True)

    async def send_audio(self, audio: bytes, commit: bool = False) -> None:
        self._require_live()
        await self._transport.send_audio(audio, commit=commit)

    def _require_live(self) -> None:
        if self._stopped or self.state == VoiceState.DISCONNECTED:
            raise RuntimeError("Voice session not connected")

    # Transcript handling

    async def handle_transcript(self, text: str, final: bool) -> None:
        text = (text or "").strip()
        if not text or self._stopped:
            return

        if self.turn_in_flight:
            if not final:
                logger.debug(
                    "Partial transcript dropped while a turn is running",
                    extra={"context": {"session_id": self.session_id}},
                )
                return
            if self._turn_from_final:
                self._pending_final = text
                return
            self._turn.cancel()

        self._start_turn(text, final)

    def _start_turn(self, text: str, final: bool) -> None:
        self._turn_from_final = final
        self._turn = asyncio.create_task(self._run_turn(text))

    async def _run_turn(self, text: str) -> None:
        try:
            self.state = VoiceState.REASONING
            history = []
            if self._history is not None:
                history = await self._history.build_history(
                    self.conversation_id, self._history_limit
                )
            response = await self._orchestrator.run_text(
                text,
                history,
                AgentContext(conversation_id=self.conversation_id, user_id=self.user_id),
            )
            if response.content.strip():
                self.state = VoiceState.SPEAKING
                await self._transport.speak(response.content)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Voice turn failed: {e}",
                extra={"context": {"session_id": self.session_id}},
                exc_info=True,
            )
        finally:
            if asyncio.current_task() is self._turn:
                self._after_turn()

    def _after_turn(self) -> None:
        if self._stopped:
            return
        self.state = VoiceState.LISTENING
        pending, self._pending_final = self._pending_final, None
        if pending:
            self._start_turn(pending, final=True)

    # Transport events

    async def _read_events(self) -> None:
        try:
            async for event in self._transport.events():
                await self._dispatch(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"Voice transport failed: {e}",
                extra={"context": {"session_id": self.session_id}},
                exc_info=True,
            )
        if not self._stopped:
            self.state = VoiceState.DISCONNECTED

    async def _dispatch(self, event: TransportEvent) -> None:
        if isinstance(event, TranscriptPartial):
            if self.state == VoiceState.LISTENING:
                self.state = VoiceState.TRANSCRIBING
            await self._emit(self._hooks.on_transcript_partial, event.text)
            if self._respond_to_partials:
                await self.handle_transcript(event.text, final=False)
        elif isinstance(event, TranscriptFinal):
            await self._emit(self._hooks.on_transcript_final, event.text)
            await self.handle_transcript(event.text, final=True)
        elif isinstance(event, AudioChunk):
            await self._emit(self._hooks.on_audio, event.audio)
        elif isinstance(event, AssistantText):
            await self._emit(self._hooks.on_assistant_text, event.text)
        elif isinstance(event, TransportError):
            logger.error(
                f"Realtime error: {event.message}",
                extra={"context": {"session_id": self.session_id}},
            )

    async def _emit(self, hook: TextHook | None, value: str) -> None:
        if hook is None:
            return
        try:
            await hook(value)
        except Exception as e:
            logger.warning(
                f"Voice hook failed: {e}",
                extra={"context": {"session_id": self.session_id}},
            )
