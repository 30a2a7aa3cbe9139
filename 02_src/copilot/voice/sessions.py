"""Registry of live voice sessions."""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from ..agent import AgentOrchestrator
from ..dialogue import HistoryAssembler
from ..event_bus import EventBus
from ..exceptions import VoiceSessionNotFoundError
from ..logging_config import get_logger
from ..models import BusMessage, VoiceTopic
from ..tracker import ITracker
from .bridge import VoiceBridge, VoiceHooks
from .transport import IDuplexTransport, VoiceConfig

logger = get_logger(__name__)

TransportFactory = Callable[[], IDuplexTransport]

SOURCE = "voice_bridge"


@dataclass
class VoiceSession:
    """A bridge plus the bus its hooks publish to."""

    id: str
    bridge: VoiceBridge
    bus: EventBus
    created_at: datetime
    last_activity: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_activity = time.monotonic()


class VoiceSessionRegistry:
    """Keyed store of voice sessions with explicit create/get/destroy.

    Nothing expires on its own; callers run ``expire_idle`` when they want
    idle sessions torn down.
    """

    def __init__(
        self,
        orchestrator: AgentOrchestrator,
        transport_factory: TransportFactory,
        tracker: ITracker,
        history: HistoryAssembler | None = None,
        config: VoiceConfig | None = None,
        history_limit: int = 15,
    ):
        self._orchestrator = orchestrator
        self._transport_factory = transport_factory
        self._tracker = tracker
        self._history = history
        self._config = config or VoiceConfig()
        self._history_limit = history_limit
        self._sessions: dict[str, VoiceSession] = {}

    @property
    def default_config(self) -> VoiceConfig:
        return self._config

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    async def create(
        self,
        conversation_id: str,
        user_id: str | None = None,
        config: VoiceConfig | None = None,
        respond_to_partials: bool = True,
    ) -> VoiceSession:
        """Connect a new voice session bridged to the given conversation."""
        session_id = str(uuid.uuid4())
        bus = EventBus()
        bridge = VoiceBridge(
            session_id=session_id,
            conversation_id=conversation_id,
            user_id=user_id,
            transport=self._transport_factory(),
            orchestrator=self._orchestrator,
            history=self._history,
            config=config or self._config,
            hooks=self._bus_hooks(session_id, bus),
            respond_to_partials=respond_to_partials,
            history_limit=self._history_limit,
        )
        self._tracker.attach(bus)
        try:
            await bridge.start()
        except Exception:
            self._tracker.detach(bus)
            raise

        session = VoiceSession(
            id=session_id, bridge=bridge, bus=bus, created_at=datetime.now(timezone.utc)
        )
        self._sessions[session_id] = session
        await self._tracker.track(
            event_type="voice_session_started",
            actor=SOURCE,
            data={
                "session_id": session_id,
                "conversation_id": conversation_id,
                "user_id": user_id,
            },
        )
        return session

    def get(self, session_id: str) -> VoiceSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise VoiceSessionNotFoundError(session_id)
        session.touch()
        return session

    async def destroy(self, session_id: str) -> None:
        """Stop the session's bridge and forget it.

        Raises:
            VoiceSessionNotFoundError: unknown or already destroyed session
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            raise VoiceSessionNotFoundError(session_id)
        await session.bridge.stop()
        self._tracker.detach(session.bus)
        await self._tracker.track(
            event_type="voice_session_stopped",
            actor=SOURCE,
            data={"session_id": session_id},
        )

    async def expire_idle(self, max_idle_seconds: float) -> list[str]:
        """Destroy sessions idle longer than max_idle_seconds; return their ids."""
        now = time.monotonic()
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if now - session.last_activity > max_idle_seconds
        ]
        for session_id in expired:
            await self.destroy(session_id)
        if expired:
            logger.info(
                f"Expired {len(expired)} idle voice session(s)",
                extra={"context": {"session_ids": expired}},
            )
        return expired

    async def stop_all(self) -> None:
        for session_id in list(self._sessions):
            try:
                await self.destroy(session_id)
            except Exception as e:
                logger.warning(f"Failed to stop voice session {session_id}: {e}")

    @staticmethod
    def _bus_hooks(session_id: str, bus: EventBus) -> VoiceHooks:
        def publisher(topic: VoiceTopic, key: str):
            async def publish(value: str) -> None:
                await bus.publish(
                    BusMessage(
                        id=str(uuid.uuid4()),
                        topic=topic,
                        payload={"session_id": session_id, key: value},
                        source=SOURCE,
                        timestamp=datetime.now(timezone.utc),
                    )
                )

            return publish

        return VoiceHooks(
            on_transcript_partial=publisher(VoiceTopic.TRANSCRIPT_PARTIAL, "text"),
            on_transcript_final=publisher(VoiceTopic.TRANSCRIPT_FINAL, "text"),
            on_audio=publisher(VoiceTopic.AUDIO, "audio"),
            on_assistant_text=publisher(VoiceTopic.ASSISTANT_TEXT, "text"),
        )
