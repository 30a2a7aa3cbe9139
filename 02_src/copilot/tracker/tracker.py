"""Tracker implementation for creating TraceEvents."""

import uuid
from datetime import datetime, timezone
from typing import Protocol

from ..event_bus import IEventBus
from ..models import BusMessage, TraceEvent, VoiceTopic
from ..storage import IStorage

# Voice topics worth a trace event; audio chunks are too chatty
_TRACKED_VOICE_TOPICS = (VoiceTopic.TRANSCRIPT_FINAL, VoiceTopic.ASSISTANT_TEXT)


class ITracker(Protocol):
    """Creating TraceEvents. Two channels: EventBus subscription + direct calls."""

    async def track(self, event_type: str, actor: str, data: dict) -> None:
        """Create TraceEvent and save to Storage."""
        ...

    def attach(self, event_bus: IEventBus) -> None:
        """Record trace events for a voice session's bus."""
        ...

    def detach(self, event_bus: IEventBus) -> None:
        """Stop recording a voice session's bus."""
        ...


class Tracker:
    """Creates TraceEvents via direct track() calls and voice bus subscriptions."""

    def __init__(self, storage: IStorage):
        self._storage = storage

    def attach(self, event_bus: IEventBus) -> None:
        """Subscribe to the transcript and assistant text topics of a bus."""
        for topic in _TRACKED_VOICE_TOPICS:
            event_bus.subscribe(topic, self._handle_bus_message)

    def detach(self, event_bus: IEventBus) -> None:
        for topic in _TRACKED_VOICE_TOPICS:
            event_bus.unsubscribe(topic, self._handle_bus_message)

    async def _handle_bus_message(self, bus_message: BusMessage) -> None:
        """Handle incoming BusMessage from EventBus."""
        # Extract payload summary (first 100 chars)
        payload_summary = str(bus_message.payload.get("text", bus_message.payload))[:100]

        await self.track(
            event_type=f"voice_{bus_message.topic.value}",
            actor=bus_message.source,
            data={
                "session_id": bus_message.payload.get("session_id"),
                "payload_summary": payload_summary,
            },
        )

    async def track(self, event_type: str, actor: str, data: dict) -> None:
        """Create TraceEvent and save to Storage."""
        trace_event = TraceEvent(
            id=str(uuid.uuid4()),
            event_type=event_type,
            actor=actor,
            data=data,
            timestamp=datetime.now(timezone.utc),
        )
        await self._storage.save_trace_event(trace_event)
