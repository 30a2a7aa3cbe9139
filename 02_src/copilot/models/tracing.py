"""Tracing and observability data models."""

from dataclasses import dataclass
from datetime import datetime


@dataclass
class TraceEvent:
    """A single observability event for one stage of a turn."""

    id: str
    event_type: str  # e.g. "turn_started", "guardrail_deflected"
    actor: str  # component that recorded the event
    data: dict  # self-contained payload for display
    timestamp: datetime
