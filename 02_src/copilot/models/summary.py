"""Structured image summary model and normalization."""

import math
from dataclasses import asdict, dataclass, field

SUMMARY_SOURCE = "user_upload"


@dataclass
class StructuredSummary:
    """Structured description of an uploaded image."""

    source: str = SUMMARY_SOURCE
    summary: str = ""
    objects: list[str] = field(default_factory=list)
    observations: list[str] = field(default_factory=list)
    inferred_issue: str = ""
    confidence: float | None = None
    linked_entities: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _as_text(value) -> str:
    return value if isinstance(value, str) else ""


def _as_text_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item if isinstance(item, str) else str(item) for item in value if item is not None]


def _as_confidence(value) -> float | None:
    # bool is an int subclass but never a meaningful score
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return min(1.0, max(0.0, float(value)))


def normalize_summary(raw: dict | StructuredSummary) -> StructuredSummary:
    """
    Normalize a raw model payload into a StructuredSummary.

    Arrays default to [], strings to "", source to "user_upload" and
    confidence is clamped into [0, 1]. Applying it twice gives the same result.
    """
    if isinstance(raw, StructuredSummary):
        raw = raw.to_dict()

    source = _as_text(raw.get("source")) or SUMMARY_SOURCE
    return StructuredSummary(
        source=source,
        summary=_as_text(raw.get("summary")),
        objects=_as_text_list(raw.get("objects")),
        observations=_as_text_list(raw.get("observations")),
        inferred_issue=_as_text(raw.get("inferred_issue")),
        confidence=_as_confidence(raw.get("confidence")),
        linked_entities=_as_text_list(raw.get("linked_entities")),
    )
