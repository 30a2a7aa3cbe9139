"""Structured image summaries via a vision-capable model."""

from ..llm import ILLMProvider, extract_json_object
from ..logging_config import get_logger, redact_url
from ..models import StructuredSummary, normalize_summary
from ..prompts import IMAGE_SUMMARY_INSTRUCTIONS

logger = get_logger(__name__)

SUMMARY_MAX_TOKENS = 400


class ImageSummarizer:
    """Produces a StructuredSummary for an image URL, or None."""

    def __init__(self, llm_provider: ILLMProvider, model: str | None = None):
        self._llm = llm_provider
        self._model = model

    async def summarize(self, image_url: str) -> StructuredSummary | None:
        """Summarize one image. Never raises."""
        if not image_url or not isinstance(image_url, str):
            return None

        context = {"url": redact_url(image_url)}
        try:
            raw = await self._llm.complete(
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": IMAGE_SUMMARY_INSTRUCTIONS},
                            {
                                "type": "image",
                                "source": {"type": "url", "url": image_url},
                            },
                        ],
                    }
                ],
                max_tokens=SUMMARY_MAX_TOKENS,
                model=self._model,
            )
        except Exception as e:
            logger.warning(
                f"Image summary generation failed: {e}", extra={"context": context}
            )
            return None

        if not raw or not raw.strip():
            logger.warning("Image summary was empty", extra={"context": context})
            return None

        parsed = extract_json_object(raw)
        if parsed is None:
            logger.warning(
                "Image summary JSON parse failed",
                extra={"context": {**context, "raw": raw[:500]}},
            )
            return None

        return normalize_summary(parsed)
