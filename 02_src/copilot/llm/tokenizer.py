"""Token estimation for assembled turn lists."""

from functools import lru_cache

import tiktoken

from ..logging_config import get_logger
from ..models import TextBlock, Turn

logger = get_logger(__name__)

FALLBACK_ENCODING = "cl100k_base"


@lru_cache(maxsize=16)
def get_encoding(model: str) -> tiktoken.Encoding:
    """Encoding for a model name, falling back to cl100k_base for unknown models."""
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        logger.debug(f"No tiktoken encoding for {model}, using {FALLBACK_ENCODING}")
        return tiktoken.get_encoding(FALLBACK_ENCODING)


def count_tokens(text: str, model: str) -> int:
    if not text:
        return 0
    return len(get_encoding(model).encode(text))


def estimate_tokens(turns: list[Turn], model: str) -> int:
    """Estimate prompt tokens for a turn list. Only text blocks are counted."""
    encoding = get_encoding(model)
    total = 0
    for turn in turns:
        for block in turn.content:
            if isinstance(block, TextBlock) and block.text:
                total += len(encoding.encode(block.text))
    return total
