"""Project-level configuration and path helpers."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Union

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DATA_DIR = PROJECT_ROOT / "03_data"
LOGS_DIR = PROJECT_ROOT / "04_logs"
DEFAULT_DB_PATH = DATA_DIR / "copilot.db"
DEFAULT_LOG_PATH = LOGS_DIR / "app.log"

DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)


PathLike = Union[str, Path]


def resolve_db_path(env_value: PathLike | None = None) -> PathLike:
    """Resolve DATABASE_URL to an absolute path."""
    if not env_value:
        return DEFAULT_DB_PATH

    if str(env_value) == ":memory:":
        return ":memory:"

    candidate = Path(env_value)
    return candidate if candidate.is_absolute() else PROJECT_ROOT / candidate


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def parse_id_list(raw: str | None) -> tuple[str, ...]:
    """Split a comma-separated identifier list, dropping blanks."""
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    """Runtime settings read from the environment."""

    agent_model: str = "claude-sonnet-4-5"
    guardrail_model: str = "claude-haiku-4-5"
    image_summary_model: str = "claude-haiku-4-5"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 512
    vector_store_ids: tuple[str, ...] = ()
    realtime_model: str = "gpt-realtime"
    realtime_voice: str = "alloy"
    transcription_model: str = "gpt-4o-mini-transcribe"
    gcs_bucket: str | None = None
    signed_url_ttl: int = 900
    history_limit: int = 15
    vision_image_limit: int = 1
    max_tool_rounds: int = 5

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        return cls(
            agent_model=os.getenv("AGENT_MODEL", cls.agent_model),
            guardrail_model=os.getenv("GUARDRAIL_MODEL", cls.guardrail_model),
            image_summary_model=os.getenv(
                "IMAGE_SUMMARY_MODEL", cls.image_summary_model
            ),
            embedding_model=os.getenv("OPENAI_EMBEDDING_MODEL", cls.embedding_model),
            embedding_dimensions=_int_env(
                "EMBEDDING_DIMENSIONS", cls.embedding_dimensions
            ),
            vector_store_ids=parse_id_list(os.getenv("VECTOR_STORE_ID")),
            realtime_model=os.getenv("REALTIME_MODEL", cls.realtime_model),
            realtime_voice=os.getenv("REALTIME_VOICE", cls.realtime_voice),
            transcription_model=os.getenv(
                "TRANSCRIPTION_MODEL", cls.transcription_model
            ),
            gcs_bucket=os.getenv("GCS_BUCKET") or None,
            signed_url_ttl=_int_env("SIGNED_URL_TTL", cls.signed_url_ttl),
            history_limit=_int_env("HISTORY_LIMIT", cls.history_limit),
            vision_image_limit=_int_env("VISION_IMAGE_LIMIT", cls.vision_image_limit),
            max_tool_rounds=_int_env("MAX_TOOL_ROUNDS", cls.max_tool_rounds),
        )
