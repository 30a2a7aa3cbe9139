"""Object storage for uploaded images (Google Cloud Storage)."""

import asyncio
import math
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Protocol

import backoff
import httpx
from google.cloud import storage

from ..exceptions import StorageNotConfiguredError
from ..logging_config import get_logger, redact_url

logger = get_logger(__name__)

DEFAULT_SIGNED_URL_TTL = 900
MAX_SIGNED_URL_TTL = 7 * 24 * 60 * 60  # V4 signing limit: 7 days

_BUCKET_SCHEME = re.compile(r"^(?:gs|s3)://[^/]+/+", re.IGNORECASE)
_HTTP_HOST = re.compile(r"^https?://[^/]+/+", re.IGNORECASE)


def normalize_key(key: str, bucket: str | None = None) -> str:
    """Reduce a key, storage URI or object URL to a bare object key."""
    if not key:
        return key
    normalized = key.strip()
    normalized = _BUCKET_SCHEME.sub("", normalized)

    host_stripped = _HTTP_HOST.sub("", normalized)
    if host_stripped != normalized:
        normalized = host_stripped.split("?", 1)[0]
        # Path-style URLs carry the bucket as the first segment
        if bucket and normalized.startswith(f"{bucket}/"):
            normalized = normalized[len(bucket) + 1 :]

    return normalized.lstrip("/")


def resolve_ttl(ttl: float | None, default: int = DEFAULT_SIGNED_URL_TTL) -> int:
    """Clamp a requested TTL: invalid values use the default, large ones the cap."""
    if not isinstance(default, (int, float)) or not math.isfinite(default) or default <= 0:
        default = DEFAULT_SIGNED_URL_TTL
    if (
        ttl is None
        or isinstance(ttl, bool)
        or not isinstance(ttl, (int, float))
        or not math.isfinite(ttl)
        or ttl <= 0
    ):
        ttl = default
    return int(min(ttl, MAX_SIGNED_URL_TTL))


class IObjectStore(Protocol):
    """Durable blob storage addressed by key."""

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        """Store bytes under a key. Returns the normalized key."""
        ...

    async def sign(self, key: str, ttl: float | None = None) -> str:
        """Return a time-limited GET URL for a key."""
        ...

    async def exists(self, key: str) -> bool:
        """Check whether a key is stored."""
        ...


class GCSObjectStore:
    """Google Cloud Storage backed object store with V4 signed URLs.

    The client is created lazily so the application can start without
    credentials; using the store without a bucket raises
    StorageNotConfiguredError.
    """

    def __init__(
        self,
        bucket: str | None,
        default_ttl: int = DEFAULT_SIGNED_URL_TTL,
        client: storage.Client | None = None,
    ):
        self._bucket_name = bucket
        self._default_ttl = resolve_ttl(default_ttl)
        self._client = client
        if not bucket:
            logger.warning("GCS_BUCKET is not set; uploads will fail until configured")

    @property
    def default_ttl(self) -> int:
        return self._default_ttl

    def _bucket(self) -> storage.Bucket:
        if not self._bucket_name:
            raise StorageNotConfiguredError("Object store bucket not configured")
        if self._client is None:
            self._client = storage.Client()
        return self._client.bucket(self._bucket_name)

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        """Upload bytes. Returns the normalized key."""
        normalized = normalize_key(key, self._bucket_name)
        blob = self._bucket().blob(normalized)
        await asyncio.to_thread(blob.upload_from_string, data, content_type=content_type)
        logger.info(
            "Object stored",
            extra={"context": {"key": normalized, "size": len(data)}},
        )
        return normalized

    async def sign(self, key: str, ttl: float | None = None) -> str:
        """Return a V4 signed GET URL valid for the resolved TTL."""
        normalized = normalize_key(key, self._bucket_name)
        seconds = resolve_ttl(ttl, self._default_ttl)
        blob = self._bucket().blob(normalized)
        return await asyncio.to_thread(
            blob.generate_signed_url,
            version="v4",
            expiration=timedelta(seconds=seconds),
            method="GET",
        )

    async def exists(self, key: str) -> bool:
        normalized = normalize_key(key, self._bucket_name)
        blob = self._bucket().blob(normalized)
        return await asyncio.to_thread(blob.exists)


@dataclass
class ProbeConfig:
    """Backoff settings for the signed URL readiness probe."""

    max_attempts: int = 4
    initial_delay: float = 0.5
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter: bool = True
    timeout: float = 5.0
    retry_status_codes: set[int] = field(
        default_factory=lambda: {403, 404, 408, 429, 500, 502, 503, 504}
    )


def _is_ready(status: int | None) -> bool:
    return status is not None and 200 <= status < 300


async def wait_until_readable(
    url: str,
    config: ProbeConfig | None = None,
    client: httpx.AsyncClient | None = None,
) -> bool:
    """
    Poll a freshly signed URL until the object is readable.

    Newly written objects can briefly answer 403/404 on signed reads, so the
    URL is probed with HEAD requests under exponential backoff. Network
    errors and ``retry_status_codes`` are retried; any other status stops.

    Returns:
        True once a 2xx is seen, False when attempts are exhausted or the
        status is not worth retrying.
    """
    config = config or ProbeConfig()
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=config.timeout, follow_redirects=True)

    def should_retry(status: int | None) -> bool:
        return status is None or status in config.retry_status_codes

    def log_retry(details: dict) -> None:
        logger.debug(
            "Signed URL not readable yet",
            extra={
                "context": {
                    "url": redact_url(url),
                    "status": details["value"],
                    "attempt": details["tries"],
                    "wait": round(details["wait"], 3),
                }
            },
        )

    @backoff.on_predicate(
        backoff.expo,
        predicate=should_retry,
        max_tries=config.max_attempts,
        jitter=backoff.full_jitter if config.jitter else None,
        on_backoff=log_retry,
        logger=None,
        base=config.exponential_base,
        factor=config.initial_delay,
        max_value=config.max_delay,
    )
    async def head_status() -> int | None:
        try:
            response = await client.head(url)
        except httpx.RequestError as e:
            logger.debug(f"Readiness probe network error: {e}")
            return None
        return response.status_code

    try:
        status = await head_status()
    finally:
        if owns_client:
            await client.aclose()

    if _is_ready(status):
        return True
    logger.warning(
        "Signed URL not readable",
        extra={"context": {"url": redact_url(url), "status": status}},
    )
    return False
