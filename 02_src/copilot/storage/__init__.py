"""Persistence: relational storage and object storage."""

from .object_store import (
    GCSObjectStore,
    IObjectStore,
    ProbeConfig,
    normalize_key,
    resolve_ttl,
    wait_until_readable,
)
from .storage import IStorage, Storage

__all__ = [
    "IStorage",
    "Storage",
    "IObjectStore",
    "GCSObjectStore",
    "ProbeConfig",
    "normalize_key",
    "resolve_ttl",
    "wait_until_readable",
]
