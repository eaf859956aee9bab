"""Response cache shared by every stage: key -> (bytes, metadata), write-once per key."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

import httpx

from sitemirror.errors import NotFoundError

logger = logging.getLogger("sitemirror.cache")


@dataclass
class Metadata:
    """Status and headers captured from the response. Headers are case-insensitive."""

    status: int
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    url: str | None = None
    redirected: bool = False
    location: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.headers, httpx.Headers):
            self.headers = httpx.Headers(self.headers)

    @property
    def content_type(self) -> str | None:
        return self.headers.get("content-type")

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "headers": [list(pair) for pair in self.headers.multi_items()],
            "url": self.url,
            "redirected": self.redirected,
            "location": self.location,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Metadata":
        return cls(
            status=int(data["status"]),
            headers=httpx.Headers([tuple(pair) for pair in data.get("headers", [])]),
            url=data.get("url"),
            redirected=bool(data.get("redirected", False)),
            location=data.get("location"),
        )


@dataclass(frozen=True)
class CacheEntry:
    key: str
    data: bytes
    metadata: Metadata


class Cache:
    """
    In-memory cache. Safe for concurrent readers and writers.

    Population is write-once: set() on a key that already holds data is a
    no-op that logs a warning and returns False, so the first writer wins.
    """

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def set(self, key: str, data: bytes, metadata: Metadata) -> bool:
        """Store data under key. Returns False (and keeps the old entry) if key is taken."""
        with self._lock:
            if self._has(key):
                logger.warning("Cache key already populated, ignoring set: %s", key)
                return False
            self._store(CacheEntry(key, bytes(data), metadata))
            return True

    def get(self, key: str) -> tuple[bytes, Metadata]:
        """Return (data, metadata) for key. Raises NotFoundError if absent."""
        entry = self.entry(key)
        return entry.data, entry.metadata

    def entry(self, key: str) -> CacheEntry:
        with self._lock:
            entry = self._load(key)
        if entry is None:
            raise NotFoundError(key)
        return entry

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        with self._lock:
            return self._has(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def keys(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._entries))

    # Storage hooks; called with the lock held.

    def _has(self, key: str) -> bool:
        return key in self._entries

    def _store(self, entry: CacheEntry) -> None:
        self._entries[entry.key] = entry

    def _load(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)


def _digest(key: str) -> str:
    return hashlib.sha1(key.encode("utf-8")).hexdigest()


class FileCache(Cache):
    """
    Cache that also persists entries under root as <sha1>.body + <sha1>.json,
    so a later run reuses earlier responses instead of fetching them again.
    """

    def __init__(self, root: Path) -> None:
        super().__init__()
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _paths(self, key: str) -> tuple[Path, Path]:
        d = _digest(key)
        sub = self.root / d[:2]
        return sub / f"{d}.body", sub / f"{d}.json"

    def _has(self, key: str) -> bool:
        if key in self._entries:
            return True
        _, meta_path = self._paths(key)
        return meta_path.exists()

    def _store(self, entry: CacheEntry) -> None:
        super()._store(entry)
        body_path, meta_path = self._paths(entry.key)
        body_path.parent.mkdir(parents=True, exist_ok=True)
        body_path.write_bytes(entry.data)
        # Metadata last: its presence marks the entry as complete
        record = {"key": entry.key, "metadata": entry.metadata.to_dict()}
        meta_path.write_text(json.dumps(record, indent=2), encoding="utf-8")

    def _load(self, key: str) -> CacheEntry | None:
        entry = super()._load(key)
        if entry is not None:
            return entry
        body_path, meta_path = self._paths(key)
        if not meta_path.exists():
            return None
        try:
            record = json.loads(meta_path.read_text(encoding="utf-8"))
            data = body_path.read_bytes()
        except (OSError, ValueError) as e:
            logger.warning("Unreadable cache entry for %s: %s", key, e)
            return None
        entry = CacheEntry(key, data, Metadata.from_dict(record["metadata"]))
        self._entries[key] = entry
        return entry
