"""Named dedup sets: which keys were already admitted into a stage."""

import threading
from collections import defaultdict

REQUEST_SEEN = "request-seen"
WRITE_SEEN = "write-seen"


class RequestTracker:
    """Thread-safe tracker. Each name is an independent namespace."""

    def __init__(self) -> None:
        self._sets: defaultdict[str, set[str]] = defaultdict(set)
        self._lock = threading.Lock()

    def admit(self, name: str, key: str) -> bool:
        """Mark key as seen under name. True on first admission, False afterwards."""
        with self._lock:
            seen = self._sets[name]
            if key in seen:
                return False
            seen.add(key)
            return True

    def seen(self, name: str, key: str) -> bool:
        with self._lock:
            return key in self._sets.get(name, ())

    def count(self, name: str) -> int:
        with self._lock:
            return len(self._sets.get(name, ()))
