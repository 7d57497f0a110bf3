import threading
from datetime import datetime


class RecordTracker:
    """
    RecordTracker: Is a thread-safe approach for tracking
    usage entries that were already applied to the block tracker.

    Prevents double-counting entries that are delivered more than
    once (re-read log lines, messages copied across transcript files)
    by maintaining a dict of dedup keys mapped to the entry's
    timestamp.

    Supports time-based eviction via evict_before() to prevent
    unbounded memory growth.
    """

    def __init__(self) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        self._seen: "dict[str, datetime]" = {}

    def __len__(self) -> "int":
        with self._lock:
            return len(self._seen)

    def is_new(self, key: "str", timestamp: "datetime") -> "bool":
        """
        checks if the given entry key is new. If so, mark it as seen
        and returns True.
        """
        with self._lock:
            if key in self._seen:
                return False
            self._seen[key] = timestamp
            return True

    def forget(self, key: "str") -> "None":
        """
        drops a key so the entry can be offered again, used when the
        entry was rejected after being marked as seen.
        """
        with self._lock:
            self._seen.pop(key, None)

    def evict_before(self, cutoff: "datetime") -> "int":
        """
        removes all keys whose entry timestamp is older than cutoff.
        Returns the number of evicted keys.
        """
        with self._lock:
            to_remove = [k for k, ts in self._seen.items() if ts < cutoff]
            for k in to_remove:
                del self._seen[k]
            return len(to_remove)
