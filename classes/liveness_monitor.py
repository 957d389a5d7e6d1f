# classes/liveness_monitor.py

import threading
import time
from typing import Callable, Dict, Optional

GLOBAL_KEY = "__global__"


class LivenessMonitor:
    """
    Last-heartbeat timestamps per key. key=None is the process-wide plugin
    slot used when heartbeats are not scoped to a session.
    Connected means: now - last_heartbeat < timeout_seconds.
    """

    def __init__(self, timeout_seconds: float, clock: Optional[Callable[[], float]] = None) -> None:
        self.timeout_seconds = timeout_seconds
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._last: Dict[str, float] = {}

    def heartbeat(self, key: Optional[str] = None) -> None:
        now = self._clock()
        with self._lock:
            self._last[key or GLOBAL_KEY] = now

    def last_seen(self, key: Optional[str] = None) -> Optional[float]:
        """Seconds since the last heartbeat, or None if none was ever received."""
        with self._lock:
            last = self._last.get(key or GLOBAL_KEY)
        if last is None:
            return None
        return max(0.0, self._clock() - last)

    def is_connected(self, key: Optional[str] = None) -> bool:
        age = self.last_seen(key)
        return age is not None and age < self.timeout_seconds

    def forget(self, key: Optional[str] = None) -> None:
        with self._lock:
            self._last.pop(key or GLOBAL_KEY, None)
