"""
In-memory per-auction escalation guard.
Prevents two proxy escalation runs for the same auction from interleaving.
"""
import threading
from typing import Dict, Callable, Any, Hashable, Optional
import logging

logger = logging.getLogger(__name__)


class EscalationGuard:
    """
    Serializes work per key inside one process.

    Only the first caller for a key executes; callers arriving while it runs
    do not wait. They flag the key as dirty and the running caller executes
    the work once more before releasing the key, so no trigger is lost.
    """

    def __init__(self):
        # Maps key -> rerun_requested
        self._running: Dict[Hashable, bool] = {}
        self._lock = threading.Lock()  # Protects the _running dict

    def run(self, key: Hashable, func: Callable[[], Any]) -> Optional[Any]:
        """
        Execute func() for key unless a run is already in flight.

        Returns:
            Result of the last func() call, or None when the work was handed
            to the caller already running for this key.

        Raises:
            Exception: whatever func() raises; the key is released first.
        """
        with self._lock:
            if key in self._running:
                self._running[key] = True
                logger.debug(f"Escalation for {key} already running; queued a rerun")
                return None
            self._running[key] = False

        try:
            while True:
                result = func()
                with self._lock:
                    if not self._running.get(key):
                        self._running.pop(key, None)
                        return result
                    self._running[key] = False
        except Exception:
            with self._lock:
                self._running.pop(key, None)
            raise

    def is_running(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._running
