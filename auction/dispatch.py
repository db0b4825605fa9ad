"""Where asynchronous follow-up work (proxy escalation) runs."""
from concurrent.futures import ThreadPoolExecutor
from typing import Callable
import logging

logger = logging.getLogger(__name__)


class InlineDispatcher:
    """Runs work immediately in the caller's thread. Used by tests and scripts."""

    def submit(self, func: Callable[[], None]):
        try:
            func()
        except Exception as e:
            logger.error(f"Background task failed: {e}", exc_info=True)


class ThreadPoolDispatcher:
    """Runs work on a small thread pool so the triggering request returns first."""

    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="escalation")

    def submit(self, func: Callable[[], None]):
        future = self._executor.submit(func)
        future.add_done_callback(self._log_failure)
        return future

    @staticmethod
    def _log_failure(future):
        error = future.exception()
        if error is not None:
            logger.error(f"Background task failed: {error}", exc_info=error)

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
