"""Fire-and-forget execution for hooks, notifications and file managers."""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """
    Small thread pool whose jobs never report back to the caller.

    Failures are logged when the job finishes. ``wait()`` blocks until every
    submitted job is done, which shutdown paths and tests rely on.
    """

    def __init__(self, max_workers: int = 4, name: str = "pgmount-bg"):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, description: str, func: Callable[..., Any], *args, **kwargs) -> Future:
        future = self._executor.submit(func, *args, **kwargs)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(lambda f: self._finished(description, f))
        return future

    def _finished(self, description: str, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.warning(f"{description} failed: {error}")

    def wait(self, timeout: Optional[float] = None) -> None:
        """Wait for all jobs submitted so far."""
        with self._lock:
            pending = list(self._pending)
        for future in pending:
            try:
                future.result(timeout=timeout)
            except Exception:
                # Already logged by _finished
                pass

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
