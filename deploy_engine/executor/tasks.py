# deploy_engine/executor/tasks.py
"""Background tasks for deploy, backup capture and restore."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from typing import Callable, Dict, List, Optional

from deploy_engine.executor.config import BackgroundTaskConfig

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """
    Thread pool whose futures are retained by the owning entity's ID.

    Requests return as soon as work is submitted; callers that need the
    outcome wait on the future (tests) or poll the entity's status.
    A task can be cancelled only before it starts running.
    """

    def __init__(self, config: Optional[BackgroundTaskConfig] = None):
        self.config = config or BackgroundTaskConfig()
        self._pool = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix=self.config.thread_name_prefix,
        )
        self._lock = threading.Lock()
        self._futures: Dict[str, List[Future]] = {}

    def submit(self, key: str, fn: Callable, *args, **kwargs) -> Future:
        future = self._pool.submit(self._run, key, fn, *args, **kwargs)
        with self._lock:
            self._futures.setdefault(key, []).append(future)
        # Fires immediately if the task already finished
        future.add_done_callback(lambda f: self._forget(key, f))
        return future

    def pending(self, key: str) -> List[Future]:
        with self._lock:
            return list(self._futures.get(key, []))

    def wait(self, key: str, timeout: Optional[float] = None) -> bool:
        """Wait for every task of `key`. Returns False on timeout."""
        futures = self.pending(key)
        if not futures:
            return True
        _, not_done = wait_futures(futures, timeout=timeout)
        return not not_done

    def cancel(self, key: str) -> int:
        """Cancel tasks of `key` that have not started. Returns the count."""
        cancelled = 0
        for future in self.pending(key):
            if future.cancel():
                cancelled += 1
        if cancelled:
            logger.info(f"[tasks] cancelled {cancelled} task(s) for {key}")
        return cancelled

    def shutdown(self, wait: bool = True) -> None:
        logger.info("[tasks] shutting down background tasks")
        self._pool.shutdown(wait=wait)

    def _run(self, key: str, fn: Callable, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            logger.error(f"[tasks] task for {key} failed: {e}", exc_info=True)
            raise

    def _forget(self, key: str, future: Future) -> None:
        with self._lock:
            group = self._futures.get(key)
            if group is None:
                return
            if future in group:
                group.remove(future)
            if not group:
                del self._futures[key]
