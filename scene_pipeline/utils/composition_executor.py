"""Composition Executor - the single worker that runs every heavy encoder job."""

import time
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional

from scene_pipeline.core.config import Settings


class CompositionExecutor:
    """
    Bounded executor for composition and concatenation work.

    max_workers is fixed at 1 so at most one CPU/memory-heavy encoder runs at
    a time, however many scenes are in flight.
    """

    def __init__(self, settings: Settings, logger: Any):
        """
        Initialize the executor.

        Args:
            settings: Application settings
            logger: Logger instance
        """
        self.settings = settings
        self.logger = logger
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="composition")

    def submit(self, task: Callable[[], Any], task_name: str) -> Future:
        """Queue a task and return its future."""

        def run() -> Any:
            start_time = time.time()
            self.logger.info(f"Executing {task_name}...")
            try:
                result = task()
            except Exception as e:
                elapsed = time.time() - start_time
                self.logger.error(f"❌ {task_name} failed after {elapsed:.2f}s: {e}")
                raise
            elapsed = time.time() - start_time
            self.logger.info(f"✅ {task_name} completed in {elapsed:.2f}s")
            return result

        return self._executor.submit(run)

    def wait(self, future: Optional[Future], timeout: float, task_name: str = "composition") -> bool:
        """
        Wait for a future without raising its exception.

        Args:
            future: Future to wait for (None is treated as done)
            timeout: Seconds to wait
            task_name: Name used in the timeout warning

        Returns:
            True if the future finished, False if the wait timed out
        """
        if future is None:
            return True
        try:
            future.exception(timeout=timeout)
            return True
        except CancelledError:
            return True
        except FutureTimeoutError:
            self.logger.warning(f"⚠️ {task_name} still running after {timeout:.0f}s, continuing without it")
            return False

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=cancel_pending)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown(wait=True)
