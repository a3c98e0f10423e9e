from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, List, Optional


logger = logging.getLogger(__name__)


class BestEffortTasks:
    """
    Side work (score recording) dispatched off the event loop. Failures are
    logged when the task finishes and never reach the caller; nothing in
    the tracing path waits on a result.
    """

    def __init__(self, max_workers: int = 2) -> None:
        self._executor: Optional[ThreadPoolExecutor] = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="hooktrace-task"
        )
        self._futures: List[Future] = []
        self.failures = 0

    def submit(self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Optional[Future]:
        if self._executor is None:
            logger.debug("task %s dropped after shutdown", label)
            return None
        try:
            fut = self._executor.submit(fn, *args, **kwargs)
        except RuntimeError as err:
            logger.debug("task %s not scheduled: %r", label, err)
            return None
        fut.add_done_callback(lambda f: self._on_done(label, f))
        self._futures.append(fut)
        return fut

    def _on_done(self, label: str, fut: Future) -> None:
        err = fut.exception()
        if err is not None:
            self.failures += 1
            logger.warning("best-effort task %s failed: %r", label, err)

    def drain(self, timeout_s: Optional[float] = 10.0) -> None:
        """Let pending tasks finish before the process exits, then stop the pool."""
        executor, self._executor = self._executor, None
        if executor is None:
            return
        pending, self._futures = self._futures, []
        for fut in pending:
            try:
                fut.result(timeout=timeout_s)
            except Exception:
                # Already reported by the done callback.
                continue
        executor.shutdown(wait=False)
