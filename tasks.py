"""Background task processing via a thread pool with synchronous fallback.

When TASKS_ASYNC is enabled, tasks are submitted to a process-wide thread
pool and the caller does not wait for them (document writes are
fire-and-forget). Otherwise, tasks execute synchronously in the request
thread, which keeps tests deterministic.

Usage:
    from tasks import enqueue
    enqueue(some_function, arg1, arg2)
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor

logger = logging.getLogger(__name__)

_executor: ThreadPoolExecutor | None = None


def init_tasks(app) -> None:
    """Start the worker pool if TASKS_ASYNC is set. Call once from create_app()."""
    global _executor

    shutdown()
    if not app.config.get("TASKS_ASYNC", False):
        app.logger.info("Task backend: synchronous")
        return

    workers = int(app.config.get("TASK_WORKERS", 4))
    _executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="studyai-task")
    app.logger.info("Task backend: thread pool (%d workers)", workers)


def _log_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("Background task failed: %s", exc, exc_info=exc)


def enqueue(func, *args, **kwargs):
    """Submit a task to the pool if available, else call synchronously.

    Returns the Future or the function's return value.
    """
    if _executor is not None:
        try:
            future = _executor.submit(func, *args, **kwargs)
            future.add_done_callback(_log_failure)
            logger.debug("Enqueued %s", getattr(func, "__name__", func))
            return future
        except RuntimeError as e:
            logger.warning("Thread pool rejected %s, running synchronously: %s",
                           getattr(func, "__name__", func), e)

    logger.debug("Running %s synchronously", getattr(func, "__name__", func))
    return func(*args, **kwargs)


def is_async_available() -> bool:
    return _executor is not None


def shutdown(wait: bool = True) -> None:
    """Stop the pool, draining queued tasks when ``wait`` is true."""
    global _executor
    if _executor is not None:
        _executor.shutdown(wait=wait)
        _executor = None
