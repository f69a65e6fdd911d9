import functools
import threading
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, Iterator

from notification_engine.utils.context import set_request_id
from notification_engine.utils.logging import get_logger, task_context


class TaskRunGuard:
    """
    Process-local "is running" flags, one per task name.

    Acquisition never blocks: an overlapping run of the same task is told to
    skip, while runs of different tasks proceed independently.
    """

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, task_name: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(task_name)
            if lock is None:
                lock = self._locks[task_name] = threading.Lock()
            return lock

    @contextmanager
    def acquire(self, task_name: str) -> Iterator[bool]:
        lock = self._lock_for(task_name)
        acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()

    def is_running(self, task_name: str) -> bool:
        return self._lock_for(task_name).locked()


task_guard = TaskRunGuard()


def skipped_result(task_name: str, request_id: str) -> Dict[str, Any]:
    return {
        "success": True,
        "skipped": True,
        "reason": "already_running",
        "task": task_name,
        "request_id": request_id,
    }


async def run_exclusive(
    task_name: str,
    request_id: str,
    func: Callable[..., Awaitable[Dict[str, Any]]],
    *args,
    **kwargs,
) -> Dict[str, Any]:
    """Await ``func(request_id, ...)`` unless a run of ``task_name`` is in progress"""
    set_request_id(request_id)
    with task_guard.acquire(task_name) as acquired:
        if not acquired:
            get_logger().bind(request_id=request_id).warning(
                "Skipping overlapping task run", task=task_name
            )
            return skipped_result(task_name, request_id)
        with task_context(task_name):
            return await func(request_id, *args, **kwargs)


def skip_if_running(task_name: str):
    """Decorator form of :func:`run_exclusive` for tasks with a fixed name"""

    def decorator(func: Callable[..., Awaitable[Dict[str, Any]]]):
        @functools.wraps(func)
        async def wrapper(request_id: str, *args, **kwargs) -> Dict[str, Any]:
            return await run_exclusive(task_name, request_id, func, *args, **kwargs)

        return wrapper

    return decorator
