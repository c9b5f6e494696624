"""Async utilities for safe task management.

Provides a safe wrapper for asyncio.create_task with error logging,
and a keyed resource tracker for per-entity locks.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Coroutine, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def create_safe_task(
    coro: Coroutine[Any, Any, T],
    *,
    name: str | None = None,
    on_error: Callable[[Exception], None] | None = None,
) -> asyncio.Task[T]:
    """Create an asyncio task whose failure is logged instead of lost.

    Example:
        task = create_safe_task(
            engine.allocate(tournament_id),
            name=f"allocate:{tournament_id}",
        )
    """
    task = asyncio.create_task(coro, name=name)

    def handle_exception(t: asyncio.Task) -> None:
        if t.cancelled():
            return

        exc = t.exception()
        if exc is None:
            return

        logger.error(
            f"Task {name or 'unnamed'} failed with {type(exc).__name__}: {exc}",
            exc_info=exc,
        )

        if on_error:
            try:
                on_error(exc)
            except Exception as handler_exc:
                logger.error(f"Error handler for task {name} also failed: {handler_exc}")

    task.add_done_callback(handle_exception)
    return task


async def cancel_task_safe(task: asyncio.Task | None, timeout: float = 5.0) -> bool:
    """Cancel a task and wait (bounded) for it to finish.

    Returns:
        True if the task is finished, False if cancellation timed out
    """
    if task is None or task.done():
        return True

    task.cancel()

    try:
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
    except asyncio.CancelledError:
        return True
    except asyncio.TimeoutError:
        logger.warning(f"Task cancellation timed out after {timeout}s")
        return False
    except Exception as e:
        logger.debug(f"Task raised exception during cancellation: {e}")
        return True

    return task.done()


class ResourceTracker:
    """Track keyed resources with cleanup of stale entries.

    Example:
        tracker = ResourceTracker(max_age_seconds=3600)
        lock = tracker.get_or_create("tournament:abc", asyncio.Lock)
    """

    def __init__(self, max_age_seconds: int = 3600):
        self._resources: dict[str, tuple[Any, datetime]] = {}
        self._max_age = timedelta(seconds=max_age_seconds)

    def get(self, key: str) -> Any | None:
        entry = self._resources.get(key)
        if entry:
            resource, _ = entry
            self._resources[key] = (resource, datetime.now(timezone.utc))
            return resource
        return None

    def get_or_create(self, key: str, factory: Callable[[], T]) -> T:
        """Get existing resource or create a new one with ``factory``."""
        entry = self._resources.get(key)
        if entry:
            resource, _ = entry
            self._resources[key] = (resource, datetime.now(timezone.utc))
            return resource

        resource = factory()
        self._resources[key] = (resource, datetime.now(timezone.utc))
        return resource

    def cleanup_stale(self, is_busy: Callable[[Any], bool] | None = None) -> int:
        """Drop entries older than max age (skipping busy ones).

        Returns:
            Number of resources removed
        """
        now = datetime.now(timezone.utc)
        stale_keys = [
            key
            for key, (resource, last_access) in self._resources.items()
            if (now - last_access) > self._max_age
            and not (is_busy and is_busy(resource))
        ]
        for key in stale_keys:
            self._resources.pop(key, None)

        if stale_keys:
            logger.debug(f"Cleaned up {len(stale_keys)} stale resources")
        return len(stale_keys)

