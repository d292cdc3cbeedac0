"""Detached best-effort tasks that must never affect the reply path."""

import asyncio
from typing import Any, Coroutine

from app.logging_config import get_logger

logger = get_logger("background_tasks")

# Strong references; the event loop only keeps weak ones to running tasks.
_pending_tasks: set[asyncio.Task] = set()


async def _guarded(name: str, coro: Coroutine[Any, Any, Any], context: dict) -> None:
    try:
        await coro
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning(
            f"Detached task {name} failed",
            extra={"context": {**context, "task": name, "error": str(e)}},
        )


def spawn_detached(name: str, coro: Coroutine[Any, Any, Any], **context: Any) -> asyncio.Task:
    """Schedule coro without awaiting it; failures are logged and dropped."""
    task = asyncio.create_task(_guarded(name, coro, context), name=f"detached:{name}")
    _pending_tasks.add(task)
    task.add_done_callback(_pending_tasks.discard)
    return task


def pending_count() -> int:
    return len(_pending_tasks)


async def drain(timeout: float = 5.0) -> None:
    """Wait for in-flight detached tasks, used on shutdown and in tests."""
    if not _pending_tasks:
        return
    await asyncio.wait(list(_pending_tasks), timeout=timeout)
