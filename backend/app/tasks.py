import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("snapmeal-tasks")


class DetachedTaskScheduler:
    """Runs coroutines that must outlive the request that started them.

    ``schedule_detached`` returns as soon as the task exists; nobody on the
    request path awaits it. The scheduler keeps a strong reference to every
    running task (the event loop only holds weak ones) until it finishes, and
    ``drain`` lets the application wait for stragglers on shutdown.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def schedule_detached(
        self,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        name: Optional[str] = None,
    ) -> asyncio.Task:
        task = asyncio.create_task(fn(*args), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Detached task cancelled name=%s", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Detached task raised name=%s",
                task.get_name(),
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for running tasks. Returns how many were still running at timeout."""
        if not self._tasks:
            return 0
        _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        if still_running:
            logger.warning("Detached tasks still running after drain count=%s", len(still_running))
        return len(still_running)


background_tasks = DetachedTaskScheduler()
