import asyncio
import logging
from typing import Any, Coroutine

from mayamdai.error_schema import SessionClosedException

logger = logging.getLogger(__name__)


class BackgroundTaskManager:
    """Keeps strong references to background tasks and logs their failures."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.background_tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self.background_tasks)

    def create_task(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self.background_tasks.add(task)
        task.add_done_callback(self._task_done_callback)
        return task

    async def cancel_task(self, task: asyncio.Task[Any]) -> None:
        """Cancel one task and wait until it has unwound.

        Must not be called from inside `task` itself.
        """
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            logger.debug("%s: task %r was cancelled", self.name, task.get_name())
        except SessionClosedException:
            pass
        except Exception:
            logger.exception("%s: exception while cancelling task", self.name)
        finally:
            self.background_tasks.discard(task)

    async def cancel_all_tasks(self) -> None:
        current = asyncio.current_task()
        # Copy, the done callbacks shrink the set while we wait
        for task in list(self.background_tasks):
            if task is current:
                continue
            await self.cancel_task(task)

    def _task_done_callback(self, task: asyncio.Task[Any]) -> None:
        self.background_tasks.discard(task)
        if task.cancelled():
            return
        exception = task.exception()
        if exception is None or isinstance(exception, SessionClosedException):
            return
        logger.error(
            "%s: background task %r failed",
            self.name,
            task.get_name(),
            exc_info=exception,
        )
