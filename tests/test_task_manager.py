import asyncio

from mayamdai.error_schema import SessionClosedException
from mayamdai.task_manager import BackgroundTaskManager
from tests.fixtures.logging import NoErrors


async def test_cancel_all_tasks() -> None:
    manager = BackgroundTaskManager("test")
    tasks = [manager.create_task(asyncio.sleep(10)) for _ in range(3)]
    assert len(manager) == 3

    await manager.cancel_all_tasks()
    assert all(task.cancelled() for task in tasks)
    assert len(manager) == 0


async def test_failed_task_is_logged(no_logging_error: NoErrors) -> None:
    manager = BackgroundTaskManager("test")

    async def fail() -> None:
        raise RuntimeError("boom")

    task = manager.create_task(fail(), name="failing")
    await asyncio.gather(task, return_exceptions=True)

    errors = no_logging_error.errors()
    assert len(errors) == 1
    assert "failing" in errors[0].getMessage()
    no_logging_error.allow_errors()


async def test_session_closed_is_not_logged(no_logging_error: NoErrors) -> None:
    manager = BackgroundTaskManager("test")

    async def closed() -> None:
        raise SessionClosedException()

    task = manager.create_task(closed())
    await asyncio.gather(task, return_exceptions=True)
    no_logging_error()
