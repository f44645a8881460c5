import asyncio
import logging
from typing import Callable

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed

from mayamdai.task_manager import BackgroundTaskManager

logger = logging.getLogger(__name__)


class KeepaliveMonitor:
    """Pings the websocket on a fixed interval.

    A pong calls `on_pong`. The monitor never declares the connection dead, the
    websocket reports that through its own close/error path.
    """

    def __init__(
        self,
        interval_ms: float,
        on_pong: Callable[[], None],
        task_manager: BackgroundTaskManager,
    ) -> None:
        self._interval_ms = interval_ms
        self._on_pong = on_pong
        self._task_manager = task_manager
        self._task: asyncio.Task[None] | None = None
        self.pings_sent = 0

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, ws: ClientConnection) -> None:
        self.stop()
        self._task = self._task_manager.create_task(
            setup_keepalive(
                ws,
                self._interval_ms,
                self._on_ping_sent,
                self._on_pong,
            ),
            name="keepalive",
        )

    def stop(self) -> None:
        if self._task is None:
            return
        logger.debug("Stopping keepalive")
        self._task.cancel()
        self._task = None

    def _on_ping_sent(self) -> None:
        self.pings_sent += 1


async def setup_keepalive(
    ws: ClientConnection,
    interval_ms: float,
    on_ping_sent: Callable[[], None],
    on_pong: Callable[[], None],
) -> None:
    def pong_received(waiter: asyncio.Future[float]) -> None:
        if waiter.cancelled() or waiter.exception() is not None:
            return
        logger.debug("Pong after %.3fs", waiter.result())
        on_pong()

    while True:
        await asyncio.sleep(interval_ms / 1000)
        try:
            pong_waiter = asyncio.ensure_future(await ws.ping())
        except ConnectionClosed:
            logger.debug("Trying to ping a closed websocket, stop ping")
            return
        on_ping_sent()
        pong_waiter.add_done_callback(pong_received)
