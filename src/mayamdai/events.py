import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Literal, TypeAlias, get_args

from aiochannel import Channel, ChannelClosed, ChannelFull

from mayamdai.task_manager import BackgroundTaskManager

logger = logging.getLogger(__name__)

EventName: TypeAlias = Literal["open", "close", "error", "partial"]
EventHandler: TypeAlias = Callable[[Any], Any]

EVENT_NAMES: frozenset[str] = frozenset(get_args(EventName))


@dataclass(frozen=True)
class SessionEvent:
    name: EventName
    payload: Any = None


class SessionEvents:
    """Side channel for things no single request is waiting on.

    - "open": websocket opened, payload is the endpoint url
    - "close": websocket went away, payload is the reason or None
    - "error": transport level failure, payload is the exception
    - "partial": unsolicited frame for a known kind, payload is the decoded frame

    Handlers may be plain functions or coroutine functions. A failing handler is
    logged and never reaches the session.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._subscribers: list[Channel[SessionEvent]] = []
        self._task_manager = BackgroundTaskManager("events")

    def on(
        self, name: EventName, handler: EventHandler | None = None
    ) -> Callable[[EventHandler], EventHandler] | EventHandler:
        """Register a handler, directly or as a decorator.

        Example::

            @client.events.on("partial")
            def handle(payload: dict) -> None:
                ...
        """
        _check_name(name)

        def decorator(fn: EventHandler) -> EventHandler:
            self._handlers[name].append(fn)
            return fn

        if handler is not None:
            return decorator(handler)
        return decorator

    def off(self, name: EventName, handler: EventHandler) -> None:
        handlers = self._handlers.get(name, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, name: EventName, payload: Any = None) -> None:
        logger.debug("emit %s", name)
        for handler in list(self._handlers.get(name, [])):
            try:
                result = handler(payload)
                if asyncio.iscoroutine(result):
                    self._task_manager.create_task(result, name=f"event-{name}")
            except Exception:
                logger.exception("Handler error for %r", name)

        event = SessionEvent(name=name, payload=payload)
        for channel in list(self._subscribers):
            try:
                channel.put_nowait(event)
            except ChannelFull:
                logger.warning("Event subscriber is full, dropping %r", name)
            except ChannelClosed:
                pass

    @asynccontextmanager
    async def subscribe(self, maxsize: int = 128) -> AsyncIterator[
        AsyncIterator[SessionEvent]
    ]:
        """Iterate events as they are emitted until the context exits."""
        channel: Channel[SessionEvent] = Channel(maxsize=maxsize)
        self._subscribers.append(channel)
        try:
            yield aiter(channel)
        finally:
            channel.close()
            self._subscribers.remove(channel)

    async def close(self) -> None:
        """End every subscription and cancel handler tasks still running."""
        for channel in self._subscribers:
            channel.close()
        await self._task_manager.cancel_all_tasks()


def _check_name(name: str) -> None:
    if name not in EVENT_NAMES:
        raise ValueError(f"Unknown event {name!r}, expected one of {EVENT_NAMES}")
