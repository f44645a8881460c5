import asyncio
import logging
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

from mayamdai.correlation import PendingRequest, ResponsePayload
from mayamdai.error_schema import (
    RequestTimeoutException,
    SendFailedException,
    SessionClosedException,
    SupersededException,
    stringify_exception,
)
from mayamdai.messages import build_request
from mayamdai.session import Session
from mayamdai.transport_options import TransportOptions

logger = logging.getLogger(__name__)


class RequestDispatcher:
    """Turns a call into a registered, timed, and (when possible) sent request."""

    def __init__(self, session: Session, transport_options: TransportOptions) -> None:
        self._session = session
        self._default_timeout = timedelta(
            milliseconds=transport_options.request_timeout_ms
        )

    @property
    def session(self) -> Session:
        return self._session

    async def call(
        self,
        kind: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: timedelta | None = None,
        cancel_pending: bool = False,
    ) -> ResponsePayload:
        """Send one request and wait for its response.

        While the session is not READY the request stays queued and is sent
        as soon as authentication succeeds. With `cancel_pending`, every older
        request of the same kind fails with SupersededException first.
        """
        session = self._session
        if session.is_terminal():
            raise SessionClosedException("Session is closed")
        requests = session.requests

        request_id = session.next_request_id()
        envelope = build_request(kind, request_id, params)
        logger.debug("Request: %r", envelope)

        if cancel_pending:
            cancelled = requests.cancel_all(
                kind,
                lambda pending: SupersededException(kind, pending.id, request_id),
            )
            if cancelled:
                logger.debug("Cancelled %d pending %s requests", cancelled, kind)

        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            kind=kind,
            id=request_id,
            envelope=envelope,
            future=loop.create_future(),
        )
        requests.register(pending)
        if timeout is None:
            timeout = self._default_timeout
        pending.timeout_handle = loop.call_later(
            timeout.total_seconds(),
            self._expire,
            kind,
            request_id,
        )

        if session.is_ready():
            try:
                await session.send(envelope)
            except Exception as e:
                logger.debug(
                    "Message send error (%s:%d)", kind, request_id, exc_info=True
                )
                requests.resolve(
                    kind,
                    request_id,
                    SendFailedException(
                        f"Message send failed: {stringify_exception(e)}"
                    ),
                )
        else:
            logger.debug("Request (%s:%d) queued", kind, request_id)

        try:
            return await pending.future
        finally:
            requests.discard(pending)

    def _expire(self, kind: str, request_id: int) -> None:
        if self._session.requests.resolve(
            kind, request_id, RequestTimeoutException(kind, request_id)
        ):
            logger.debug("Request (%s:%d) timed out", kind, request_id)
