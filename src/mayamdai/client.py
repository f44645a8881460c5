import logging
from collections.abc import Generator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional, Union

import httpx
import websockets.asyncio.client
from opentelemetry import trace
from opentelemetry.trace import Span, SpanKind, Status, StatusCode

from mayamdai.backoff import ReconnectBackoff
from mayamdai.correlation import ResponsePayload
from mayamdai.dispatcher import RequestDispatcher
from mayamdai.error_schema import MayaException
from mayamdai.events import SessionEvents
from mayamdai.session import ConnectFactory, Session, SessionState
from mayamdai.transport_options import TransportOptions
from mayamdai.unary import UnaryClient, is_unary_endpoint

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class Client:
    """Entry point: connect once, then issue as many concurrent calls as needed.

    ws:// and wss:// endpoints get a persistent authenticated session;
    http:// and https:// endpoints fall back to one POST per call.
    """

    def __init__(
        self,
        transport_options: TransportOptions | None = None,
        *,
        backoff: ReconnectBackoff | None = None,
        connect_factory: ConnectFactory | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._transport_options = transport_options or TransportOptions()
        self._backoff = backoff
        self._connect_factory = connect_factory or websockets.asyncio.client.connect
        self._http_transport = http_transport
        self.events = SessionEvents()
        self._unary: UnaryClient | None = None
        self._dispatcher = RequestDispatcher(
            self._new_session(), self._transport_options
        )

    @property
    def session(self) -> Session:
        return self._dispatcher.session

    @property
    def state(self) -> SessionState:
        return self.session.state

    def is_unary(self) -> bool:
        return self._unary is not None

    async def connect(
        self,
        endpoint_url: str,
        api_key: str,
        api_secret: str,
        websocket_options: Mapping[str, Any] | None = None,
    ) -> str:
        """Authenticate against `endpoint_url`.

        `websocket_options` are passed to websockets' connect() and are
        ignored for http(s) endpoints.
        """
        if is_unary_endpoint(endpoint_url):
            if self._unary is not None:
                await self._unary.close()
            # Give up the websocket, it would otherwise keep reconnecting
            await self.session.close()
            self._reset_session()
            self._unary = UnaryClient(
                endpoint_url,
                self._transport_options,
                http_transport=self._http_transport,
            )
            logger.info("Using unary mode for %s", endpoint_url)
            return await self._unary.connect(api_key, api_secret)

        if self._unary is not None:
            await self._unary.close()
            self._unary = None
        if self.session.is_terminal():
            self._reset_session()
        return await self.session.connect(
            endpoint_url, api_key, api_secret, websocket_options
        )

    async def call(
        self,
        kind: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: timedelta | None = None,
        cancel_pending: bool = False,
    ) -> ResponsePayload:
        with _trace_call(kind) as span_handle:
            span_handle.span.set_attribute("mayamdai.unary", self.is_unary())
            if self._unary is not None:
                return await self._unary.call(
                    kind, params, timeout=timeout, cancel_pending=cancel_pending
                )
            return await self._dispatcher.call(
                kind, params, timeout=timeout, cancel_pending=cancel_pending
            )

    async def close(self) -> str:
        """Close whichever mode is active and end event subscriptions.

        Registered event handlers stay in place for the next connect().
        """
        logger.info("mayamdai client %s start closing", self.session.session_id)
        if self._unary is not None:
            status = await self._unary.close()
            self._unary = None
        else:
            status = await self.session.close()
            self._reset_session()
        await self.events.close()
        logger.info("mayamdai client closed")
        return status

    def _new_session(self) -> Session:
        return Session(
            self._transport_options,
            events=self.events,
            backoff=self._backoff,
            connect_factory=self._connect_factory,
        )

    def _reset_session(self) -> None:
        """Start over with a fresh session, request ids restart at zero."""
        self._dispatcher = RequestDispatcher(
            self._new_session(), self._transport_options
        )


@dataclass
class _SpanHandle:
    """Wraps a span and keeps track of whether or not a status has been recorded yet."""

    span: Span
    did_set_status: bool = False

    def set_status(
        self,
        status: Union[Status, StatusCode],
        description: Optional[str] = None,
    ) -> None:
        if self.did_set_status:
            return
        self.did_set_status = True
        self.span.set_status(status, description)


@contextmanager
def _trace_call(kind: str) -> Generator[_SpanHandle, None, None]:
    span = tracer.start_span(f"mayamdai.client.call.{kind}", kind=SpanKind.CLIENT)
    span.set_attribute("mayamdai.request_kind", kind)
    span_handle = _SpanHandle(span)
    try:
        yield span_handle
    except MayaException as e:
        span.record_exception(e, escaped=True)
        span_handle.set_status(StatusCode.ERROR, e.message)
        span.set_attribute("mayamdai.error_code", e.code)
        span.set_attribute("mayamdai.error_message", e.message)
        raise e
    except BaseException as e:
        span.record_exception(e, escaped=True)
        span_handle.set_status(StatusCode.ERROR, f"{type(e).__name__}: {e}")
        raise e
    finally:
        span_handle.set_status(StatusCode.OK)
        span.end()
