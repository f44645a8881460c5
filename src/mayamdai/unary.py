"""Request/response over plain HTTP POST, used for http(s) endpoints.

There is no session here: every call is its own POST carrying the same
envelope the websocket would carry, and the reply is matched to the call that
made it.
"""

import asyncio
import logging
from collections.abc import Mapping
from datetime import timedelta
from typing import Any
from urllib.parse import urlsplit

import httpx

from mayamdai.correlation import CorrelationTable, Outcome, PendingRequest
from mayamdai.error_schema import (
    HttpErrorException,
    MayaException,
    RequestTimeoutException,
    SendFailedException,
    ServerErrorException,
    SupersededException,
    stringify_exception,
)
from mayamdai.messages import (
    NOOP_KIND,
    Envelope,
    InvalidMessageException,
    build_request,
    parse_envelope,
)
from mayamdai.session import CLOSED_MESSAGE, CONNECTED_MESSAGE
from mayamdai.task_manager import BackgroundTaskManager
from mayamdai.transport_options import TransportOptions

logger = logging.getLogger(__name__)

UNARY_SCHEMES = frozenset(["http", "https"])


def is_unary_endpoint(endpoint_url: str) -> bool:
    return urlsplit(endpoint_url).scheme.lower() in UNARY_SCHEMES


class UnaryClient:
    def __init__(
        self,
        endpoint_url: str,
        transport_options: TransportOptions,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint_url = endpoint_url
        self._http_transport = http_transport
        self._default_timeout = timedelta(
            milliseconds=transport_options.request_timeout_ms
        )
        self._http: httpx.AsyncClient | None = None
        self._credentials: tuple[str, str] | None = None
        self._next_request_id = 0
        self.requests = CorrelationTable()
        self._task_manager = BackgroundTaskManager("unary")

    @property
    def endpoint_url(self) -> str:
        return self._endpoint_url

    def has_credentials(self) -> bool:
        return self._credentials is not None

    async def connect(self, api_key: str, api_secret: str) -> str:
        """Validate the credentials with a no-op request and remember them."""
        request_id = self._next_request_id
        await self._post(
            NOOP_KIND,
            request_id,
            {
                "apiKey": api_key,
                "apiSecret": api_secret,
                "requestId": request_id,
                "requestType": NOOP_KIND,
            },
            self._default_timeout,
        )
        self._next_request_id += 1
        self._credentials = (api_key, api_secret)
        return CONNECTED_MESSAGE

    async def call(
        self,
        kind: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: timedelta | None = None,
        cancel_pending: bool = False,
    ) -> dict[str, Any]:
        request_id = self._next_request_id
        self._next_request_id += 1
        envelope = build_request(kind, request_id, params)
        if not envelope.get("apiKey") and self._credentials is not None:
            envelope["apiKey"], envelope["apiSecret"] = self._credentials

        if cancel_pending:
            cancelled = self.requests.cancel_all(
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
        self.requests.register(pending)
        if timeout is None:
            timeout = self._default_timeout
        # Bounds the call even if the POST itself never gives up
        pending.timeout_handle = loop.call_later(
            timeout.total_seconds(), self._expire, kind, request_id
        )
        exchange = self._task_manager.create_task(
            self._exchange(pending, timeout),
            name=f"unary-{kind}-{request_id}",
        )
        try:
            return await pending.future
        finally:
            self.requests.discard(pending)
            if not exchange.done():
                exchange.cancel()

    async def close(self) -> str:
        """Forget the credentials. Nothing is sent to the server."""
        self._credentials = None
        await self._task_manager.cancel_all_tasks()
        if self._http is not None:
            await self._http.aclose()
            self._http = None
        return CLOSED_MESSAGE

    async def _exchange(self, pending: PendingRequest, timeout: timedelta) -> None:
        outcome: Outcome
        try:
            reply = await self._post(
                pending.kind, pending.id, pending.envelope, timeout
            )
            outcome = reply.payload()
        except MayaException as e:
            outcome = e
        except Exception as e:
            logger.debug(
                "Request send error (%s:%d)", pending.kind, pending.id, exc_info=True
            )
            outcome = SendFailedException(
                f"Request send failed: {stringify_exception(e)}"
            )
        if not self.requests.resolve(pending.kind, pending.id, outcome):
            logger.debug("Stale response: %s, %s", pending.kind, pending.id)

    def _expire(self, kind: str, request_id: int) -> None:
        if self.requests.resolve(
            kind, request_id, RequestTimeoutException(kind, request_id)
        ):
            logger.debug("Request (%s:%d) timed out", kind, request_id)

    async def _post(
        self,
        kind: str,
        request_id: int,
        body: Mapping[str, Any],
        timeout: timedelta,
    ) -> Envelope:
        try:
            response = await self._client().post(
                self._endpoint_url,
                json=dict(body),
                timeout=timeout.total_seconds(),
            )
        except httpx.TimeoutException as e:
            raise RequestTimeoutException(kind, request_id) from e
        except httpx.HTTPError as e:
            logger.debug(
                "Request send error (%s:%d)", kind, request_id, exc_info=True
            )
            raise SendFailedException(
                f"Request send failed: {stringify_exception(e)}"
            ) from e

        if response.status_code != httpx.codes.OK:
            raise HttpErrorException(response.status_code, response.reason_phrase)
        try:
            reply = parse_envelope(response.json(), "json")
        except (ValueError, InvalidMessageException) as e:
            raise SendFailedException(
                f"Request send failed: malformed response ({stringify_exception(e)})"
            ) from e
        if not reply.ok:
            raise ServerErrorException(reply.statusCode, reply.statusMessage)
        return reply

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(transport=self._http_transport)
        return self._http


async def request_unary(
    endpoint_url: str,
    kind: str,
    params: Mapping[str, Any] | None = None,
    *,
    timeout: timedelta | None = None,
    transport_options: TransportOptions | None = None,
    http_transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """One POST without connect(); credentials must be in `params`."""
    client = UnaryClient(
        endpoint_url,
        transport_options or TransportOptions(),
        http_transport=http_transport,
    )
    try:
        return await client.call(kind, params, timeout=timeout)
    finally:
        await client.close()
