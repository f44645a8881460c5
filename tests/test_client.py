import asyncio
from typing import Any, AsyncIterator

import httpx
import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from mayamdai.client import Client
from mayamdai.error_schema import RequestTimeoutException
from mayamdai.session import SessionState
from mayamdai.transport_options import TransportOptions
from tests.conftest import SHORT_TIMEOUT, NoBackoff
from tests.fixtures.ws_server import WsServer


@pytest.fixture
async def client(transport_options: TransportOptions) -> AsyncIterator[Client]:
    client = Client(transport_options, backoff=NoBackoff())
    yield client
    await client.close()


async def connect(client: Client, ws_server: WsServer) -> str:
    connecting = asyncio.create_task(client.connect(ws_server.uri, "key", "secret"))
    await ws_server.accept_auth()
    return await connecting


async def test_call_over_websocket(
    ws_server: WsServer,
    client: Client,
    span_exporter: InMemorySpanExporter,
) -> None:
    assert await connect(client, ws_server) == "Authenticated"
    assert client.state == SessionState.READY
    assert not client.is_unary()

    call = asyncio.create_task(client.call("search", {"term": "fever"}))
    request = await ws_server.next_message()
    await ws_server.reply(request, symptoms=["fever"])
    assert (await call)["symptoms"] == ["fever"]

    spans = span_exporter.get_finished_spans()
    assert [span.name for span in spans] == ["mayamdai.client.call.search"]
    assert spans[0].attributes is not None
    assert spans[0].attributes["mayamdai.request_kind"] == "search"
    assert spans[0].attributes["mayamdai.unary"] is False
    assert spans[0].status.status_code == StatusCode.OK


async def test_failed_call_is_recorded_on_span(
    client: Client, span_exporter: InMemorySpanExporter
) -> None:
    with pytest.raises(RequestTimeoutException):
        await client.call("analyze", timeout=SHORT_TIMEOUT)

    spans = span_exporter.get_finished_spans()
    assert len(spans) == 1
    assert spans[0].status.status_code == StatusCode.ERROR
    assert spans[0].attributes is not None
    assert spans[0].attributes["mayamdai.error_code"] == "TIMEOUT"
    assert (
        spans[0].attributes["mayamdai.error_message"]
        == "Request timed out: 0, analyze"
    )


async def test_close_twice(ws_server: WsServer, client: Client) -> None:
    await connect(client, ws_server)
    assert await client.close() == "Closed"
    assert await client.close() == "Closed"


async def test_reconnect_after_close_starts_fresh(
    ws_server: WsServer, client: Client
) -> None:
    await connect(client, ws_server)
    first_session = client.session
    await client.close()
    assert client.session is not first_session
    assert client.state == SessionState.IDLE

    connecting = asyncio.create_task(client.connect(ws_server.uri, "key", "secret"))
    auth = await ws_server.accept_auth()
    assert auth["requestId"] == 0
    await connecting
    assert len(ws_server.connections) == 2


async def test_events_survive_session_reset(
    ws_server: WsServer, client: Client
) -> None:
    opened: list[Any] = []
    client.events.on("open", opened.append)
    await connect(client, ws_server)
    await client.close()
    await connect(client, ws_server)

    assert opened == [ws_server.uri, ws_server.uri]


async def test_http_endpoint_uses_unary() -> None:
    bodies: list[bytes] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(request.content)
        return httpx.Response(
            200,
            json={
                "requestType": "search",
                "requestId": len(bodies) - 1,
                "statusCode": 200,
                "statusMessage": ["OK"],
                "result": "over http",
            },
        )

    unary_client = Client(http_transport=httpx.MockTransport(handler))
    assert await unary_client.connect("http://maya.test", "key", "secret") == (
        "Connected"
    )
    assert unary_client.is_unary()

    result = await unary_client.call("search")
    assert result["result"] == "over http"
    assert len(bodies) == 2
    assert await unary_client.close() == "Closed"
    assert not unary_client.is_unary()


async def test_switching_to_unary_releases_websocket(
    ws_server: WsServer, transport_options: TransportOptions
) -> None:
    client = Client(
        transport_options,
        backoff=NoBackoff(),
        http_transport=httpx.MockTransport(
            lambda request: httpx.Response(
                200,
                json={"requestType": "noop", "requestId": 0, "statusCode": 200},
            )
        ),
    )
    await connect(client, ws_server)
    websocket_session = client.session

    assert await client.connect("http://maya.test", "key", "secret") == "Connected"
    assert websocket_session.state == SessionState.CLOSED
    assert not websocket_session.has_transport()
    assert client.session is not websocket_session

    assert await client.close() == "Closed"
    assert client.state == SessionState.IDLE
    assert not client.session.has_transport()
    # The old socket is gone for good, nothing reconnects
    await asyncio.sleep(0.05)
    assert len(ws_server.connections) == 1


async def test_close_ends_event_subscriptions(
    ws_server: WsServer, client: Client
) -> None:
    await connect(client, ws_server)
    async with client.events.subscribe() as stream:
        await client.close()
        names = [event.name async for event in stream]
    assert names == ["close"]
