from datetime import timedelta
from typing import AsyncIterator

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from mayamdai.backoff import ReconnectBackoff
from mayamdai.session import Session
from mayamdai.transport_options import TransportOptions

# Modular fixtures
pytest_plugins = ["tests.fixtures.logging", "tests.fixtures.ws_server"]

SHORT_TIMEOUT = timedelta(milliseconds=50)


class NoBackoff(ReconnectBackoff):
    def get_backoff_ms(self, attempt: int) -> float:
        return 0


@pytest.fixture
def transport_options() -> TransportOptions:
    return TransportOptions(
        ping_interval_ms=60_000,
        retry_interval_ms=10,
        request_timeout_ms=2_000,
        close_timeout_ms=1_000,
    )


@pytest.fixture
async def session(transport_options: TransportOptions) -> AsyncIterator[Session]:
    session = Session(transport_options, backoff=NoBackoff())
    yield session
    await session.close()


@pytest.fixture(scope="session")
def span_exporter() -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    processor = SimpleSpanProcessor(exporter)
    provider = TracerProvider()
    provider.add_span_processor(processor)
    trace.set_tracer_provider(provider)
    return exporter


@pytest.fixture(autouse=True)
def reset_span_exporter(span_exporter: InMemorySpanExporter) -> None:
    span_exporter.clear()
