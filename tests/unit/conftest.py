"""Shared pytest fixtures for unit tests.

Provides:
- Fake transport, recording notifier and credential store fixtures
- Settings and pipeline fixtures tuned for fast timers
"""

from typing import AsyncGenerator

import pytest
import pytest_asyncio

from fakes import FakeTransport, RecordingNotifier
from relay.core.config import Settings
from relay.pipeline import InMemoryCredentialStore, RequestPipeline, RetryPolicy


@pytest.fixture
def settings() -> Settings:
    """Settings for tests: small pool, fast retries."""
    return Settings(
        relay_env="test",
        max_in_flight=2,
        retry_times=3,
        retry_delay_ms=10,
        request_timeout_ms=1000,
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def credentials() -> InMemoryCredentialStore:
    return InMemoryCredentialStore(access_token="T1", refresh_token="R1")


@pytest_asyncio.fixture
async def pipeline(
    transport: FakeTransport,
    credentials: InMemoryCredentialStore,
    notifier: RecordingNotifier,
    settings: Settings,
) -> AsyncGenerator[RequestPipeline, None]:
    """Pipeline wired to the fakes, closed after the test."""
    pipeline = RequestPipeline(
        transport,
        credentials,
        notifier=notifier,
        settings=settings,
        retry_policy=RetryPolicy(budget=3, base_delay=0.01),
    )
    yield pipeline
    await pipeline.aclose()
