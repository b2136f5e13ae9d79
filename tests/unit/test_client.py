"""Unit tests for RelayClient and the auth endpoints.

Runs the full stack (client -> pipeline -> httpx) against
httpx.MockTransport.
"""

import json

import httpx
import pytest

from fakes import RecordingNotifier, settle_loop
from relay import RelayClient
from relay.api import login, logout
from relay.core.config import Settings
from relay.pipeline import (
    AuthenticationError,
    BusinessError,
    InMemoryCredentialStore,
    Priority,
    RequestCancelledError,
)


@pytest.fixture
def client_settings() -> Settings:
    return Settings(
        relay_env="test",
        api_base_url="http://api.test",
        retry_delay_ms=0,
        request_timeout_ms=1000,
    )


class Backend:
    """Tiny in-memory API used as the MockTransport handler."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.valid_tokens = {"T1"}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/oauth2/token":
            payload = json.loads(request.content)
            if payload.get("grant_type") == "password":
                if payload.get("password") != "secret":
                    return httpx.Response(401, json={"msg": "bad credentials"})
                return httpx.Response(
                    200, json={"access_token": "T1", "refresh_token": "R1"}
                )
            if payload.get("refresh_token") == "R1":
                self.valid_tokens = {"T2"}
                return httpx.Response(200, json={"access_token": "T2"})
            return httpx.Response(400, json={"msg": "invalid grant"})

        authorization = request.headers.get("Authorization", "")
        if authorization.removeprefix("Bearer ") not in self.valid_tokens:
            return httpx.Response(401)

        if path == "/orders" and request.method == "POST":
            return httpx.Response(200, json={"code": 200, "msg": "ok", "data": {"id": 7}})
        if path == "/orders":
            page = request.url.params.get("page")
            return httpx.Response(200, json={"code": 200, "msg": "ok", "data": {"page": page}})
        return httpx.Response(404)


@pytest.fixture
def backend() -> Backend:
    return Backend()


class TestRelayClient:
    """Verb helpers and lifecycle."""

    @pytest.mark.asyncio
    async def test_get_with_params(self, backend, client_settings):
        credentials = InMemoryCredentialStore("T1", "R1")

        async with RelayClient(
            credentials=credentials,
            notifier=RecordingNotifier(),
            settings=client_settings,
            transport=httpx.MockTransport(backend),
        ) as client:
            outcome = await client.get("/orders", params={"page": 3})

        assert outcome.body["data"] == {"page": "3"}
        assert str(backend.requests[0].url) == "http://api.test/orders?page=3"

    @pytest.mark.asyncio
    async def test_post_with_options(self, backend, client_settings):
        credentials = InMemoryCredentialStore("T1", "R1")

        async with RelayClient(
            credentials=credentials,
            settings=client_settings,
            transport=httpx.MockTransport(backend),
        ) as client:
            outcome = await client.post(
                "/orders", json={"sku": "A-1"}, priority=Priority.HIGH
            )

        assert outcome.body["data"] == {"id": 7}
        assert json.loads(backend.requests[0].content) == {"sku": "A-1"}

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_transparently(self, backend, client_settings):
        credentials = InMemoryCredentialStore("T0", "R1")

        async with RelayClient(
            credentials=credentials,
            settings=client_settings,
            transport=httpx.MockTransport(backend),
        ) as client:
            outcome = await client.get("/orders")

        assert outcome.status == 200
        assert credentials.get_credential() == "T2"
        assert [request.url.path for request in backend.requests] == [
            "/orders",
            "/oauth2/token",
            "/orders",
        ]

    @pytest.mark.asyncio
    async def test_cancellation_source(self, backend, client_settings):
        async with RelayClient(
            credentials=InMemoryCredentialStore("T1"),
            settings=client_settings,
            transport=httpx.MockTransport(backend),
        ) as client:
            source = client.cancellation_source()
            source.cancel()

            with pytest.raises(RequestCancelledError):
                await client.get("/orders", cancellation=source.token)

        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_cancellation_source_following_scope(self, backend, client_settings):
        async with RelayClient(
            credentials=InMemoryCredentialStore("T1"),
            settings=client_settings,
            transport=httpx.MockTransport(backend),
        ) as client:
            source = client.cancellation_source(follow_scope=True)

            client.invalidate_scope()
            await settle_loop()

        assert source.cancelled

    @pytest.mark.asyncio
    async def test_closed_sources_do_not_accumulate_on_scope(
        self, backend, client_settings
    ):
        """Sources following the scope release their hook when closed."""
        async with RelayClient(
            credentials=InMemoryCredentialStore("T1"),
            settings=client_settings,
            transport=httpx.MockTransport(backend),
        ) as client:
            scope_token = client.pipeline.current_token

            for _ in range(5):
                with client.cancellation_source(follow_scope=True) as source:
                    await client.get("/orders", cancellation=source.token)

            assert scope_token.listeners == 0
            assert len(backend.requests) == 5


class TestAuthEndpoints:
    """login() and logout()."""

    @pytest.mark.asyncio
    async def test_login_stores_tokens(self, backend, client_settings):
        credentials = InMemoryCredentialStore()

        async with RelayClient(
            credentials=credentials,
            settings=client_settings,
            transport=httpx.MockTransport(backend),
        ) as client:
            token = await login(client, "ada", "secret")
            outcome = await client.get("/orders")

        assert token.access_token == "T1"
        assert credentials.get_credential() == "T1"
        assert credentials.get_refresh_credential() == "R1"
        assert outcome.status == 200
        login_request = backend.requests[0]
        assert "Authorization" not in login_request.headers
        assert json.loads(login_request.content)["grant_type"] == "password"

    @pytest.mark.asyncio
    async def test_bad_password_does_not_refresh(self, backend, client_settings):
        notifier = RecordingNotifier()

        async with RelayClient(
            credentials=InMemoryCredentialStore(),
            notifier=notifier,
            settings=client_settings,
            transport=httpx.MockTransport(backend),
        ) as client:
            with pytest.raises(AuthenticationError):
                await login(client, "ada", "wrong")

        assert len(backend.requests) == 1
        assert notifier.sign_outs == 0

    @pytest.mark.asyncio
    async def test_login_without_token_in_response(self, client_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"code": 200, "data": {"user": "ada"}})

        async with RelayClient(
            credentials=InMemoryCredentialStore(),
            settings=client_settings,
            transport=httpx.MockTransport(handler),
        ) as client:
            with pytest.raises(BusinessError) as exc_info:
                await login(client, "ada", "secret")

        assert exc_info.value.business_code == "INVALID_TOKEN_RESPONSE"

    @pytest.mark.asyncio
    async def test_logout_clears_and_invalidates(self, backend, client_settings):
        credentials = InMemoryCredentialStore("T1", "R1")

        async with RelayClient(
            credentials=credentials,
            settings=client_settings,
            transport=httpx.MockTransport(backend),
        ) as client:
            token = client.pipeline.current_token
            logout(client)

            assert token.cancelled
            assert client.pipeline.scope.generation == 1

        assert credentials.get_credential() is None
        assert credentials.get_refresh_credential() is None
