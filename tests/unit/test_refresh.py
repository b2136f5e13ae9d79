"""Unit tests for single-flight credential refresh.

Tests:
- Refresh and replay with the renewed credential
- One renewal call for concurrent authorization failures
- Refresh failure: sign-out once, every waiter rejected
- Replayed requests rejected again
- Requests that never trigger a refresh
"""

import asyncio

import pytest

from fakes import http_status, ok, settle_loop, token_body
from relay.pipeline import (
    AuthenticationError,
    AuthExpiredError,
    Origin,
    Outcome,
    RefreshStatus,
    RequestCancelledError,
    RequestConfig,
)

TOKEN_URL = "/oauth2/token"


class TestRefreshAndReplay:
    """Successful renewal cycles."""

    @pytest.mark.asyncio
    async def test_unauthorized_request_replayed_with_new_credential(
        self, pipeline, transport, credentials, notifier
    ):
        """401 -> renewal returns T2 -> replay carries Bearer T2."""
        # Arrange
        transport.script("/me", http_status(401), ok({"name": "ada"}))
        transport.script(TOKEN_URL, token_body("T2", "R2"))
        config = RequestConfig(url="/me")

        # Act
        outcome = await pipeline.request(config)

        # Assert
        assert outcome.body["data"] == {"name": "ada"}
        me_calls = transport.calls_to("/me")
        assert [call.authorization for call in me_calls] == ["Bearer T1", "Bearer T2"]
        assert config.origin is Origin.REFRESH_REPLAY
        assert credentials.get_credential() == "T2"
        assert credentials.get_refresh_credential() == "R2"
        assert notifier.errors == []

    @pytest.mark.asyncio
    async def test_renewal_call_uses_refresh_grant(self, pipeline, transport):
        transport.script("/me", http_status(401))
        transport.script(TOKEN_URL, token_body("T2"))

        await pipeline.request(RequestConfig(url="/me"))

        (renewal,) = transport.calls_to(TOKEN_URL)
        assert renewal.method == "POST"
        assert renewal.json == {"grant_type": "refresh_token", "refresh_token": "R1"}
        assert renewal.authorization is None
        assert renewal.cancellation is None

    @pytest.mark.asyncio
    async def test_concurrent_failures_share_one_renewal(
        self, pipeline, transport, notifier
    ):
        """Two 401s while refreshing produce exactly one renewal call."""
        # Arrange
        transport.hold(TOKEN_URL)
        transport.script(TOKEN_URL, token_body("T2"))
        transport.script("/a", http_status(401))
        transport.script("/b", http_status(401))

        # Act
        a = pipeline.submit(RequestConfig(url="/a"))
        b = pipeline.submit(RequestConfig(url="/b"))
        await settle_loop()

        assert pipeline.refresher.status is RefreshStatus.REFRESHING
        assert pipeline.refresher.waiting == 2

        transport.release(TOKEN_URL)
        await asyncio.gather(a, b)

        # Assert
        assert len(transport.calls_to(TOKEN_URL)) == 1
        assert pipeline.refresher.cycles == 1
        assert pipeline.refresher.status is RefreshStatus.IDLE
        assert transport.calls_to("/a")[-1].authorization == "Bearer T2"
        assert transport.calls_to("/b")[-1].authorization == "Bearer T2"
        assert notifier.errors == []
        assert pipeline.admission.in_flight == 0

    @pytest.mark.asyncio
    async def test_business_unauthorized_code_triggers_refresh(
        self, pipeline, transport
    ):
        """A 200 carrying business code 401 is an authorization failure."""
        transport.script(
            "/me",
            Outcome(status=200, body={"code": 401, "msg": "token invalid"}),
            ok(),
        )
        transport.script(TOKEN_URL, token_body("T2"))

        outcome = await pipeline.request(RequestConfig(url="/me"))

        assert outcome.status == 200
        assert pipeline.refresher.cycles == 1

    @pytest.mark.asyncio
    async def test_enveloped_token_response(self, pipeline, transport, credentials):
        """Renewal responses wrapped in the business envelope are unwrapped."""
        transport.script("/me", http_status(401))
        transport.script(TOKEN_URL, ok({"accessToken": "T2", "refreshToken": "R2"}))

        await pipeline.request(RequestConfig(url="/me"))

        assert credentials.get_credential() == "T2"
        assert credentials.get_refresh_credential() == "R2"

    @pytest.mark.asyncio
    async def test_later_failure_starts_new_cycle(self, pipeline, transport):
        """Each completed cycle returns to IDLE; a later 401 refreshes again."""
        transport.script("/me", http_status(401), ok(), http_status(401), ok())
        transport.script(TOKEN_URL, token_body("T2"), token_body("T3"))

        await pipeline.request(RequestConfig(url="/me"))
        await pipeline.request(RequestConfig(url="/me"))

        assert pipeline.refresher.cycles == 2
        assert transport.calls_to("/me")[-1].authorization == "Bearer T3"


class TestRefreshFailure:
    """Renewal cycles that end in sign-out."""

    @pytest.mark.asyncio
    async def test_failed_renewal_rejects_all_waiters(
        self, pipeline, transport, credentials, notifier
    ):
        """Both waiters fail with AuthExpired and sign-out fires once."""
        # Arrange
        transport.hold(TOKEN_URL)
        transport.script(TOKEN_URL, http_status(400))
        transport.script("/a", http_status(401))
        transport.script("/b", http_status(401))
        a = pipeline.submit(RequestConfig(url="/a"))
        b = pipeline.submit(RequestConfig(url="/b"))
        await settle_loop()

        # Act
        transport.release(TOKEN_URL)
        results = await asyncio.gather(a, b, return_exceptions=True)

        # Assert
        assert all(isinstance(result, AuthExpiredError) for result in results)
        assert notifier.sign_outs == 1
        assert notifier.errors == []
        assert credentials.get_credential() is None
        assert credentials.get_refresh_credential() is None
        assert len(transport.calls_to("/a")) == 1
        assert len(transport.calls_to("/b")) == 1
        assert pipeline.admission.in_flight == 0

    @pytest.mark.asyncio
    async def test_missing_refresh_credential_expires(
        self, pipeline, transport, credentials, notifier
    ):
        """Without a refresh credential no renewal call is made."""
        credentials.clear()
        credentials.set_credential("T1")
        transport.script("/me", http_status(401))

        with pytest.raises(AuthExpiredError):
            await pipeline.request(RequestConfig(url="/me"))

        assert transport.calls_to(TOKEN_URL) == []
        assert notifier.sign_outs == 1

    @pytest.mark.asyncio
    async def test_malformed_token_response_expires(
        self, pipeline, transport, notifier
    ):
        transport.script("/me", http_status(401))
        transport.script(TOKEN_URL, Outcome(status=200, body={"expires_in": 60}))

        with pytest.raises(AuthExpiredError):
            await pipeline.request(RequestConfig(url="/me"))

        assert notifier.sign_outs == 1

    @pytest.mark.asyncio
    async def test_unexpected_renewal_error_returns_to_idle(
        self, pipeline, transport, notifier, credentials
    ):
        """A non-pipeline exception from renewal still drains the waiters."""
        # Arrange
        transport.script("/me", http_status(401))
        transport.script(TOKEN_URL, RuntimeError("renewal crashed"))

        # Act
        with pytest.raises(AuthExpiredError):
            await pipeline.request(RequestConfig(url="/me"))

        # Assert
        assert pipeline.refresher.status is RefreshStatus.IDLE
        assert pipeline.refresher.waiting == 0
        assert notifier.sign_outs == 1

        # A later authorization failure starts a new cycle
        credentials.set_credential("T1", "R1")
        transport.script("/me", http_status(401), ok({"id": 1}))
        transport.script(TOKEN_URL, token_body("T2", "R2"))

        outcome = await pipeline.request(RequestConfig(url="/me"))

        assert outcome.body["data"] == {"id": 1}
        assert pipeline.refresher.cycles == 2

    @pytest.mark.asyncio
    async def test_replayed_request_rejected_again(
        self, pipeline, transport, notifier
    ):
        """A replay that receives 401 again fails without a new cycle."""
        transport.script("/me", http_status(401), http_status(401))
        transport.script(TOKEN_URL, token_body("T2"))

        with pytest.raises(AuthExpiredError):
            await pipeline.request(RequestConfig(url="/me"))

        assert pipeline.refresher.cycles == 1
        assert len(transport.calls_to(TOKEN_URL)) == 1
        assert len(transport.calls_to("/me")) == 2
        assert notifier.sign_outs == 0
        assert len(notifier.errors) == 1


class TestNoRefresh:
    """Authorization failures that are not routed to the coordinator."""

    @pytest.mark.asyncio
    async def test_unauthenticated_request_fails_with_client_error(
        self, pipeline, transport, notifier
    ):
        transport.script("/login", http_status(401))

        with pytest.raises(AuthenticationError):
            await pipeline.request(RequestConfig(url="/login", authenticated=False))

        assert pipeline.refresher.cycles == 0
        assert transport.calls_to(TOKEN_URL) == []
        assert transport.calls_to("/login")[0].authorization is None
        assert len(notifier.errors) == 1

    @pytest.mark.asyncio
    async def test_close_rejects_waiters(self, pipeline, transport):
        transport.hold(TOKEN_URL)
        transport.script("/me", http_status(401))
        future = pipeline.submit(RequestConfig(url="/me"))
        await settle_loop()
        assert pipeline.refresher.waiting == 1

        await pipeline.aclose()

        with pytest.raises(RequestCancelledError):
            await future
        assert pipeline.refresher.status is RefreshStatus.IDLE
