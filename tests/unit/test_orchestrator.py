"""
Unit tests for the request orchestrator: admission, single-flight refresh
and the reactive token and allowance policies.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from core.config.settings import RetrySettings, SessionSettings
from core.utils.exceptions import (
    AdmissionTimeoutError,
    BrokerAPIError,
    RateLimitExceededError,
    RefreshTokenExpiredError,
    TokenInvalidError,
    TransientAuthError,
    UnauthorizedError,
)
from core.utils.rate_limiter import TokenBucketRateLimiter
from services.gateway.orchestrator import CallState, RequestOrchestrator
from services.gateway.refresher import SessionRefresher
from tests.conftest import make_oauth_session


def make_orchestrator(holder, authenticator, limiter, sleep, max_rate_limit_retries=None,
                      auth_retry_attempts=3):
    return RequestOrchestrator(
        holder,
        authenticator,
        limiter,
        session_settings=SessionSettings(
            safety_margin_seconds=10.0,
            auth_retry_attempts=auth_retry_attempts,
            auth_retry_delay_seconds=1.0,
        ),
        retry_settings=RetrySettings(
            rate_limit_delay_seconds=10.0,
            max_rate_limit_retries=max_rate_limit_retries,
        ),
        sleep=sleep,
    )


@pytest.fixture
def fresh_session():
    return make_oauth_session(access_token="fresh", expires_in=3600)


@pytest.fixture
def stale_session():
    # Expires inside the 10 second safety margin
    return make_oauth_session(access_token="stale", expires_in=5)


@pytest.fixture
def orchestrator(holder, mock_authenticator, limiter, recording_sleep):
    return make_orchestrator(holder, mock_authenticator, limiter, recording_sleep)


class TestProactiveRefresh:

    @pytest.mark.asyncio
    async def test_fresh_session_used_as_is(self, orchestrator, holder, mock_authenticator, fresh_session):
        await holder.replace(fresh_session)
        op = AsyncMock(return_value="ok")

        assert await orchestrator.execute(op) == "ok"

        op.assert_awaited_once_with(fresh_session)
        mock_authenticator.refresh.assert_not_awaited()
        mock_authenticator.login.assert_not_awaited()
        assert orchestrator.stats.succeeded == 1

    @pytest.mark.asyncio
    async def test_logs_in_when_no_session(self, orchestrator, holder, mock_authenticator, fresh_session):
        mock_authenticator.login.return_value = fresh_session
        op = AsyncMock(return_value="ok")

        await orchestrator.execute(op)

        op.assert_awaited_once_with(fresh_session)
        assert holder.read() is fresh_session
        assert orchestrator.stats.logins == 1

    @pytest.mark.asyncio
    async def test_stale_session_refreshed_before_call(self, orchestrator, holder, mock_authenticator,
                                                       stale_session, fresh_session):
        await holder.replace(stale_session)
        mock_authenticator.refresh.return_value = fresh_session
        op = AsyncMock(return_value="ok")

        await orchestrator.execute(op)

        mock_authenticator.refresh.assert_awaited_once_with(stale_session)
        op.assert_awaited_once_with(fresh_session)
        assert orchestrator.stats.refreshes == 1

    @pytest.mark.asyncio
    async def test_single_flight_refresh(self, orchestrator, holder, mock_authenticator,
                                         stale_session, fresh_session):
        await holder.replace(stale_session)

        async def slow_refresh(current):
            await asyncio.sleep(0.01)
            return fresh_session

        mock_authenticator.refresh.side_effect = slow_refresh
        seen = []

        async def op(session):
            seen.append(session)
            return session.oauth_token.access_token

        results = await asyncio.gather(*(orchestrator.execute(op) for _ in range(20)))

        assert results == ["fresh"] * 20
        assert mock_authenticator.refresh.await_count == 1
        assert all(session is fresh_session for session in seen)

    @pytest.mark.asyncio
    async def test_concurrent_first_login_single_flight(self, orchestrator, holder, mock_authenticator,
                                                        fresh_session):
        async def slow_login():
            await asyncio.sleep(0.01)
            return fresh_session

        mock_authenticator.login.side_effect = slow_login
        seen = []

        async def op(session):
            seen.append(session)
            return session.account_id

        results = await asyncio.gather(*(orchestrator.execute(op) for _ in range(20)))

        assert results == ["ABC123"] * 20
        assert mock_authenticator.login.await_count == 1
        assert all(session is fresh_session for session in seen)
        assert holder.read() is fresh_session

    @pytest.mark.asyncio
    async def test_background_refresher_shares_single_flight(self, orchestrator, holder, mock_authenticator,
                                                             stale_session, fresh_session):
        await holder.replace(stale_session)
        in_flight = 0
        max_in_flight = 0

        async def slow_refresh(current):
            nonlocal in_flight, max_in_flight
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return fresh_session

        async def idle(seconds):
            await asyncio.Event().wait()

        mock_authenticator.refresh.side_effect = slow_refresh
        refresher = SessionRefresher(orchestrator, interval_seconds=15.0, sleep=idle)

        await refresher.start()
        try:
            results = await asyncio.gather(
                *(orchestrator.execute(AsyncMock(return_value="ok")) for _ in range(10))
            )
        finally:
            await refresher.stop()

        assert results == ["ok"] * 10
        assert mock_authenticator.refresh.await_count == 1
        assert max_in_flight == 1
        assert orchestrator.stats.refreshes == 1
        assert holder.read() is fresh_session

    @pytest.mark.asyncio
    async def test_refresh_falls_back_to_login(self, orchestrator, holder, mock_authenticator,
                                               stale_session, fresh_session):
        await holder.replace(stale_session)
        mock_authenticator.refresh.side_effect = RefreshTokenExpiredError("expired")
        mock_authenticator.login.return_value = fresh_session

        await orchestrator.execute(AsyncMock(return_value="ok"))

        assert orchestrator.stats.logins == 1
        assert orchestrator.stats.refreshes == 0
        assert holder.read() is fresh_session

    @pytest.mark.asyncio
    async def test_transient_auth_errors_retried_with_delay(self, orchestrator, holder, mock_authenticator,
                                                            recording_sleep, stale_session, fresh_session):
        await holder.replace(stale_session)
        mock_authenticator.refresh.side_effect = [
            TransientAuthError("down"),
            TransientAuthError("down"),
            fresh_session,
        ]

        await orchestrator.execute(AsyncMock(return_value="ok"))

        assert mock_authenticator.refresh.await_count == 3
        assert recording_sleep.calls == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_transient_auth_budget_exhausted(self, orchestrator, holder, mock_authenticator,
                                                   stale_session):
        await holder.replace(stale_session)
        mock_authenticator.refresh.side_effect = TransientAuthError("down")
        op = AsyncMock()

        with pytest.raises(TransientAuthError):
            await orchestrator.execute(op)

        assert mock_authenticator.refresh.await_count == 3
        op.assert_not_awaited()
        assert holder.read() is stale_session
        assert holder.locked is False

    @pytest.mark.asyncio
    async def test_login_unauthorized_is_terminal(self, orchestrator, mock_authenticator):
        mock_authenticator.login.side_effect = UnauthorizedError("bad credentials")

        with pytest.raises(UnauthorizedError):
            await orchestrator.execute(AsyncMock())

        assert mock_authenticator.login.await_count == 1
        assert orchestrator.stats.failed == 1


class TestTokenRejection:

    @pytest.mark.asyncio
    async def test_token_invalid_then_success(self, orchestrator, holder, mock_authenticator, fresh_session):
        rejected = make_oauth_session(access_token="rejected", expires_in=3600)
        await holder.replace(rejected)
        mock_authenticator.refresh.return_value = fresh_session
        op = AsyncMock(side_effect=[TokenInvalidError("invalid", error_code="error.security.oauth-token-invalid"),
                                    "ok"])

        assert await orchestrator.execute(op) == "ok"

        mock_authenticator.refresh.assert_awaited_once_with(rejected)
        assert op.await_args_list[0].args[0] is rejected
        assert op.await_args_list[1].args[0] is fresh_session
        assert orchestrator.stats.auth_retries == 1
        assert orchestrator.stats.succeeded == 1

    @pytest.mark.asyncio
    async def test_token_invalid_twice_is_unauthorized(self, orchestrator, holder, mock_authenticator,
                                                       fresh_session):
        await holder.replace(make_oauth_session(access_token="rejected", expires_in=3600))
        mock_authenticator.refresh.return_value = fresh_session
        op = AsyncMock(side_effect=TokenInvalidError("invalid"))

        with pytest.raises(UnauthorizedError) as exc_info:
            await orchestrator.execute(op)

        assert isinstance(exc_info.value.__cause__, TokenInvalidError)
        assert op.await_count == 2
        assert mock_authenticator.refresh.await_count == 1
        assert orchestrator.stats.failed == 1

    @pytest.mark.asyncio
    async def test_skips_refresh_when_session_already_replaced(self, orchestrator, holder,
                                                               mock_authenticator, fresh_session):
        rejected = make_oauth_session(access_token="rejected", expires_in=3600)
        await holder.replace(rejected)
        calls = []

        async def op(session):
            calls.append(session)
            if len(calls) == 1:
                # Another caller refreshes while this request is in flight
                await holder.replace(fresh_session)
                raise TokenInvalidError("invalid")
            return "ok"

        assert await orchestrator.execute(op) == "ok"

        mock_authenticator.refresh.assert_not_awaited()
        assert calls == [rejected, fresh_session]


class TestRateLimitRetry:

    @pytest.mark.asyncio
    async def test_retries_until_allowance_clears(self, orchestrator, holder, limiter, recording_sleep,
                                                  fresh_session):
        await holder.replace(fresh_session)
        op = AsyncMock(side_effect=[RateLimitExceededError("exceeded")] * 3 + ["ok"])
        tokens_before = limiter.available_tokens

        assert await orchestrator.execute(op) == "ok"

        assert op.await_count == 4
        assert recording_sleep.calls == [10.0, 10.0, 10.0]
        assert orchestrator.stats.rate_limit_retries == 3
        # Every attempt is admitted through the limiter
        assert limiter.available_tokens == pytest.approx(tokens_before - 4)

    @pytest.mark.asyncio
    async def test_cap_exceeded_propagates(self, holder, mock_authenticator, limiter, recording_sleep,
                                           fresh_session):
        orchestrator = make_orchestrator(holder, mock_authenticator, limiter, recording_sleep,
                                         max_rate_limit_retries=2)
        await holder.replace(fresh_session)
        op = AsyncMock(side_effect=RateLimitExceededError("exceeded"))

        with pytest.raises(RateLimitExceededError) as exc_info:
            await orchestrator.execute(op)

        assert exc_info.value.attempts == 3
        assert op.await_count == 3
        assert recording_sleep.calls == [10.0, 10.0]

    @pytest.mark.asyncio
    async def test_rate_limit_then_token_invalid(self, orchestrator, holder, mock_authenticator,
                                                 recording_sleep, fresh_session):
        await holder.replace(make_oauth_session(access_token="rejected", expires_in=3600))
        mock_authenticator.refresh.return_value = fresh_session
        op = AsyncMock(side_effect=[RateLimitExceededError("exceeded"), TokenInvalidError("invalid"), "ok"])

        assert await orchestrator.execute(op) == "ok"

        assert orchestrator.stats.rate_limit_retries == 1
        assert orchestrator.stats.auth_retries == 1


class TestPassThrough:

    @pytest.mark.asyncio
    async def test_other_errors_propagate_unchanged(self, orchestrator, holder, mock_authenticator,
                                                    fresh_session):
        await holder.replace(fresh_session)
        error = BrokerAPIError("not found", status_code=404)
        op = AsyncMock(side_effect=error)

        with pytest.raises(BrokerAPIError) as exc_info:
            await orchestrator.execute(op)

        assert exc_info.value is error
        assert op.await_count == 1
        mock_authenticator.refresh.assert_not_awaited()
        assert orchestrator.stats.failed == 1

    @pytest.mark.asyncio
    async def test_admission_timeout(self, holder, mock_authenticator, fake_clock, recording_sleep,
                                     fresh_session):
        limiter = TokenBucketRateLimiter(60, 60.0, 1, clock=fake_clock, sleep=fake_clock.sleep)
        limiter.try_acquire()
        orchestrator = make_orchestrator(holder, mock_authenticator, limiter, recording_sleep)
        await holder.replace(fresh_session)
        op = AsyncMock()

        with pytest.raises(AdmissionTimeoutError):
            await orchestrator.execute(op, admission_timeout=0.1)

        op.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_per_call_limiter(self, orchestrator, holder, limiter, fake_clock, fresh_session):
        await holder.replace(fresh_session)
        trading = TokenBucketRateLimiter(100, 60.0, 5, name="trading", clock=fake_clock)

        await orchestrator.execute(AsyncMock(return_value="ok"), rate_limiter=trading)

        assert trading.available_tokens == pytest.approx(4.0)
        assert limiter.available_tokens == pytest.approx(100.0)


class TestStats:

    @pytest.mark.asyncio
    async def test_stats_as_dict(self, orchestrator, holder, fresh_session):
        await holder.replace(fresh_session)
        await orchestrator.execute(AsyncMock(return_value="ok"))

        stats = orchestrator.stats.as_dict()

        assert stats["calls"] == 1
        assert stats["succeeded"] == 1
        assert set(stats) == {"calls", "succeeded", "failed", "refreshes", "logins",
                              "auth_retries", "rate_limit_retries"}

    def test_call_states(self):
        assert {state.value for state in CallState} == {
            "admitted", "auth_checked", "executing", "succeeded", "auth_retry", "rate_retry", "failed",
        }
