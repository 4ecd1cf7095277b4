"""
Request orchestration for IG REST calls.

Every outbound call goes through ``RequestOrchestrator.execute``: admission
through the rate limiter, a proactive session check, the call itself, and the
reactive policies for rejected tokens and exhausted allowances.
"""

import asyncio
import itertools
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from core.config.settings import RetrySettings, SessionSettings
from core.logging import get_api_logger_safe
from core.utils.exceptions import (
    RateLimitExceededError,
    RefreshTokenExpiredError,
    TokenInvalidError,
    TransientAuthError,
    UnauthorizedError,
    create_error_context,
)
from core.utils.rate_limiter import TokenBucketRateLimiter
from services.auth.authenticator import Authenticator
from services.auth.models import Session
from services.auth.session_holder import SessionHolder

logger = get_api_logger_safe("services.gateway.orchestrator")

T = TypeVar("T")
Operation = Callable[[Session], Awaitable[T]]


class CallState(str, Enum):
    """Lifecycle of one orchestrated call."""
    ADMITTED = "admitted"
    AUTH_CHECKED = "auth_checked"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    AUTH_RETRY = "auth_retry"
    RATE_RETRY = "rate_retry"
    FAILED = "failed"


@dataclass
class OrchestratorStats:
    calls: int = 0
    succeeded: int = 0
    failed: int = 0
    refreshes: int = 0
    logins: int = 0
    auth_retries: int = 0
    rate_limit_retries: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class _CallContext:
    call_id: int
    state: Optional[CallState] = None
    session: Optional[Session] = None
    rate_limit_attempts: int = 0


class RequestOrchestrator:
    """
    Binds the rate limiter, session holder and authenticator around each call.

    Only one refresh or login is in flight at a time: proactive refreshes,
    reactive refreshes and the background refresher all run inside the
    holder's exclusive section and re-check before doing any work.
    """

    def __init__(
        self,
        holder: SessionHolder,
        authenticator: Authenticator,
        rate_limiter: TokenBucketRateLimiter,
        session_settings: Optional[SessionSettings] = None,
        retry_settings: Optional[RetrySettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.holder = holder
        self.authenticator = authenticator
        self.rate_limiter = rate_limiter
        self.session_settings = session_settings or SessionSettings()
        self.retry_settings = retry_settings or RetrySettings()
        self.stats = OrchestratorStats()
        self._sleep = sleep
        self._call_ids = itertools.count(1)

    async def execute(
        self,
        op: Operation,
        *,
        admission_timeout: Optional[float] = None,
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
    ) -> T:
        """
        Run ``op`` with a valid session.

        ``op`` is called with the current Session and may be invoked more than
        once: after a token rejection (once) and after each exhausted
        allowance.

        Args:
            op: Coroutine function performing the remote call.
            admission_timeout: Max seconds to wait for each rate limiter admission.
            rate_limiter: Limiter for this call's traffic class; defaults to
                the orchestrator's limiter.

        Raises:
            AdmissionTimeoutError: Admission deadline expired.
            UnauthorizedError: Login failed, or the token was rejected again
                right after a refresh.
            RateLimitExceededError: Only when ``max_rate_limit_retries`` is set
                and exceeded.
        """
        ctx = _CallContext(call_id=next(self._call_ids))
        limiter = rate_limiter or self.rate_limiter
        self.stats.calls += 1

        try:
            try:
                result = await self._attempt_with_rate_limit_retry(op, ctx, limiter, admission_timeout)
            except TokenInvalidError as first:
                self.stats.auth_retries += 1
                self._transition(ctx, CallState.AUTH_RETRY, error_code=first.error_code)
                await self._refresh_after_rejection(ctx.session)
                try:
                    result = await self._attempt_with_rate_limit_retry(op, ctx, limiter, admission_timeout)
                except TokenInvalidError as second:
                    raise UnauthorizedError(
                        "Access token rejected again after refresh",
                        reason=second.error_code or "token_invalid_after_refresh",
                        status_code=401,
                    ) from second
        except Exception as e:
            self.stats.failed += 1
            self._transition(ctx, CallState.FAILED)
            logger.warning("Orchestrated call failed",
                           **create_error_context(e, "execute", {"call_id": ctx.call_id}))
            raise

        self.stats.succeeded += 1
        self._transition(ctx, CallState.SUCCEEDED)
        return result

    async def _attempt_with_rate_limit_retry(
        self,
        op: Operation,
        ctx: _CallContext,
        limiter: TokenBucketRateLimiter,
        admission_timeout: Optional[float],
    ) -> T:
        """Admit, authenticate and run ``op``, backing off on exhausted allowances."""
        delay = self.retry_settings.rate_limit_delay_seconds
        max_retries = self.retry_settings.max_rate_limit_retries

        while True:
            await limiter.acquire(admission_timeout)
            self._transition(ctx, CallState.ADMITTED)

            ctx.session = await self.ensure_session()
            self._transition(ctx, CallState.AUTH_CHECKED)

            self._transition(ctx, CallState.EXECUTING)
            try:
                return await op(ctx.session)
            except RateLimitExceededError as e:
                ctx.rate_limit_attempts += 1
                e.attempts = ctx.rate_limit_attempts
                e.retry_count = ctx.rate_limit_attempts

                if max_retries is not None and ctx.rate_limit_attempts > max_retries:
                    logger.error("Rate limit retries exhausted", call_id=ctx.call_id,
                                 attempt=ctx.rate_limit_attempts, max_retries=max_retries,
                                 error_code=e.error_code)
                    raise

                self.stats.rate_limit_retries += 1
                self._transition(ctx, CallState.RATE_RETRY)
                logger.warning("IG allowance exceeded, backing off",
                               call_id=ctx.call_id, attempt=ctx.rate_limit_attempts,
                               delay_seconds=delay, error_code=e.error_code)
                await self._sleep(delay)

    async def ensure_session(self) -> Session:
        """
        Return a session that is not within the safety margin of expiry,
        refreshing or logging in first when needed.
        """
        session = self.holder.read()
        if not self.authenticator.needs_refresh(session):
            return session

        async with self.holder.exclusive():
            session = self.holder.read()
            # Another caller may have refreshed while we waited for the lock
            if self.authenticator.needs_refresh(session):
                logger.info("Session refresh required",
                            has_session=session is not None,
                            account_id=session.account_id if session else None)
                session = await self._refresh_or_login(session)
                self.holder.swap(session)
        return session

    async def _refresh_after_rejection(self, failed: Optional[Session]) -> Session:
        """Replace the session IG just rejected, unless someone already has."""
        async with self.holder.exclusive():
            current = self.holder.read()
            if current is not None and current is not failed:
                logger.debug("Rejected session already replaced", account_id=current.account_id)
                return current
            session = await self._refresh_or_login(current)
            self.holder.swap(session)
            return session

    async def _refresh_or_login(self, current: Optional[Session]) -> Session:
        """
        Refresh ``current`` or fall back to a full login.

        Transient failures are retried with a fixed delay up to
        ``auth_retry_attempts`` times; UnauthorizedError is terminal.
        """
        attempts = max(1, self.session_settings.auth_retry_attempts)
        delay = self.session_settings.auth_retry_delay_seconds
        last_error: Optional[TransientAuthError] = None

        for attempt in range(1, attempts + 1):
            try:
                if current is not None:
                    try:
                        session = await self.authenticator.refresh(current)
                        self.stats.refreshes += 1
                        return session
                    except RefreshTokenExpiredError as e:
                        logger.info("Refresh unavailable, falling back to login", reason=e.reason)

                session = await self.authenticator.login()
                self.stats.logins += 1
                return session
            except TransientAuthError as e:
                last_error = e
                e.retry_count = attempt
                e.max_retries = attempts
                logger.warning("Transient authentication failure",
                               attempt=attempt, max_attempts=attempts, reason=e.reason)
                if attempt < attempts:
                    await self._sleep(delay)

        raise last_error

    def _transition(self, ctx: _CallContext, state: CallState, **fields: Any) -> None:
        logger.debug("Call state", call_id=ctx.call_id,
                     from_state=ctx.state.value if ctx.state else None,
                     to_state=state.value, **fields)
        ctx.state = state
