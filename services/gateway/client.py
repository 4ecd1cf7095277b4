"""High-level IG REST client wiring authentication, rate limiting and transport."""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from core.config.settings import Settings
from core.logging import get_api_logger_safe
from core.utils.exceptions import UnauthorizedError
from core.utils.rate_limiter import TokenBucketRateLimiter
from services.auth.authenticator import Authenticator
from services.auth.models import Session
from services.auth.session_holder import SessionHolder
from .orchestrator import OrchestratorStats, RequestOrchestrator
from .refresher import SessionRefresher
from .transport import ApiRequest, IGTransport

logger = get_api_logger_safe("services.gateway.client")

# Dealing endpoints are counted against the trading allowance when they mutate
TRADING_PATH_PREFIXES = ("positions", "workingorders")


class IGClient:
    """
    Facade over the IG REST gateway.

    Login happens lazily on the first request, or eagerly via ``connect()``
    (which also starts the background refresher when enabled). All requests
    share one session; dealing requests are admitted against the trading
    allowance, everything else against the non-trading allowance.
    """

    def __init__(
        self,
        settings: Settings,
        http: Optional[httpx.AsyncClient] = None,
        authenticator: Optional[Authenticator] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=settings.ig.timeout_seconds)

        self.non_trading_limiter = TokenBucketRateLimiter.from_settings(
            settings.rate_limiter.non_trading, name="non_trading", clock=clock, sleep=sleep
        )
        self.trading_limiter = TokenBucketRateLimiter.from_settings(
            settings.rate_limiter.trading, name="trading", clock=clock, sleep=sleep
        )

        self.holder = SessionHolder()
        self.authenticator = authenticator or Authenticator(
            self.http, settings.ig, settings.session, rate_limiter=self.non_trading_limiter
        )
        self.transport = IGTransport(self.http, settings.ig)
        self.orchestrator = RequestOrchestrator(
            self.holder,
            self.authenticator,
            self.non_trading_limiter,
            session_settings=settings.session,
            retry_settings=settings.retry,
            sleep=sleep,
        )
        self.refresher = SessionRefresher(
            self.orchestrator, settings.session.refresh_interval_seconds, sleep=sleep
        )

    async def __aenter__(self) -> "IGClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def stats(self) -> OrchestratorStats:
        return self.orchestrator.stats

    def get_session(self) -> Optional[Session]:
        """Current session, or None before the first login."""
        return self.holder.read()

    async def connect(self) -> Session:
        """Log in now instead of on the first request."""
        session = await self.orchestrator.ensure_session()
        if self.settings.session.background_refresh_enabled:
            await self.refresher.start()
        logger.info("IG client connected", **session.describe())
        return session

    async def request(self, request: ApiRequest, admission_timeout: Optional[float] = None) -> Any:
        limiter = self.trading_limiter if self._is_trading(request) else self.non_trading_limiter

        async def call(session: Session) -> Any:
            return await self.transport.execute(request, session)

        return await self.orchestrator.execute(
            call, admission_timeout=admission_timeout, rate_limiter=limiter
        )

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, version: int = 1,
                  **kwargs) -> Any:
        return await self.request(ApiRequest("GET", path, version=version, params=params), **kwargs)

    async def post(self, path: str, body: Optional[Any] = None, version: int = 1,
                   trading: bool = False, **kwargs) -> Any:
        return await self.request(
            ApiRequest("POST", path, version=version, body=body, trading=trading), **kwargs
        )

    async def put(self, path: str, body: Optional[Any] = None, version: int = 1,
                  trading: bool = False, **kwargs) -> Any:
        return await self.request(
            ApiRequest("PUT", path, version=version, body=body, trading=trading), **kwargs
        )

    async def delete(self, path: str, body: Optional[Any] = None, version: int = 1,
                     trading: bool = False, **kwargs) -> Any:
        if body is not None:
            # IG does not accept DELETE bodies; the method is tunnelled through POST
            request = ApiRequest("POST", path, version=version, body=body, trading=trading,
                                 headers={"_method": "DELETE"})
        else:
            request = ApiRequest("DELETE", path, version=version, trading=trading)
        return await self.request(request, **kwargs)

    async def switch_account(self, account_id: str, default_account: Optional[bool] = None) -> Session:
        await self.orchestrator.ensure_session()
        async with self.holder.exclusive():
            current = self.holder.read()
            # A concurrent logout may have cleared the holder while we waited
            if current is None:
                raise UnauthorizedError("No active IG session to switch account on", reason="no_session")
            session = await self.authenticator.switch_account(current, account_id, default_account)
            self.holder.swap(session)
        return session

    async def logout(self) -> None:
        await self.refresher.stop()
        session = self.holder.read()
        if session is None:
            return
        try:
            await self.authenticator.logout(session)
        finally:
            await self.holder.clear()

    async def close(self) -> None:
        await self.refresher.stop()
        if self._owns_http:
            await self.http.aclose()

    @staticmethod
    def _is_trading(request: ApiRequest) -> bool:
        if request.trading:
            return True
        return request.method != "GET" and request.path.startswith(TRADING_PATH_PREFIXES)
