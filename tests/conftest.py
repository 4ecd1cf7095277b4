"""
Pytest configuration and shared fixtures for IG gateway tests.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.config.settings import (
    IGSettings,
    RateLimiterSettings,
    RateLimitSettings,
    RetrySettings,
    SessionSettings,
    Settings,
)
from core.utils.rate_limiter import TokenBucketRateLimiter
from services.auth.authenticator import Authenticator
from services.auth.models import OAuthToken, SecurityHeaders, Session
from services.auth.session_holder import SessionHolder

BASE_TIME = datetime(2024, 1, 2, 9, 30, tzinfo=timezone.utc)
BASE_URL = "https://demo-api.ig.com/gateway/deal"


class FakeClock:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def utcnow(self) -> datetime:
        return BASE_TIME + timedelta(seconds=self.now)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        # Let other tasks run, as a real sleep would
        await asyncio.sleep(0)


class RecordingSleep:
    """Sleep that records requested delays and returns immediately."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


def make_oauth_session(access_token: str = "access-1", refresh_token: str = "refresh-1",
                       expires_in: int = 60, account_id: str = "ABC123",
                       now: Optional[datetime] = None) -> Session:
    return Session.from_oauth(
        OAuthToken(access_token=access_token, refresh_token=refresh_token, expires_in=expires_in),
        account_id=account_id,
        api_key="test-api-key",
        client_id="client-1",
        lightstreamer_endpoint="https://demo-apd.marketdatasystems.com",
        now=now or BASE_TIME,
    )


def make_legacy_session(cst: str = "cst-1", xst: str = "xst-1", account_id: str = "ABC123",
                        now: Optional[datetime] = None) -> Session:
    return Session.from_legacy(
        SecurityHeaders(cst=cst, x_security_token=xst),
        account_id=account_id,
        api_key="test-api-key",
        now=now or BASE_TIME,
    )


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def ig_settings():
    return IGSettings(
        username="demo-user",
        password="demo-pass",
        api_key="test-api-key",
        base_url=BASE_URL,
        api_version=3,
    )


@pytest.fixture
def test_settings(ig_settings):
    """Test settings configuration."""
    return Settings(
        environment="testing",
        ig=ig_settings,
        rate_limiter=RateLimitSettings(
            non_trading=RateLimiterSettings(max_requests=60, period_seconds=60.0, burst_size=10),
            trading=RateLimiterSettings(max_requests=100, period_seconds=60.0, burst_size=10),
        ),
        session=SessionSettings(
            safety_margin_seconds=10.0,
            background_refresh_enabled=False,
            auth_retry_attempts=3,
            auth_retry_delay_seconds=1.0,
        ),
        retry=RetrySettings(rate_limit_delay_seconds=10.0, max_rate_limit_retries=None),
    )


@pytest.fixture
def limiter(fake_clock):
    """Roomy limiter so orchestrator tests never wait for admission."""
    return TokenBucketRateLimiter(
        max_requests=600, period_seconds=60.0, burst_size=100,
        name="test", clock=fake_clock, sleep=fake_clock.sleep,
    )


@pytest.fixture
def mock_authenticator(ig_settings, fake_clock):
    """Real needs_refresh against the fake clock; network operations mocked."""
    authenticator = Authenticator(
        http=MagicMock(),
        settings=ig_settings,
        session_settings=SessionSettings(safety_margin_seconds=10.0),
        now=fake_clock.utcnow,
    )
    authenticator.refresh = AsyncMock()
    authenticator.login = AsyncMock()
    return authenticator


@pytest.fixture
def holder():
    return SessionHolder()


@pytest.fixture
def mock_db_manager():
    """Mock database manager whose get_session() yields one mocked session."""
    db = MagicMock()
    session = AsyncMock()
    db.get_session.return_value.__aenter__.return_value = session
    db.get_session.return_value.__aexit__.return_value = False
    db.session = session
    return db
