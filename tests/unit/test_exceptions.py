"""
Unit tests for the gateway exception hierarchy.
"""

from core.utils.exceptions import (
    AdmissionTimeoutError,
    AuthFailure,
    BrokerAPIError,
    BrokerConnectionError,
    DatabaseError,
    GatewayException,
    PermanentError,
    RateLimitExceededError,
    RefreshTokenExpiredError,
    TokenInvalidError,
    TransientAuthError,
    TransientError,
    TransportError,
    UnauthorizedError,
    create_error_context,
    is_retryable_error,
)


class TestHierarchy:

    def test_auth_failures(self):
        transient = TransientAuthError("timeout", reason="network_error")
        unauthorized = UnauthorizedError("bad credentials", status_code=401)

        assert isinstance(transient, AuthFailure)
        assert isinstance(transient, TransientError)
        assert transient.reason == "network_error"
        assert isinstance(unauthorized, AuthFailure)
        assert isinstance(unauthorized, PermanentError)
        assert unauthorized.reason == "bad credentials"
        assert isinstance(RefreshTokenExpiredError("expired"), AuthFailure)

    def test_transport_errors(self):
        assert isinstance(BrokerAPIError("bad", status_code=400), TransportError)
        assert isinstance(BrokerConnectionError("down", url="https://x"), TransportError)
        assert not isinstance(TokenInvalidError("invalid"), TransportError)
        assert isinstance(RateLimitExceededError("exceeded"), GatewayException)

    def test_retryable(self):
        assert is_retryable_error(TransientAuthError("timeout")) is True
        assert is_retryable_error(TransientAuthError("timeout", retry_count=5)) is False
        assert is_retryable_error(UnauthorizedError("nope")) is False
        assert is_retryable_error(ValueError("plain")) is False
        assert is_retryable_error(AdmissionTimeoutError("late", timeout_seconds=1.0, wait_seconds=2.0)) is True


class TestErrorContext:

    def test_auth_context(self):
        error = UnauthorizedError("rejected", reason="error.security.invalid-details", status_code=401)

        context = create_error_context(error, "login", {"account_id": "ABC123"})

        assert context["error_type"] == "UnauthorizedError"
        assert context["operation"] == "login"
        assert context["reason"] == "error.security.invalid-details"
        assert context["status_code"] == 401
        assert context["account_id"] == "ABC123"
        assert context["retryable"] is False

    def test_api_error_context(self):
        error = BrokerAPIError("not found", status_code=404, api_error_code="error.markets.epic-not-found")

        context = create_error_context(error, "get_market")

        assert context["status_code"] == 404
        assert context["api_error_code"] == "error.markets.epic-not-found"

    def test_rate_limit_context(self):
        error = RateLimitExceededError("exceeded", error_code="error.public-api.exceeded-account-allowance")

        context = create_error_context(error, "execute")

        assert context["error_code"] == "error.public-api.exceeded-account-allowance"
        assert "retry_count" in context

    def test_database_error(self):
        error = DatabaseError("insert failed", operation="upsert", table="market_instruments")

        assert error.operation == "upsert"
        assert error.table == "market_instruments"
        assert create_error_context(error, "store")["retryable"] is True
