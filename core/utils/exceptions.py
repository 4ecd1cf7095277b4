# Structured exception hierarchy for the IG gateway

from typing import Dict, Any, Optional
from datetime import datetime, timezone


class GatewayException(Exception):
    """Base exception for all gateway specific errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None,
                 correlation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.correlation_id = correlation_id
        self.timestamp = datetime.now(timezone.utc)


class TransientError(GatewayException):
    """Base class for transient errors that may clear on retry"""

    def __init__(self, message: str, retry_count: int = 0, max_retries: int = 5,
                 details: Optional[Dict[str, Any]] = None, correlation_id: Optional[str] = None):
        super().__init__(message, details, correlation_id)
        self.retry_count = retry_count
        self.max_retries = max_retries
        self.retryable = retry_count < max_retries


class PermanentError(GatewayException):
    """Base class for permanent errors that must not be retried"""
    pass


# Admission control
class AdmissionTimeoutError(TransientError):
    """Caller deadline expired while waiting for a rate limiter token"""

    def __init__(self, message: str, timeout_seconds: float, wait_seconds: float, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout_seconds = timeout_seconds
        self.wait_seconds = wait_seconds


# Authentication failures
class AuthFailure(GatewayException):
    """Base class for login/refresh failures"""

    def __init__(self, message: str, reason: str = "", status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.reason = reason or message
        self.status_code = status_code


class TransientAuthError(AuthFailure, TransientError):
    """Network or service failure during login/refresh - may succeed on retry"""

    def __init__(self, message: str, reason: str = "", status_code: Optional[int] = None, **kwargs):
        TransientError.__init__(self, message, **kwargs)
        self.reason = reason or message
        self.status_code = status_code


class RefreshTokenExpiredError(AuthFailure):
    """Remote rejected the refresh credential - fall back to a full login"""
    pass


class UnauthorizedError(AuthFailure, PermanentError):
    """Terminal authorization failure - fresh long-lived credentials are required"""
    pass


# Remote signals classified by the transport
class TokenInvalidError(GatewayException):
    """Remote rejected the access credential of an otherwise well-formed request"""

    def __init__(self, message: str, error_code: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.error_code = error_code


class RateLimitExceededError(TransientError):
    """Remote reported that an API allowance was exceeded"""

    def __init__(self, message: str, error_code: Optional[str] = None, attempts: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.error_code = error_code
        self.attempts = attempts


# Transport errors
class TransportError(GatewayException):
    """Opaque network or protocol failure - propagated without core retry"""
    pass


class BrokerConnectionError(TransportError):
    """Connection, DNS or timeout failure talking to the broker"""

    def __init__(self, message: str, url: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.url = url


class BrokerAPIError(TransportError):
    """Non-2xx broker response that is neither an auth nor a rate limit signal"""

    def __init__(self, message: str, status_code: int, api_error_code: Optional[str] = None,
                 api_response: Optional[Any] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.api_error_code = api_error_code
        self.api_response = api_response


# Infrastructure Errors
class DatabaseError(TransientError):
    """Database connection or query failures"""

    def __init__(self, message: str, operation: str, table: Optional[str] = None,
                 **kwargs):
        super().__init__(message, **kwargs)
        self.operation = operation
        self.table = table


# Configuration Errors
class ConfigurationError(PermanentError):
    """Configuration validation errors"""

    def __init__(self, message: str, config_field: str, config_value: Any,
                 **kwargs):
        super().__init__(message, **kwargs)
        self.config_field = config_field
        self.config_value = config_value


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error should be retried

    Returns:
        True if error is transient and retryable, False otherwise
    """
    if isinstance(error, TransientError):
        return error.retryable
    return False


def create_error_context(error: Exception, operation: str,
                        additional_context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Create structured error context for logging

    Args:
        error: The exception that occurred
        operation: The operation that failed
        additional_context: Additional context information

    Returns:
        Structured error context dictionary
    """
    context = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "operation": operation,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "retryable": is_retryable_error(error)
    }

    if isinstance(error, GatewayException):
        if error.correlation_id:
            context["correlation_id"] = error.correlation_id
        if error.details:
            context["error_details"] = error.details

        if isinstance(error, TransientError):
            context["retry_count"] = error.retry_count
            context["max_retries"] = error.max_retries

        if isinstance(error, AuthFailure):
            context["reason"] = error.reason
            if error.status_code is not None:
                context["status_code"] = error.status_code

        if isinstance(error, BrokerAPIError):
            context["status_code"] = error.status_code
            context["api_error_code"] = error.api_error_code

        if isinstance(error, (TokenInvalidError, RateLimitExceededError)):
            context["error_code"] = error.error_code

    if additional_context:
        context.update(additional_context)

    return context
