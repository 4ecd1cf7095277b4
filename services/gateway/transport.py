"""
REST transport for the IG dealing gateway.

Builds authenticated requests from a Session, sends them with httpx and maps
IG error responses onto the gateway error taxonomy.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from core.config.settings import IGSettings
from core.logging import get_api_logger_safe
from core.utils.exceptions import (
    BrokerAPIError,
    BrokerConnectionError,
    RateLimitExceededError,
    TokenInvalidError,
)
from services.auth.models import (
    Session,
    api_headers,
    error_code_from_body,
    is_rate_limit_code,
    is_token_invalid_code,
)

logger = get_api_logger_safe("services.gateway.transport")


@dataclass
class ApiRequest:
    """One IG REST call, independent of the session that will authenticate it."""
    method: str
    path: str
    version: int = 1
    params: Optional[Dict[str, Any]] = None
    body: Optional[Any] = None
    headers: Dict[str, str] = field(default_factory=dict)
    # Dealing requests are admitted against the trading allowance
    trading: bool = False

    def __post_init__(self):
        self.method = self.method.upper()
        self.path = self.path.lstrip("/")


class IGTransport:
    """Sends ApiRequests over a shared httpx.AsyncClient."""

    def __init__(self, http: httpx.AsyncClient, settings: IGSettings):
        self.http = http
        self.settings = settings

    def build_headers(self, request: ApiRequest, session: Session) -> Dict[str, str]:
        headers = api_headers(session.api_key, request.version, self.settings.user_agent)
        headers.update(session.auth_headers())
        headers.update(request.headers)
        return headers

    def url_for(self, request: ApiRequest) -> str:
        return f"{self.settings.base_url}/{request.path}"

    async def execute(self, request: ApiRequest, session: Session) -> Any:
        """
        Send ``request`` authenticated with ``session``.

        Returns:
            Decoded JSON body, or None for an empty body.

        Raises:
            TokenInvalidError: IG rejected the access credential.
            RateLimitExceededError: An IG allowance was exceeded.
            BrokerAPIError: Any other non-2xx response.
            BrokerConnectionError: Network, DNS or timeout failure.
        """
        url = self.url_for(request)
        started = time.perf_counter()
        try:
            response = await self.http.request(
                request.method,
                url,
                params=request.params,
                json=request.body,
                headers=self.build_headers(request, session),
                timeout=self.settings.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise BrokerConnectionError(f"Timeout calling {request.method} {request.path}", url=url) from e
        except httpx.HTTPError as e:
            raise BrokerConnectionError(f"{request.method} {request.path} failed: {e}", url=url) from e

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        body = self._decode(response)

        if response.is_success:
            logger.debug("IG request completed", method=request.method, path=request.path,
                         status_code=response.status_code, elapsed_ms=elapsed_ms)
            return body

        raise self.classify(request, response.status_code, body)

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def classify(request: ApiRequest, status_code: int, body: Any) -> Exception:
        """Map an IG error response to the matching gateway exception."""
        code = error_code_from_body(body)

        if status_code == 401 and is_token_invalid_code(code):
            logger.info("IG rejected access token", path=request.path, error_code=code)
            return TokenInvalidError(f"Access token rejected: {code}", error_code=code)

        if status_code == 403 and is_rate_limit_code(code):
            logger.warning("IG allowance exceeded", path=request.path, error_code=code)
            return RateLimitExceededError(f"IG allowance exceeded: {code}", error_code=code)

        logger.warning("IG request failed", method=request.method, path=request.path,
                       status_code=status_code, error_code=code)
        return BrokerAPIError(
            f"{request.method} {request.path} returned {status_code}: {code or 'no error code'}",
            status_code=status_code,
            api_error_code=code,
            api_response=body,
        )
