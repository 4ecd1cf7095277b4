"""IG session authentication: login, token refresh, account switch and logout."""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import ValidationError

from core.config.settings import IGSettings, SessionSettings
from core.logging import get_audit_logger_safe, get_auth_logger_safe
from core.utils.exceptions import (
    AuthFailure,
    RefreshTokenExpiredError,
    TransientAuthError,
    UnauthorizedError,
)
from core.utils.rate_limiter import TokenBucketRateLimiter
from .models import (
    AccountSwitchRequest,
    AccountSwitchResponse,
    AuthMode,
    OAuthTokenPayload,
    SecurityHeaders,
    Session,
    SessionV2Response,
    SessionV3Response,
    api_headers,
    error_code_from_body,
    is_rate_limit_code,
    utcnow,
)

logger = get_auth_logger_safe("services.auth.authenticator")
audit_logger = get_audit_logger_safe("services.auth.authenticator")

SESSION_PATH = "session"
REFRESH_PATH = "session/refresh-token"


def _decode(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


class Authenticator:
    """
    The only component that mints Session values.

    Talks to the IG ``/session`` endpoints directly over the shared httpx
    client. When a rate limiter is supplied every auth request is admitted
    through it first, since IG counts these calls against the non-trading
    allowance.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        settings: IGSettings,
        session_settings: Optional[SessionSettings] = None,
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.http = http
        self.settings = settings
        self.session_settings = session_settings or SessionSettings()
        self.rate_limiter = rate_limiter
        self._now = now

    @property
    def auth_mode(self) -> AuthMode:
        return AuthMode.OAUTH if self.settings.api_version == 3 else AuthMode.LEGACY

    def needs_refresh(self, session: Optional[Session], safety_margin_seconds: Optional[float] = None) -> bool:
        """True iff the session is missing or expires within the safety margin."""
        if session is None:
            return True
        if safety_margin_seconds is None:
            safety_margin_seconds = self.session_settings.safety_margin_seconds
        return self._now() + timedelta(seconds=safety_margin_seconds) >= session.expires_at

    async def login(self) -> Session:
        """Full credential login using the configured API version."""
        if not self.settings.username or not self.settings.password or not self.settings.api_key:
            raise UnauthorizedError("IG credentials are not configured", reason="missing_credentials")

        version = self.settings.api_version
        payload = {"identifier": self.settings.username, "password": self.settings.password}
        logger.info("Logging in to IG", api_version=version, username=self.settings.username)

        response = await self._send("POST", SESSION_PATH, version, json=payload)
        body = _decode(response)

        if not response.is_success:
            raise self._login_failure(response, body)

        if version == 3:
            session = self._session_from_v3(body)
        else:
            session = self._session_from_v2(response, body)

        audit_logger.info("IG login succeeded", **session.describe())

        configured = self.settings.account_id
        if configured and configured != session.account_id:
            session = await self.switch_account(session, configured)
        return session

    async def refresh(self, current: Session) -> Session:
        """
        Exchange the refresh token of an OAuth session for a new session.

        Raises:
            RefreshTokenExpiredError: Legacy session, or IG rejected the refresh token.
            TransientAuthError: Network failure or unexpected response.
        """
        if current.auth_mode is not AuthMode.OAUTH:
            raise RefreshTokenExpiredError(
                "Legacy sessions cannot be refreshed", reason="legacy_session"
            )

        response = await self._send(
            "POST", REFRESH_PATH, 1,
            json={"refresh_token": current.oauth_token.refresh_token},
        )
        body = _decode(response)

        if response.status_code in (400, 401):
            code = error_code_from_body(body)
            logger.warning("Refresh token rejected", status_code=response.status_code, error_code=code)
            raise RefreshTokenExpiredError(
                f"Refresh token rejected: {code or response.status_code}",
                reason=code or "refresh_token_rejected",
                status_code=response.status_code,
            )
        if not response.is_success:
            raise self._transient_failure("refresh", response, body)

        try:
            token = OAuthTokenPayload.model_validate(body).to_token()
        except ValidationError as e:
            raise TransientAuthError(f"Malformed refresh response: {e}", reason="malformed_response") from e

        session = Session.from_oauth(
            token,
            account_id=current.account_id,
            api_key=current.api_key,
            client_id=current.client_id,
            lightstreamer_endpoint=current.lightstreamer_endpoint,
            timezone_offset=current.timezone_offset,
            now=self._now(),
        )
        audit_logger.info("IG session refreshed", **session.describe())
        return session

    async def switch_account(self, session: Session, account_id: str,
                             default_account: Optional[bool] = None) -> Session:
        """Switch the active account. Switching to the current account is a no-op."""
        if account_id == session.account_id:
            logger.debug("Already on requested account", account_id=account_id)
            return session

        payload = AccountSwitchRequest(account_id=account_id, default_account=default_account)
        response = await self._send(
            "PUT", SESSION_PATH, 1,
            headers=session.auth_headers(),
            json=payload.model_dump(by_alias=True, exclude_none=True),
        )
        body = _decode(response)

        if not response.is_success:
            code = error_code_from_body(body)
            if response.status_code == 401:
                raise UnauthorizedError(
                    f"Account switch rejected: {code or response.status_code}",
                    reason=code or "unauthorized", status_code=401,
                )
            if response.status_code >= 500 or is_rate_limit_code(code):
                raise self._transient_failure("switch_account", response, body)
            raise AuthFailure(
                f"Account switch to {account_id} failed: {code or response.status_code}",
                reason=code or "switch_failed", status_code=response.status_code,
            )

        if body:
            details = AccountSwitchResponse.model_validate(body)
            logger.debug("Account switch details", dealing_enabled=details.dealing_enabled)

        switched = session.with_account(account_id)
        if switched.auth_mode is AuthMode.LEGACY:
            # IG may rotate the legacy tokens on switch
            cst = response.headers.get("CST")
            xst = response.headers.get("X-SECURITY-TOKEN")
            if cst and xst:
                switched = switched.with_security_headers(SecurityHeaders(cst=cst, x_security_token=xst))

        audit_logger.info("IG account switched", from_account=session.account_id, to_account=account_id)
        return switched

    async def logout(self, session: Session) -> None:
        response = await self._send("DELETE", SESSION_PATH, 1, headers=session.auth_headers())
        if not response.is_success:
            body = _decode(response)
            logger.error("IG logout failed", status_code=response.status_code,
                         error_code=error_code_from_body(body))
            raise self._transient_failure("logout", response, body)
        audit_logger.info("IG logout succeeded", account_id=session.account_id)

    async def _send(self, method: str, path: str, version: int,
                    headers: Optional[Dict[str, str]] = None,
                    json: Optional[Dict[str, Any]] = None) -> httpx.Response:
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

        request_headers = api_headers(self.settings.api_key, version, self.settings.user_agent)
        if headers:
            request_headers.update(headers)
        url = f"{self.settings.base_url}/{path}"

        try:
            return await self.http.request(
                method, url, headers=request_headers, json=json,
                timeout=self.settings.timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.warning("Auth request failed", method=method, path=path, error=str(e))
            raise TransientAuthError(f"{method} {path} failed: {e}", reason="network_error") from e

    def _login_failure(self, response: httpx.Response, body: Any) -> AuthFailure:
        code = error_code_from_body(body)
        status = response.status_code
        logger.error("IG login rejected", status_code=status, error_code=code)

        if is_rate_limit_code(code) or status == 429 or status >= 500:
            return self._transient_failure("login", response, body)
        return UnauthorizedError(
            f"IG login rejected: {code or status}",
            reason=code or "invalid_credentials",
            status_code=status,
        )

    @staticmethod
    def _transient_failure(operation: str, response: httpx.Response, body: Any) -> TransientAuthError:
        code = error_code_from_body(body)
        return TransientAuthError(
            f"IG {operation} failed: {code or response.status_code}",
            reason=code or f"http_{response.status_code}",
            status_code=response.status_code,
        )

    def _session_from_v3(self, body: Any) -> Session:
        try:
            parsed = SessionV3Response.model_validate(body)
        except ValidationError as e:
            raise TransientAuthError(f"Malformed v3 login response: {e}", reason="malformed_response") from e

        return Session.from_oauth(
            parsed.oauth_token.to_token(),
            account_id=parsed.account_id,
            api_key=self.settings.api_key,
            client_id=parsed.client_id,
            lightstreamer_endpoint=parsed.lightstreamer_endpoint,
            timezone_offset=parsed.timezone_offset,
            now=self._now(),
        )

    def _session_from_v2(self, response: httpx.Response, body: Any) -> Session:
        cst = response.headers.get("CST")
        xst = response.headers.get("X-SECURITY-TOKEN")
        if not cst or not xst:
            raise TransientAuthError(
                "v2 login response is missing CST / X-SECURITY-TOKEN headers",
                reason="missing_security_headers",
            )
        try:
            parsed = SessionV2Response.model_validate(body)
        except ValidationError as e:
            raise TransientAuthError(f"Malformed v2 login response: {e}", reason="malformed_response") from e

        return Session.from_legacy(
            SecurityHeaders(cst=cst, x_security_token=xst),
            account_id=parsed.current_account_id,
            api_key=self.settings.api_key,
            timezone_offset=parsed.timezone_offset,
            now=self._now(),
        )
