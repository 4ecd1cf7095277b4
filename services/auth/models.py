"""Authentication models for IG REST sessions (API v2 legacy tokens and API v3 OAuth)."""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

# IG v2 session tokens are valid for 6 hours from issue
LEGACY_SESSION_LIFETIME = timedelta(hours=6)

JSON_CONTENT_TYPE = "application/json; charset=UTF-8"

# IG errorCode fragments signalling an exhausted allowance (sent with HTTP 403),
# e.g. "error.public-api.exceeded-api-key-allowance"
RATE_LIMIT_ERROR_CODES = frozenset({
    "exceeded-api-key-allowance",
    "exceeded-account-allowance",
    "exceeded-account-trading-allowance",
    "exceeded-account-historical-data-allowance",
})

# IG errorCode fragments signalling a rejected access credential (sent with HTTP 401)
TOKEN_INVALID_ERROR_CODES = frozenset({
    "oauth-token-invalid",
    "client-token-invalid",
    "account-token-invalid",
    "invalid.token",
})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def api_headers(api_key: str, version: int, user_agent: Optional[str] = None) -> Dict[str, str]:
    """Headers every IG REST request carries."""
    headers = {
        "X-IG-API-KEY": api_key,
        "Version": str(version),
        "Accept": JSON_CONTENT_TYPE,
        "Content-Type": JSON_CONTENT_TYPE,
    }
    if user_agent:
        headers["User-Agent"] = user_agent
    return headers


def error_code_from_body(body: Any) -> Optional[str]:
    """Extract IG's ``errorCode`` from a decoded error body."""
    if isinstance(body, dict):
        code = body.get("errorCode")
        return str(code) if code is not None else None
    return None


def is_rate_limit_code(code: Optional[str]) -> bool:
    return bool(code) and any(fragment in code for fragment in RATE_LIMIT_ERROR_CODES)


def is_token_invalid_code(code: Optional[str]) -> bool:
    return bool(code) and any(fragment in code for fragment in TOKEN_INVALID_ERROR_CODES)


class AuthMode(str, Enum):
    """Authentication mode of a session."""
    LEGACY = "legacy"  # CST / X-SECURITY-TOKEN headers (API v2)
    OAUTH = "oauth"    # Bearer access token + refresh token (API v3)


@dataclass(frozen=True)
class SecurityHeaders:
    """Session tokens returned in the headers of a v2 login."""
    cst: str
    x_security_token: str


@dataclass(frozen=True)
class OAuthToken:
    """OAuth credentials returned by a v3 login or a token refresh."""
    access_token: str
    refresh_token: str
    expires_in: int
    scope: str = "profile"
    token_type: str = "Bearer"


@dataclass(frozen=True)
class Session:
    """Immutable authentication state for one IG account.

    Exactly one of ``security_headers`` (legacy mode) or ``oauth_token``
    (OAuth mode) is populated. ``expires_at`` is always absolute; use the
    ``from_legacy`` / ``from_oauth`` constructors so it is derived from the
    capture time. Any change produces a new value.
    """
    auth_mode: AuthMode
    account_id: str
    api_key: str
    expires_at: datetime
    created_at: datetime
    security_headers: Optional[SecurityHeaders] = None
    oauth_token: Optional[OAuthToken] = None
    client_id: Optional[str] = None
    lightstreamer_endpoint: Optional[str] = None
    timezone_offset: Optional[int] = None

    def __post_init__(self):
        if self.expires_at.tzinfo is None:
            raise ValueError("expires_at must be timezone-aware")
        if self.auth_mode is AuthMode.LEGACY:
            if self.security_headers is None:
                raise ValueError("legacy session requires security headers")
            if self.oauth_token is not None or self.client_id or self.lightstreamer_endpoint:
                raise ValueError("legacy session must not carry OAuth fields")
        elif self.auth_mode is AuthMode.OAUTH:
            if self.oauth_token is None:
                raise ValueError("OAuth session requires an OAuth token")
            if self.security_headers is not None:
                raise ValueError("OAuth session must not carry legacy security headers")
        else:
            raise ValueError(f"unknown auth mode: {self.auth_mode!r}")

    @classmethod
    def from_legacy(
        cls,
        headers: SecurityHeaders,
        account_id: str,
        api_key: str,
        timezone_offset: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        captured = now or utcnow()
        return cls(
            auth_mode=AuthMode.LEGACY,
            account_id=account_id,
            api_key=api_key,
            expires_at=captured + LEGACY_SESSION_LIFETIME,
            created_at=captured,
            security_headers=headers,
            timezone_offset=timezone_offset,
        )

    @classmethod
    def from_oauth(
        cls,
        token: OAuthToken,
        account_id: str,
        api_key: str,
        client_id: Optional[str] = None,
        lightstreamer_endpoint: Optional[str] = None,
        timezone_offset: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        captured = now or utcnow()
        return cls(
            auth_mode=AuthMode.OAUTH,
            account_id=account_id,
            api_key=api_key,
            expires_at=captured + timedelta(seconds=token.expires_in),
            created_at=captured,
            oauth_token=token,
            client_id=client_id,
            lightstreamer_endpoint=lightstreamer_endpoint,
            timezone_offset=timezone_offset,
        )

    @property
    def is_oauth(self) -> bool:
        return self.auth_mode is AuthMode.OAUTH

    def seconds_until_expiry(self, now: Optional[datetime] = None) -> float:
        """Seconds left before expiry; negative once expired."""
        return (self.expires_at - (now or utcnow())).total_seconds()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def with_account(self, account_id: str) -> "Session":
        """Copy of this session bound to another account."""
        return replace(self, account_id=account_id)

    def with_security_headers(self, headers: SecurityHeaders) -> "Session":
        """Copy of a legacy session carrying rotated tokens."""
        if self.auth_mode is not AuthMode.LEGACY:
            raise ValueError("only legacy sessions carry security headers")
        return replace(self, security_headers=headers)

    def auth_headers(self) -> Dict[str, str]:
        """Headers that authenticate a request with this session."""
        if self.auth_mode is AuthMode.OAUTH:
            return {
                "Authorization": f"{self.oauth_token.token_type} {self.oauth_token.access_token}",
                "IG-ACCOUNT-ID": self.account_id,
            }
        return {
            "CST": self.security_headers.cst,
            "X-SECURITY-TOKEN": self.security_headers.x_security_token,
        }

    def describe(self) -> Dict[str, Any]:
        """Non-secret summary suitable for logs."""
        return {
            "auth_mode": self.auth_mode.value,
            "account_id": self.account_id,
            "expires_at": self.expires_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "client_id": self.client_id,
        }


# --- Wire models for /session responses ---

class OAuthTokenPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str
    scope: str = "profile"
    token_type: str = "Bearer"
    # IG sends the lifetime as a string of seconds
    expires_in: int

    def to_token(self) -> OAuthToken:
        return OAuthToken(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_in=self.expires_in,
            scope=self.scope,
            token_type=self.token_type,
        )


class SessionV3Response(BaseModel):
    """Body of a v3 login."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    client_id: str = Field(alias="clientId")
    account_id: str = Field(alias="accountId")
    timezone_offset: Optional[int] = Field(default=None, alias="timezoneOffset")
    lightstreamer_endpoint: Optional[str] = Field(default=None, alias="lightstreamerEndpoint")
    oauth_token: OAuthTokenPayload = Field(alias="oauthToken")


class SessionV2Response(BaseModel):
    """Body of a v2 login; the tokens themselves arrive in headers."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    current_account_id: str = Field(alias="currentAccountId")
    client_id: Optional[str] = Field(default=None, alias="clientId")
    timezone_offset: Optional[int] = Field(default=None, alias="timezoneOffset")
    lightstreamer_endpoint: Optional[str] = Field(default=None, alias="lightstreamerEndpoint")


class AccountSwitchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    account_id: str = Field(alias="accountId")
    default_account: Optional[bool] = Field(default=None, alias="defaultAccount")


class AccountSwitchResponse(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    dealing_enabled: Optional[bool] = Field(default=None, alias="dealingEnabled")
    has_active_demo_accounts: Optional[bool] = Field(default=None, alias="hasActiveDemoAccounts")
    has_active_live_accounts: Optional[bool] = Field(default=None, alias="hasActiveLiveAccounts")
    trailing_stops_enabled: Optional[bool] = Field(default=None, alias="trailingStopsEnabled")
