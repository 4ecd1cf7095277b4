"""IG session authentication: immutable sessions, the shared holder and the authenticator."""

from .authenticator import Authenticator
from .session_holder import SessionHolder
from .models import (
    AuthMode,
    OAuthToken,
    SecurityHeaders,
    Session,
    SessionV2Response,
    SessionV3Response,
)

__all__ = [
    "Authenticator",
    "SessionHolder",
    "AuthMode",
    "OAuthToken",
    "SecurityHeaders",
    "Session",
    "SessionV2Response",
    "SessionV3Response",
]
