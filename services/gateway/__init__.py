"""IG REST gateway: transport, request orchestration and the client facade."""

from .client import IGClient
from .orchestrator import CallState, OrchestratorStats, RequestOrchestrator
from .refresher import SessionRefresher
from .transport import ApiRequest, IGTransport

__all__ = [
    "IGClient",
    "CallState",
    "OrchestratorStats",
    "RequestOrchestrator",
    "SessionRefresher",
    "ApiRequest",
    "IGTransport",
]
