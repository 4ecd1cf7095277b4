"""Market hierarchy persistence for IG /marketnavigation data."""

from .loader import MarketHierarchyLoader
from .models import (
    MarketData,
    MarketHierarchyNode,
    MarketInstrument,
    MarketNavigationResponse,
    MarketNode,
    build_path,
)
from .repository import MarketHierarchyRepository

__all__ = [
    "MarketHierarchyLoader",
    "MarketHierarchyRepository",
    "MarketData",
    "MarketHierarchyNode",
    "MarketInstrument",
    "MarketNavigationResponse",
    "MarketNode",
    "build_path",
]
