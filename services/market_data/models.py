"""
Market hierarchy models: PostgreSQL tables plus the IG /marketnavigation wire format.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.sql import func

from core.database.connection import Base


def build_path(parent_path: Optional[str], node_name: str) -> str:
    """Slash-separated path of a node, rooted at ``/``."""
    if parent_path:
        return f"{parent_path}/{node_name}"
    return f"/{node_name}"


class MarketHierarchyNode(Base):
    """One navigation node of an exchange's market hierarchy."""
    __tablename__ = "market_hierarchy_nodes"

    id = Column(String(255), primary_key=True)
    name = Column(String(500), nullable=False)
    parent_id = Column(String(255), ForeignKey("market_hierarchy_nodes.id"), nullable=True)
    exchange = Column(String(50), nullable=False)
    level = Column(Integer, nullable=False, default=0)
    path = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_market_hierarchy_parent_id", "parent_id"),
        Index("idx_market_hierarchy_exchange", "exchange"),
        Index("idx_market_hierarchy_level", "level"),
    )

    def __repr__(self) -> str:
        return f"<MarketHierarchyNode(id={self.id}, path={self.path})>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "parent_id": self.parent_id,
            "exchange": self.exchange,
            "level": self.level,
            "path": self.path,
        }


class MarketInstrument(Base):
    """A tradeable market (epic) attached to a hierarchy node."""
    __tablename__ = "market_instruments"

    epic = Column(String(255), primary_key=True)
    instrument_name = Column(String(500), nullable=False)
    instrument_type = Column(String(100), nullable=False)
    node_id = Column(String(255), ForeignKey("market_hierarchy_nodes.id"), nullable=False)
    exchange = Column(String(50), nullable=False)
    expiry = Column(String(50), nullable=False, default="")
    high_limit_price = Column(Numeric(20, 8), nullable=True)
    low_limit_price = Column(Numeric(20, 8), nullable=True)
    market_status = Column(String(50), nullable=False)
    net_change = Column(Numeric(20, 8), nullable=True)
    percentage_change = Column(Numeric(10, 4), nullable=True)
    update_time = Column(String(50), nullable=True)
    update_time_utc = Column(DateTime(timezone=True), nullable=True)
    bid = Column(Numeric(20, 8), nullable=True)
    offer = Column(Numeric(20, 8), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_market_instruments_node_id", "node_id"),
        Index("idx_market_instruments_exchange", "exchange"),
        Index("idx_market_instruments_type", "instrument_type"),
        Index("idx_market_instruments_status", "market_status"),
        Index("idx_market_instruments_expiry", "expiry"),
    )

    def __repr__(self) -> str:
        return f"<MarketInstrument(epic={self.epic}, name={self.instrument_name})>"

    def to_dict(self) -> dict:
        return {
            "epic": self.epic,
            "instrument_name": self.instrument_name,
            "instrument_type": self.instrument_type,
            "node_id": self.node_id,
            "exchange": self.exchange,
            "expiry": self.expiry,
            "market_status": self.market_status,
            "bid": float(self.bid) if self.bid is not None else None,
            "offer": float(self.offer) if self.offer is not None else None,
        }


# --- /marketnavigation wire format ---

class NavigationNode(BaseModel):
    id: str
    name: str


class MarketData(BaseModel):
    """A market entry as returned by IG navigation and search endpoints."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    epic: str
    instrument_name: str = Field(alias="instrumentName")
    instrument_type: str = Field(default="UNKNOWN", alias="instrumentType")
    expiry: str = "-"
    high_limit_price: Optional[float] = Field(default=None, alias="highLimitPrice")
    low_limit_price: Optional[float] = Field(default=None, alias="lowLimitPrice")
    market_status: str = Field(default="", alias="marketStatus")
    net_change: Optional[float] = Field(default=None, alias="netChange")
    percentage_change: Optional[float] = Field(default=None, alias="percentageChange")
    update_time: Optional[str] = Field(default=None, alias="updateTime")
    update_time_utc: Optional[str] = Field(default=None, alias="updateTimeUTC")
    bid: Optional[float] = None
    offer: Optional[float] = None

    def parsed_update_time_utc(self) -> Optional[datetime]:
        """``updateTimeUTC`` as a datetime when IG sent a full timestamp."""
        for value in (self.update_time_utc, self.update_time):
            if not value:
                continue
            try:
                parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                continue
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
        return None


class MarketNavigationResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    nodes: List[NavigationNode] = []
    markets: List[MarketData] = []

    @field_validator("nodes", "markets", mode="before")
    @classmethod
    def none_as_empty(cls, v):
        return v or []


@dataclass
class MarketNode:
    """In-memory hierarchy tree built while walking /marketnavigation."""
    id: str
    name: str
    children: List["MarketNode"] = field(default_factory=list)
    markets: List[MarketData] = field(default_factory=list)

    def count(self) -> Dict[str, int]:
        nodes, markets = 1, len(self.markets)
        for child in self.children:
            sub = child.count()
            nodes += sub["nodes"]
            markets += sub["markets"]
        return {"nodes": nodes, "markets": markets}


def instrument_row(market: MarketData, node_id: str, exchange: str) -> Dict[str, Any]:
    """Row for ``market_instruments`` built from a navigation market entry."""
    return {
        "epic": market.epic,
        "instrument_name": market.instrument_name,
        "instrument_type": market.instrument_type,
        "node_id": node_id,
        "exchange": exchange,
        "expiry": market.expiry or "",
        "high_limit_price": market.high_limit_price,
        "low_limit_price": market.low_limit_price,
        "market_status": market.market_status,
        "net_change": market.net_change,
        "percentage_change": market.percentage_change,
        "update_time": market.update_time,
        "update_time_utc": market.parsed_update_time_utc(),
        "bid": market.bid,
        "offer": market.offer,
    }
