"""Walks IG's /marketnavigation tree and stores it in PostgreSQL."""

from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from core.database.connection import DatabaseManager
from core.logging import get_database_logger_safe
from core.utils.exceptions import GatewayException
from services.gateway.client import IGClient
from .models import MarketNavigationResponse, MarketNode, build_path, instrument_row
from .repository import MarketHierarchyRepository

logger = get_database_logger_safe("services.market_data.loader")

NAVIGATION_PATH = "marketnavigation"
DEFAULT_MAX_DEPTH = 7


class MarketHierarchyLoader:
    """
    Loads the market hierarchy of one exchange.

    Nodes are fetched sequentially so every request goes through the
    client's rate limiter in order. A failing sub-node is kept as an empty
    placeholder and the walk continues.
    """

    def __init__(self, client: IGClient, db_manager: DatabaseManager, exchange: str = "IG",
                 max_depth: int = DEFAULT_MAX_DEPTH):
        self.client = client
        self.db_manager = db_manager
        self.exchange = exchange
        self.max_depth = max_depth

    async def fetch_hierarchy(self, node_id: Optional[str] = None, depth: int = 0) -> List[MarketNode]:
        if depth > self.max_depth:
            logger.debug("Maximum hierarchy depth reached", node_id=node_id, depth=depth)
            return []

        path = f"{NAVIGATION_PATH}/{node_id}" if node_id else NAVIGATION_PATH
        # Errors on the top-level request propagate; sub-node errors are handled by the parent
        navigation = MarketNavigationResponse.model_validate(await self.client.get(path) or {})

        nodes: List[MarketNode] = []
        for child in navigation.nodes:
            try:
                children = await self.fetch_hierarchy(child.id, depth + 1)
                nodes.append(MarketNode(id=child.id, name=child.name, children=children))
            except (GatewayException, ValidationError) as e:
                logger.error("Failed to build hierarchy for node", node_id=child.id, error=str(e))
                nodes.append(MarketNode(id=child.id, name=f"{child.name} (error: {e})"))

        for market in navigation.markets:
            nodes.append(MarketNode(id=market.epic, name=market.instrument_name, markets=[market]))

        return nodes

    def flatten(self, hierarchy: List[MarketNode]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """Node and instrument rows, parents before children."""
        node_rows: List[Dict[str, Any]] = []
        instrument_rows: List[Dict[str, Any]] = []
        seen_nodes = set()
        seen_epics = set()

        def visit(node: MarketNode, parent_id: Optional[str], level: int, parent_path: Optional[str]):
            path = build_path(parent_path, node.name)
            if node.id not in seen_nodes:
                seen_nodes.add(node.id)
                node_rows.append({
                    "id": node.id,
                    "name": node.name,
                    "parent_id": parent_id,
                    "exchange": self.exchange,
                    "level": level,
                    "path": path,
                })
            for market in node.markets:
                # One epic can be listed under several nodes; the first wins
                if market.epic in seen_epics:
                    continue
                seen_epics.add(market.epic)
                instrument_rows.append(instrument_row(market, node.id, self.exchange))
            for child in node.children:
                visit(child, node.id, level + 1, path)

        for root in hierarchy:
            visit(root, None, 0, None)
        return node_rows, instrument_rows

    async def store(self, hierarchy: List[MarketNode]) -> Dict[str, int]:
        """Replace this exchange's stored hierarchy in a single transaction."""
        node_rows, instrument_rows = self.flatten(hierarchy)
        async with self.db_manager.get_session() as session:
            repository = MarketHierarchyRepository(session, self.exchange)
            await repository.clear_exchange()
            nodes = await repository.upsert_nodes(node_rows)
            instruments = await repository.upsert_instruments(instrument_rows)
            await session.commit()

        logger.info("Stored market hierarchy", exchange=self.exchange,
                    nodes=nodes, instruments=instruments)
        return {"nodes": nodes, "instruments": instruments}

    async def load(self) -> Dict[str, int]:
        """Fetch the full hierarchy from IG and store it."""
        hierarchy = await self.fetch_hierarchy()
        logger.info("Fetched market hierarchy", exchange=self.exchange, top_level_nodes=len(hierarchy))
        return await self.store(hierarchy)
