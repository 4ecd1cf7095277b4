"""
Repository for market hierarchy database operations.
"""

from typing import Any, Dict, List

from sqlalchemy import delete, func, or_
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from core.logging import get_database_logger_safe
from core.utils.exceptions import DatabaseError
from .models import MarketHierarchyNode, MarketInstrument

logger = get_database_logger_safe("services.market_data.repository")

NODE_UPDATE_COLUMNS = ("name", "parent_id", "exchange", "level", "path")
INSTRUMENT_UPDATE_COLUMNS = (
    "instrument_name", "instrument_type", "node_id", "exchange", "expiry",
    "high_limit_price", "low_limit_price", "market_status", "net_change",
    "percentage_change", "update_time", "update_time_utc", "bid", "offer",
)


class MarketHierarchyRepository:
    """
    Async persistence for one exchange's market hierarchy.

    The repository never commits; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession, exchange: str):
        self.session = session
        self.exchange = exchange

    async def clear_exchange(self) -> None:
        """Delete every node and instrument stored for this exchange."""
        try:
            await self.session.execute(
                delete(MarketInstrument).where(MarketInstrument.exchange == self.exchange)
            )
            await self.session.execute(
                delete(MarketHierarchyNode).where(MarketHierarchyNode.exchange == self.exchange)
            )
        except SQLAlchemyError as e:
            logger.error("Failed to clear market hierarchy", exchange=self.exchange, error=str(e))
            raise DatabaseError(f"Failed to clear exchange {self.exchange}: {e}",
                                operation="clear_exchange", table="market_hierarchy_nodes") from e

    async def upsert_nodes(self, rows: List[Dict[str, Any]], batch_size: int = 500) -> int:
        """
        Insert or update hierarchy nodes.

        Rows must be ordered parents-first so the parent foreign key resolves.

        Returns:
            Number of rows written
        """
        return await self._upsert(MarketHierarchyNode, rows, "id", NODE_UPDATE_COLUMNS, batch_size)

    async def upsert_instruments(self, rows: List[Dict[str, Any]], batch_size: int = 500) -> int:
        """Insert or update instruments keyed by epic."""
        return await self._upsert(MarketInstrument, rows, "epic", INSTRUMENT_UPDATE_COLUMNS, batch_size)

    async def _upsert(self, model, rows: List[Dict[str, Any]], key: str,
                      update_columns, batch_size: int) -> int:
        total = 0
        table = model.__tablename__
        try:
            for i in range(0, len(rows), batch_size):
                batch = rows[i:i + batch_size]
                if not batch:
                    continue

                stmt = pg_insert(model).values(batch)
                set_ = {column: stmt.excluded[column] for column in update_columns}
                set_["updated_at"] = func.now()
                stmt = stmt.on_conflict_do_update(index_elements=[key], set_=set_)

                await self.session.execute(stmt)
                total += len(batch)

            logger.debug("Upserted rows", table=table, count=total, exchange=self.exchange)
            return total

        except SQLAlchemyError as e:
            logger.error("Failed to upsert rows", table=table, processed=total, error=str(e))
            raise DatabaseError(f"Failed to upsert into {table}: {e}",
                                operation="upsert", table=table) from e

    async def get_hierarchy(self) -> List[MarketHierarchyNode]:
        """All nodes of this exchange ordered by level, then name."""
        stmt = (
            select(MarketHierarchyNode)
            .where(MarketHierarchyNode.exchange == self.exchange)
            .order_by(MarketHierarchyNode.level, MarketHierarchyNode.name)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_instruments_by_node(self, node_id: str) -> List[MarketInstrument]:
        stmt = (
            select(MarketInstrument)
            .where(MarketInstrument.node_id == node_id, MarketInstrument.exchange == self.exchange)
            .order_by(MarketInstrument.instrument_name)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def search_instruments(self, search_term: str, limit: int = 100) -> List[MarketInstrument]:
        """Case-insensitive match on instrument name or epic."""
        pattern = f"%{search_term}%"
        stmt = (
            select(MarketInstrument)
            .where(
                MarketInstrument.exchange == self.exchange,
                or_(
                    MarketInstrument.instrument_name.ilike(pattern),
                    MarketInstrument.epic.ilike(pattern),
                ),
            )
            .order_by(MarketInstrument.instrument_name)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_statistics(self) -> Dict[str, Any]:
        node_count = await self.session.scalar(
            select(func.count()).select_from(MarketHierarchyNode)
            .where(MarketHierarchyNode.exchange == self.exchange)
        )
        instrument_count = await self.session.scalar(
            select(func.count()).select_from(MarketInstrument)
            .where(MarketInstrument.exchange == self.exchange)
        )
        max_depth = await self.session.scalar(
            select(func.coalesce(func.max(MarketHierarchyNode.level), 0))
            .where(MarketHierarchyNode.exchange == self.exchange)
        )
        type_rows = await self.session.execute(
            select(MarketInstrument.instrument_type, func.count().label("count"))
            .where(MarketInstrument.exchange == self.exchange)
            .group_by(MarketInstrument.instrument_type)
            .order_by(func.count().desc())
        )

        return {
            "exchange": self.exchange,
            "node_count": node_count or 0,
            "instrument_count": instrument_count or 0,
            "max_hierarchy_depth": max_depth or 0,
            "instrument_types": {row[0]: row[1] for row in type_rows.all()},
        }
