"""Selection record persistence.

One row per selected item (``rank`` 1..n, in selection order) and one row
per rejected item (``rank`` 0, ``diversity_reason`` holding the reason tag),
so a digest's selection can be audited after the fact.
"""

import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg
import structlog
from asyncpg import Connection, Pool

from ..models import SelectionRecord
from ..vector_store.base import VectorStoreConnectionError, VectorStoreQueryError
from ..vector_store.pgvector import DATABASE_ERRORS

logger = structlog.get_logger("storage.selections")


CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS digest_selections (
        id TEXT PRIMARY KEY,
        item_id TEXT NOT NULL,
        category TEXT NOT NULL,
        period TEXT NOT NULL,
        rank INTEGER NOT NULL,
        diversity_reason TEXT,
        selected_at DOUBLE PRECISION NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_digest_selections_category ON digest_selections(category);
    CREATE INDEX IF NOT EXISTS idx_digest_selections_period ON digest_selections(period);
"""


@dataclass
class SelectionRow:
    id: str
    item_id: str
    category: str
    period: str
    rank: int
    diversity_reason: Optional[str] = None
    selected_at: float = field(default_factory=time.time)

    @property
    def selected(self) -> bool:
        return self.rank > 0


def selection_rows(record: SelectionRecord, category: str, period: str) -> List[SelectionRow]:
    """Flatten a ``SelectionRecord`` into table rows."""
    now = time.time()
    stamp = int(now * 1000)
    rows = []

    for rank, item_id in enumerate(record.selected_ids, start=1):
        rows.append(SelectionRow(
            id=f"{category}_{period}_{rank}_{stamp}_{len(rows)}",
            item_id=item_id,
            category=category,
            period=period,
            rank=rank,
            diversity_reason=f"Selected at rank {rank}",
            selected_at=now,
        ))

    for rejection in record.rejected:
        rows.append(SelectionRow(
            id=f"{category}_{period}_0_{stamp}_{len(rows)}",
            item_id=rejection.item_id,
            category=category,
            period=period,
            rank=0,
            diversity_reason=rejection.reason.value,
            selected_at=now,
        ))

    return rows


class SelectionStore(ABC):
    """Row store for selection records."""

    @abstractmethod
    async def save_selection(self, record: SelectionRecord, category: str, period: str) -> int:
        """Persist ``record``; returns the number of rows written."""
        pass

    @abstractmethod
    async def get_selections(self, category: str, period: str) -> List[SelectionRow]:
        """Rows for ``category``/``period``: selected by rank, then rejections."""
        pass

    @abstractmethod
    async def get_selection_stats(self, period: str) -> Dict[str, Any]:
        """Selected-item totals for ``period``, overall and by category."""
        pass

    async def close(self) -> None:
        return None


class InMemorySelectionStore(SelectionStore):
    """Process-local ``SelectionStore``."""

    def __init__(self):
        self.rows: List[SelectionRow] = []

    async def save_selection(self, record: SelectionRecord, category: str, period: str) -> int:
        rows = selection_rows(record, category, period)
        self.rows.extend(rows)
        return len(rows)

    async def get_selections(self, category: str, period: str) -> List[SelectionRow]:
        rows = [r for r in self.rows if r.category == category and r.period == period]
        return sorted(rows, key=lambda r: (r.rank == 0, r.rank))

    async def get_selection_stats(self, period: str) -> Dict[str, Any]:
        by_category: Dict[str, int] = {}
        for row in self.rows:
            if row.period == period and row.selected:
                by_category[row.category] = by_category.get(row.category, 0) + 1
        return {"total_selected": sum(by_category.values()), "by_category": by_category}


class PgSelectionStore(SelectionStore):
    """asyncpg-backed ``SelectionStore`` over ``digest_selections``.

    A record's rows are written in one transaction, so a digest is never
    stored half-selected. Read failures are logged and return empty results.
    """

    def __init__(self, dsn: str, pool_size: int = 5, command_timeout: int = 60):
        self.dsn = dsn
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self._pool: Optional[Pool] = None

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[Connection]:
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=1,
                    max_size=self.pool_size,
                    command_timeout=self.command_timeout,
                )
            except DATABASE_ERRORS as e:
                logger.error("Could not connect to selection database", error=str(e))
                raise VectorStoreConnectionError(f"Postgres unavailable: {e}")

        try:
            async with self._pool.acquire() as conn:
                yield conn
        except DATABASE_ERRORS as e:
            logger.error("Selection statement failed", operation=operation, error=str(e))
            raise VectorStoreQueryError(f"{operation} failed: {e}")

    async def ensure_schema(self) -> None:
        async with self._connection("ensure_schema") as conn:
            await conn.execute(CREATE_TABLE_SQL)

    async def save_selection(self, record: SelectionRecord, category: str, period: str) -> int:
        rows = selection_rows(record, category, period)
        if not rows:
            return 0

        async with self._connection("save_selection") as conn:
            async with conn.transaction():
                await conn.executemany(
                    "INSERT INTO digest_selections "
                    "(id, item_id, category, period, rank, diversity_reason, selected_at) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7)",
                    [
                        (r.id, r.item_id, r.category, r.period, r.rank, r.diversity_reason, r.selected_at)
                        for r in rows
                    ]
                )

        logger.info("Digest selection saved", category=category, period=period, rows=len(rows))
        return len(rows)

    async def get_selections(self, category: str, period: str) -> List[SelectionRow]:
        try:
            async with self._connection("get_selections") as conn:
                records = await conn.fetch(
                    "SELECT id, item_id, category, period, rank, diversity_reason, selected_at "
                    "FROM digest_selections WHERE category = $1 AND period = $2 "
                    "ORDER BY rank = 0, rank",
                    category,
                    period
                )
        except (VectorStoreConnectionError, VectorStoreQueryError):
            return []
        return [SelectionRow(**dict(record)) for record in records]

    async def get_selection_stats(self, period: str) -> Dict[str, Any]:
        try:
            async with self._connection("get_selection_stats") as conn:
                records = await conn.fetch(
                    "SELECT category, COUNT(*) AS selected FROM digest_selections "
                    "WHERE period = $1 AND rank > 0 GROUP BY category",
                    period
                )
        except (VectorStoreConnectionError, VectorStoreQueryError):
            records = []

        by_category = {record["category"]: record["selected"] for record in records}
        return {"total_selected": sum(by_category.values()), "by_category": by_category}

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


def create_selection_store(backend: str = "memory", dsn: Optional[str] = None) -> SelectionStore:
    """Create the selection store for ``backend`` (``memory`` or ``postgres``)."""
    if backend == "memory":
        return InMemorySelectionStore()
    if backend == "postgres":
        if not dsn:
            raise ValueError("Postgres selection store requires a DSN")
        return PgSelectionStore(dsn)
    raise ValueError(f"Unsupported selection backend: {backend}")
