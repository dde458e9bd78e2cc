"""
Row Store - durable tables behind the memory engine.

One aiosqlite connection shared by four operation groups:
- memories: MemoryCRUD (insert, scans, strength writes, archiving, stats)
- graph: GraphOperations (entities, relations)
- state: StateStore (JSON key/value)
- messages: MessageLog (conversation history)
"""

import logging
from pathlib import Path
from typing import Optional, Union

import aiosqlite

from .schema import connect
from .crud import MemoryCRUD
from .graph_ops import GraphOperations
from .state import StateStore, MessageLog

logger = logging.getLogger(__name__)


class RowStore:
    """
    Facade over the SQLite tables.

    Usage:
        store = await RowStore.open(":memory:")
        await store.memories.insert(memory)
        await store.close()
    """

    def __init__(self, conn: aiosqlite.Connection, db_path: Union[str, Path] = ":memory:",
                 owns_connection: bool = True):
        self.db_path = db_path
        self._conn = conn
        self._owns_connection = owns_connection
        self.memories = MemoryCRUD(conn)
        self.graph = GraphOperations(conn)
        self.state = StateStore(conn)
        self.messages = MessageLog(conn)

    @classmethod
    async def open(cls, db_path: Union[str, Path], enable_wal: bool = True) -> "RowStore":
        """
        Open (and initialize if needed) the database.

        Args:
            db_path: Path to SQLite database file (or ':memory:' for in-memory)
            enable_wal: Enable WAL mode (default: True)
        """
        conn = await connect(db_path, enable_wal)
        logger.debug(f"Row store opened at {db_path}")
        return cls(conn, db_path)

    async def ping(self) -> bool:
        """Cheap liveness check."""
        async with self._conn.execute("SELECT 1") as cursor:
            row = await cursor.fetchone()
        return bool(row and row[0] == 1)

    async def close(self) -> None:
        """Close connection and cleanup."""
        if self._owns_connection and self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "RowStore":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
