"""
Database schema management for the memory row store.

This module handles:
- Connection setup (aiosqlite, WAL mode, foreign keys)
- Table creation (memories, entities, relations, state, messages)
- Index creation for the filtered scans the engine issues
"""

from pathlib import Path
from typing import Union

import aiosqlite


SCHEMA = """
    CREATE TABLE IF NOT EXISTS memories (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        sector TEXT NOT NULL CHECK(sector IN ('episodic','semantic','factual','procedural','reflective')),
        content TEXT NOT NULL,
        summary TEXT,
        tags TEXT,  -- JSON array
        session_key TEXT,
        event_at TEXT NOT NULL,
        remembered_at TEXT NOT NULL,
        valid_until TEXT,
        strength REAL NOT NULL DEFAULT 1.0 CHECK(strength >= 0 AND strength <= 1),
        recall_count INTEGER NOT NULL DEFAULT 0,
        last_recalled_at TEXT,
        last_decayed_at TEXT,
        archived INTEGER NOT NULL DEFAULT 0,
        embedding BLOB  -- float32, written once the detached embedding completes
    );

    CREATE TABLE IF NOT EXISTS entities (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        type TEXT NOT NULL CHECK(type IN ('person','project','place','preference','topic')),
        name TEXT NOT NULL,
        attributes TEXT,  -- JSON object
        merged_into TEXT,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS relations (
        id TEXT PRIMARY KEY,
        from_entity TEXT NOT NULL,
        to_entity TEXT,
        to_memory TEXT,
        relation TEXT NOT NULL CHECK(relation IN ('prefers','knows','updated_from','part_of','contradicts','co_occurs')),
        created_at TEXT NOT NULL,
        CHECK ((to_entity IS NULL) != (to_memory IS NULL)),
        FOREIGN KEY (from_entity) REFERENCES entities(id)
    );

    CREATE TABLE IF NOT EXISTS state (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_key TEXT NOT NULL,
        role TEXT NOT NULL CHECK(role IN ('user','assistant','system')),
        content TEXT NOT NULL,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_memories_user ON memories(user_id, archived, strength);
    CREATE INDEX IF NOT EXISTS idx_memories_sector ON memories(user_id, sector);
    CREATE INDEX IF NOT EXISTS idx_memories_event_at ON memories(user_id, event_at);
    CREATE UNIQUE INDEX IF NOT EXISTS idx_entities_key ON entities(user_id, type, name COLLATE NOCASE);
    CREATE INDEX IF NOT EXISTS idx_relations_from ON relations(from_entity);
    CREATE INDEX IF NOT EXISTS idx_relations_to_memory ON relations(to_memory);
    CREATE INDEX IF NOT EXISTS idx_relations_to_entity ON relations(to_entity);
    CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_key, id);
"""


async def init_database(conn: aiosqlite.Connection, enable_wal: bool = True) -> None:
    """
    Initialize database schema with indexes.

    Args:
        conn: aiosqlite connection object
        enable_wal: Enable WAL mode for concurrent readers (default: True)
    """
    if enable_wal:
        await conn.execute("PRAGMA journal_mode=WAL")

    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.executescript(SCHEMA)
    await conn.commit()


async def connect(db_path: Union[str, Path], enable_wal: bool = True) -> aiosqlite.Connection:
    """
    Open a connection and make sure the schema exists.

    Args:
        db_path: Path to SQLite database file (or ':memory:' for in-memory)
        enable_wal: Enable WAL mode (ignored for ':memory:')

    Returns:
        Ready-to-use aiosqlite connection
    """
    if str(db_path) != ':memory:':
        db_path = Path(db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
    else:
        enable_wal = False

    conn = await aiosqlite.connect(str(db_path), timeout=30.0)
    await init_database(conn, enable_wal)
    return conn
