"""
Per-user SQLite store for Engram memories.

Every user owns exactly one database file under the configured storage root:

    <storage_root>/<user_id>/engram.db

The file holds:
- `memories`: the memory records
- `memories_fts`: an FTS5 external-content index over `memories.content`,
  kept in sync by insert/delete triggers
- `index_meta`: capability flags such as `fts_available`

Handles are short-lived. `open_user_store()` creates a fresh engine without a
connection pool and disposes it when the block exits.
"""

import json
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy import Column, Float, Index, String, Text, event, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

logger = logging.getLogger(__name__)

Base = declarative_base()

MEMORY_TYPES = ("factual", "relational", "procedural", "episodic", "semantic")
DATABASE_FILENAME = "engram.db"

_USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def _utc_iso_now() -> str:
    """UTC timestamp with fixed millisecond precision so text ordering is chronological."""
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


# =============================================================================
# ORM Models
# =============================================================================


class MemoryRecord(Base):
    """A single stored memory.

    `importance` is assigned by the caller and never changed afterwards.
    `activation` starts at 1.0, is boosted on recall and decayed by
    consolidation. The implicit SQLite rowid links a record to its FTS entry.
    """

    __tablename__ = "memories"
    __table_args__ = (Index("idx_memories_type", "type"),)

    id = Column(String(64), primary_key=True)
    content = Column(Text, nullable=False)
    type = Column(String(32), default="factual", server_default=text("'factual'"))
    importance = Column(Float, default=0.5, server_default=text("0.5"))
    activation = Column(Float, default=1.0, server_default=text("1.0"))
    created_at = Column(Text, nullable=False)
    last_accessed = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_json = Column("metadata", Text, nullable=True)

    @property
    def metadata_dict(self) -> Optional[Dict[str, Any]]:
        if not self.metadata_json:
            return None
        try:
            parsed = json.loads(self.metadata_json)
        except ValueError:
            return None
        return parsed if isinstance(parsed, dict) else None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "content": self.content,
            "type": self.type,
            "importance": float(self.importance),
            "activation": float(self.activation),
            "created_at": self.created_at,
        }
        if self.last_accessed:
            payload["last_accessed"] = self.last_accessed
        metadata = self.metadata_dict
        if metadata is not None:
            payload["metadata"] = metadata
        return payload


class IndexMeta(Base):
    """Index capability flags for a user store."""

    __tablename__ = "index_meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(Text, nullable=False)


# =============================================================================
# Store handle
# =============================================================================


def validate_user_id(user_id: str) -> str:
    """Reject user ids that are not a single safe path segment."""
    value = str(user_id or "").strip()
    if not _USER_ID_PATTERN.match(value):
        raise ValueError(f"Invalid user id for memory storage: {user_id!r}")
    return value


def user_database_path(storage_root: Path, user_id: str) -> Path:
    return Path(storage_root) / validate_user_id(user_id) / DATABASE_FILENAME


def _use_immediate_transactions(engine) -> None:
    """
    Take over transaction control from the sqlite driver.

    pysqlite only emits BEGIN lazily before DML, which leaves leading SELECTs
    outside the transaction. BEGIN IMMEDIATE makes each session one unit that
    holds the write lock from its first statement.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class UserStore:
    """
    Handle on a single user's memory database.

    Core operations:
    - ensure_schema: create tables, FTS index, triggers; probe FTS5 support
    - session: transactional session (commit on success, rollback on error)
    - close: dispose the engine
    """

    def __init__(self, database_path: Path):
        self.database_path = Path(database_path)
        self.database_url = f"sqlite+aiosqlite:///{self.database_path}"
        self.engine = create_async_engine(
            self.database_url, echo=False, poolclass=NullPool
        )
        _use_immediate_transactions(self.engine)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.fts_available = False

    async def ensure_schema(self) -> None:
        """Create tables if they don't exist and set up the full-text index."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            self.fts_available = await conn.run_sync(self._setup_index_infra)

    def _setup_index_infra(self, connection) -> bool:
        connection.execute(
            text(
                "CREATE INDEX IF NOT EXISTS idx_memories_activation "
                "ON memories(activation DESC)"
            )
        )

        fts_existed = (
            connection.execute(
                text(
                    "SELECT 1 FROM sqlite_master "
                    "WHERE type = 'table' AND name = 'memories_fts'"
                )
            ).first()
            is not None
        )

        fts_available = False
        try:
            with connection.begin_nested():
                connection.execute(
                    text(
                        "CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5("
                        "content, content='memories', content_rowid='rowid'"
                        ")"
                    )
                )
                connection.execute(
                    text(
                        "CREATE TRIGGER IF NOT EXISTS memories_ai "
                        "AFTER INSERT ON memories BEGIN "
                        "INSERT INTO memories_fts(rowid, content) "
                        "VALUES (new.rowid, new.content); "
                        "END"
                    )
                )
                connection.execute(
                    text(
                        "CREATE TRIGGER IF NOT EXISTS memories_ad "
                        "AFTER DELETE ON memories BEGIN "
                        "INSERT INTO memories_fts(memories_fts, rowid, content) "
                        "VALUES ('delete', old.rowid, old.content); "
                        "END"
                    )
                )
                if not fts_existed:
                    # Rows written before the index existed
                    connection.execute(
                        text("INSERT INTO memories_fts(memories_fts) VALUES ('rebuild')")
                    )
            fts_available = True
        except Exception as exc:
            # SQLite builds without FTS5 keep working through substring search.
            logger.warning(
                "FTS5 unavailable for %s, using substring search: %s",
                self.database_path,
                exc,
            )

        connection.execute(
            text(
                "INSERT INTO index_meta(key, value, updated_at) "
                "VALUES (:key, :value, :updated_at) "
                "ON CONFLICT(key) DO UPDATE SET "
                "value = excluded.value, "
                "updated_at = excluded.updated_at"
            ),
            {
                "key": "fts_available",
                "value": "1" if fts_available else "0",
                "updated_at": _utc_iso_now(),
            },
        )
        return fts_available

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Get an async session context manager."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        await self.engine.dispose()


@asynccontextmanager
async def open_user_store(storage_root: Path, user_id: str) -> AsyncIterator[UserStore]:
    """
    Open (creating if needed) the memory database for one user.

    The handle lives only for the duration of the block.
    """
    database_path = user_database_path(storage_root, user_id)
    database_path.parent.mkdir(parents=True, exist_ok=True)
    store = UserStore(database_path)
    try:
        await store.ensure_schema()
        yield store
    finally:
        await store.close()
