"""
Search strategies used by recall.

Two backends share one interface:
- FullTextSearchBackend: FTS5 MATCH over memory content
- SubstringSearchBackend: LIKE '%query%' over raw content

Both order by activation (highest first), honour an optional type filter and
stop at `limit` rows. The backend is chosen from the store's explicit index
readiness flag.
"""

import re
from typing import List, Optional, Protocol, Sequence

from sqlalchemy import bindparam, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from .memory_store import MemoryRecord, UserStore

_FTS_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


class SearchBackend(Protocol):
    name: str

    async def search(
        self,
        session: AsyncSession,
        query: str,
        limit: int,
        types: Optional[Sequence[str]] = None,
    ) -> List[MemoryRecord]:
        ...


def build_fts_query(query: str) -> str:
    """
    Turn free text into an FTS5 expression.

    Each token is quoted so punctuation in user input cannot be parsed as FTS
    syntax. Space-separated phrases are ANDed by FTS5, and words such as
    AND / OR / NOT / NEAR are required terms like any other.
    """
    tokens = _FTS_TOKEN_PATTERN.findall(query or "")
    return " ".join(f'"{token}"' for token in tokens)


def _escape_like_pattern(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


async def _load_in_order(session: AsyncSession, memory_ids: List[str]) -> List[MemoryRecord]:
    if not memory_ids:
        return []
    rows = await session.execute(
        select(MemoryRecord).where(MemoryRecord.id.in_(memory_ids))
    )
    by_id = {record.id: record for record in rows.scalars().all()}
    return [by_id[memory_id] for memory_id in memory_ids if memory_id in by_id]


class FullTextSearchBackend:
    name = "fts"

    async def search(
        self,
        session: AsyncSession,
        query: str,
        limit: int,
        types: Optional[Sequence[str]] = None,
    ) -> List[MemoryRecord]:
        fts_query = build_fts_query(query)
        if not fts_query:
            return []

        sql = (
            "SELECT m.id AS id FROM memories m "
            "JOIN memories_fts ON m.rowid = memories_fts.rowid "
            "WHERE memories_fts MATCH :fts_query"
        )
        params = {"fts_query": fts_query, "limit": int(limit)}
        if types:
            sql += " AND m.type IN :types"
        sql += " ORDER BY m.activation DESC, m.created_at DESC LIMIT :limit"

        statement = text(sql)
        if types:
            statement = statement.bindparams(bindparam("types", expanding=True))
            params["types"] = list(types)

        result = await session.execute(statement, params)
        memory_ids = [row.id for row in result]
        return await _load_in_order(session, memory_ids)


class SubstringSearchBackend:
    name = "substring"

    async def search(
        self,
        session: AsyncSession,
        query: str,
        limit: int,
        types: Optional[Sequence[str]] = None,
    ) -> List[MemoryRecord]:
        pattern = f"%{_escape_like_pattern(query or '')}%"
        statement = select(MemoryRecord).where(
            MemoryRecord.content.like(pattern, escape="\\")
        )
        if types:
            statement = statement.where(MemoryRecord.type.in_(list(types)))
        statement = statement.order_by(
            MemoryRecord.activation.desc(), MemoryRecord.created_at.desc()
        ).limit(int(limit))

        result = await session.execute(statement)
        return list(result.scalars().all())


FULL_TEXT_BACKEND = FullTextSearchBackend()
SUBSTRING_BACKEND = SubstringSearchBackend()


def select_search_backend(store: UserStore, query: str) -> SearchBackend:
    """Full-text when the index is ready and the query has searchable tokens."""
    if store.fts_available and build_fts_query(query):
        return FULL_TEXT_BACKEND
    return SUBSTRING_BACKEND
