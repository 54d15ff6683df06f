"""
Memory service: recall, store, consolidate and stats for one user.

Activation model:
- store() starts a memory at activation 1.0
- recall() boosts every returned memory by x1.1, capped at 1.0
- consolidate() decays every memory above 0.01 by x0.95, then forgets
  (deletes) every memory below 0.01

Decay is per consolidation pass, not per unit of wall-clock time, so the
effective half-life depends on how often callers consolidate.
"""

import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .memory_store import MEMORY_TYPES, MemoryRecord, _utc_iso_now, open_user_store
from .search_backends import select_search_backend

logger = logging.getLogger(__name__)

RECALL_BOOST = 1.1
ACTIVATION_CAP = 1.0
DECAY_RATIO = 0.95
FORGET_THRESHOLD = 0.01
DEFAULT_RECALL_LIMIT = 10
MAX_RECALL_LIMIT = 100
MAX_CONTENT_LENGTH = 10000


def _validate_types(types: Optional[Sequence[str]]) -> List[str]:
    normalized = list(types or [])
    for memory_type in normalized:
        if memory_type not in MEMORY_TYPES:
            raise ValueError(
                f'Invalid type "{memory_type}". Valid types: {", ".join(MEMORY_TYPES)}'
            )
    return normalized


class MemoryService:
    """
    Engram-style memory operations scoped to a single user.

    The storage root is passed in explicitly; each call opens the user's
    database, does its work in one transaction and closes the handle.
    """

    def __init__(self, user_id: str, storage_root: Path):
        self.user_id = user_id
        self.storage_root = Path(storage_root)

    async def recall(
        self,
        query: str,
        limit: int = DEFAULT_RECALL_LIMIT,
        types: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        """
        Search memories and reinforce every hit.

        Returns {"results": [...], "took_ms": int}. Returned records carry
        their post-recall activation and last_accessed values.
        """
        started = time.perf_counter()
        if not 1 <= int(limit) <= MAX_RECALL_LIMIT:
            raise ValueError(f"limit must be between 1 and {MAX_RECALL_LIMIT}")
        type_filter = _validate_types(types)

        async with open_user_store(self.storage_root, self.user_id) as store:
            backend = select_search_backend(store, query)
            async with store.session() as session:
                records = await backend.search(session, query, int(limit), type_filter)

                now_value = _utc_iso_now()
                for record in records:
                    record.last_accessed = now_value
                    record.activation = min(
                        float(record.activation) * RECALL_BOOST, ACTIVATION_CAP
                    )
                    session.add(record)
                results = [record.to_dict() for record in records]

        return {
            "results": results,
            "took_ms": int((time.perf_counter() - started) * 1000),
        }

    async def store(
        self,
        content: str,
        type: str = "factual",
        importance: float = 0.5,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Insert a new memory and return {"id": ..., "success": True}."""
        memory_type = type or "factual"
        _validate_types([memory_type])
        if not 0.0 <= float(importance) <= 1.0:
            raise ValueError("importance must be between 0 and 1")
        memory_id = str(uuid.uuid4())

        async with open_user_store(self.storage_root, self.user_id) as store:
            async with store.session() as session:
                session.add(
                    MemoryRecord(
                        id=memory_id,
                        content=content,
                        type=memory_type,
                        importance=float(importance),
                        activation=1.0,
                        created_at=_utc_iso_now(),
                        metadata_json=json.dumps(metadata) if metadata is not None else None,
                    )
                )
                await session.flush()
                if store.fts_available:
                    await self._sync_search_index(session, memory_id, content)

        return {"id": memory_id, "success": True}

    async def _sync_search_index(
        self, session: AsyncSession, memory_id: str, content: str
    ) -> None:
        """
        Make sure the new row is in the FTS index.

        The insert trigger normally covers this; a failure here is logged and
        never fails the store.
        """
        try:
            async with session.begin_nested():
                rowid = (
                    await session.execute(
                        text("SELECT rowid FROM memories WHERE id = :id"),
                        {"id": memory_id},
                    )
                ).scalar_one()
                indexed = (
                    await session.execute(
                        text("SELECT 1 FROM memories_fts_docsize WHERE id = :rowid"),
                        {"rowid": rowid},
                    )
                ).first()
                if indexed is None:
                    await session.execute(
                        text(
                            "INSERT INTO memories_fts(rowid, content) "
                            "VALUES (:rowid, :content)"
                        ),
                        {"rowid": rowid, "content": content},
                    )
        except SQLAlchemyError as exc:
            logger.warning(
                "Search index sync failed for memory %s (user %s): %s",
                memory_id,
                self.user_id,
                exc,
            )

    async def consolidate(self) -> Dict[str, Any]:
        """
        Decay all activations and forget memories that fall below the floor.

        Both steps run in one transaction so a concurrent store() cannot land
        between the decay and the delete.
        """
        async with open_user_store(self.storage_root, self.user_id) as store:
            async with store.session() as session:
                memories_before = await self._count(session)

                await session.execute(
                    update(MemoryRecord)
                    .where(MemoryRecord.activation > FORGET_THRESHOLD)
                    .values(activation=MemoryRecord.activation * DECAY_RATIO)
                    .execution_options(synchronize_session=False)
                )
                forgotten_result = await session.execute(
                    delete(MemoryRecord)
                    .where(MemoryRecord.activation < FORGET_THRESHOLD)
                    .execution_options(synchronize_session=False)
                )
                forgotten = int(forgotten_result.rowcount or 0)

                memories_after = await self._count(session)

        logger.info(
            "Consolidated memories for user %s: before=%d after=%d forgotten=%d",
            self.user_id,
            memories_before,
            memories_after,
            forgotten,
        )
        return {
            "consolidated": True,
            "stats": {
                "memories_before": memories_before,
                "memories_after": memories_after,
                # Merging similar memories is not implemented.
                "merged": 0,
                "forgotten": forgotten,
            },
        }

    async def stats(self) -> Dict[str, Any]:
        """Aggregate counts, per-type breakdown, date range and mean importance."""
        async with open_user_store(self.storage_root, self.user_id) as store:
            async with store.session() as session:
                total = await self._count(session)

                by_type: Dict[str, int] = {memory_type: 0 for memory_type in MEMORY_TYPES}
                type_rows = await session.execute(
                    select(MemoryRecord.type, func.count(MemoryRecord.id)).group_by(
                        MemoryRecord.type
                    )
                )
                for memory_type, count in type_rows.all():
                    if memory_type in by_type:
                        by_type[memory_type] = int(count)

                oldest, newest, avg_importance = (
                    await session.execute(
                        select(
                            func.min(MemoryRecord.created_at),
                            func.max(MemoryRecord.created_at),
                            func.avg(MemoryRecord.importance),
                        )
                    )
                ).one()

        payload: Dict[str, Any] = {
            "total_memories": total,
            "by_type": by_type,
            "avg_importance": float(avg_importance or 0.0),
        }
        if oldest:
            payload["oldest_memory"] = oldest
        if newest:
            payload["newest_memory"] = newest
        return payload

    @staticmethod
    async def _count(session: AsyncSession) -> int:
        return int(
            (await session.execute(select(func.count(MemoryRecord.id)))).scalar() or 0
        )


def get_memory_service(user_id: str, storage_root: Path) -> MemoryService:
    """Build the memory service for one authenticated user."""
    return MemoryService(user_id, storage_root)
