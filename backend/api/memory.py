"""
Memory API - recall, store, consolidate and stats for the authenticated user.

All routes require a bearer key (enforced by the auth middleware). Request
bodies are validated before any storage is touched.
"""

from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from db.memory_service import (
    MAX_CONTENT_LENGTH,
    MAX_RECALL_LIMIT,
    MemoryService,
    get_memory_service,
)
from .auth import AuthContext, get_auth_context

MemoryTypeName = Literal["factual", "relational", "procedural", "episodic", "semantic"]

router = APIRouter(prefix="/api/v1/memory", tags=["memory"])


class RecallRequest(BaseModel):
    query: str = Field(min_length=1, strict=True)
    limit: int = Field(default=10, ge=1, le=MAX_RECALL_LIMIT, strict=True)
    types: Optional[List[MemoryTypeName]] = None


class StoreRequest(BaseModel):
    content: str = Field(min_length=1, max_length=MAX_CONTENT_LENGTH, strict=True)
    type: MemoryTypeName = "factual"
    importance: float = Field(default=0.5, ge=0.0, le=1.0, strict=True)
    metadata: Optional[Dict[str, Any]] = None


class MemoryOut(BaseModel):
    id: str
    content: str
    type: str
    importance: float
    activation: float
    created_at: str
    last_accessed: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class RecallResponse(BaseModel):
    results: List[MemoryOut]
    took_ms: int


class StoreResponse(BaseModel):
    id: str
    success: bool


class ConsolidateStats(BaseModel):
    memories_before: int
    memories_after: int
    merged: int
    forgotten: int


class ConsolidateResponse(BaseModel):
    consolidated: bool
    stats: ConsolidateStats


class StatsResponse(BaseModel):
    total_memories: int
    by_type: Dict[str, int]
    oldest_memory: Optional[str] = None
    newest_memory: Optional[str] = None
    avg_importance: float


def get_memory(
    request: Request, auth: AuthContext = Depends(get_auth_context)
) -> MemoryService:
    settings = request.app.state.settings
    return get_memory_service(auth.user_id, settings.storage_root)


@router.post(
    "/recall",
    response_model=RecallResponse,
    response_model_exclude_none=True,
)
async def recall_memories(
    body: RecallRequest, memory: MemoryService = Depends(get_memory)
):
    """Search memories; every returned memory is reinforced."""
    return await memory.recall(body.query, body.limit, body.types)


@router.post(
    "/store",
    response_model=StoreResponse,
    status_code=status.HTTP_201_CREATED,
)
async def store_memory(body: StoreRequest, memory: MemoryService = Depends(get_memory)):
    return await memory.store(
        body.content,
        type=body.type,
        importance=body.importance,
        metadata=body.metadata,
    )


@router.post("/consolidate", response_model=ConsolidateResponse)
async def consolidate_memories(memory: MemoryService = Depends(get_memory)):
    """Decay activations and forget memories that fell below the floor."""
    return await memory.consolidate()


@router.get(
    "/stats",
    response_model=StatsResponse,
    response_model_exclude_none=True,
)
async def memory_stats(memory: MemoryService = Depends(get_memory)):
    return await memory.stats()
