"""
Tool execution for the agent loop.

Filesystem tools are confined to the agent workspace. Memory tools go through
the same MemoryService the HTTP API uses.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from db.memory_service import MAX_CONTENT_LENGTH, MemoryService
from db.memory_store import MEMORY_TYPES
from .models import ToolCall, ToolResult

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": "filesystem_write",
        "description": "Write a text file inside the workspace, replacing it if it exists.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "content": {"type": "string"},
            },
            "required": ["path", "content"],
        },
    },
    {
        "name": "filesystem_read",
        "description": "Read a text file from the workspace.",
        "input_schema": {
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
    },
    {
        "name": "filesystem_edit",
        "description": "Replace the first occurrence of oldText with newText in a workspace file.",
        "input_schema": {
            "type": "object",
            "properties": {
                "path": {"type": "string"},
                "oldText": {"type": "string"},
                "newText": {"type": "string"},
            },
            "required": ["path", "oldText", "newText"],
        },
    },
    {
        "name": "memory_recall",
        "description": "Search long-term memory.",
        "input_schema": {
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "limit": {"type": "integer", "minimum": 1, "maximum": 100},
            },
            "required": ["query"],
        },
    },
    {
        "name": "memory_store",
        "description": "Save something worth remembering to long-term memory.",
        "input_schema": {
            "type": "object",
            "properties": {
                "content": {"type": "string"},
                "type": {"type": "string", "enum": list(MEMORY_TYPES)},
                "importance": {"type": "number", "minimum": 0, "maximum": 1},
            },
            "required": ["content"],
        },
    },
]


class ToolExecutor:
    def __init__(self, workspace: Path, memory: Optional[MemoryService] = None) -> None:
        self.workspace = Path(workspace).resolve()
        self.memory = memory
        self._handlers = {
            "filesystem_write": self._filesystem_write,
            "filesystem_read": self._filesystem_read,
            "filesystem_edit": self._filesystem_edit,
            "memory_recall": self._memory_recall,
            "memory_store": self._memory_store,
        }

    @property
    def definitions(self) -> List[Dict[str, Any]]:
        return TOOL_DEFINITIONS

    async def execute(self, tool_call: ToolCall) -> ToolResult:
        """Run one tool call. Failures are reported in the result, never raised."""
        handler = self._handlers.get(tool_call.name)
        if handler is None:
            return ToolResult(success=False, error=f"Unknown tool: {tool_call.name}")
        try:
            return await handler(tool_call.args or {})
        except Exception as exc:
            return ToolResult(success=False, error=str(exc))

    def _resolve(self, raw_path: Any) -> Path:
        if not isinstance(raw_path, str) or not raw_path.strip():
            raise ValueError("path must be a non-empty string")
        candidate = (self.workspace / raw_path).resolve()
        if candidate != self.workspace and self.workspace not in candidate.parents:
            raise ValueError(f"Path escapes workspace: {raw_path}")
        return candidate

    def _require_memory(self) -> MemoryService:
        if self.memory is None:
            raise RuntimeError("Memory service not configured")
        return self.memory

    async def _filesystem_write(self, args: Dict[str, Any]) -> ToolResult:
        target = self._resolve(args.get("path"))
        content = str(args.get("content") or "")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return ToolResult(success=True, result=f"Wrote {len(content)} bytes to {args['path']}")

    async def _filesystem_read(self, args: Dict[str, Any]) -> ToolResult:
        target = self._resolve(args.get("path"))
        return ToolResult(success=True, result=target.read_text(encoding="utf-8"))

    async def _filesystem_edit(self, args: Dict[str, Any]) -> ToolResult:
        target = self._resolve(args.get("path"))
        old_text = str(args.get("oldText") or "")
        new_text = str(args.get("newText") or "")
        if not old_text:
            raise ValueError("oldText must not be empty")
        current = target.read_text(encoding="utf-8")
        if old_text not in current:
            raise ValueError(f"oldText not found in {args['path']}")
        target.write_text(current.replace(old_text, new_text, 1), encoding="utf-8")
        return ToolResult(success=True, result=f"Edited {args['path']}")

    async def _memory_recall(self, args: Dict[str, Any]) -> ToolResult:
        memory = self._require_memory()
        query = str(args.get("query") or "")
        limit = int(args.get("limit") or 5)
        payload = await memory.recall(query, limit=limit)
        return ToolResult(success=True, result=payload["results"])

    async def _memory_store(self, args: Dict[str, Any]) -> ToolResult:
        memory = self._require_memory()
        content = args.get("content")
        if not isinstance(content, str) or not content.strip():
            return ToolResult(success=False, error="content must be a non-empty string")
        if len(content) > MAX_CONTENT_LENGTH:
            return ToolResult(
                success=False,
                error=f"content must be at most {MAX_CONTENT_LENGTH} characters",
            )

        importance = args.get("importance")
        if importance is None:
            importance = 0.5
        if isinstance(importance, bool) or not isinstance(importance, (int, float)):
            return ToolResult(success=False, error="importance must be a number")
        if not 0.0 <= float(importance) <= 1.0:
            return ToolResult(success=False, error="importance must be between 0 and 1")

        result = await memory.store(
            content,
            type=args.get("type") or "factual",
            importance=float(importance),
        )
        return ToolResult(success=True, result=result)
