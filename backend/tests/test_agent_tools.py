from pathlib import Path

import pytest

from agent import ToolCall, ToolExecutor
from db.memory_service import MemoryService


@pytest.mark.asyncio
async def test_write_read_edit_round(tmp_path: Path) -> None:
    tools = ToolExecutor(tmp_path)

    written = await tools.execute(
        ToolCall(name="filesystem_write", args={"path": "a/b.txt", "content": "hello world"})
    )
    assert written.success is True
    assert written.result == "Wrote 11 bytes to a/b.txt"

    edited = await tools.execute(
        ToolCall(
            name="filesystem_edit",
            args={"path": "a/b.txt", "oldText": "world", "newText": "there"},
        )
    )
    assert edited.success is True

    read = await tools.execute(ToolCall(name="filesystem_read", args={"path": "a/b.txt"}))
    assert read.result == "hello there"


@pytest.mark.asyncio
async def test_edit_replaces_only_first_occurrence(tmp_path: Path) -> None:
    (tmp_path / "f.txt").write_text("x x x", encoding="utf-8")
    tools = ToolExecutor(tmp_path)

    await tools.execute(
        ToolCall(name="filesystem_edit", args={"path": "f.txt", "oldText": "x", "newText": "y"})
    )

    assert (tmp_path / "f.txt").read_text(encoding="utf-8") == "y x x"


@pytest.mark.asyncio
async def test_edit_reports_missing_text(tmp_path: Path) -> None:
    (tmp_path / "f.txt").write_text("abc", encoding="utf-8")
    tools = ToolExecutor(tmp_path)

    result = await tools.execute(
        ToolCall(name="filesystem_edit", args={"path": "f.txt", "oldText": "zzz", "newText": "y"})
    )

    assert result.success is False
    assert "not found" in result.error


@pytest.mark.asyncio
async def test_paths_cannot_escape_workspace(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    tools = ToolExecutor(workspace)

    escaped = await tools.execute(
        ToolCall(name="filesystem_write", args={"path": "../outside.txt", "content": "nope"})
    )
    absolute = await tools.execute(
        ToolCall(name="filesystem_read", args={"path": str(tmp_path / "secret.txt")})
    )

    assert escaped.success is False
    assert "escapes workspace" in escaped.error
    assert not (tmp_path / "outside.txt").exists()
    assert absolute.success is False


@pytest.mark.asyncio
async def test_unknown_tool(tmp_path: Path) -> None:
    result = await ToolExecutor(tmp_path).execute(ToolCall(name="shell_exec", args={}))

    assert result.success is False
    assert result.error == "Unknown tool: shell_exec"


@pytest.mark.asyncio
async def test_memory_tools_without_service(tmp_path: Path) -> None:
    result = await ToolExecutor(tmp_path).execute(
        ToolCall(name="memory_store", args={"content": "x"})
    )

    assert result.success is False
    assert result.error == "Memory service not configured"


@pytest.mark.asyncio
async def test_memory_tools_store_and_recall(tmp_path: Path) -> None:
    memory = MemoryService("agent-user", tmp_path / "memory")
    tools = ToolExecutor(tmp_path / "workspace", memory)

    stored = await tools.execute(
        ToolCall(
            name="memory_store",
            args={"content": "Deploys happen on Tuesdays", "type": "procedural", "importance": 0.9},
        )
    )
    recalled = await tools.execute(ToolCall(name="memory_recall", args={"query": "Tuesdays"}))
    bad_type = await tools.execute(
        ToolCall(name="memory_store", args={"content": "x", "type": "bogus"})
    )

    assert stored.success is True
    assert stored.result["success"] is True
    assert recalled.success is True
    assert [item["id"] for item in recalled.result] == [stored.result["id"]]
    assert recalled.result[0]["type"] == "procedural"
    assert bad_type.success is False


def test_tool_definitions_use_input_schema(tmp_path: Path) -> None:
    definitions = ToolExecutor(tmp_path).definitions

    assert [tool["name"] for tool in definitions] == [
        "filesystem_write",
        "filesystem_read",
        "filesystem_edit",
        "memory_recall",
        "memory_store",
    ]
    assert all(tool["input_schema"]["type"] == "object" for tool in definitions)


@pytest.mark.asyncio
async def test_memory_store_tool_rejects_out_of_bounds_input(tmp_path: Path) -> None:
    memory = MemoryService("agent-user", tmp_path / "memory")
    tools = ToolExecutor(tmp_path / "workspace", memory)

    oversized = await tools.execute(
        ToolCall(name="memory_store", args={"content": "x" * 20000, "importance": 0.5})
    )
    too_important = await tools.execute(
        ToolCall(name="memory_store", args={"content": "fine", "importance": 7.5})
    )
    negative = await tools.execute(
        ToolCall(name="memory_store", args={"content": "fine", "importance": -0.1})
    )
    not_a_number = await tools.execute(
        ToolCall(name="memory_store", args={"content": "fine", "importance": "high"})
    )
    blank = await tools.execute(ToolCall(name="memory_store", args={"content": "   "}))
    at_limit = await tools.execute(
        ToolCall(name="memory_store", args={"content": "y" * 10000, "importance": 1})
    )

    for result in (oversized, too_important, negative, not_a_number, blank):
        assert result.success is False
    assert "10000" in oversized.error
    assert "between 0 and 1" in too_important.error
    assert at_limit.success is True

    stats = await memory.stats()
    assert stats["total_memories"] == 1
    assert stats["avg_importance"] == pytest.approx(1.0)
