from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

ChannelName = Literal["http", "telegram", "webhook"]


@dataclass
class AgentInput:
    message: str
    session_id: str
    channel: ChannelName = "http"
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentOutput:
    message: str
    memories_recalled: int = 0
    tools_used: int = 0
    tokens_used: Optional[int] = None
    response_time_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "memories_recalled": self.memories_recalled,
            "tools_used": self.tools_used,
        }
        if self.tokens_used is not None:
            metadata["tokens_used"] = self.tokens_used
        if self.response_time_ms is not None:
            metadata["response_time_ms"] = self.response_time_ms
        return {"message": self.message, "metadata": metadata}


@dataclass
class ToolCall:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


@dataclass
class ToolResult:
    success: bool
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.result is not None:
            payload["result"] = self.result
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class LLMOptions:
    model: Optional[str] = None
    max_tokens: int = 4096
    temperature: float = 1.0
    system: Optional[str] = None
    tools: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class LLMUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class LLMResponse:
    text: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    should_store: bool = False
    memory_content: Optional[str] = None
    memory_type: Optional[str] = None
    importance: Optional[float] = None
    usage: Optional[LLMUsage] = None
