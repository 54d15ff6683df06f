from .channel import create_http_channel
from .identity import AgentIdentity
from .llm import AnthropicProvider, LLMProvider, MockProvider
from .loop import AgentLoop
from .models import AgentInput, AgentOutput, LLMOptions, LLMResponse, ToolCall, ToolResult
from .tools import ToolExecutor

__all__ = [
    "AgentIdentity",
    "AgentInput",
    "AgentLoop",
    "AgentOutput",
    "AnthropicProvider",
    "LLMOptions",
    "LLMProvider",
    "LLMResponse",
    "MockProvider",
    "ToolCall",
    "ToolExecutor",
    "ToolResult",
    "create_http_channel",
]
