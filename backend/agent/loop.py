"""
Core agent loop.

One run:
1. recall memories relevant to the message
2. load the agent identity
3. build the system prompt
4. build the user message with memory context
5. call the LLM
6. execute tool calls and call the LLM again, up to max_tool_iterations rounds
7. store the memory the LLM flagged, if any
8. return the reply with run metadata
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from db.memory_service import MAX_CONTENT_LENGTH, MemoryService
from db.memory_store import MEMORY_TYPES
from settings import DEFAULT_LLM_MODEL
from .identity import AgentIdentity
from .llm import LLMProvider
from .models import AgentInput, AgentOutput, LLMOptions, LLMResponse
from .tools import ToolExecutor

logger = logging.getLogger(__name__)

ERROR_REPLY = "Sorry, I encountered an error processing your request."
RECALL_LIMIT = 5


class AgentLoop:
    def __init__(
        self,
        *,
        identity: AgentIdentity,
        llm_provider: LLMProvider,
        tools: ToolExecutor,
        memory: Optional[MemoryService] = None,
        max_tool_iterations: int = 5,
        model: str = DEFAULT_LLM_MODEL,
        max_tokens: int = 4096,
    ) -> None:
        self.identity = identity
        self.llm_provider = llm_provider
        self.tools = tools
        self.memory = memory
        self.max_tool_iterations = max_tool_iterations
        self.model = model
        self.max_tokens = max_tokens

    async def run(self, agent_input: AgentInput) -> AgentOutput:
        started = time.perf_counter()
        try:
            memories = await self.recall_memories(agent_input.message)
            system_prompt = self.build_system_prompt(self.identity)
            user_message = self.build_user_message(agent_input.message, memories)
            options = LLMOptions(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system_prompt,
                tools=self.tools.definitions,
            )

            response = await self.llm_provider.call(user_message, options)
            tokens_used = response.usage.total if response.usage else 0

            tool_iterations = 0
            tools_used = 0
            while response.tool_calls and tool_iterations < self.max_tool_iterations:
                tool_results = []
                for tool_call in response.tool_calls:
                    tool_results.append(await self.tools.execute(tool_call))
                    tools_used += 1

                response = await self.llm_provider.call_with_tool_results(
                    user_message, response.tool_calls, tool_results, options
                )
                if response.usage:
                    tokens_used += response.usage.total
                tool_iterations += 1

            if response.should_store and response.memory_content and self.memory:
                await self.store_flagged_memory(response)

            return AgentOutput(
                message=response.text,
                memories_recalled=len(memories),
                tools_used=tools_used,
                tokens_used=tokens_used,
                response_time_ms=int((time.perf_counter() - started) * 1000),
            )
        except Exception:
            logger.exception("Agent loop error (session %s)", agent_input.session_id)
            return AgentOutput(
                message=ERROR_REPLY,
                response_time_ms=int((time.perf_counter() - started) * 1000),
            )

    async def recall_memories(self, query: str) -> List[Dict[str, Any]]:
        if self.memory is None:
            return []
        payload = await self.memory.recall(query, limit=RECALL_LIMIT)
        return payload["results"]

    async def store_flagged_memory(self, response: LLMResponse) -> bool:
        """Store the memory the LLM flagged; importance is clamped to [0, 1]."""
        content = (response.memory_content or "").strip()
        if not content:
            return False
        if len(content) > MAX_CONTENT_LENGTH:
            logger.warning(
                "Skipping flagged memory of %d characters (limit %d)",
                len(content),
                MAX_CONTENT_LENGTH,
            )
            return False

        memory_type = response.memory_type if response.memory_type in MEMORY_TYPES else "factual"
        importance = 0.5 if response.importance is None else float(response.importance)
        await self.memory.store(
            content,
            type=memory_type,
            importance=min(max(importance, 0.0), 1.0),
        )
        return True

    @staticmethod
    def build_system_prompt(identity: AgentIdentity) -> str:
        parts: List[str] = []
        if identity.soul:
            parts.append(identity.soul)

        name = identity.name or "an AI assistant"
        creature = f" ({identity.creature})" if identity.creature else ""
        parts.append(f"\nYou are {name}{creature}.")
        if identity.vibe:
            parts.append(f"Your vibe: {identity.vibe}")
        return "\n".join(parts)

    @staticmethod
    def build_user_message(message: str, memories: List[Dict[str, Any]]) -> str:
        if not memories:
            return message
        memory_context = "\n".join(
            f"- {memory['content']} (activation: {float(memory.get('activation', 0.0)):.2f})"
            for memory in memories
        )
        return (
            "[Relevant memories from past conversations:]\n"
            f"{memory_context}\n\n"
            "[Current message:]\n"
            f"{message}"
        )
