"""
LLM providers for the agent loop.

- AnthropicProvider: Messages API over httpx, with tool-use support
- MockProvider: canned replies for running without an API key
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from settings import DEFAULT_LLM_MODEL
from .models import LLMOptions, LLMResponse, LLMUsage, ToolCall, ToolResult

logger = logging.getLogger(__name__)

ANTHROPIC_API_BASE = "https://api.anthropic.com"
ANTHROPIC_VERSION = "2023-06-01"


class LLMProvider(Protocol):
    async def call(self, message: str, options: LLMOptions) -> LLMResponse:
        ...

    async def call_with_tool_results(
        self,
        original_message: str,
        tool_calls: Sequence[ToolCall],
        tool_results: Sequence[ToolResult],
        options: LLMOptions,
    ) -> LLMResponse:
        ...


def _join_api_url(base: str, endpoint: str) -> str:
    return f"{base.rstrip('/')}/{endpoint.lstrip('/')}"


class AnthropicProvider:
    """Claude Messages API client."""

    def __init__(
        self,
        api_key: str,
        default_model: str = DEFAULT_LLM_MODEL,
        *,
        api_base: str = ANTHROPIC_API_BASE,
        timeout_sec: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.default_model = default_model
        self.api_base = api_base
        self.timeout_sec = timeout_sec
        self._transport = transport

    async def call(self, message: str, options: Optional[LLMOptions] = None) -> LLMResponse:
        return await self._create_message(
            [{"role": "user", "content": message}], options or LLMOptions()
        )

    async def call_with_tool_results(
        self,
        original_message: str,
        tool_calls: Sequence[ToolCall],
        tool_results: Sequence[ToolResult],
        options: Optional[LLMOptions] = None,
    ) -> LLMResponse:
        assistant_blocks: List[Dict[str, Any]] = []
        result_blocks: List[Dict[str, Any]] = []
        for index, (tool_call, tool_result) in enumerate(zip(tool_calls, tool_results)):
            tool_use_id = tool_call.id or f"toolu_local_{index}"
            assistant_blocks.append(
                {
                    "type": "tool_use",
                    "id": tool_use_id,
                    "name": tool_call.name,
                    "input": tool_call.args,
                }
            )
            result_blocks.append(
                {
                    "type": "tool_result",
                    "tool_use_id": tool_use_id,
                    "content": json.dumps(tool_result.to_dict(), default=str),
                    "is_error": not tool_result.success,
                }
            )

        messages = [
            {"role": "user", "content": original_message},
            {"role": "assistant", "content": assistant_blocks},
            {"role": "user", "content": result_blocks},
        ]
        return await self._create_message(messages, options or LLMOptions())

    async def _create_message(
        self, messages: List[Dict[str, Any]], options: LLMOptions
    ) -> LLMResponse:
        payload: Dict[str, Any] = {
            "model": options.model or self.default_model,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
            "messages": messages,
        }
        if options.system:
            payload["system"] = options.system
        if options.tools:
            payload["tools"] = options.tools

        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        timeout = httpx.Timeout(self.timeout_sec)
        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            response = await client.post(
                _join_api_url(self.api_base, "/v1/messages"),
                json=payload,
                headers=headers,
            )
            response.raise_for_status()
            body = response.json()
        return self._parse_response(body)

    @staticmethod
    def _parse_response(body: Dict[str, Any]) -> LLMResponse:
        text_parts: List[str] = []
        tool_calls: List[ToolCall] = []
        for block in body.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text":
                text_parts.append(str(block.get("text") or ""))
            elif block.get("type") == "tool_use":
                args = block.get("input")
                tool_calls.append(
                    ToolCall(
                        name=str(block.get("name") or ""),
                        args=args if isinstance(args, dict) else {},
                        id=block.get("id"),
                    )
                )

        usage_payload = body.get("usage") or {}
        usage = LLMUsage(
            input_tokens=int(usage_payload.get("input_tokens") or 0),
            output_tokens=int(usage_payload.get("output_tokens") or 0),
        )
        return LLMResponse(text="\n".join(text_parts), tool_calls=tool_calls, usage=usage)


class MockProvider:
    """Offline provider; echoes the message back."""

    async def call(self, message: str, options: Optional[LLMOptions] = None) -> LLMResponse:
        logger.info("[MockLLM] Received message: %s", message[:100])
        return LLMResponse(
            text=(
                "[Mock Response] I received your message. This is a mock LLM provider "
                "for testing the runtime without an API key. The actual message was: "
                f'"{message[:50]}..."'
            ),
            usage=LLMUsage(input_tokens=len(message) // 4, output_tokens=50),
        )

    async def call_with_tool_results(
        self,
        original_message: str,
        tool_calls: Sequence[ToolCall],
        tool_results: Sequence[ToolResult],
        options: Optional[LLMOptions] = None,
    ) -> LLMResponse:
        logger.info("[MockLLM] Tool results received: %d", len(tool_results))
        rendered = json.dumps([result.to_dict() for result in tool_results], default=str)
        return LLMResponse(
            text=f"[Mock Response] I received tool results: {rendered}",
            usage=LLMUsage(input_tokens=100, output_tokens=50),
        )
