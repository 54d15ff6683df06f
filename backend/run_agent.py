import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI

from agent import (
    AgentIdentity,
    AgentLoop,
    AnthropicProvider,
    LLMProvider,
    MockProvider,
    ToolExecutor,
    create_http_channel,
)
from db import get_memory_service
from settings import Settings, load_settings

logger = logging.getLogger("botcorebot_runtime")


def build_llm_provider(settings: Settings) -> Optional[LLMProvider]:
    if settings.llm_provider == "mock":
        return MockProvider()
    if not settings.anthropic_api_key:
        return None
    return AnthropicProvider(settings.anthropic_api_key, settings.llm_model)


def create_agent_app(settings: Settings, llm_provider: LLMProvider) -> FastAPI:
    memory = (
        get_memory_service(settings.agent_memory_user, settings.storage_root)
        if settings.agent_memory_user
        else None
    )
    identity = AgentIdentity.load(settings.agent_workspace)
    if identity.name:
        logger.info("Identity: %s %s", identity.name, identity.emoji or "")

    agent_loop = AgentLoop(
        identity=identity,
        llm_provider=llm_provider,
        tools=ToolExecutor(settings.agent_workspace, memory),
        memory=memory,
        model=settings.llm_model,
    )
    return create_http_channel(agent_loop)


def main() -> int:
    """
    Run the agent runtime behind its HTTP channel.
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    settings = load_settings()
    logger.info("BotCoreBot Runtime starting (workspace: %s)", settings.agent_workspace)

    llm_provider = build_llm_provider(settings)
    if llm_provider is None:
        logger.error("ANTHROPIC_API_KEY environment variable is required")
        return 1
    logger.info("LLM provider: %s (%s)", type(llm_provider).__name__, settings.llm_model)

    app = create_agent_app(settings, llm_provider)
    logger.info(
        "HTTP channel listening on http://%s:%d/api/message",
        settings.http_host,
        settings.http_port,
    )
    uvicorn.run(app, host=settings.http_host, port=settings.http_port)
    return 0


if __name__ == "__main__":
    sys.exit(main())
