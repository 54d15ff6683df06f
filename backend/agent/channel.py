import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from pydantic import BaseModel
from starlette.responses import JSONResponse

from .loop import AgentLoop
from .models import AgentInput

logger = logging.getLogger(__name__)


class MessageRequest(BaseModel):
    message: Optional[str] = None
    session_id: Optional[str] = None


def create_http_channel(agent_loop: AgentLoop) -> FastAPI:
    """HTTP channel in front of the agent loop."""
    app = FastAPI(title="BotCoreBot Runtime")

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }

    @app.post("/api/message")
    async def post_message(body: MessageRequest):
        if not body.message:
            return JSONResponse(status_code=400, content={"error": "message is required"})
        if not body.session_id:
            return JSONResponse(status_code=400, content={"error": "session_id is required"})

        try:
            result = await agent_loop.run(
                AgentInput(message=body.message, session_id=body.session_id, channel="http")
            )
        except Exception:
            logger.exception("HTTP channel error")
            return JSONResponse(status_code=500, content={"error": "Internal server error"})
        return result.to_dict()

    return app
