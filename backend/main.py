import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import QuotaChecker, apply_api_key_middleware, memory_router, register_error_handlers
from db import AccountStore
from settings import Settings, load_settings

API_VERSION = "1.0.0"

logger = logging.getLogger("engram_api")


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def create_app(
    settings: Optional[Settings] = None,
    account_store: Optional[AccountStore] = None,
) -> FastAPI:
    """Build the Memory API application around explicit settings."""
    settings = settings or load_settings()
    account_store = account_store or AccountStore(
        settings.accounts_database_url, test_api_key=settings.test_api_key
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Memory API starting (storage root: %s)", settings.storage_root)
        try:
            settings.storage_root.mkdir(parents=True, exist_ok=True)
            await account_store.init_db()
        except Exception as exc:
            logger.error("Failed to initialize account store: %s", exc)
            raise RuntimeError("Failed to initialize account store during startup") from exc

        yield

        logger.info("Closing database connections...")
        await account_store.close()

    app = FastAPI(
        title="Engram Memory API",
        description="Memory-as-a-Service API for AI bots. Add persistent memory to any bot via HTTP.",
        version=API_VERSION,
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.account_store = account_store
    app.state.quota_checker = QuotaChecker(
        account_store,
        settings.rate_limits,
        fail_open=settings.quota_fail_open,
    )

    apply_api_key_middleware(app)
    # Added last so it wraps auth and answers preflight requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    app.include_router(memory_router)

    @app.get("/api/health")
    async def health():
        """Liveness probe; no auth."""
        return {
            "status": "ok",
            "timestamp": _utc_iso_now(),
            "version": API_VERSION,
        }

    return app


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    settings = load_settings()
    uvicorn.run(create_app(settings), host=settings.http_host, port=settings.http_port)
