"""
Runtime configuration for the Engram Memory API and the agent runtime.

Settings are read once from the environment (after loading an optional .env
file) and passed explicitly to the services that need them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv, find_dotenv

_TRUTHY_ENV_VALUES = {"1", "true", "yes", "on", "enabled"}

DEFAULT_STORAGE_PATH = "/tmp/botcorebot-memory"
DEFAULT_LLM_MODEL = "claude-3-5-sonnet-20241022"
TIERS = ("free", "pro", "enterprise")


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY_ENV_VALUES


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name) or default).strip()


@dataclass(frozen=True)
class Settings:
    storage_root: Path
    accounts_database_url: str
    test_api_key: Optional[str] = None
    rate_limits: Dict[str, int] = field(
        default_factory=lambda: {"free": 10, "pro": 100, "enterprise": 1000}
    )
    quota_fail_open: bool = True
    anthropic_api_key: Optional[str] = None
    llm_provider: str = "anthropic"
    llm_model: str = DEFAULT_LLM_MODEL
    agent_workspace: Path = field(default_factory=Path.cwd)
    agent_memory_user: Optional[str] = None
    http_host: str = "0.0.0.0"
    http_port: int = 3000

    def rate_limit_for(self, tier: str) -> int:
        """Per-minute request ceiling for a tier; unknown tiers get the free ceiling."""
        return self.rate_limits.get(tier, self.rate_limits["free"])


def load_settings(*, load_env_file: bool = True) -> Settings:
    """Build Settings from the process environment."""
    if load_env_file:
        dotenv_path = find_dotenv(usecwd=True)
        if dotenv_path:
            load_dotenv(dotenv_path)

    storage_root = Path(_env_str("MEMORY_STORAGE_PATH", DEFAULT_STORAGE_PATH))
    accounts_url = _env_str("ACCOUNTS_DATABASE_URL") or (
        f"sqlite+aiosqlite:///{storage_root / 'accounts.db'}"
    )
    workspace = _env_str("BOTCORE_WORKSPACE")

    return Settings(
        storage_root=storage_root,
        accounts_database_url=accounts_url,
        test_api_key=_env_str("TEST_API_KEY") or None,
        rate_limits={
            "free": _env_int("RATE_LIMIT_FREE", 10, minimum=1),
            "pro": _env_int("RATE_LIMIT_PRO", 100, minimum=1),
            "enterprise": _env_int("RATE_LIMIT_ENTERPRISE", 1000, minimum=1),
        },
        quota_fail_open=_env_bool("QUOTA_FAIL_OPEN", True),
        anthropic_api_key=_env_str("ANTHROPIC_API_KEY") or None,
        llm_provider=(_env_str("AGENT_LLM_PROVIDER", "anthropic").lower() or "anthropic"),
        llm_model=_env_str("AGENT_LLM_MODEL", DEFAULT_LLM_MODEL) or DEFAULT_LLM_MODEL,
        agent_workspace=Path(workspace) if workspace else Path.cwd(),
        agent_memory_user=_env_str("AGENT_MEMORY_USER") or None,
        http_host=_env_str("HOST", "0.0.0.0") or "0.0.0.0",
        http_port=_env_int("HTTP_PORT", 3000, minimum=1),
    )
