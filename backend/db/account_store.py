"""
Account store: API keys and the usage log used for rate limiting.

Keys are never stored in clear text; lookups compare SHA-256 hex digests.
The store talks to any SQLAlchemy async URL (a local SQLite file by default,
a managed Postgres instance in production).
"""

import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Tuple

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .memory_store import validate_user_id

logger = logging.getLogger(__name__)

AccountBase = declarative_base()

TIERS = ("free", "pro", "enterprise")
API_KEY_PREFIX = "bcb_"
TEST_USER_ID = "test-user"
TEST_USER_TIER = "pro"
USAGE_LOG_RETENTION_DAYS = 30


def _utc_now_naive() -> datetime:
    """Naive UTC datetime; portable across SQLite and Postgres columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hash_api_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


# =============================================================================
# ORM Models
# =============================================================================


class ApiKey(AccountBase):
    __tablename__ = "api_keys"
    __table_args__ = (
        Index("idx_api_keys_key_hash", "key_hash"),
        Index("idx_api_keys_user_id", "user_id"),
    )

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(128), nullable=False)
    key_hash = Column(String(128), nullable=False, unique=True)
    tier = Column(String(16), nullable=False, default="free")
    name = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utc_now_naive)
    last_used = Column(DateTime, nullable=True)


class UsageLog(AccountBase):
    __tablename__ = "usage_log"
    __table_args__ = (
        Index("idx_usage_log_user_id_timestamp", "user_id", "timestamp"),
    )

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(128), nullable=False)
    endpoint = Column(Text, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=_utc_now_naive)
    tokens_used = Column(Integer, nullable=True, default=0)


@dataclass(frozen=True)
class AuthUser:
    id: str
    tier: str


@dataclass(frozen=True)
class ApiKeyValidation:
    valid: bool
    user: Optional[AuthUser] = None
    error: Optional[str] = None


# =============================================================================
# Account Store
# =============================================================================


class AccountStore:
    """
    Async access to the api_keys and usage_log tables.

    Core operations:
    - validate_api_key: hash lookup, best-effort last_used update
    - log_usage / count_recent_usage: sliding-window metering
    - create_api_key: issue a new key (only the hash is persisted)
    - prune_usage_log: drop usage rows past the retention window
    """

    def __init__(self, database_url: str, test_api_key: Optional[str] = None):
        self.database_url = database_url
        self.test_api_key = test_api_key or None
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init_db(self) -> None:
        """Create tables if they don't exist."""
        sqlite_prefix = "sqlite+aiosqlite:///"
        if self.database_url.startswith(sqlite_prefix):
            raw_path = self.database_url[len(sqlite_prefix):]
            if raw_path and raw_path != ":memory:":
                Path(raw_path).parent.mkdir(parents=True, exist_ok=True)
        async with self.engine.begin() as conn:
            await conn.run_sync(AccountBase.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    async def validate_api_key(self, api_key: str) -> ApiKeyValidation:
        if self.test_api_key and secrets.compare_digest(api_key, self.test_api_key):
            return ApiKeyValidation(
                valid=True, user=AuthUser(id=TEST_USER_ID, tier=TEST_USER_TIER)
            )

        key_hash = hash_api_key(api_key)
        async with self.async_session() as session:
            row = (
                await session.execute(
                    select(ApiKey.id, ApiKey.user_id, ApiKey.tier).where(
                        ApiKey.key_hash == key_hash
                    )
                )
            ).first()
        if row is None:
            return ApiKeyValidation(valid=False, error="Invalid API key")

        await self._touch_last_used(row.id)
        return ApiKeyValidation(valid=True, user=AuthUser(id=row.user_id, tier=row.tier))

    async def _touch_last_used(self, key_id: str) -> None:
        try:
            async with self.async_session() as session:
                await session.execute(
                    update(ApiKey)
                    .where(ApiKey.id == key_id)
                    .values(last_used=_utc_now_naive())
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("Failed to update last_used for api key %s: %s", key_id, exc)

    async def log_usage(
        self, user_id: str, endpoint: str, tokens_used: Optional[int] = None
    ) -> None:
        async with self.async_session() as session:
            session.add(
                UsageLog(
                    user_id=user_id,
                    endpoint=endpoint,
                    timestamp=_utc_now_naive(),
                    tokens_used=tokens_used,
                )
            )
            await session.commit()

    async def count_recent_usage(
        self,
        user_id: str,
        window_seconds: int = 60,
        now: Optional[datetime] = None,
    ) -> int:
        reference = now or _utc_now_naive()
        window_start = reference - timedelta(seconds=window_seconds)
        async with self.async_session() as session:
            result = await session.execute(
                select(func.count(UsageLog.id))
                .where(UsageLog.user_id == user_id)
                .where(UsageLog.timestamp >= window_start)
            )
            return int(result.scalar() or 0)

    async def create_api_key(
        self, user_id: str, tier: str, name: Optional[str] = None
    ) -> Tuple[str, str]:
        """Issue a new key. Returns (clear-text key, key id); the key is shown once."""
        if tier not in TIERS:
            raise ValueError(f"Unknown tier {tier!r}. Valid tiers: {', '.join(TIERS)}")
        # Keys must map onto a usable per-user storage directory
        user_id = validate_user_id(user_id)
        key = f"{API_KEY_PREFIX}{secrets.token_hex(32)}"
        record = ApiKey(
            id=str(uuid.uuid4()),
            user_id=user_id,
            key_hash=hash_api_key(key),
            tier=tier,
            name=name,
            created_at=_utc_now_naive(),
        )
        async with self.async_session() as session:
            session.add(record)
            await session.commit()
        return key, record.id

    async def prune_usage_log(
        self, retention_days: int = USAGE_LOG_RETENTION_DAYS
    ) -> int:
        cutoff = _utc_now_naive() - timedelta(days=retention_days)
        async with self.async_session() as session:
            result = await session.execute(
                delete(UsageLog).where(UsageLog.timestamp < cutoff)
            )
            await session.commit()
        return int(result.rowcount or 0)
