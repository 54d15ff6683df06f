import asyncio
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import SQLAlchemyError

from db.account_store import AccountStore
from main import create_app
from settings import Settings

TEST_KEY = "test-key-123"


def _settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        storage_root=tmp_path / "memory",
        accounts_database_url=f"sqlite+aiosqlite:///{tmp_path / 'accounts.db'}",
        test_api_key=TEST_KEY,
    )
    values.update(overrides)
    return Settings(**values)


def _issue_key(database_url: str, user_id: str, tier: str) -> str:
    async def _run() -> str:
        store = AccountStore(database_url)
        try:
            await store.init_db()
            key, _ = await store.create_api_key(user_id, tier, "test")
            return key
        finally:
            await store.close()

    return asyncio.run(_run())


def _headers(key: str = TEST_KEY) -> dict:
    return {"Authorization": f"Bearer {key}"}


@pytest.mark.parametrize(
    ("method", "path", "body"),
    [
        ("POST", "/api/v1/memory/recall", {"query": "anything"}),
        ("POST", "/api/v1/memory/store", {"content": "anything"}),
        ("POST", "/api/v1/memory/consolidate", None),
        ("GET", "/api/v1/memory/stats", None),
    ],
)
def test_missing_authorization_header_is_rejected(
    tmp_path: Path, method: str, path: str, body
) -> None:
    settings = _settings(tmp_path)
    with TestClient(create_app(settings)) as client:
        response = client.request(method, path, json=body)

    assert response.status_code == 401
    payload = response.json()
    assert payload == {"error": "Missing or invalid Authorization header", "code": "UNAUTHORIZED"}
    assert not (settings.storage_root / "test-user").exists()


def test_non_bearer_scheme_is_rejected(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        basic = client.get("/api/v1/memory/stats", headers={"Authorization": "Basic abc"})
        empty = client.get("/api/v1/memory/stats", headers={"Authorization": "Bearer "})

    assert basic.status_code == 401
    assert empty.status_code == 401


def test_unknown_key_is_rejected(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.get("/api/v1/memory/stats", headers=_headers("bcb_not_a_real_key"))

    assert response.status_code == 401
    assert response.json() == {"error": "Invalid API key", "code": "UNAUTHORIZED"}


def test_auth_runs_before_body_validation(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.post(
            "/api/v1/memory/store",
            headers={"Content-Type": "application/json"},
            content="{not json",
        )

    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHORIZED"


def test_test_key_disabled_when_not_configured(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path, test_api_key=None))) as client:
        response = client.get("/api/v1/memory/stats", headers=_headers())

    assert response.status_code == 401


def test_issued_key_authenticates_its_owner(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    key = _issue_key(settings.accounts_database_url, "alice", "free")

    with TestClient(create_app(settings)) as client:
        stored = client.post(
            "/api/v1/memory/store", headers=_headers(key), json={"content": "alice note"}
        )
        other_user = client.post(
            "/api/v1/memory/recall", headers=_headers(), json={"query": "alice"}
        )

    assert stored.status_code == 201
    assert (settings.storage_root / "alice" / "engram.db").exists()
    assert other_user.json()["results"] == []


def test_successful_requests_report_remaining_quota(tmp_path: Path) -> None:
    settings = _settings(tmp_path, rate_limits={"free": 10, "pro": 5, "enterprise": 1000})
    with TestClient(create_app(settings)) as client:
        first = client.get("/api/v1/memory/stats", headers=_headers())
        second = client.get("/api/v1/memory/stats", headers=_headers())

    assert first.headers["X-RateLimit-Remaining"] == "4"
    assert second.headers["X-RateLimit-Remaining"] == "3"
    assert int(first.headers["X-RateLimit-Reset"]) > 0


def test_rate_limit_exceeded_returns_429(tmp_path: Path) -> None:
    settings = _settings(tmp_path, rate_limits={"free": 10, "pro": 2, "enterprise": 1000})
    with TestClient(create_app(settings)) as client:
        allowed = [client.get("/api/v1/memory/stats", headers=_headers()) for _ in range(2)]
        limited = client.get("/api/v1/memory/stats", headers=_headers())
        health = client.get("/api/health")

    assert [response.status_code for response in allowed] == [200, 200]
    assert limited.status_code == 429
    assert limited.headers["X-RateLimit-Remaining"] == "0"
    assert limited.headers["Retry-After"] == "60"
    assert "X-RateLimit-Reset" in limited.headers
    payload = limited.json()
    assert payload["code"] == "RATE_LIMITED"
    assert payload["details"] == {"retry_after_seconds": 60, "tier": "pro"}
    assert health.status_code == 200


def test_free_tier_limit_applies_to_issued_keys(tmp_path: Path) -> None:
    settings = _settings(tmp_path, rate_limits={"free": 1, "pro": 100, "enterprise": 1000})
    key = _issue_key(settings.accounts_database_url, "bob", "free")

    with TestClient(create_app(settings)) as client:
        first = client.get("/api/v1/memory/stats", headers=_headers(key))
        second = client.get("/api/v1/memory/stats", headers=_headers(key))
        pro_user = client.get("/api/v1/memory/stats", headers=_headers())

    assert first.status_code == 200
    assert second.status_code == 429
    assert second.json()["details"]["tier"] == "free"
    assert pro_user.status_code == 200


def test_quota_check_failure_fails_open_by_default(tmp_path: Path, monkeypatch) -> None:
    app = create_app(_settings(tmp_path))

    async def _broken_count(*args, **kwargs):
        raise SQLAlchemyError("usage log unavailable")

    with TestClient(app) as client:
        monkeypatch.setattr(app.state.account_store, "count_recent_usage", _broken_count)
        response = client.get("/api/v1/memory/stats", headers=_headers())

    assert response.status_code == 200
    assert response.headers["X-RateLimit-Remaining"] == "0"


def test_quota_check_failure_can_fail_closed(tmp_path: Path, monkeypatch) -> None:
    app = create_app(_settings(tmp_path, quota_fail_open=False))

    async def _broken_count(*args, **kwargs):
        raise SQLAlchemyError("usage log unavailable")

    with TestClient(app) as client:
        monkeypatch.setattr(app.state.account_store, "count_recent_usage", _broken_count)
        response = client.get("/api/v1/memory/stats", headers=_headers())

    assert response.status_code == 503
    assert response.json()["code"] == "QUOTA_UNAVAILABLE"


def test_handler_failure_becomes_internal_error(tmp_path: Path, monkeypatch) -> None:
    app = create_app(_settings(tmp_path))

    async def _explode(self):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr("db.memory_service.MemoryService.stats", _explode)
    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/api/v1/memory/stats", headers=_headers())

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error", "code": "INTERNAL_ERROR"}


def test_cors_preflight_is_answered_without_auth(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.options(
            "/api/v1/memory/recall",
            headers={
                "Origin": "https://bot.example",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Authorization, Content-Type",
            },
        )

    assert response.status_code == 200
    assert "access-control-allow-origin" in response.headers
