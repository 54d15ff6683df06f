from pathlib import Path

from fastapi.testclient import TestClient

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


def _headers(key: str = TEST_KEY) -> dict:
    return {"Authorization": f"Bearer {key}"}


def test_health_needs_no_auth(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.get("/api/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["version"] == "1.0.0"
    assert payload["timestamp"].endswith("Z")


def test_store_then_recall_python_preference(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        stored = client.post(
            "/api/v1/memory/store",
            headers=_headers(),
            json={"content": "User prefers Python", "type": "relational", "importance": 0.8},
        )
        assert stored.status_code == 201
        stored_payload = stored.json()
        assert stored_payload["success"] is True
        assert stored_payload["id"]

        recalled = client.post(
            "/api/v1/memory/recall",
            headers=_headers(),
            json={"query": "Python"},
        )

    assert recalled.status_code == 200
    payload = recalled.json()
    assert isinstance(payload["took_ms"], int)
    assert [item["id"] for item in payload["results"]] == [stored_payload["id"]]
    hit = payload["results"][0]
    assert hit["content"] == "User prefers Python"
    assert hit["type"] == "relational"
    assert hit["importance"] == 0.8
    assert hit["activation"] == 1.0
    assert hit["last_accessed"].endswith("Z")
    assert "metadata" not in hit


def test_store_defaults_and_metadata_round_trip(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        client.post(
            "/api/v1/memory/store",
            headers=_headers(),
            json={"content": "Standup moved to 10am", "metadata": {"team": "core"}},
        )
        recalled = client.post(
            "/api/v1/memory/recall",
            headers=_headers(),
            json={"query": "standup", "types": ["factual"]},
        )

    hit = recalled.json()["results"][0]
    assert hit["type"] == "factual"
    assert hit["importance"] == 0.5
    assert hit["metadata"] == {"team": "core"}


def test_oversized_content_is_rejected_without_writing(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.post(
            "/api/v1/memory/store",
            headers=_headers(),
            json={"content": "x" * 10001},
        )
        stats = client.get("/api/v1/memory/stats", headers=_headers())

    assert response.status_code == 400
    payload = response.json()
    assert payload["code"] == "VALIDATION_ERROR"
    assert "content" in payload["error"]
    assert isinstance(payload["details"], list)
    assert stats.json()["total_memories"] == 0


def test_content_at_max_length_is_accepted(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.post(
            "/api/v1/memory/store",
            headers=_headers(),
            json={"content": "x" * 10000},
        )

    assert response.status_code == 201


def test_store_rejects_unknown_type_and_bad_importance(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        bad_type = client.post(
            "/api/v1/memory/store",
            headers=_headers(),
            json={"content": "hello", "type": "bogus"},
        )
        bad_importance = client.post(
            "/api/v1/memory/store",
            headers=_headers(),
            json={"content": "hello", "importance": 1.5},
        )
        empty_content = client.post(
            "/api/v1/memory/store",
            headers=_headers(),
            json={"content": ""},
        )

    for response in (bad_type, bad_importance, empty_content):
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"


def test_recall_validation(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        missing_query = client.post("/api/v1/memory/recall", headers=_headers(), json={})
        empty_query = client.post(
            "/api/v1/memory/recall", headers=_headers(), json={"query": ""}
        )
        bad_limit = client.post(
            "/api/v1/memory/recall", headers=_headers(), json={"query": "x", "limit": 101}
        )
        zero_limit = client.post(
            "/api/v1/memory/recall", headers=_headers(), json={"query": "x", "limit": 0}
        )
        bad_types = client.post(
            "/api/v1/memory/recall",
            headers=_headers(),
            json={"query": "x", "types": ["factual", "nonsense"]},
        )
        max_limit = client.post(
            "/api/v1/memory/recall", headers=_headers(), json={"query": "x", "limit": 100}
        )

    for response in (missing_query, empty_query, bad_limit, zero_limit, bad_types):
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"
    assert max_limit.status_code == 200
    assert max_limit.json()["results"] == []


def test_invalid_json_is_bad_request(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.post(
            "/api/v1/memory/store",
            headers={**_headers(), "Content-Type": "application/json"},
            content="{not json",
        )

    assert response.status_code == 400
    assert response.json()["code"] == "BAD_REQUEST"


def test_consolidate_and_stats(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        client.post(
            "/api/v1/memory/store",
            headers=_headers(),
            json={"content": "first", "type": "procedural", "importance": 0.2},
        )
        client.post(
            "/api/v1/memory/store",
            headers=_headers(),
            json={"content": "second", "type": "semantic", "importance": 0.6},
        )

        consolidated = client.post("/api/v1/memory/consolidate", headers=_headers())
        stats = client.get("/api/v1/memory/stats", headers=_headers())

    assert consolidated.status_code == 200
    assert consolidated.json() == {
        "consolidated": True,
        "stats": {"memories_before": 2, "memories_after": 2, "merged": 0, "forgotten": 0},
    }

    assert stats.status_code == 200
    payload = stats.json()
    assert payload["total_memories"] == 2
    assert payload["by_type"] == {
        "factual": 0,
        "relational": 0,
        "procedural": 1,
        "episodic": 0,
        "semantic": 1,
    }
    assert abs(payload["avg_importance"] - 0.4) < 1e-9
    assert payload["oldest_memory"] <= payload["newest_memory"]


def test_stats_for_new_user_omits_date_range(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.get("/api/v1/memory/stats", headers=_headers())

    assert response.status_code == 200
    payload = response.json()
    assert payload["total_memories"] == 0
    assert payload["avg_importance"] == 0.0
    assert "oldest_memory" not in payload
    assert "newest_memory" not in payload


def test_memory_files_live_under_storage_root(tmp_path: Path) -> None:
    settings = _settings(tmp_path)
    with TestClient(create_app(settings)) as client:
        client.post("/api/v1/memory/store", headers=_headers(), json={"content": "hello"})

    assert (settings.storage_root / "test-user" / "engram.db").exists()


def test_openapi_is_served_under_api_prefix(tmp_path: Path) -> None:
    with TestClient(create_app(_settings(tmp_path))) as client:
        response = client.get("/api/openapi.json")

    assert response.status_code == 200
    assert "/api/v1/memory/recall" in response.json()["paths"]
