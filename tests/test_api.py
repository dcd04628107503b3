"""HTTP API tests using FastAPI's TestClient and a mocked Claude client."""

import pytest
from fastapi.testclient import TestClient

from taskguard.config import AnthropicConfig, Config, DatabaseConfig
from taskguard.main import build_services, create_app

BLOCK_JSON = (
    '{"shouldBlock": true, "reason": "Social media is unrelated to the report", '
    '"activityUnderstanding": "Writing a report", "confidence": 0.9}'
)


@pytest.fixture
def make_client(tmp_path, make_oracle):
    def _make(*responses):
        config = Config(
            database=DatabaseConfig(path=str(tmp_path / "api.db")),
            anthropic=AnthropicConfig(api_key="sk-test-key"),
        )
        oracle, create, _ = make_oracle(*responses)
        svc = build_services(config, oracle=oracle)
        return TestClient(create_app(svc=svc)), create

    return _make


@pytest.fixture
def client(make_client):
    test_client, _ = make_client()
    with test_client as c:
        yield c


def select_task(client, text="Write the quarterly sales report"):
    client.post("/tasks", json={"text": text})
    return client.post("/tasks/current", json={"index": 0})


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_navigation_block_flow(make_client):
    test_client, create = make_client(BLOCK_JSON)
    with test_client as client:
        select_task(client)

        response = client.post("/navigation", json={"url": "https://twitter.com/home", "tab_id": 3})
        body = response.json()

        assert response.status_code == 200
        assert body["outcome"] == "classified"
        assert body["notified"] is True
        assert body["decision"]["should_block"] is True
        assert "cacheable" not in body["decision"]

        prompt = client.get("/tabs/3/prompt").json()
        assert prompt["current_task_text"] == "Write the quarterly sales report"
        assert client.get("/tabs/3/prompt").json() is None

        assert client.get("/badge").json() == {"text": "!", "color": "#ef4444"}

        stats = client.get("/stats").json()
        assert stats["analyzed_count"] == 1
        assert stats["blocked_count"] == 1
        assert stats["focus_score"] == 100
        assert stats["time_saved_minutes"] == 3

        history = client.get("/history").json()["blocked_sites"]
        assert history[0]["reason"].startswith("Suggest: Social media")

        assert client.get("/cache").json()["stats"]["size"] == 1
    assert create.await_count == 1


def test_toggle_disables_navigation(client):
    assert client.post("/toggle", json={"enabled": False}).json() == {"enabled": False}
    assert client.get("/badge").json()["text"] == "OFF"

    body = client.post("/navigation", json={"url": "https://twitter.com", "tab_id": 1}).json()
    assert body["outcome"] == "disabled"
    assert client.get("/settings").json()["enabled"] is False


def test_system_url_navigation(client):
    body = client.post("/navigation", json={"url": "chrome://settings", "tab_id": 1}).json()
    assert body["outcome"] == "system"


def test_temporary_bypass(client):
    response = client.post(
        "/bypass/temporary", json={"url": "https://reddit.com/r/python", "duration_minutes": 5}
    )
    assert response.json()["message"] == "Site temporarily unblocked for 5 minutes"

    body = client.post("/navigation", json={"url": "https://reddit.com/", "tab_id": 1}).json()
    assert body["outcome"] == "bypassed"


def test_one_time_bypass(client):
    client.post("/bypass/one-time", json={"url": "https://news.ycombinator.com/"})
    body = client.post("/navigation", json={"url": "https://news.ycombinator.com/", "tab_id": 1}).json()
    assert body["outcome"] == "bypassed"


def test_allowlist_crud(client):
    assert client.post("/allowlist", json={"url": "https://GitHub.com/org/repo"}).json() == {
        "allowlist": ["github.com"]
    }
    assert client.get("/allowlist").json() == {"allowlist": ["github.com"]}

    body = client.post("/navigation", json={"url": "https://github.com/pulls", "tab_id": 1}).json()
    assert body["outcome"] == "allowlisted"

    assert client.delete("/allowlist/github.com").json() == {"allowlist": []}


def test_allowlist_requires_host(client):
    response = client.post("/allowlist", json={})
    assert response.status_code == 400
    assert response.json()["detail"] == "host is required"


def test_task_management(client):
    client.post("/tasks", json={"text": "Write the quarterly sales report"})
    client.post("/tasks", json={"text": "Review pull requests for the API"})
    current = client.post("/tasks/current", json={"index": 1}).json()["current_task"]
    assert current["text"] == "Review pull requests for the API"

    assert client.delete("/tasks/0").json() == {"tasks": ["Review pull requests for the API"]}
    assert client.get("/tasks").json()["current_task"]["source_index"] == 0

    assert client.delete("/tasks/current").json() == {"status": "cleared"}
    assert client.get("/tasks").json()["current_task"] is None


def test_delete_missing_task_is_400(client):
    assert client.delete("/tasks/5").status_code == 400


def test_validate_vague_task_gets_suggestions(client):
    body = client.post("/tasks/validate", json={"task_text": "Work on project"}).json()
    assert body["is_valid"] is False
    assert body["reason"] == "Task description is too vague"
    assert body["suggestions"]


def test_task_examples(client):
    assert "good" in client.get("/tasks/examples").json()


def test_settings_masks_api_key(client):
    assert client.get("/settings").json()["api_key"] == "***-key"


def test_malformed_api_key_not_stored(client):
    body = client.post("/api-key", json={"api_key": "bad-key"}).json()
    assert body["valid"] is False
    assert client.get("/settings").json()["api_key"] == "***-key"


def test_feedback_and_stats_reset(client):
    body = client.post(
        "/feedback", json={"url": "https://youtube.com", "reason": "Video", "correct": False}
    ).json()
    assert body["status"] == "recorded"
    assert body["feedback"]["correct"] is False

    reset = client.post("/stats/reset").json()
    assert reset["analyzed_count"] == 0
    assert reset["focus_score"] == 0


def test_cache_and_storage_endpoints(client):
    assert client.delete("/cache").json() == {"status": "cleared"}
    assert client.get("/cache", params={"search": "youtube"}).json()["matches"] == []
    storage = client.get("/storage").json()
    assert set(storage) == {"local", "sync"}


def test_analyze(make_client):
    test_client, create = make_client(BLOCK_JSON)
    with test_client as client:
        select_task(client)
        body = client.post("/analyze", json={"url": "https://twitter.com"}).json()
        assert body["should_block"] is True
        assert client.get("/tabs/1/prompt").json() is None
    create.assert_awaited_once()
