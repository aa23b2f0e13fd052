import pytest
from fastapi.testclient import TestClient

from conftest import TRANSCRIPT
from lazywriter.api.deps import get_orchestrator
from lazywriter.api.main import app
from lazywriter.exceptions import ApiError
from lazywriter.models import Stage


@pytest.fixture
def api(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create(api, **extra):
    payload = {"transcript": TRANSCRIPT, "manual_draft": True}
    payload.update(extra)
    return api.post("/api/articles", json=payload)


def test_health(api):
    resp = api.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_create_article_returns_immediately(api):
    resp = _create(api, stream_base="article_web")

    assert resp.status_code == 202
    body = resp.json()
    assert body["stream_base"] == "article_web"

    detail = api.get(f"/api/articles/{body['article_id']}")
    assert detail.status_code == 200
    data = detail.json()
    assert data["status"] == "脑爆"
    assert set(data["brainstorm"]) == {"grok", "qwen", "deepseek", "gemini", "doubao"}
    assert all(r["status"] == "complete" for r in data["brainstorm"].values())


def test_invalid_transcript_is_422(api):
    resp = api.post("/api/articles", json={"transcript": "太短"})
    assert resp.status_code == 422
    assert resp.json()["error_code"] == "INVALID_TRANSCRIPT"


def test_unknown_thinking_framework_is_rejected(api):
    resp = _create(api, thinking_framework="six_hats")
    assert resp.status_code == 422


def test_quota_exceeded_is_402(api, store):
    store.ensure_user(11, credits=0)

    resp = _create(api, user_id=11)

    assert resp.status_code == 402
    assert resp.json()["error_code"] == "QUOTA_EXCEEDED"
    assert api.get("/api/articles").json()["total"] == 0


def test_missing_article_is_404(api):
    resp = api.get("/api/articles/12345")
    assert resp.status_code == 404
    assert resp.json()["error_code"] == "ARTICLE_NOT_FOUND"


def test_provider_regeneration(api, dispatcher):
    article_id = _create(api).json()["article_id"]

    resp = api.post(f"/api/articles/{article_id}/providers/gemini/regenerate")
    assert resp.status_code == 202
    assert resp.json()["providers"] == ["gemini"]
    assert dispatcher.dispatched[-1].provider.value == "gemini"

    bad = api.post(f"/api/articles/{article_id}/providers/chatgpt/regenerate")
    assert bad.status_code == 422
    assert bad.json()["error_code"] == "UNKNOWN_PROVIDER"


def test_drafts_endpoints(api, client):
    client.failures["qwen"] = ApiError("bad request", 400)
    article_id = _create(api).json()["article_id"]

    resp = api.post(f"/api/articles/{article_id}/drafts", json={"writing_style": "luo_style"})
    assert resp.status_code == 202
    assert resp.json()["providers"] == ["grok", "deepseek", "gemini", "doubao"]

    missing = api.post(f"/api/articles/{article_id}/drafts/qwen/regenerate")
    assert missing.status_code == 409
    assert missing.json()["error_code"] == "PREREQUISITE_MISSING"

    again = api.post(f"/api/articles/{article_id}/drafts/grok/regenerate")
    assert again.status_code == 202

    detail = api.get(f"/api/articles/{article_id}").json()
    assert detail["writing_style"] == "luo_style"
    assert detail["drafts"]["grok"]["status"] == "complete"
    assert detail["drafts"]["qwen"]["status"] == "unset"


def test_fused_draft_and_final(api):
    article_id = _create(api).json()["article_id"]

    resp = api.post(f"/api/articles/{article_id}/draft", json={"provider": "doubao"})
    assert resp.status_code == 202

    final = api.put(f"/api/articles/{article_id}/final", json={"content": "这是 我的定稿"})
    assert final.status_code == 200
    body = final.json()
    assert body["selected_provider"] == "doubao"
    assert body["draft"]
    assert body["word_count"] == 6
    assert body["status"] == "定稿"


def test_regenerate_all(api, dispatcher):
    article_id = _create(api).json()["article_id"]

    resp = api.post(
        f"/api/articles/{article_id}/regenerate",
        json={"thinking_framework": "systems_thinking", "manual_draft": False},
    )

    assert resp.status_code == 202
    assert dispatcher.dispatched_for(Stage.BRAINSTORM)[-1].timeout == 60.0
    # 关闭手动初稿后，新一轮脑爆结束即自动生成初稿
    assert len(dispatcher.dispatched_for(Stage.DRAFT)) == 5
    detail = api.get(f"/api/articles/{article_id}").json()
    assert detail["thinking_framework"] == "systems_thinking"
    assert detail["manual_draft"] is False


def test_list_articles(api):
    _create(api, user_id=None)
    _create(api)

    resp = api.get("/api/articles", params={"limit": 1})
    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 1
    assert body["items"][0]["status"] == "脑爆"
