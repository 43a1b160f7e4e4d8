import pytest
from fastapi.testclient import TestClient

from conftest import LONG_PROMPT, FakeImageProvider, png_bytes

from adforge.api import app as app_module
from adforge.errors import RateLimitedError
from adforge.pipeline.critic import RubricCritic
from adforge.pipeline.service import GenerationPipeline


@pytest.fixture
def provider():
    return FakeImageProvider()


@pytest.fixture
def client(store, settings, provider):
    pipeline = GenerationPipeline(provider=provider, persister=store, critic=RubricCritic(), settings=settings)
    app = app_module.app
    app.dependency_overrides[app_module.get_store] = lambda: store
    app.dependency_overrides[app_module.get_pipeline] = lambda: pipeline
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_generate_then_fetch_image_and_record(client):
    resp = client.post(
        "/generations",
        data={"prompt": LONG_PROMPT, "user_id": "u1", "aspect_ratio": "4:5", "platform": "instagram"},
        files=[("images", ("mug.png", png_bytes(), "image/png"))],
    )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["mode"] == "standard"
    assert body["can_edit"] is True
    assert body["stages_completed"][-1] == "persistence"

    image = client.get(body["image_url"])
    assert image.status_code == 200
    assert image.headers["content-type"] == "image/png"

    record = client.get(f"/generations/{body['generation_id']}").json()
    assert record["aspect_ratio"] == "4:5"
    assert record["conversation_turns"] == 2
    assert len(record["original_image_paths"]) == 1
    assert record["usage_metadata"] == {"call": 1}
    assert "conversation_history" not in record


def test_edit_and_chain(client, provider):
    root = client.post("/generations", data={"prompt": LONG_PROMPT, "user_id": "u1"}).json()
    edit = client.post(f"/generations/{root['generation_id']}/edit", data={"edit_prompt": "make it blue", "user_id": "u1"})

    assert edit.status_code == 200, edit.text
    assert edit.json()["edit_count"] == 1
    assert provider.calls[1]["prior"]

    chain = client.get(f"/generations/{edit.json()['generation_id']}/chain").json()["chain"]
    assert [c["edit_count"] for c in chain] == [0, 1]


def test_validation_error_is_400(client):
    resp = client.post("/generations", data={"prompt": LONG_PROMPT, "user_id": "u1", "resolution": "8K"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "ValidationError"


def test_unknown_mode_is_400(client):
    resp = client.post("/generations", data={"prompt": LONG_PROMPT, "user_id": "u1", "mode": "freestyle"})
    assert resp.status_code == 400


def test_gate_failure_carries_suggestions(client):
    resp = client.post("/generations", data={"prompt": "hat", "user_id": "u1", "mode": "inspiration"})
    assert resp.status_code == 422
    body = resp.json()
    assert body["error"] == "QualityGateError"
    assert body["suggestions"]


def test_unknown_generation_is_404(client):
    assert client.get("/generations/" + "0" * 32).status_code == 404
    assert client.post("/generations/" + "0" * 32 + "/edit", data={"edit_prompt": "blue"}).status_code == 404


def test_rate_limit_is_429_with_retry_after(client, provider):
    provider.script = [RateLimitedError("quota", retry_after_s=12)]
    resp = client.post("/generations", data={"prompt": LONG_PROMPT, "user_id": "u1"})
    assert resp.status_code == 429
    assert resp.headers["retry-after"] == "12"


def test_corrupt_record_is_500_without_creative_success(client, store):
    (store.records_dir / "broken.json").write_text("{not json", encoding="utf-8")

    resp = client.get("/generations/broken")

    assert resp.status_code == 500
    assert resp.json()["error"] == "PersistenceError"
    assert resp.json()["creative_succeeded"] is False
