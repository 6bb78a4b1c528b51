import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from stepflow.config import load_settings


@pytest.mark.asyncio
async def test_get_settings_masks_secrets(app_factory):
    app, _, _, _ = app_factory(reasoner_api_key="secret-key")
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.get("/settings")
            assert res.status_code == 200
            data = res.json()
            assert data["settings"]["reasoner_api_key"] == "********"


@pytest.mark.asyncio
async def test_post_settings_persists_config_and_db(app_factory):
    app, config_path, _, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            db = app.state.db
            before = await db.fetchone("SELECT COUNT(*) as cnt FROM configs")
            res = await client.post("/settings", json={"max_step_iterations": 3})
            assert res.status_code == 200
            after = await db.fetchone("SELECT COUNT(*) as cnt FROM configs")
            assert after["cnt"] == before["cnt"] + 1
            assert app.state.settings.max_step_iterations == 3

    saved = json.loads(config_path.read_text())
    assert saved["max_step_iterations"] == 3


def test_config_precedence_configjson_wins_by_default(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps({"port": 9000, "reasoner_endpoint": {"base_url": "http://config/v1", "model_id": "m"}})
    )
    monkeypatch.setenv("PORT", "7000")
    monkeypatch.setenv("REASONER_BASE_URL", "http://env/v1")
    monkeypatch.delenv("STEPFLOW_ENV_OVERRIDES_CONFIG", raising=False)
    settings = load_settings(config_path=config_path)
    assert settings.port == 9000
    assert settings.reasoner_endpoint.base_url == "http://config/v1"


def test_env_override_when_stepflow_env_override_set(tmp_path, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps({"port": 9000, "reasoner_endpoint": {"base_url": "http://config/v1", "model_id": "m"}})
    )
    monkeypatch.setenv("PORT", "7000")
    monkeypatch.setenv("REASONER_BASE_URL", "http://env/v1")
    monkeypatch.setenv("STEPFLOW_ENV_OVERRIDES_CONFIG", "1")
    settings = load_settings(config_path=config_path)
    assert settings.port == 7000
    assert settings.reasoner_endpoint.base_url == "http://env/v1"
    assert settings.reasoner_endpoint.model_id == "m"


def test_env_fills_missing_nested_values(tmp_path, monkeypatch):
    monkeypatch.delenv("STEPFLOW_ENV_OVERRIDES_CONFIG", raising=False)
    monkeypatch.setenv("MESSAGING_BASE_URL", "http://green.test/waInstance1")
    monkeypatch.setenv("MESSAGING_API_TOKEN", "tok")
    settings = load_settings(config_path=tmp_path / "missing.json")
    assert settings.messaging.base_url == "http://green.test/waInstance1"
    assert settings.to_safe_dict()["messaging"]["api_token"] == "********"


def test_partial_provider_orders_keep_other_families(tmp_path, monkeypatch):
    monkeypatch.delenv("STEPFLOW_ENV_OVERRIDES_CONFIG", raising=False)
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"provider_orders": {"image": ["openai"]}}))
    settings = load_settings(config_path=config_path)
    assert settings.provider_orders["image"] == ["openai"]
    assert settings.provider_orders["video"] == ["veo3", "kling", "sora"]
    assert settings.family_for("openai_image") == "image"
