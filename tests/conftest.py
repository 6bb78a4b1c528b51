from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from stepflow.db import Database
from stepflow.main import create_app
from stepflow.orchestrator import Orchestrator
from tests.fakes import FakeChannel, FakeReasoner, make_settings


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(str(tmp_path / "test.db"))
    await database.init()
    return database


@pytest.fixture
def orchestrator_factory(tmp_path: Path, db: Database):
    def _factory(*, channel=None, reasoner=None, backends=None, registry=None, resolver=None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        channel = channel or FakeChannel()
        orch = Orchestrator(
            settings,
            channel,
            reasoner=reasoner,
            backends=backends,
            registry=registry,
            recipient_resolver=resolver,
        )
        return orch, channel

    return _factory


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(*, channel=None, reasoner=None, backends=None, config_path: Path | None = None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        channel = channel or FakeChannel()
        reasoner = reasoner or FakeReasoner()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, channel=channel, reasoner=reasoner, backends=backends, config_path=cfg_path)
        return app, cfg_path, channel, reasoner

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, channel, reasoner = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.channel = channel  # type: ignore[attr-defined]
            yield http_client
