from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from product_intel.config import AppSettings
from product_intel.main import create_app
from tests.fakes import FakeModelClient, FakeSearchClient, final_turn, tool_turn


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        model_base_url="http://model.test/v1",
        model_api_key="test-model-key",
        identify_model="gpt-5-mini",
        serpapi_api_key="test-serp-key",
        serpapi_base_url="https://serp.test/search.json",
        database_path=str(tmp_path / "test.db"),
        blob_dir=str(tmp_path / "blobs"),
        job_concurrency=2,
        job_max_attempts=3,
        retry_backoff_base_s=0.0,
        retry_backoff_max_s=0.0,
        require_search_call=False,
        host="127.0.0.1",
        port=8080,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_model: FakeModelClient | None = None,
        fake_search: FakeSearchClient | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        model_client = fake_model or FakeModelClient(turns=[tool_turn()], default=final_turn())
        search_client = fake_search or FakeSearchClient()
        app = create_app(settings, model_client=model_client, search_client=search_client)
        return app, model_client, search_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, model_client, search_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_model = model_client  # type: ignore[attr-defined]
            http_client.fake_search = search_client  # type: ignore[attr-defined]
            yield http_client
