import asyncio
import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from product_intel.errors import TransientProviderError
from tests.fakes import FakeModelClient, FakeSearchClient, final_turn, tool_turn

JPEG = ("photo.jpg", b"\xff\xd8\xff\xe0fake-jpeg", "image/jpeg")


async def _poll(client: AsyncClient, job_id: str, timeout: float = 5.0) -> dict:
    async def _loop():
        while True:
            resp = await client.get(f"/api/jobs/{job_id}")
            data = resp.json()["data"]
            if data["status"] in ("done", "failed"):
                return data
            await asyncio.sleep(0.02)

    return await asyncio.wait_for(_loop(), timeout=timeout)


@pytest.mark.asyncio
async def test_health_reports_workers(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["workers"] == 2
    assert body["queued"] == 0


@pytest.mark.asyncio
async def test_settings_route_masks_keys(client):
    resp = await client.get("/settings")
    settings = resp.json()["settings"]
    assert settings["model_api_key"] == "********"
    assert settings["serpapi_api_key"] == "********"


@pytest.mark.asyncio
async def test_submit_and_poll_job(client):
    resp = await client.post(
        "/api/jobs",
        data={"barcodes": "4001234567890", "locale": "de-DE", "model": "mini"},
        files=[("images", JPEG)],
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    job_id = body["jobId"]

    data = await _poll(client, job_id)
    assert data["id"] == job_id
    assert data["status"] == "done"
    assert data["attempts"] == 1
    assert data["model"] == "gpt-5-mini"
    assert data["startedAt"] and data["finishedAt"] and data["createdAt"]
    assert data["result"]["products"][0]["details"]["attributes"] == {"Material": "Edelstahl"}
    assert data["trace"][0]["engine"] == "google_shopping"
    assert "error" not in data

    stored = await client.app.state.job_store.get(job_id)
    assert stored.payload.files[0].original_name == "photo.jpg"
    assert stored.payload.files[0].uri.startswith("blob://jobs/")


@pytest.mark.asyncio
async def test_submit_requires_evidence(client):
    resp = await client.post("/api/jobs", data={"barcodes": "  "})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "INVALID_INPUT"


@pytest.mark.asyncio
async def test_submit_rejects_barcode_overflow(app_factory):
    app, model, search = app_factory(max_barcode_count=2)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/api/jobs", data={"barcodes": "1,2,3"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "BARCODE_LIMIT_EXCEEDED"
    assert model.calls == []


@pytest.mark.asyncio
async def test_unknown_job_is_404(client):
    resp = await client.get("/api/jobs/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["ok"] is False


@pytest.mark.asyncio
async def test_failed_job_status_view(app_factory):
    model = FakeModelClient(default=tool_turn())
    app, _, _ = app_factory(fake_model=model, max_tool_iterations=2)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/api/jobs", data={"barcodes": "4001234567890"})
            data = await _poll(client, resp.json()["jobId"])
    assert data["status"] == "failed"
    assert data["error"]["code"] == "TOOL_ITERATION_LIMIT"
    assert "result" not in data
    assert len(data["trace"]) == 2


@pytest.mark.asyncio
async def test_identify_sync_success(client):
    resp = await client.post("/api/identify", data={"barcodes": "4001234567890"}, files=[("images", JPEG)])
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["model"] == "gpt-5-mini"
    assert body["data"]["products"][0]["id"] == "4001234567890"
    assert len(body["serpTrace"]) == 1


@pytest.mark.asyncio
async def test_identify_sync_barcode_limit(app_factory):
    app, model, search = app_factory(max_barcode_count=1)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/api/identify", data={"barcodes": "1 2"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["ok"] is False
    assert body["error"]["code"] == "BARCODE_LIMIT_EXCEEDED"
    assert model.calls == []
    assert search.calls == []


@pytest.mark.asyncio
async def test_identify_sync_image_budget(app_factory):
    app, model, search = app_factory(max_image_payload_bytes=10)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/api/identify", files=[("images", JPEG)])
    assert resp.status_code == 413
    assert resp.json()["error"]["code"] == "IMAGE_PAYLOAD_LIMIT_EXCEEDED"
    assert model.calls == []


@pytest.mark.asyncio
async def test_identify_sync_per_file_limit(app_factory):
    app, model, _ = app_factory(max_image_file_bytes=4)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/api/identify", files=[("images", JPEG)])
    assert resp.status_code == 413
    assert model.calls == []


@pytest.mark.asyncio
async def test_identify_sync_iteration_limit_returns_trace(app_factory):
    model = FakeModelClient(default=tool_turn(model="gpt-5-nano"))
    app, _, search = app_factory(fake_model=model, max_tool_iterations=3)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/api/identify", data={"barcodes": "4001234567890", "model": "nano"})
    assert resp.status_code == 503
    body = resp.json()
    assert body["error"]["code"] == "TOOL_ITERATION_LIMIT"
    assert body["model"] == "gpt-5-nano"
    assert len(body["serpTrace"]) == 3 == len(search.calls)
    assert model.calls[0]["model"] == "gpt-5-nano"


@pytest.mark.asyncio
async def test_identify_sync_unrecognized_shape(app_factory):
    model = FakeModelClient(turns=[final_turn({"unexpected": True})])
    app, _, _ = app_factory(fake_model=model)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/api/identify", data={"barcodes": "4001234567890"})
    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "UNRECOGNIZED_RESULT_SHAPE"


@pytest.mark.asyncio
async def test_identify_sync_transient_error_maps_to_502(app_factory):
    model = FakeModelClient(turns=[TransientProviderError("model 503")])
    app, _, _ = app_factory(fake_model=model)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/api/identify", data={"barcodes": "4001234567890"})
    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "TRANSIENT_PROVIDER_ERROR"


@pytest.mark.asyncio
async def test_identify_sync_price_backfill(app_factory):
    search = FakeSearchClient(
        summaries={
            "google_shopping": [
                {"title": "AquaPure Trinkflasche 750 ml", "price": "24,99 €", "source": "Shop A", "url": "https://a.example"},
                {"title": "AquaPure Trinkflasche 750ml Edelstahl", "price": "19,95 €", "source": "Shop B", "url": "https://b.example"},
            ]
        }
    )
    app, _, _ = app_factory(fake_search=search)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/api/identify", data={"barcodes": "4001234567890"})
    assert resp.status_code == 200
    pricing = resp.json()["data"]["products"][0]["details"]["pricing"]
    assert pricing["lowest_price"]["amount"] == 19.95
    assert pricing["lowest_price"]["sources"][0]["name"] == "Shop B"
    assert pricing["price_confidence"] == 0.4
    assert json.dumps(pricing)


@pytest.mark.asyncio
async def test_identify_sync_client_disconnect_cancels(app_factory, monkeypatch):
    from starlette.requests import Request

    async def _disconnected(self):
        return True

    monkeypatch.setattr(Request, "is_disconnected", _disconnected)
    model = FakeModelClient(default=final_turn(), delay_seconds=5)
    app, _, search = app_factory(fake_model=model)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await asyncio.wait_for(
                client.post("/api/identify", data={"barcodes": "4001234567890"}),
                timeout=3,
            )
    assert resp.status_code == 499
    body = resp.json()
    assert body["ok"] is False
    assert body["error"]["code"] == "CANCELLED"
    assert body["model"] == "gpt-5-mini"
    assert search.calls == []


@pytest.mark.asyncio
async def test_job_images_get_public_urls(app_factory):
    app, model, _ = app_factory(public_base_url="https://intel.example/")
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/api/jobs", data={"barcodes": "4001234567890"}, files=[("images", JPEG)])
            data = await _poll(client, resp.json()["jobId"])
            prompt = model.calls[0]["messages"][1]["content"][-1]["text"]
            url = next(line.split(" ")[1] for line in prompt.splitlines() if line.startswith("1. https://"))
            blob = await client.get(url.replace("https://intel.example", ""))
    assert data["status"] == "done"
    assert url.startswith("https://intel.example/blobs/jobs/")
    assert "google_lens" in prompt
    assert blob.status_code == 200
    assert blob.content == JPEG[1]


@pytest.mark.asyncio
async def test_identify_sync_hosts_images_when_public(app_factory):
    app, model, _ = app_factory(public_base_url="https://intel.example")
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            resp = await client.post("/api/identify", files=[("images", JPEG)])
    assert resp.status_code == 200
    prompt = model.calls[0]["messages"][1]["content"][-1]["text"]
    assert "1. https://intel.example/blobs/jobs/sync-" in prompt
    assert "(image/jpeg, photo.jpg)" in prompt


@pytest.mark.asyncio
async def test_images_stay_inline_without_public_base_url(client):
    resp = await client.post("/api/identify", files=[("images", JPEG)])
    assert resp.status_code == 200
    prompt = client.fake_model.calls[0]["messages"][1]["content"][-1]["text"]
    assert "Images are attached inline" in prompt
    assert "https://" not in prompt.split("Task:")[0]


@pytest.mark.asyncio
async def test_blob_route_rejects_unknown_and_escaping_keys(client):
    assert (await client.get("/blobs/jobs/none/missing.jpg")).status_code == 404
    assert (await client.get("/blobs/..%2F..%2Fetc%2Fpasswd")).status_code == 404
