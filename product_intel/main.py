import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse

from .blob_store import LocalBlobStore
from .config import AppSettings, load_settings
from .errors import (
    IdentificationError,
    ImagePayloadTooLarge,
    InvalidIdentificationInput,
    JobNotFoundError,
    error_payload,
)
from .job_runner import JobRunner
from .job_store import JobStore
from .llm import ChatModelClient
from .orchestrator import ToolCallingOrchestrator
from .pipeline import IdentificationPipeline, ImageInput
from .schemas import JobPayload, SubmitJobResponse
from .secrets import default_resolver
from .serpapi import SerpApiClient

logger = logging.getLogger("uvicorn.error")

ALLOWED_IMAGE_TYPES = {"image/png", "image/jpeg", "image/webp", "image/gif", "image/heic", "image/heif"}
DISCONNECT_POLL_S = 0.5

router = APIRouter()


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_job_store(request: Request) -> JobStore:
    return request.app.state.job_store


def get_blob_store(request: Request) -> LocalBlobStore:
    return request.app.state.blob_store


def get_pipeline(request: Request) -> IdentificationPipeline:
    return request.app.state.pipeline


def get_runner(request: Request) -> JobRunner:
    return request.app.state.runner


def error_response(exc: BaseException, *, model: Optional[str] = None) -> JSONResponse:
    status = exc.http_status if isinstance(exc, IdentificationError) else 500
    body: Dict[str, Any] = {"ok": False, "error": error_payload(exc)}
    if isinstance(exc, IdentificationError):
        body["model"] = exc.model_used or model
        if exc.trace:
            body["serpTrace"] = [entry.model_dump() for entry in exc.trace]
    return JSONResponse(status_code=status, content=body)


async def read_uploads(images: List[UploadFile], settings: AppSettings) -> List[ImageInput]:
    """Apply the per-request file limits and read the uploads into memory."""
    if len(images) > settings.max_image_files:
        raise InvalidIdentificationInput(
            f"Too many images: at most {settings.max_image_files} files per request",
            meta={"max_files": settings.max_image_files},
        )
    loaded: List[ImageInput] = []
    for upload in images:
        if upload.content_type and upload.content_type not in ALLOWED_IMAGE_TYPES:
            raise InvalidIdentificationInput(f"Unsupported file type: {upload.content_type}")
        data = await upload.read()
        if len(data) > settings.max_image_file_bytes:
            raise ImagePayloadTooLarge(
                f"{upload.filename or 'upload'} exceeds {settings.max_image_file_bytes} bytes",
                meta={"max_file_bytes": settings.max_image_file_bytes},
            )
        loaded.append(
            ImageInput(
                filename=Path(upload.filename or "upload").name,
                mime_type=upload.content_type or "application/octet-stream",
                data=data,
            )
        )
    return loaded


async def host_uploads(blob_store: LocalBlobStore, uploads: List[ImageInput], owner: str) -> None:
    """Save uploads and attach public URLs when the blob store is publicly reachable."""
    if not blob_store.public_base_url:
        return
    for img in uploads:
        ref = await blob_store.save(owner, img.filename, img.data, img.mime_type)
        img.public_url = blob_store.public_url(ref.uri)


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected; cancelling identification")
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_S)


@router.get("/health")
async def health(runner: JobRunner = Depends(get_runner)):
    return {"ok": True, **runner.stats()}


@router.get("/settings")
async def settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/api/jobs")
async def submit_job(
    images: List[UploadFile] = File(default=[]),
    barcodes: str = Form(""),
    locale: Optional[str] = Form(None),
    model: Optional[str] = Form(None),
    settings: AppSettings = Depends(get_settings),
    store: JobStore = Depends(get_job_store),
    blob_store: LocalBlobStore = Depends(get_blob_store),
    pipeline: IdentificationPipeline = Depends(get_pipeline),
    runner: JobRunner = Depends(get_runner),
):
    try:
        uploads = await read_uploads(images, settings)
        pipeline.validate(barcodes, [img.size for img in uploads])
    except IdentificationError as exc:
        return error_response(exc)
    job_id = uuid.uuid4().hex
    files = [await blob_store.save(job_id, img.filename, img.data, img.mime_type) for img in uploads]
    payload = JobPayload(
        files=files,
        barcodes=barcodes or "",
        locale=locale or settings.default_locale,
        model=model or None,
    )
    job = await store.create(payload, job_id=job_id)
    runner.enqueue(job.id)
    logger.info("Job %s submitted (%d image(s))", job.id, len(files))
    return SubmitJobResponse(jobId=job.id).model_dump()


@router.get("/api/jobs/{job_id}")
async def get_job(job_id: str, store: JobStore = Depends(get_job_store)):
    try:
        job = await store.get(job_id)
    except JobNotFoundError:
        return JSONResponse(
            status_code=404,
            content={"ok": False, "error": {"code": "NOT_FOUND", "message": "Job not found"}},
        )
    return {"ok": True, "data": job.to_status_view()}


@router.get("/blobs/{key:path}")
async def get_blob(key: str, blob_store: LocalBlobStore = Depends(get_blob_store)):
    try:
        path = blob_store.path_for_key(key)
    except ValueError:
        raise HTTPException(status_code=404, detail="Blob not found")
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Blob not found")
    return FileResponse(path)


@router.post("/api/identify")
async def identify(
    request: Request,
    images: List[UploadFile] = File(default=[]),
    barcodes: str = Form(""),
    locale: Optional[str] = Form(None),
    model: Optional[str] = Form(None),
    settings: AppSettings = Depends(get_settings),
    blob_store: LocalBlobStore = Depends(get_blob_store),
    pipeline: IdentificationPipeline = Depends(get_pipeline),
):
    model_override = request.query_params.get("model") or model
    resolved_model = pipeline.resolve_model(model_override)
    cancel_event = asyncio.Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        uploads = await read_uploads(images, settings)
        validated = pipeline.validate(barcodes, [img.size for img in uploads])
        await host_uploads(blob_store, uploads, f"sync-{uuid.uuid4().hex}")
        result = await pipeline.run(
            validated,
            uploads,
            locale=locale or settings.default_locale,
            model_override=model_override,
            cancel_event=cancel_event,
        )
    except IdentificationError as exc:
        logger.warning("Identification failed (%s): %s", exc.code, exc.message)
        return error_response(exc, model=resolved_model)
    except Exception as exc:
        logger.exception("Unexpected error in /api/identify")
        return error_response(exc, model=resolved_model)
    finally:
        watcher.cancel()
    return {
        "ok": True,
        "model": result.model_used,
        "data": result.bundle.model_dump(),
        "serpTrace": [entry.model_dump() for entry in result.trace],
    }


def create_app(
    settings: AppSettings,
    *,
    job_store: Optional[JobStore] = None,
    blob_store: Optional[LocalBlobStore] = None,
    model_client: Optional[Any] = None,
    search_client: Optional[Any] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.job_store.init()
        app.state.blob_store.init()
        app.state.runner.start()
        await app.state.runner.resume_pending_jobs()
        try:
            yield
        finally:
            await app.state.runner.stop()
            await app.state.model_client.close()
            await app.state.search_client.close()

    secrets = default_resolver(settings)
    app = FastAPI(title="Product Intelligence Identification Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.job_store = job_store or JobStore(settings.database_path)
    app.state.blob_store = blob_store or LocalBlobStore(
        settings.blob_dir, public_base_url=settings.public_base_url
    )
    app.state.model_client = model_client or ChatModelClient(
        settings.model_base_url,
        secrets=secrets,
        timeout=settings.model_timeout_s,
        max_output_tokens=settings.model_max_output_tokens,
    )
    app.state.search_client = search_client or SerpApiClient(settings, secrets=secrets)
    orchestrator = ToolCallingOrchestrator(app.state.model_client, app.state.search_client, settings)
    app.state.pipeline = IdentificationPipeline(settings, orchestrator)
    app.state.runner = JobRunner(
        app.state.job_store,
        app.state.pipeline,
        app.state.blob_store,
        concurrency=settings.job_concurrency,
        max_attempts=settings.job_max_attempts,
        backoff_base_s=settings.retry_backoff_base_s,
        backoff_max_s=settings.retry_backoff_max_s,
    )
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("PRODUCT_INTEL_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "product_intel.main:app",
            host=getattr(settings, "host", "0.0.0.0"),
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
