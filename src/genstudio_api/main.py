"""FastAPI application wiring for the generation proxy.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Route/path operation: a function exposed over HTTP (for example, GET /health).
- response_model: Pydantic model used to validate/shape API responses.
- app.state: a place to store shared runtime objects (client, stores, sessions).
- Lifespan: code that runs once when the server starts and once when it stops.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles

from .app.errors import GenerationError, ValidationError
from .app.generation_client import GenerationClient, MediaContent
from .app.media import LocalMediaStore, MediaStore
from .app.models import (
    GenerateImageRequest,
    GenerateVideoRequest,
    GenerationPage,
    GenerationRecord,
    GenerationRequest,
    LifecycleSnapshot,
    NewGeneration,
    RefineImageRequest,
    SaveVideoRequest,
    SubmitGenerationRequest,
    encode_payload,
)
from .app.normalizer import decode_inline_payload, normalize, status_token
from .app.runtime import Runtime, build_runtime
from .app.settings import Settings, get_settings
from .app.storage import GenerationStorage

logger = logging.getLogger(__name__)


def create_app(
    *,
    settings_override: Settings | None = None,
    client: GenerationClient | None = None,
    storage: GenerationStorage | None = None,
    media_store: MediaStore | None = None,
) -> FastAPI:
    """Application factory.

    Collaborators are built once here; tests pass stubs for any of them.
    """
    settings = settings_override or get_settings()
    runtime = build_runtime(settings, client=client, storage=storage, media_store=media_store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Ensure schema exists before serving requests.
        app.state.runtime.storage.migrate()
        yield
        app.state.runtime.sessions.abandon_all()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime

    @app.exception_handler(GenerationError)
    async def generation_error_handler(_: Request, exc: GenerationError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    if isinstance(runtime.media_store, LocalMediaStore) and settings.media_base_url.startswith("/"):
        app.mount(
            settings.media_base_url,
            StaticFiles(directory=runtime.media_store.root, check_dir=False),
            name="media",
        )

    def _runtime(request: Request) -> Runtime:
        return request.app.state.runtime

    # Multiple health endpoints map to the same function for compatibility with
    # different health checkers/load balancers.
    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": datetime.now(tz=UTC).isoformat(),
            "endpoint": settings.resolved_endpoint(),
            "models": {"video": settings.video_model, "image": settings.image_model},
        }

    @app.post("/api/generate-image")
    def generate_image(payload: GenerateImageRequest, request: Request) -> dict[str, Any]:
        references = tuple(_decode_field(item, "reference_images") for item in payload.reference_images)
        return _image_response(
            _runtime(request),
            GenerationRequest(
                mode="image",
                prompt=payload.prompt,
                size=payload.size,
                quality=payload.quality,
                reference_images=references,
            ),
        )

    @app.post("/api/refine-image")
    def refine_image(payload: RefineImageRequest, request: Request) -> dict[str, Any]:
        # Refinement is an edit call seeded with the previous output.
        previous = _decode_field(payload.previous_image, "previous_image")
        return _image_response(
            _runtime(request),
            GenerationRequest(
                mode="image",
                prompt=payload.prompt,
                size=payload.size,
                quality=payload.quality,
                reference_images=(previous,),
            ),
        )

    @app.post("/api/generate-video")
    def generate_video(payload: GenerateVideoRequest, request: Request) -> dict[str, Any]:
        _require_prompt(payload.prompt)
        submission = _runtime(request).client.submit_video(
            payload.prompt.strip(),
            size=payload.size or settings.default_video_size,
            duration_seconds=payload.seconds or settings.default_video_seconds,
        )
        logger.info("api event=video_submitted job_id=%s", submission.job_id)
        response = dict(submission.raw_status)
        response["id"] = submission.job_id
        response["status"] = status_token(submission.raw_status) or "queued"
        return response

    @app.get("/api/video-status/{job_id}")
    def video_status(job_id: str, request: Request) -> dict[str, Any]:
        raw = _runtime(request).client.poll_video(job_id)
        normalized = normalize(raw, "video")
        response = dict(raw)
        response["id"] = job_id
        response["status"] = status_token(raw) or normalized.state
        response["state"] = normalized.state
        response["progress"] = normalized.progress
        if normalized.state == "failed":
            response["error"] = normalized.error_message
        elif normalized.state == "succeeded":
            if normalized.media_url:
                response["media_url"] = normalized.media_url
            elif normalized.media_inline_payload is not None:
                response["media_inline_payload"] = encode_payload(normalized.media_inline_payload)
            else:
                # Finished asset lives behind the upstream content endpoint.
                response["media_url"] = f"/api/video-content/{job_id}"
        return response

    @app.get("/api/video-content/{job_id}")
    def video_content(job_id: str, request: Request) -> Response:
        content = _runtime(request).client.fetch_video_content(job_id)
        return Response(content=content.data, media_type=content.content_type)

    @app.post("/api/save-video")
    def save_video(payload: SaveVideoRequest) -> Response:
        if not payload.video_data:
            raise ValidationError("Video data is required")
        data = _decode_field(payload.video_data, "video_data")
        return _attachment(
            MediaContent(data=data, content_type=f"video/{payload.format}"),
            filename=f"generated-video.{payload.format}",
        )

    @app.get("/api/download-video")
    def download_video(request: Request, url: str = Query("")) -> Response:
        if not url:
            raise ValidationError("Video URL is required")
        content = _runtime(request).client.download(url)
        logger.info("api event=video_downloaded bytes=%d", len(content.data))
        return _attachment(content, filename="generated-video.mp4")

    @app.get("/api/generations", response_model=GenerationPage)
    def list_generations(
        request: Request,
        owner_id: str | None = Query(None),
        limit: int | None = Query(None, ge=1),
        cursor: str | None = Query(None),
    ) -> GenerationPage:
        return _runtime(request).history.list(owner_id, limit=limit, cursor=cursor)

    @app.post("/api/generations", response_model=GenerationRecord)
    def save_generation(payload: NewGeneration, request: Request) -> GenerationRecord:
        return _runtime(request).history.save(payload)

    @app.get("/api/generations/{generation_id}", response_model=GenerationRecord)
    def get_generation(
        generation_id: str,
        request: Request,
        owner_id: str | None = Query(None),
    ) -> GenerationRecord:
        return _runtime(request).history.get(generation_id, owner_id)

    @app.delete("/api/generations/{generation_id}")
    def delete_generation(
        generation_id: str,
        request: Request,
        owner_id: str | None = Query(None),
    ) -> dict[str, str]:
        _runtime(request).history.delete(generation_id, owner_id)
        return {"deleted": generation_id}

    @app.post("/api/sessions/{owner_id}/submit", response_model=LifecycleSnapshot)
    def submit_generation(
        owner_id: str,
        payload: SubmitGenerationRequest,
        request: Request,
        replace: bool = Query(False),
    ) -> LifecycleSnapshot:
        generation_request = _build_generation_request(payload)
        controller = _runtime(request).controller_for(owner_id)
        return controller.submit(generation_request, replace=replace)

    @app.get("/api/sessions/{owner_id}", response_model=LifecycleSnapshot)
    def get_session(owner_id: str, request: Request) -> LifecycleSnapshot:
        return _runtime(request).controller_for(owner_id).snapshot()

    @app.delete("/api/sessions/{owner_id}", response_model=LifecycleSnapshot)
    def abandon_session(owner_id: str, request: Request) -> LifecycleSnapshot:
        return _runtime(request).controller_for(owner_id).abandon()

    return app


def _image_response(runtime: Runtime, generation_request: GenerationRequest) -> dict[str, Any]:
    _require_prompt(generation_request.prompt)
    image = runtime.client.submit_image(
        generation_request.prompt.strip(),
        size=generation_request.size or runtime.settings.default_image_size,
        quality=generation_request.quality,
        reference_images=generation_request.reference_images,
    )
    return {
        "status": "completed",
        "type": "image",
        "media_inline_payload": encode_payload(image.media_inline_payload),
        "media_url": image.media_url,
        "revised_prompt": image.revised_prompt,
    }


def _build_generation_request(payload: SubmitGenerationRequest) -> GenerationRequest:
    references = tuple(_decode_field(item, "reference_images") for item in payload.reference_images)
    try:
        return GenerationRequest(
            mode=payload.mode,
            prompt=payload.prompt,
            size=payload.size,
            quality=payload.quality,
            duration_seconds=payload.duration_seconds,
            reference_images=references,
        )
    except ValueError as exc:
        # pydantic.ValidationError subclasses ValueError.
        raise ValidationError("Invalid generation request", details=str(exc)) from exc


def _require_prompt(prompt: str) -> None:
    if not prompt.strip():
        raise ValidationError("Prompt is required")


def _decode_field(value: str, field_name: str) -> bytes:
    try:
        return decode_inline_payload(value)
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be base64 encoded", details=str(exc)) from exc


def _attachment(content: MediaContent, *, filename: str) -> Response:
    return Response(
        content=content.data,
        media_type=content.content_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# Module-level app for `uvicorn genstudio_api.main:app`.
app = create_app()
