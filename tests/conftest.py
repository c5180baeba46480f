from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from typing import Any

import pytest
from fastapi.testclient import TestClient

from genstudio_api.app.generation_client import ImageResult, MediaContent, VideoSubmission
from genstudio_api.app.history import HistoryService
from genstudio_api.app.lifecycle import LifecycleController
from genstudio_api.app.media import InMemoryMediaStore
from genstudio_api.app.settings import Settings
from genstudio_api.app.storage import InMemoryGenerationStorage


class StubGenerationClient:
    """Test-only client double with scripted upstream responses."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.image_result = ImageResult(media_inline_payload=b"png-bytes")
        self.video_submission = VideoSubmission(
            job_id="job-1",
            raw_status={"id": "job-1", "status": "queued"},
        )
        # Each entry is either a raw status document or an exception to raise.
        self.poll_responses: list[dict[str, Any] | Exception] = []
        self.poll_times: list[float] = []
        self.video_content = MediaContent(data=b"mp4-bytes", content_type="video/mp4")
        self.download_content = MediaContent(data=b"downloaded", content_type="video/mp4")
        self.submit_error: Exception | None = None
        # Runs inside fetch_video_content, on the poll thread.
        self.on_fetch_video_content: Callable[[], None] | None = None
        self._lock = threading.Lock()

    def submit_image(
        self,
        prompt: str,
        *,
        size: str,
        quality: str | None = None,
        reference_images: Sequence[bytes] = (),
    ) -> ImageResult:
        self.calls.append(
            (
                "submit_image",
                {
                    "prompt": prompt,
                    "size": size,
                    "quality": quality,
                    "reference_images": tuple(reference_images),
                },
            )
        )
        if self.submit_error is not None:
            raise self.submit_error
        return self.image_result

    def submit_video(self, prompt: str, *, size: str, duration_seconds: int) -> VideoSubmission:
        self.calls.append(
            ("submit_video", {"prompt": prompt, "size": size, "duration_seconds": duration_seconds})
        )
        if self.submit_error is not None:
            raise self.submit_error
        return self.video_submission

    def poll_video(self, job_id: str) -> dict[str, Any]:
        with self._lock:
            self.poll_times.append(time.monotonic())
            self.calls.append(("poll_video", {"job_id": job_id}))
            item: dict[str, Any] | Exception = (
                self.poll_responses.pop(0) if self.poll_responses else {"status": "in_progress"}
            )
        if isinstance(item, Exception):
            raise item
        return item

    def fetch_video_content(self, job_id: str) -> MediaContent:
        self.calls.append(("fetch_video_content", {"job_id": job_id}))
        if self.on_fetch_video_content is not None:
            self.on_fetch_video_content()
        return self.video_content

    def download(self, url: str) -> MediaContent:
        self.calls.append(("download", {"url": url}))
        return self.download_content

    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]


@pytest.fixture
def stub_client() -> StubGenerationClient:
    return StubGenerationClient()


@pytest.fixture
def storage() -> InMemoryGenerationStorage:
    return InMemoryGenerationStorage()


@pytest.fixture
def media_store() -> InMemoryMediaStore:
    return InMemoryMediaStore()


@pytest.fixture
def history(storage: InMemoryGenerationStorage, media_store: InMemoryMediaStore) -> HistoryService:
    return HistoryService(storage=storage, media_store=media_store)


@pytest.fixture
def make_controller(
    stub_client: StubGenerationClient,
    history: HistoryService,
    media_store: InMemoryMediaStore,
) -> Callable[..., LifecycleController]:
    controllers: list[LifecycleController] = []

    def factory(**overrides: Any) -> LifecycleController:
        options: dict[str, Any] = {
            "client": stub_client,
            "history": history,
            "media_store": media_store,
            "poll_interval_s": 0.01,
            "poll_timeout_s": 5.0,
        }
        options.update(overrides)
        controller = LifecycleController(**options)
        controllers.append(controller)
        return controller

    yield factory
    # Stop any poll threads a test left running.
    for controller in controllers:
        controller.abandon()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        endpoint="https://example.test",
        api_key="test-key",
        poll_interval_s=0.01,
        poll_timeout_s=5.0,
    )


@pytest.fixture
def client(
    settings: Settings,
    stub_client: StubGenerationClient,
    storage: InMemoryGenerationStorage,
    media_store: InMemoryMediaStore,
) -> TestClient:
    from genstudio_api import main as main_module

    app = main_module.create_app(
        settings_override=settings,
        client=stub_client,
        storage=storage,
        media_store=media_store,
    )
    with TestClient(app) as test_client:
        yield test_client
