"""Generation lifecycle controller.

State machine per submission::

    idle -> submitting -> completed | polling | failed
    polling -> completed | failed | polling

Images are always synchronous. Videos are polled on a dedicated thread that
waits ``poll_interval_s`` on a cancellation event between attempts, so poll
requests never overlap and abandoning a job is a single ``Event.set()``.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from .errors import PersistenceWarning, SubmissionInProgressError, UpstreamError, ValidationError
from .generation_client import GenerationClient
from .history import HistoryService
from .media import MediaStore
from .models import (
    GenerationMode,
    GenerationRecord,
    GenerationRequest,
    GenerationResult,
    LifecycleSnapshot,
    LifecycleState,
    NewGeneration,
    NormalizedResult,
    encode_payload,
)
from .normalizer import normalize

logger = logging.getLogger(__name__)

IN_FLIGHT_STATES: frozenset[LifecycleState] = frozenset({"submitting", "polling"})

MEDIA_FORMATS: dict[GenerationMode, tuple[str, str]] = {
    "image": ("png", "image/png"),
    "video": ("mp4", "video/mp4"),
}

_CONTENT_TYPE_EXTENSIONS = {
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


@dataclass
class GenerationJob:
    """In-flight submission. Dropped once its outcome is persisted."""

    mode: GenerationMode
    request: GenerationRequest
    id: str | None = None
    state: LifecycleState = "submitting"


@dataclass
class _Submission:
    """Bookkeeping for the current submission; replaced on every submit."""

    token: int
    job: GenerationJob
    cancel: threading.Event = field(default_factory=threading.Event)
    poller: threading.Thread | None = None


class LifecycleController:
    """Drives one owner's submissions from submit to a persisted outcome."""

    def __init__(
        self,
        *,
        client: GenerationClient,
        history: HistoryService,
        media_store: MediaStore,
        owner_id: str = "default",
        default_image_size: str = "1024x1024",
        default_video_size: str = "720x1280",
        default_video_seconds: int = 4,
        poll_interval_s: float = 3.0,
        poll_timeout_s: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.history = history
        self.media_store = media_store
        self.owner_id = owner_id
        self.default_image_size = default_image_size
        self.default_video_size = default_video_size
        self.default_video_seconds = default_video_seconds
        self.poll_interval_s = poll_interval_s
        self.poll_timeout_s = poll_timeout_s
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens = 0
        self._submission: _Submission | None = None
        self._snapshot = LifecycleSnapshot()

    @property
    def state(self) -> LifecycleState:
        with self._lock:
            return self._snapshot.state

    def snapshot(self) -> LifecycleSnapshot:
        with self._lock:
            return self._snapshot.model_copy(deep=True)

    def submit(
        self,
        request: GenerationRequest,
        *,
        replace: bool = False,
        wait: bool = False,
    ) -> LifecycleSnapshot:
        """Start a submission; returns once it is terminal or polling.

        ``replace`` abandons an in-flight job instead of rejecting the call.
        ``wait`` additionally blocks until polling reaches a terminal state.
        """
        if not request.prompt.strip():
            raise ValidationError("Prompt is required")

        with self._lock:
            if self._snapshot.state in IN_FLIGHT_STATES:
                if not replace:
                    raise SubmissionInProgressError(
                        "A generation is already in progress for this session"
                    )
                self._abandon_locked()
            self._tokens += 1
            submission = _Submission(
                token=self._tokens,
                job=GenerationJob(mode=request.mode, request=request),
            )
            self._submission = submission
            self._snapshot = LifecycleSnapshot(state="submitting", mode=request.mode)

        logger.info(
            "lifecycle event=submitting owner_id=%s mode=%s token=%s",
            self.owner_id,
            request.mode,
            submission.token,
        )
        try:
            if request.mode == "image":
                self._submit_image(submission)
            else:
                self._submit_video(submission)
        except UpstreamError as exc:
            self._fail(submission, exc.message)
        except Exception as exc:
            self._fail(submission, f"Unexpected submission failure: {exc}")
            raise

        if wait:
            return self.wait()
        return self.snapshot()

    def wait(self, timeout: float | None = None) -> LifecycleSnapshot:
        """Block until the current poll task ends (or ``timeout`` elapses)."""
        with self._lock:
            poller = self._submission.poller if self._submission else None
        if poller is not None:
            poller.join(timeout)
        return self.snapshot()

    def abandon(self) -> LifecycleSnapshot:
        """Drop the current job and return to idle. No upstream cancel is sent."""
        with self._lock:
            self._abandon_locked()
            self._snapshot = LifecycleSnapshot()
            return self._snapshot.model_copy(deep=True)

    def _abandon_locked(self) -> None:
        submission = self._submission
        if submission is None:
            return
        submission.cancel.set()
        self._submission = None
        if self._snapshot.state in IN_FLIGHT_STATES:
            logger.info(
                "lifecycle event=abandoned owner_id=%s job_id=%s",
                self.owner_id,
                submission.job.id,
            )

    def _submit_image(self, submission: _Submission) -> None:
        request = submission.job.request
        image = self.client.submit_image(
            request.prompt,
            size=request.size or self.default_image_size,
            quality=request.quality,
            reference_images=request.reference_images,
        )
        normalized = NormalizedResult(
            state="succeeded",
            media_url=image.media_url,
            media_inline_payload=image.media_inline_payload,
            revised_prompt=image.revised_prompt,
        )
        self._complete(submission, normalized)

    def _submit_video(self, submission: _Submission) -> None:
        request = submission.job.request
        video = self.client.submit_video(
            request.prompt,
            size=request.size or self.default_video_size,
            duration_seconds=request.duration_seconds or self.default_video_seconds,
        )
        submission.job.id = video.job_id
        normalized = normalize(video.raw_status, "video")
        if normalized.state == "succeeded":
            # Some deployments return the finished job inline.
            self._complete(submission, normalized)
            return
        if normalized.state == "failed":
            self._fail(submission, normalized.error_message or "Video generation failed")
            return

        poller = threading.Thread(
            target=self._poll_until_terminal,
            args=(submission, video.job_id),
            name=f"genstudio-poll-{video.job_id}",
            daemon=True,
        )
        with self._lock:
            if not self._is_current(submission):
                return
            submission.job.state = "polling"
            submission.poller = poller
            self._snapshot.state = "polling"
            self._snapshot.job_id = video.job_id
            self._snapshot.progress = normalized.progress
        logger.info(
            "lifecycle event=polling owner_id=%s job_id=%s interval_s=%s",
            self.owner_id,
            video.job_id,
            self.poll_interval_s,
        )
        poller.start()

    def _poll_until_terminal(self, submission: _Submission, job_id: str) -> None:
        deadline = self._clock() + self.poll_timeout_s if self.poll_timeout_s > 0 else None

        while not submission.cancel.wait(self.poll_interval_s):
            with self._lock:
                if not self._is_current(submission):
                    return
                self._snapshot.poll_attempts += 1
            try:
                raw = self.client.poll_video(job_id)
            except UpstreamError as exc:
                # A failed poll request is not a failed job.
                logger.warning(
                    "lifecycle event=poll_error owner_id=%s job_id=%s status=%s transient=%s "
                    "reason=%s",
                    self.owner_id,
                    job_id,
                    exc.status_code,
                    exc.transient,
                    exc.message,
                )
            except Exception as exc:  # noqa: BLE001
                # The poll thread must outlive any single bad response.
                logger.warning(
                    "lifecycle event=poll_error owner_id=%s job_id=%s status=None reason=%r",
                    self.owner_id,
                    job_id,
                    exc,
                )
            else:
                normalized = normalize(raw, "video")
                if normalized.state == "succeeded":
                    self._complete(submission, normalized)
                    return
                if normalized.state == "failed":
                    self._fail(submission, normalized.error_message or "Video generation failed")
                    return
                with self._lock:
                    if not self._is_current(submission):
                        return
                    if normalized.progress is not None:
                        self._snapshot.progress = normalized.progress

            if deadline is not None and self._clock() >= deadline:
                self._fail(
                    submission,
                    f"Video generation timed out after {self.poll_timeout_s:g} seconds",
                )
                return

    def _complete(self, submission: _Submission, normalized: NormalizedResult) -> None:
        if submission.cancel.is_set():
            return
        persisted = self._persist(submission, normalized)
        if persisted is None:
            return
        result, record, warning = persisted
        with self._lock:
            if not self._is_current(submission):
                return
            submission.job.state = "completed"
            self._snapshot.state = "completed"
            self._snapshot.result = result
            self._snapshot.record_id = record.id if record else None
            self._snapshot.warning = warning
            if normalized.progress is None:
                self._snapshot.progress = 1.0
        logger.info(
            "lifecycle event=completed owner_id=%s mode=%s job_id=%s record_id=%s",
            self.owner_id,
            submission.job.mode,
            submission.job.id,
            record.id if record else None,
        )

    def _fail(self, submission: _Submission, message: str) -> None:
        with self._lock:
            if not self._is_current(submission):
                return
            submission.job.state = "failed"
            self._snapshot.state = "failed"
            self._snapshot.error = message
        logger.info(
            "lifecycle event=failed owner_id=%s mode=%s job_id=%s error=%s",
            self.owner_id,
            submission.job.mode,
            submission.job.id,
            message,
        )

    def _persist(
        self,
        submission: _Submission,
        normalized: NormalizedResult,
    ) -> tuple[GenerationResult, GenerationRecord | None, str | None] | None:
        """Upload media and write the history record; failures become warnings.

        Returns None when the submission was abandoned while media was being
        fetched or uploaded. Nothing is saved in that case.
        """
        job = submission.job
        # What the caller sees even when persistence fails.
        shown = GenerationResult(
            media_url=normalized.media_url,
            media_inline_payload=encode_payload(normalized.media_inline_payload),
            revised_prompt=normalized.revised_prompt,
        )
        try:
            media_url = self._durable_media_url(job, normalized)
            # Held across the save so abandon() cannot land between check and write.
            with self._lock:
                record = None
                if self._is_current(submission):
                    record = self.history.save(
                        NewGeneration(
                            owner_id=self.owner_id,
                            mode=job.mode,
                            prompt=job.request.prompt,
                            settings=job.request.settings(),
                            result=GenerationResult(
                                media_url=media_url,
                                revised_prompt=normalized.revised_prompt,
                            ),
                            reference_image_count=len(job.request.reference_images),
                        )
                    )
        except Exception as exc:  # noqa: BLE001
            warning = PersistenceWarning(f"Generation history could not be saved: {exc}")
            logger.warning(
                "lifecycle event=persistence_failed owner_id=%s mode=%s job_id=%s reason=%s",
                self.owner_id,
                job.mode,
                job.id,
                exc,
            )
            return shown, None, warning.message
        if record is None:
            logger.info(
                "lifecycle event=result_discarded owner_id=%s mode=%s job_id=%s",
                self.owner_id,
                job.mode,
                job.id,
            )
            if media_url != normalized.media_url:
                self._discard_upload(media_url)
            return None
        shown.media_url = media_url
        return shown, record, None

    def _discard_upload(self, media_url: str) -> None:
        try:
            self.media_store.delete(media_url)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "lifecycle event=media_discard_failed owner_id=%s media_url=%s reason=%s",
                self.owner_id,
                media_url,
                exc,
            )

    def _durable_media_url(self, job: GenerationJob, normalized: NormalizedResult) -> str:
        if normalized.media_url is not None:
            return normalized.media_url

        extension, content_type = MEDIA_FORMATS[job.mode]
        payload = normalized.media_inline_payload
        if payload is None:
            if job.mode != "video" or job.id is None:
                raise PersistenceWarning("Completed result carried no media")
            content = self.client.fetch_video_content(job.id)
            payload = content.data
            content_type = content.content_type.split(";", 1)[0].strip() or content_type
            extension = _CONTENT_TYPE_EXTENSIONS.get(content_type, extension)
        return self.media_store.upload(payload, extension=extension, content_type=content_type)

    def _is_current(self, submission: _Submission) -> bool:
        return self._submission is submission and not submission.cancel.is_set()


class SessionRegistry:
    """One lifecycle controller per owner, created on first use."""

    def __init__(self, factory: Callable[[str], LifecycleController]) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._controllers: dict[str, LifecycleController] = {}

    def get(self, owner_id: str) -> LifecycleController:
        with self._lock:
            controller = self._controllers.get(owner_id)
            if controller is None:
                controller = self._factory(owner_id)
                self._controllers[owner_id] = controller
            return controller

    def abandon_all(self) -> None:
        with self._lock:
            controllers = list(self._controllers.values())
        for controller in controllers:
            controller.abandon()
