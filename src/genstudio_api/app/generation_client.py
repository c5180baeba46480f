from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from http import client as http_client
from typing import Any, Protocol
from urllib import error, parse, request

from .auth import TokenProvider
from .errors import UpstreamError, ValidationError
from .normalizer import normalize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ImageResult:
    media_inline_payload: bytes | None
    media_url: str | None = None
    revised_prompt: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VideoSubmission:
    job_id: str
    raw_status: dict[str, Any]


@dataclass(frozen=True)
class MediaContent:
    data: bytes
    content_type: str


class GenerationClient(Protocol):
    """Interface for the remote image/video generation API."""

    def submit_image(
        self,
        prompt: str,
        *,
        size: str,
        quality: str | None = None,
        reference_images: Sequence[bytes] = (),
    ) -> ImageResult: ...

    def submit_video(self, prompt: str, *, size: str, duration_seconds: int) -> VideoSubmission: ...

    def poll_video(self, job_id: str) -> dict[str, Any]: ...

    def fetch_video_content(self, job_id: str) -> MediaContent: ...

    def download(self, url: str) -> MediaContent: ...


class OpenAIGenerationClient:
    """Client for an OpenAI-compatible ``/openai/v1`` images + videos surface."""

    def __init__(
        self,
        *,
        endpoint: str,
        token_provider: TokenProvider,
        image_model: str = "gpt-image-1",
        video_model: str = "sora-2",
        timeout_s: float = 120.0,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.token_provider = token_provider
        self.image_model = image_model
        self.video_model = video_model
        self.timeout_s = timeout_s

    @property
    def base_url(self) -> str:
        if not self.endpoint:
            raise UpstreamError(
                "No upstream endpoint configured. Set GENSTUDIO_ENDPOINT.",
                status_code=503,
            )
        return f"{self.endpoint}/openai/v1"

    def submit_image(
        self,
        prompt: str,
        *,
        size: str,
        quality: str | None = None,
        reference_images: Sequence[bytes] = (),
    ) -> ImageResult:
        if reference_images:
            # Edit variant: every reference image is sent, the first one is primary.
            fields = {
                "model": self.image_model,
                "prompt": prompt,
                "size": size,
                "n": "1",
                "input_fidelity": "high",
            }
            if quality:
                fields["quality"] = quality
            files = [
                ("image[]", f"reference-{index}.{_image_extension(data)}", data)
                for index, data in enumerate(reference_images)
            ]
            body, content_type = _encode_multipart(fields, files)
            logger.info(
                "upstream event=image_edit model=%s size=%s reference_images=%d",
                self.image_model,
                size,
                len(reference_images),
            )
            raw = self._request_json(
                "POST", "/images/edits", body=body, content_type=content_type
            )
        else:
            payload: dict[str, Any] = {
                "model": self.image_model,
                "prompt": prompt,
                "size": size,
                "n": 1,
            }
            if quality:
                payload["quality"] = quality
            logger.info("upstream event=image_generate model=%s size=%s", self.image_model, size)
            raw = self._request_json("POST", "/images/generations", payload=payload)

        normalized = normalize(raw, "image")
        if normalized.state == "failed":
            raise UpstreamError(normalized.error_message or "Image generation failed")
        if not normalized.has_media:
            raise UpstreamError(
                "Image response did not contain image data",
                details=json.dumps(raw)[:2000],
            )
        return ImageResult(
            media_inline_payload=normalized.media_inline_payload,
            media_url=normalized.media_url,
            revised_prompt=normalized.revised_prompt,
            raw=raw,
        )

    def submit_video(self, prompt: str, *, size: str, duration_seconds: int) -> VideoSubmission:
        payload = {
            "model": self.video_model,
            "prompt": prompt,
            "size": size,
            "seconds": str(duration_seconds),
        }
        logger.info(
            "upstream event=video_submit model=%s size=%s seconds=%s",
            self.video_model,
            size,
            duration_seconds,
        )
        raw = self._request_json("POST", "/videos", payload=payload)
        job_id = raw.get("id")
        if not isinstance(job_id, str) or not job_id:
            raise UpstreamError(
                "Video response did not contain a job id",
                details=json.dumps(raw)[:2000],
            )
        return VideoSubmission(job_id=job_id, raw_status=raw)

    def poll_video(self, job_id: str) -> dict[str, Any]:
        return self._request_json("GET", f"/videos/{parse.quote(job_id, safe='')}")

    def fetch_video_content(self, job_id: str) -> MediaContent:
        _, headers, body = self._request(
            "GET",
            f"{self.base_url}/videos/{parse.quote(job_id, safe='')}/content",
            authorized=True,
        )
        return MediaContent(data=body, content_type=headers.get("content-type") or "video/mp4")

    def download(self, url: str) -> MediaContent:
        """Fetch a media URL, retrying once with credentials if it is rejected."""
        if parse.urlsplit(url).scheme not in ("http", "https"):
            raise ValidationError("Only http(s) URLs can be downloaded")
        try:
            _, headers, body = self._request("GET", url, authorized=False)
        except UpstreamError as exc:
            if exc.status_code not in (401, 403):
                raise
            logger.info("upstream event=download_retry_authorized status=%s", exc.status_code)
            _, headers, body = self._request("GET", url, authorized=True)
        return MediaContent(data=body, content_type=headers.get("content-type") or "video/mp4")

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        body: bytes | None = None,
        content_type: str | None = None,
    ) -> dict[str, Any]:
        if payload is not None:
            body = json.dumps(payload).encode("utf-8")
            content_type = "application/json"
        _, _, raw_body = self._request(
            method,
            f"{self.base_url}{path}",
            body=body,
            content_type=content_type,
            authorized=True,
        )
        try:
            decoded = json.loads(raw_body.decode("utf-8")) if raw_body else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise UpstreamError(
                "Upstream returned a non-JSON response",
                details=raw_body[:500].decode("utf-8", errors="replace"),
            ) from exc
        if not isinstance(decoded, dict):
            raise UpstreamError("Upstream returned an unexpected JSON document")
        return decoded

    def _request(
        self,
        method: str,
        url: str,
        *,
        body: bytes | None = None,
        content_type: str | None = None,
        authorized: bool,
    ) -> tuple[int, dict[str, str], bytes]:
        headers: dict[str, str] = {}
        if content_type:
            headers["Content-Type"] = content_type
        if authorized:
            # Fresh token per request; the credential expires on its own schedule.
            headers["Authorization"] = f"Bearer {self.token_provider.get_token()}"
        req = request.Request(url=url, data=body, method=method, headers=headers)
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                response_headers = {key.lower(): value for key, value in response.headers.items()}
                return response.status, response_headers, response.read()
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            logger.warning(
                "upstream event=http_error method=%s url=%s status=%s", method, url, exc.code
            )
            raise UpstreamError(
                _upstream_message(raw_error, default=f"Upstream request failed ({exc.code})"),
                status_code=exc.code,
                details=raw_error or None,
            ) from exc
        except (OSError, http_client.HTTPException) as exc:
            # Connection-level failures, including dropped or truncated responses.
            reason = getattr(exc, "reason", exc)
            logger.warning(
                "upstream event=transport_error method=%s url=%s reason=%s", method, url, reason
            )
            raise UpstreamError(f"upstream request failed: {reason}", status_code=502) from exc


def _upstream_message(raw_error: str, *, default: str) -> str:
    """Pull ``error.message`` out of a JSON error body, else the body itself."""
    if not raw_error:
        return default
    try:
        parsed = json.loads(raw_error)
    except json.JSONDecodeError:
        return raw_error
    if isinstance(parsed, dict):
        error_value = parsed.get("error")
        if isinstance(error_value, dict) and isinstance(error_value.get("message"), str):
            return error_value["message"]
        if isinstance(error_value, str) and error_value:
            return error_value
        if isinstance(parsed.get("message"), str):
            return parsed["message"]
    return raw_error


def _image_extension(data: bytes) -> str:
    if data.startswith(b"\xff\xd8"):
        return "jpg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "webp"
    return "png"


_IMAGE_CONTENT_TYPES = {"png": "image/png", "jpg": "image/jpeg", "webp": "image/webp"}


def _encode_multipart(
    fields: dict[str, str],
    files: list[tuple[str, str, bytes]],
) -> tuple[bytes, str]:
    boundary = f"----genstudio{uuid.uuid4().hex}"
    chunks: list[bytes] = []
    for name, value in fields.items():
        chunks.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"\r\n\r\n'
                f"{value}\r\n"
            ).encode("utf-8")
        )
    for name, filename, data in files:
        extension = filename.rsplit(".", 1)[-1]
        chunks.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"; filename="{filename}"\r\n'
                f"Content-Type: {_IMAGE_CONTENT_TYPES.get(extension, 'application/octet-stream')}"
                "\r\n\r\n"
            ).encode("utf-8")
        )
        chunks.append(data)
        chunks.append(b"\r\n")
    chunks.append(f"--{boundary}--\r\n".encode("utf-8"))
    return b"".join(chunks), f"multipart/form-data; boundary={boundary}"
