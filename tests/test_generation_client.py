from __future__ import annotations

import base64
import io
import json
from http import client as http_client
from typing import Any
from urllib import error

import pytest

from genstudio_api.app import generation_client
from genstudio_api.app.auth import StaticTokenProvider
from genstudio_api.app.errors import UpstreamError, ValidationError
from genstudio_api.app.generation_client import OpenAIGenerationClient
from genstudio_api.app.lifecycle import LifecycleController
from genstudio_api.app.models import GenerationRequest


class FakeResponse:
    def __init__(self, body: bytes, *, status: int = 200, headers: dict[str, str] | None = None):
        self.status = status
        self.headers = headers or {"Content-Type": "application/json"}
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        return None


def _http_error(url: str, code: int, body: bytes) -> error.HTTPError:
    return error.HTTPError(url, code, "error", {}, io.BytesIO(body))


class _Captured(list):
    replies: list[Any]


@pytest.fixture
def api(monkeypatch: pytest.MonkeyPatch) -> _Captured:
    seen = _Captured()
    seen.replies = []

    def fake_urlopen(req, timeout: float):
        seen.append(req)
        reply = seen.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    monkeypatch.setattr(generation_client.request, "urlopen", fake_urlopen)
    return seen


def _client(endpoint: str = "https://example.test/", api_key: str = "test-key") -> OpenAIGenerationClient:
    return OpenAIGenerationClient(endpoint=endpoint, token_provider=StaticTokenProvider(api_key))


def _json_reply(payload: dict[str, Any]) -> FakeResponse:
    return FakeResponse(json.dumps(payload).encode("utf-8"))


def test_image_without_references_uses_generations_route(api: _Captured) -> None:
    encoded = base64.b64encode(b"png-bytes").decode("ascii")
    api.replies.append(_json_reply({"data": [{"b64_json": encoded, "revised_prompt": "better"}]}))

    result = _client().submit_image("a lighthouse", size="1024x1024", quality="high")

    assert result.media_inline_payload == b"png-bytes"
    assert result.revised_prompt == "better"
    req = api[0]
    assert req.full_url == "https://example.test/openai/v1/images/generations"
    assert req.get_method() == "POST"
    assert req.get_header("Authorization") == "Bearer test-key"
    assert json.loads(req.data) == {
        "model": "gpt-image-1",
        "prompt": "a lighthouse",
        "size": "1024x1024",
        "n": 1,
        "quality": "high",
    }


def test_image_with_references_uses_edits_route(api: _Captured) -> None:
    api.replies.append(_json_reply({"data": [{"url": "https://cdn.example/edit.png"}]}))

    result = _client().submit_image(
        "same style",
        size="1024x1024",
        reference_images=(b"\x89PNG-first", b"\xff\xd8jpeg-second"),
    )

    assert result.media_url == "https://cdn.example/edit.png"
    req = api[0]
    assert req.full_url == "https://example.test/openai/v1/images/edits"
    assert req.get_header("Content-type").startswith("multipart/form-data; boundary=")
    assert req.data.count(b'name="image[]"') == 2
    assert b'filename="reference-1.jpg"' in req.data
    assert b"\xff\xd8jpeg-second" in req.data
    assert b'name="input_fidelity"\r\n\r\nhigh' in req.data


def test_image_response_without_media_is_an_error(api: _Captured) -> None:
    api.replies.append(_json_reply({"data": []}))

    with pytest.raises(UpstreamError, match="did not contain image data"):
        _client().submit_image("a lighthouse", size="1024x1024")


def test_video_submission_sends_seconds_as_text(api: _Captured) -> None:
    api.replies.append(_json_reply({"id": "job-1", "status": "queued"}))

    submission = _client().submit_video("a red balloon", size="720x1280", duration_seconds=8)

    assert submission.job_id == "job-1"
    assert submission.raw_status["status"] == "queued"
    assert api[0].full_url == "https://example.test/openai/v1/videos"
    assert json.loads(api[0].data) == {
        "model": "sora-2",
        "prompt": "a red balloon",
        "size": "720x1280",
        "seconds": "8",
    }


def test_video_submission_without_id_is_an_error(api: _Captured) -> None:
    api.replies.append(_json_reply({"status": "queued"}))

    with pytest.raises(UpstreamError, match="job id"):
        _client().submit_video("a red balloon", size="720x1280", duration_seconds=4)


def test_poll_and_content_routes(api: _Captured) -> None:
    api.replies.extend(
        [
            _json_reply({"id": "job 1", "status": "in_progress"}),
            FakeResponse(b"mp4-bytes", headers={"Content-Type": "video/mp4"}),
        ]
    )
    client = _client()

    assert client.poll_video("job 1")["status"] == "in_progress"
    content = client.fetch_video_content("job 1")

    assert api[0].full_url == "https://example.test/openai/v1/videos/job%201"
    assert api[1].full_url == "https://example.test/openai/v1/videos/job%201/content"
    assert content.data == b"mp4-bytes"
    assert content.content_type == "video/mp4"


def test_http_error_keeps_status_and_upstream_message(api: _Captured) -> None:
    url = "https://example.test/openai/v1/videos"
    api.replies.append(
        _http_error(url, 429, b'{"error": {"message": "Too many requests", "code": "rate_limit"}}')
    )

    with pytest.raises(UpstreamError) as excinfo:
        _client().submit_video("a red balloon", size="720x1280", duration_seconds=4)

    assert excinfo.value.status_code == 429
    assert excinfo.value.message == "Too many requests"
    assert excinfo.value.transient is True
    assert "rate_limit" in excinfo.value.details


def test_transport_error_maps_to_bad_gateway(api: _Captured) -> None:
    api.replies.append(error.URLError("connection refused"))

    with pytest.raises(UpstreamError) as excinfo:
        _client().poll_video("job-1")

    assert excinfo.value.status_code == 502
    assert "connection refused" in excinfo.value.message


def test_dropped_connection_maps_to_bad_gateway(api: _Captured) -> None:
    api.replies.append(http_client.RemoteDisconnected("Remote end closed connection without response"))

    with pytest.raises(UpstreamError) as excinfo:
        _client().poll_video("job-1")

    assert excinfo.value.status_code == 502
    assert "Remote end closed connection" in excinfo.value.message


def test_truncated_body_maps_to_bad_gateway(api: _Captured) -> None:
    class TruncatedResponse(FakeResponse):
        def read(self) -> bytes:
            raise http_client.IncompleteRead(b"{\"status\"", 40)

    api.replies.append(TruncatedResponse(b""))

    with pytest.raises(UpstreamError) as excinfo:
        _client().poll_video("job-1")

    assert excinfo.value.status_code == 502


def test_connection_reset_mid_poll_does_not_stall_the_job(api: _Captured, history, media_store) -> None:
    api.replies.extend(
        [
            _json_reply({"id": "job-1", "status": "queued"}),
            ConnectionResetError(104, "Connection reset by peer"),
            _json_reply({"status": "completed", "url": "https://cdn.example/job-1.mp4"}),
        ]
    )
    controller = LifecycleController(
        client=_client(),
        history=history,
        media_store=media_store,
        poll_interval_s=0.01,
        poll_timeout_s=5.0,
    )

    snapshot = controller.submit(GenerationRequest(mode="video", prompt="a red balloon"), wait=True)

    assert snapshot.state == "completed"
    assert snapshot.poll_attempts == 2
    assert snapshot.result.media_url == "https://cdn.example/job-1.mp4"
    assert history.get(snapshot.record_id).result.media_url == "https://cdn.example/job-1.mp4"


def test_download_retries_with_credentials_after_rejection(api: _Captured) -> None:
    url = "https://cdn.example/job-1.mp4"
    api.replies.extend(
        [
            _http_error(url, 403, b"forbidden"),
            FakeResponse(b"mp4-bytes", headers={"Content-Type": "video/mp4"}),
        ]
    )

    content = _client().download(url)

    assert content.data == b"mp4-bytes"
    assert api[0].get_header("Authorization") is None
    assert api[1].get_header("Authorization") == "Bearer test-key"


def test_download_does_not_retry_other_errors(api: _Captured) -> None:
    url = "https://cdn.example/job-1.mp4"
    api.replies.append(_http_error(url, 404, b""))

    with pytest.raises(UpstreamError) as excinfo:
        _client().download(url)

    assert excinfo.value.status_code == 404
    assert len(api) == 1


def test_download_rejects_non_http_urls(api: _Captured) -> None:
    with pytest.raises(ValidationError):
        _client().download("file:///etc/passwd")

    assert len(api) == 0


def test_missing_endpoint_fails_before_any_request(api: _Captured) -> None:
    with pytest.raises(UpstreamError) as excinfo:
        _client(endpoint="").poll_video("job-1")

    assert excinfo.value.status_code == 503
    assert len(api) == 0


def test_missing_credential_fails_before_any_request(api: _Captured) -> None:
    with pytest.raises(UpstreamError) as excinfo:
        _client(api_key="  ").poll_video("job-1")

    assert excinfo.value.status_code == 401
    assert len(api) == 0
