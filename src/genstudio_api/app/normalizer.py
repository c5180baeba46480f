"""Collapse upstream response shapes into one NormalizedResult.

The upstream envelope is not stable across API versions and providers: a
finished job may carry a flat URL, a nested object URL, an array of outputs,
or an inline base64 payload. Resolution is a fixed, ordered rule table; the
first matching rule wins:

1. explicit failure token in ``status``/``state``
2. success token, or any recognized media locator (URL locators before inline)
3. numeric ``progress`` in [0, 1]
4. anything else counts as still running
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .models import GenerationMode, NormalizedResult

LocatorPath = tuple[str | int, ...]

FAILURE_TOKENS = frozenset(
    {"failed", "failure", "error", "errored", "cancelled", "canceled", "expired", "rejected"}
)
SUCCESS_TOKENS = frozenset({"completed", "succeeded", "success", "done", "finished"})

STATUS_FIELDS: tuple[str, ...] = ("status", "state")

URL_LOCATORS: tuple[LocatorPath, ...] = (
    ("url",),
    ("video_url",),
    ("output", "url"),
    ("result", "url"),
    ("generations", 0, "url"),
    ("videos", 0, "url"),
    ("data", 0, "url"),
    ("output", "video_url"),
    ("result", "video_url"),
    ("content", "url"),
    ("video", "url"),
)

INLINE_LOCATORS: tuple[LocatorPath, ...] = (
    ("video_base64",),
    ("b64_json",),
    ("data", 0, "b64_json"),
    ("generations", 0, "b64_json"),
    ("data",),
    ("output", "data"),
    ("video", "data"),
    ("content", "data"),
)

REVISED_PROMPT_LOCATORS: tuple[LocatorPath, ...] = (
    ("revised_prompt",),
    ("data", 0, "revised_prompt"),
)


@dataclass(frozen=True)
class ResolutionRule:
    name: str
    matches: Callable[[Mapping[str, Any]], bool]
    resolve: Callable[[Mapping[str, Any], GenerationMode], NormalizedResult]


def normalize(raw: Any, mode: GenerationMode) -> NormalizedResult:
    """Map an arbitrary upstream document to the canonical result shape."""
    document: Mapping[str, Any] = raw if isinstance(raw, Mapping) else {}
    for rule in RESOLUTION_RULES:
        if rule.matches(document):
            return rule.resolve(document, mode)
    return NormalizedResult(state="in_progress")


def decode_inline_payload(value: str) -> bytes:
    """Decode base64 text, tolerating a ``data:<mime>;base64,`` prefix.

    Raises ``ValueError`` when the text is not valid base64.
    """
    text = value.strip()
    if text.startswith("data:") and "," in text:
        text = text.split(",", 1)[1]
    if not text:
        raise ValueError("empty base64 payload")
    try:
        return base64.b64decode(text, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 payload: {exc}") from exc


def lookup(document: Any, path: LocatorPath) -> Any:
    """Walk ``path`` through nested mappings/sequences; None when absent."""
    current = document
    for key in path:
        if isinstance(key, int):
            if not isinstance(current, (list, tuple)) or len(current) <= key:
                return None
            current = current[key]
        else:
            if not isinstance(current, Mapping):
                return None
            current = current.get(key)
        if current is None:
            return None
    return current


def status_token(document: Mapping[str, Any]) -> str | None:
    for field in STATUS_FIELDS:
        value = document.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip().lower()
    return None


def find_media_url(document: Mapping[str, Any]) -> str | None:
    for path in URL_LOCATORS:
        value = lookup(document, path)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def find_inline_payload(document: Mapping[str, Any]) -> bytes | None:
    for path in INLINE_LOCATORS:
        value = lookup(document, path)
        if not isinstance(value, str) or not value.strip():
            continue
        try:
            return decode_inline_payload(value)
        except ValueError:
            continue
    return None


def _has_failure_token(document: Mapping[str, Any]) -> bool:
    return status_token(document) in FAILURE_TOKENS


def _has_success_marker(document: Mapping[str, Any]) -> bool:
    if status_token(document) in SUCCESS_TOKENS:
        return True
    return find_media_url(document) is not None or find_inline_payload(document) is not None


def _progress_fraction(document: Mapping[str, Any]) -> float | None:
    value = document.get("progress")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if 0 <= value <= 1:
        return float(value)
    return None


def _has_progress_fraction(document: Mapping[str, Any]) -> bool:
    return _progress_fraction(document) is not None


def _resolve_failure(document: Mapping[str, Any], mode: GenerationMode) -> NormalizedResult:
    return NormalizedResult(state="failed", error_message=_error_message(document, mode))


def _resolve_success(document: Mapping[str, Any], mode: GenerationMode) -> NormalizedResult:
    media_url = find_media_url(document)
    # A URL avoids moving a large payload through this layer twice.
    inline = None if media_url is not None else find_inline_payload(document)
    return NormalizedResult(
        state="succeeded",
        media_url=media_url,
        media_inline_payload=inline,
        revised_prompt=_revised_prompt(document),
    )


def _resolve_progress(document: Mapping[str, Any], mode: GenerationMode) -> NormalizedResult:
    return NormalizedResult(state="in_progress", progress=_progress_fraction(document))


def _error_message(document: Mapping[str, Any], mode: GenerationMode) -> str:
    error = document.get("error")
    if isinstance(error, Mapping):
        for key in ("message", "code"):
            value = error.get(key)
            if isinstance(value, str) and value.strip():
                return value
    if isinstance(error, str) and error.strip():
        return error
    reason = document.get("failure_reason")
    if isinstance(reason, str) and reason.strip():
        return reason
    return f"{mode.capitalize()} generation failed"


def _revised_prompt(document: Mapping[str, Any]) -> str | None:
    for path in REVISED_PROMPT_LOCATORS:
        value = lookup(document, path)
        if isinstance(value, str) and value:
            return value
    return None


RESOLUTION_RULES: tuple[ResolutionRule, ...] = (
    ResolutionRule("failure_token", _has_failure_token, _resolve_failure),
    ResolutionRule("success_or_media", _has_success_marker, _resolve_success),
    ResolutionRule("progress_fraction", _has_progress_fraction, _resolve_progress),
)
