"""Error taxonomy shared by the client, controller, stores and HTTP layer.

Every error carries the HTTP status it maps to, so the API can render any of
them with a single exception handler.
"""

from __future__ import annotations

from typing import Any


class GenerationError(Exception):
    """Base class for errors that surface to API callers."""

    status_code: int = 500

    def __init__(self, message: str, *, details: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(GenerationError):
    """Request rejected before any network call was made."""

    status_code = 400


class NotFoundError(GenerationError):
    """Referenced job, record or blob does not exist."""

    status_code = 404


class SubmissionInProgressError(GenerationError):
    status_code = 409


class DuplicateGenerationError(GenerationError):
    status_code = 409


class UpstreamError(GenerationError):
    """Remote generation API returned a non-success status or was unreachable."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 502,
        details: str | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        # 502 is also what transport failures are reported as.
        return self.status_code == 429 or self.status_code >= 500


class PersistenceWarning(GenerationError):
    """History or media write failed after a successful generation."""
