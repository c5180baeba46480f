from __future__ import annotations

from typing import Protocol

from .errors import UpstreamError


class TokenProvider(Protocol):
    """Source of bearer tokens for the upstream generation API.

    The client asks for a token before every request; implementations that
    wrap short-lived credentials refresh on their own schedule.
    """

    def get_token(self) -> str: ...


class StaticTokenProvider:
    """Serves a fixed API key as the bearer token."""

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key.strip()

    def get_token(self) -> str:
        if not self._api_key:
            raise UpstreamError(
                "No upstream credential configured. Set GENSTUDIO_API_KEY.",
                status_code=401,
            )
        return self._api_key
