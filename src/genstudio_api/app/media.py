"""Media (blob) store backends.

Generated bytes never go into the history store; they are uploaded here and
the history record keeps the returned URL.
"""

from __future__ import annotations

import logging
import threading
import uuid
from pathlib import Path
from typing import Protocol
from urllib import parse

logger = logging.getLogger(__name__)


class MediaStore(Protocol):
    def upload(self, data: bytes, *, extension: str, content_type: str) -> str: ...

    def delete(self, media_url: str) -> None: ...

    def read_url(self, media_url: str) -> str:
        """URL a client can fetch now; private backends would sign it here."""
        ...


class LocalMediaStore:
    """Stores blobs as files in one directory, served under ``base_url``."""

    def __init__(self, root: Path | str, base_url: str = "/media") -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self._lock = threading.Lock()

    def upload(self, data: bytes, *, extension: str, content_type: str) -> str:
        name = f"{uuid.uuid4()}.{extension.lstrip('.')}"
        with self._lock:
            self.root.mkdir(parents=True, exist_ok=True)
            (self.root / name).write_bytes(data)
        logger.info(
            "media event=uploaded name=%s bytes=%d content_type=%s", name, len(data), content_type
        )
        return f"{self.base_url}/{name}"

    def delete(self, media_url: str) -> None:
        name = self._blob_name(media_url)
        if name is None:
            # Not one of ours (e.g. an upstream signed URL); nothing to reclaim.
            return
        with self._lock:
            (self.root / name).unlink(missing_ok=True)
        logger.info("media event=deleted name=%s", name)

    def read_url(self, media_url: str) -> str:
        return media_url

    def _blob_name(self, media_url: str) -> str | None:
        parts = parse.urlsplit(media_url)
        base = parse.urlsplit(self.base_url)
        if parts.netloc != base.netloc:
            return None
        prefix = f"{base.path}/"
        path = parts.path
        if not path.startswith(prefix):
            return None
        name = path[len(prefix) :]
        if not name or "/" in name or name.startswith("."):
            return None
        return name


class InMemoryMediaStore:
    """Keeps blobs in a dict; for tests and throwaway sessions."""

    def __init__(self, base_url: str = "memory://media") -> None:
        self.base_url = base_url.rstrip("/")
        self.blobs: dict[str, tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def upload(self, data: bytes, *, extension: str, content_type: str) -> str:
        url = f"{self.base_url}/{uuid.uuid4()}.{extension.lstrip('.')}"
        with self._lock:
            self.blobs[url] = (data, content_type)
        return url

    def delete(self, media_url: str) -> None:
        with self._lock:
            self.blobs.pop(media_url, None)

    def read_url(self, media_url: str) -> str:
        return media_url
