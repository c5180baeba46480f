from __future__ import annotations

import logging

from .errors import NotFoundError
from .media import MediaStore
from .models import GenerationPage, GenerationRecord, NewGeneration
from .storage import GenerationStorage

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class HistoryService:
    """History CRUD on top of a storage backend and the media store."""

    def __init__(
        self,
        *,
        storage: GenerationStorage,
        media_store: MediaStore,
        default_owner_id: str = "default",
        page_size: int = 50,
    ) -> None:
        self.storage = storage
        self.media_store = media_store
        self.default_owner_id = default_owner_id
        self.page_size = page_size

    def save(self, payload: NewGeneration) -> GenerationRecord:
        owner_id = payload.owner_id or self.default_owner_id
        record = self.storage.save_generation(payload, owner_id=owner_id)
        logger.info(
            "history event=saved generation_id=%s owner_id=%s mode=%s",
            record.id,
            owner_id,
            record.mode,
        )
        return record

    def list(
        self,
        owner_id: str | None = None,
        *,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> GenerationPage:
        requested = self.page_size if limit is None else limit
        effective_limit = min(max(requested, 1), MAX_PAGE_SIZE)
        page = self.storage.list_generations(
            owner_id or self.default_owner_id,
            limit=effective_limit,
            cursor=cursor or None,
        )
        page.generations = [self._readable(record) for record in page.generations]
        return page

    def get(self, generation_id: str, owner_id: str | None = None) -> GenerationRecord:
        record = self.storage.get_generation(generation_id, owner_id or self.default_owner_id)
        if record is None:
            raise NotFoundError("Generation not found")
        return self._readable(record)

    def delete(self, generation_id: str, owner_id: str | None = None) -> GenerationRecord:
        owner = owner_id or self.default_owner_id
        record = self.storage.delete_generation(generation_id, owner)
        if record is None:
            raise NotFoundError("Generation not found")
        media_url = record.result.media_url
        if media_url:
            try:
                self.media_store.delete(media_url)
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "history event=media_delete_failed generation_id=%s media_url=%s reason=%s",
                    generation_id,
                    media_url,
                    exc,
                )
        logger.info("history event=deleted generation_id=%s owner_id=%s", generation_id, owner)
        return record

    def _readable(self, record: GenerationRecord) -> GenerationRecord:
        """Swap the stored media URL for one a client can fetch right now."""
        media_url = record.result.media_url
        if media_url:
            record.result.media_url = self.media_store.read_url(media_url)
        return record
