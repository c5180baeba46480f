"""Process-wide collaborators, built once at startup and passed in explicitly."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .auth import StaticTokenProvider
from .generation_client import GenerationClient, OpenAIGenerationClient
from .history import HistoryService
from .lifecycle import LifecycleController, SessionRegistry
from .media import LocalMediaStore, MediaStore
from .settings import Settings
from .storage import GenerationStorage, InMemoryGenerationStorage, PostgresGenerationStorage

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    client: GenerationClient
    storage: GenerationStorage
    media_store: MediaStore
    history: HistoryService
    sessions: SessionRegistry

    def controller_for(self, owner_id: str) -> LifecycleController:
        return self.sessions.get(owner_id)


def build_runtime(
    settings: Settings,
    *,
    client: GenerationClient | None = None,
    storage: GenerationStorage | None = None,
    media_store: MediaStore | None = None,
) -> Runtime:
    """Wire every collaborator from settings; any of them can be overridden."""
    client = client or build_generation_client(settings)
    storage = storage or build_storage(settings)
    media_store = media_store or LocalMediaStore(settings.media_dir, settings.media_base_url)
    history = HistoryService(
        storage=storage,
        media_store=media_store,
        default_owner_id=settings.default_owner_id,
        page_size=settings.history_page_size,
    )

    def make_controller(owner_id: str) -> LifecycleController:
        return LifecycleController(
            client=client,
            history=history,
            media_store=media_store,
            owner_id=owner_id,
            default_image_size=settings.default_image_size,
            default_video_size=settings.default_video_size,
            default_video_seconds=settings.default_video_seconds,
            poll_interval_s=settings.poll_interval_s,
            poll_timeout_s=settings.poll_timeout_s,
        )

    return Runtime(
        settings=settings,
        client=client,
        storage=storage,
        media_store=media_store,
        history=history,
        sessions=SessionRegistry(make_controller),
    )


def build_generation_client(settings: Settings) -> OpenAIGenerationClient:
    return OpenAIGenerationClient(
        endpoint=settings.resolved_endpoint(),
        token_provider=StaticTokenProvider(settings.resolved_api_key()),
        image_model=settings.image_model,
        video_model=settings.video_model,
        timeout_s=settings.request_timeout_s,
    )


def build_storage(settings: Settings) -> GenerationStorage:
    database_url = settings.resolved_database_url()
    if not database_url:
        logger.warning("history event=in_memory reason=no_database_url")
        return InMemoryGenerationStorage()
    return PostgresGenerationStorage(database_url)
