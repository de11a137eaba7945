"""Entry point for the FastAPI application exposing ratings and progress."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, HTTPException, Response

from .config import settings
from .database import Database
from .flows import first
from .ids import IdResolver
from .local_store import LocalProgressStore
from .models import Meta
from .repository import WatchProgressRepository
from .services.mdblist import MDBListClient
from .services.metadata_addon import MetadataAddonClient
from .services.progress import TraktProgressService
from .services.ratings import RatingService
from .services.tmdb import TMDBClient
from .services.trakt import TraktAuthService, TraktClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app: FastAPI


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    trakt_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.trakt_api_url),
            timeout=httpx.Timeout(20.0, connect=10.0),
        )
    )
    mdblist_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(
            base_url=str(settings.mdblist_api_url),
            timeout=httpx.Timeout(settings.mdblist_request_timeout_seconds, connect=5.0),
        )
    )
    metadata_http = await exit_stack.enter_async_context(
        httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=5.0))
    )
    tmdb_client: TMDBClient | None = None
    if settings.tmdb_api_key:
        tmdb_http = await exit_stack.enter_async_context(
            httpx.AsyncClient(
                base_url=str(settings.tmdb_api_url),
                timeout=httpx.Timeout(10.0, connect=5.0),
            )
        )
        tmdb_client = TMDBClient(settings, tmdb_http)
    else:
        logger.info("TMDB API key missing, id mapping limited to embedded IMDb ids")

    database = Database(settings.database_url)
    await database.create_all()

    auth_service = TraktAuthService(settings)
    metadata_client = MetadataAddonClient(metadata_http, settings.metadata_addon_urls)
    progress_service = TraktProgressService(
        settings, TraktClient(settings, trakt_http), auth_service, metadata_client
    )
    rating_service = RatingService(
        settings, MDBListClient(settings, mdblist_http), IdResolver(tmdb_client)
    )
    repository = WatchProgressRepository(
        LocalProgressStore(database.session_factory),
        auth_service.auth_state,
        progress_service,
    )

    fastapi_app.state.auth_service = auth_service
    fastapi_app.state.progress_service = progress_service
    fastapi_app.state.rating_service = rating_service
    fastapi_app.state.repository = repository
    fastapi_app.state.database = database

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await database.dispose()
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Aggregated ratings and reconciled watch progress",
        version="1.0.0",
        lifespan=lifespan,
    )
    register_routes(fastapi_app)
    return fastapi_app


def _state(fastapi_app: FastAPI, name: str) -> Any:
    value = getattr(fastapi_app.state, name, None)
    if value is None:
        raise RuntimeError(f"{name} not initialised")
    return value


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/health")
    async def health() -> dict[str, Any]:
        auth_service: TraktAuthService = _state(fastapi_app, "auth_service")
        return {"status": "ok", "trakt_authenticated": auth_service.is_authenticated}

    @fastapi_app.get("/ratings/{content_type}/{content_id}")
    async def ratings(content_type: str, content_id: str) -> dict[str, Any]:
        service: RatingService = _state(fastapi_app, "rating_service")
        bundle = await service.get_ratings(
            Meta(id=content_id, type=content_type), content_id, content_type
        )
        if bundle is None:
            raise HTTPException(status_code=404, detail="No ratings available")
        return {"ratings": bundle.model_dump(), "hasImdbRating": bundle.has_imdb_rating}

    @fastapi_app.get("/progress")
    async def all_progress() -> list[dict[str, Any]]:
        repository: WatchProgressRepository = _state(fastapi_app, "repository")
        records = await first(repository.all_progress())
        return [record.model_dump() for record in records]

    @fastapi_app.get("/progress/continue")
    async def continue_watching() -> list[dict[str, Any]]:
        repository: WatchProgressRepository = _state(fastapi_app, "repository")
        records = await first(repository.continue_watching())
        return [record.model_dump() for record in records]

    @fastapi_app.get("/progress/{content_id}/episodes")
    async def episode_progress(content_id: str) -> dict[str, Any]:
        repository: WatchProgressRepository = _state(fastapi_app, "repository")
        progress = await first(repository.get_all_episode_progress(content_id))
        return {
            f"{season}:{episode}": record.model_dump()
            for (season, episode), record in sorted(progress.items())
        }

    @fastapi_app.post("/progress/refresh", status_code=202)
    async def refresh_progress() -> dict[str, str]:
        service: TraktProgressService = _state(fastapi_app, "progress_service")
        service.refresh_now()
        return {"status": "scheduled"}

    @fastapi_app.delete("/progress/{content_id}", status_code=204)
    async def remove_progress(
        content_id: str, season: int | None = None, episode: int | None = None
    ) -> Response:
        if (season is None) != (episode is None):
            raise HTTPException(
                status_code=400, detail="season and episode must be given together"
            )
        repository: WatchProgressRepository = _state(fastapi_app, "repository")
        await repository.remove_progress(content_id, season, episode)
        return Response(status_code=204)


app = create_app()
