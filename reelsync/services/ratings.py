"""Aggregated MDBList ratings with request coalescing and a TTL cache."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Callable

import httpx

from ..config import RATING_PROVIDERS, Settings
from ..ids import IdResolver, normalize_media_type
from ..models import Meta, RatingBundle
from .mdblist import MDBListClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CacheEntry:
    """Cached aggregation result; ``result`` is ``None`` when nothing was rated."""

    result: RatingBundle | None
    expires_at: float


class RatingService:
    """Fan rating lookups out to every enabled MDBList provider.

    Results are cached per title, provider selection and API key. Concurrent
    callers asking for the same key share a single outbound fan-out.
    """

    def __init__(
        self,
        settings: Settings,
        mdblist_client: MDBListClient,
        id_resolver: IdResolver,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._settings = settings
        self._mdblist = mdblist_client
        self._ids = id_resolver
        self._clock = clock
        self._cache: dict[str, CacheEntry] = {}
        self._in_flight: dict[str, asyncio.Task[RatingBundle | None]] = {}
        self._in_flight_lock = asyncio.Lock()

    @property
    def cache_ttl_seconds(self) -> int:
        return self._settings.mdblist_cache_seconds

    def enabled_providers(self) -> list[str]:
        selected = set(self._settings.mdblist_providers)
        return [provider for provider in RATING_PROVIDERS if provider in selected]

    async def get_ratings(
        self,
        meta: Meta,
        fallback_item_id: str,
        fallback_item_type: str,
    ) -> RatingBundle | None:
        """Return the merged ratings for ``meta`` or ``None`` when unavailable."""

        if not self._settings.mdblist_enabled:
            return None

        api_key = self._settings.mdblist_api_key.strip()
        if not api_key:
            return None

        providers = self.enabled_providers()
        if not providers:
            return None

        media_type = normalize_media_type(meta.type or fallback_item_type)
        imdb_id = await self._ids.resolve_imdb_id(
            meta.id, fallback_item_id, fallback_item_type, media_type
        )
        if imdb_id is None:
            return None

        cache_key = self.cache_key(media_type, imdb_id, providers, api_key)
        cached = self._cache.get(cache_key)
        if cached is not None:
            if cached.expires_at > self._clock():
                return cached.result
            self._cache.pop(cache_key, None)

        async with self._in_flight_lock:
            task = self._in_flight.get(cache_key)
            if task is None:
                fresh = self._cache.get(cache_key)
                if fresh is not None and fresh.expires_at > self._clock():
                    return fresh.result
                task = asyncio.create_task(
                    self._fetch_and_store(cache_key, imdb_id, media_type, api_key, providers)
                )
                self._in_flight[cache_key] = task

        # Shield so that a cancelled caller never cancels the shared fetch.
        return await asyncio.shield(task)

    def clear_cache(self) -> None:
        self._cache.clear()

    @staticmethod
    def cache_key(
        media_type: str, imdb_id: str, providers: list[str], api_key: str
    ) -> str:
        provider_hash = ",".join(sorted(providers))
        digest = hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:12]
        return f"{media_type}:{imdb_id}:{provider_hash}:{digest}"

    async def _fetch_and_store(
        self,
        cache_key: str,
        imdb_id: str,
        media_type: str,
        api_key: str,
        providers: list[str],
    ) -> RatingBundle | None:
        try:
            result = await self._fetch_ratings(imdb_id, media_type, api_key, providers)
            self._cache[cache_key] = CacheEntry(
                result=result,
                expires_at=self._clock() + self.cache_ttl_seconds,
            )
            return result
        finally:
            async with self._in_flight_lock:
                self._in_flight.pop(cache_key, None)

    async def _fetch_ratings(
        self,
        imdb_id: str,
        media_type: str,
        api_key: str,
        providers: list[str],
    ) -> RatingBundle | None:
        semaphore = asyncio.Semaphore(self._settings.mdblist_max_concurrency)

        async def _bounded(provider: str) -> tuple[str, float | None]:
            async with semaphore:
                return await self._fetch_provider_rating(
                    media_type, provider, api_key, imdb_id
                )

        results = dict(await asyncio.gather(*(_bounded(p) for p in providers)))
        ratings = RatingBundle(**results)
        if ratings.is_empty():
            return None
        return ratings

    async def _fetch_provider_rating(
        self,
        media_type: str,
        provider: str,
        api_key: str,
        imdb_id: str,
    ) -> tuple[str, float | None]:
        try:
            response = await self._mdblist.get_rating(
                media_type, provider, api_key=api_key, ids=[imdb_id]
            )
        except httpx.HTTPError as exc:
            logger.warning("Error fetching %s rating for %s: %s", provider, imdb_id, exc)
            return provider, None
        except Exception:
            # Only this provider is lost; the shared fetch keeps going.
            logger.warning(
                "Unexpected error fetching %s rating for %s", provider, imdb_id, exc_info=True
            )
            return provider, None

        if not response.is_success:
            logger.warning(
                "Failed %s rating for %s (%s)", provider, imdb_id, response.status_code
            )
            return provider, None
        return provider, self._mdblist.parse_first_rating(response)
