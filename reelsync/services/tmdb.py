"""Utilities for mapping identifiers through The Movie Database (TMDB)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..config import Settings
from ..ids import extract_imdb_id, extract_tmdb_id

logger = logging.getLogger(__name__)


class TMDBClient:
    """Client responsible for converting between TMDB and IMDb identifiers."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.tmdb_api_key:
            raise ValueError("TMDB API key is required when initialising TMDBClient")
        self._settings = settings
        self._client = http_client

    async def tmdb_to_imdb(self, tmdb_id: int, content_type: str) -> str | None:
        """Return the IMDb id for a TMDB movie or show."""

        endpoint = f"/{self._segment(content_type)}/{tmdb_id}/external_ids"
        payload = await self._get(endpoint, params={})
        if not payload:
            return None
        imdb_id = payload.get("imdb_id")
        if isinstance(imdb_id, str) and imdb_id.startswith("tt"):
            return imdb_id
        return None

    async def ensure_tmdb_id(self, raw_id: str, content_type: str) -> int | None:
        """Return a TMDB id for ``raw_id``, looking IMDb ids up when needed."""

        tmdb_id = extract_tmdb_id(raw_id)
        if tmdb_id is not None:
            return tmdb_id
        trimmed = (raw_id or "").strip()
        if trimmed.isdigit():
            return int(trimmed)

        imdb_id = extract_imdb_id(trimmed)
        if not imdb_id:
            return None
        payload = await self._get(
            f"/find/{imdb_id}", params={"external_source": "imdb_id"}
        )
        if not payload:
            return None
        key = "movie_results" if self._segment(content_type) == "movie" else "tv_results"
        results = payload.get(key) or []
        if not isinstance(results, list) or not results:
            return None
        first = results[0]
        if isinstance(first, dict) and isinstance(first.get("id"), int):
            return first["id"]
        return None

    async def _get(self, endpoint: str, *, params: dict[str, Any]) -> dict[str, Any] | None:
        query = {**params, "api_key": self._settings.tmdb_api_key}
        try:
            response = await self._client.get(endpoint, params=query)
        except httpx.HTTPError as exc:
            logger.warning("TMDB request to %s failed: %s", endpoint, exc)
            return None
        if response.status_code >= 400:
            logger.debug("TMDB request to %s failed: %s", endpoint, response.text)
            return None
        try:
            payload = response.json()
        except ValueError:
            return None
        if not isinstance(payload, dict):
            return None
        return payload

    @staticmethod
    def _segment(content_type: str) -> str:
        lowered = (content_type or "").strip().lower()
        if lowered in {"series", "tv", "show", "tvshow"}:
            return "tv"
        return "movie"
