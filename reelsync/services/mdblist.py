"""Thin client for the MDBList rating endpoints."""

from __future__ import annotations

import logging

import httpx

from ..config import Settings

logger = logging.getLogger(__name__)


class MDBListClient:
    """Wrapper around ``POST /rating/{mediaType}/{ratingType}``."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "User-Agent": f"{self._settings.app_name} (reelsync)",
        }

    async def get_rating(
        self,
        media_type: str,
        rating_type: str,
        *,
        api_key: str,
        ids: list[str],
        provider: str = "imdb",
    ) -> httpx.Response:
        """Request one provider's rating for the given ids.

        Transport errors propagate; callers decide how to degrade.
        """

        return await self._client.post(
            f"/rating/{media_type}/{rating_type}",
            params={"apikey": api_key},
            json={"ids": ids, "provider": provider},
            headers=self._headers(),
            timeout=self._settings.mdblist_request_timeout_seconds,
        )

    @staticmethod
    def parse_first_rating(response: httpx.Response) -> float | None:
        """Return ``ratings[0].rating`` from a rating response body."""

        try:
            payload = response.json()
        except ValueError:
            logger.warning("Unexpected non-JSON MDBList response")
            return None
        if not isinstance(payload, dict):
            return None
        ratings = payload.get("ratings")
        if not isinstance(ratings, list) or not ratings:
            return None
        first = ratings[0]
        if not isinstance(first, dict):
            return None
        value = first.get("rating")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value)
