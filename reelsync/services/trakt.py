"""Utilities for communicating with the Trakt API."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

import httpx

from ..config import Settings
from ..flows import MutableState

logger = logging.getLogger(__name__)


class TraktClient:
    """Thin wrapper around the Trakt sync endpoints used for watch progress.

    Every method takes the ``Authorization`` header value and returns the raw
    response; :class:`TraktAuthService` supplies the header.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client

    def _headers(self, authorization: str) -> dict[str, str]:
        headers = {
            "trakt-api-version": "2",
            "User-Agent": f"{self._settings.app_name} (reelsync)",
            "Authorization": authorization,
        }
        if self._settings.trakt_client_id:
            headers["trakt-api-key"] = self._settings.trakt_client_id
        return headers

    async def get_playback(self, authorization: str, content_type: str) -> httpx.Response:
        """List paused playback entries for ``movies`` or ``episodes``."""

        return await self._client.get(
            f"/sync/playback/{content_type}", headers=self._headers(authorization)
        )

    async def get_episode_history(
        self, authorization: str, *, page: int = 1, limit: int = 100
    ) -> httpx.Response:
        return await self._client.get(
            "/sync/history/episodes",
            headers=self._headers(authorization),
            params={"page": page, "limit": limit},
        )

    async def get_show_progress_watched(
        self, authorization: str, show_id: str
    ) -> httpx.Response:
        return await self._client.get(
            f"/shows/{show_id}/progress/watched",
            headers=self._headers(authorization),
            params={"hidden": "false", "specials": "false", "count_specials": "false"},
        )

    async def delete_playback(self, authorization: str, playback_id: int) -> httpx.Response:
        return await self._client.delete(
            f"/sync/playback/{playback_id}", headers=self._headers(authorization)
        )

    async def remove_history(
        self, authorization: str, body: dict[str, Any]
    ) -> httpx.Response:
        return await self._client.post(
            "/sync/history/remove", headers=self._headers(authorization), json=body
        )


class TraktAuthService:
    """Holds the Trakt bearer token and runs requests that need it.

    ``auth_state`` flips whenever a token is stored or cleared; progress
    routing observes it.
    """

    def __init__(self, settings: Settings):
        self._access_token = (settings.trakt_access_token or "").strip() or None
        self.auth_state: MutableState[bool] = MutableState(self._access_token is not None)

    @property
    def is_authenticated(self) -> bool:
        return self.auth_state.value

    def set_access_token(self, access_token: str | None) -> None:
        self._access_token = (access_token or "").strip() or None
        self.auth_state.set(self._access_token is not None)

    def clear(self) -> None:
        self.set_access_token(None)

    async def execute_authorized_request(
        self, call: Callable[[str], Awaitable[httpx.Response]]
    ) -> httpx.Response | None:
        """Run ``call`` with a bearer header; ``None`` means no usable response."""

        if self._access_token is None:
            logger.info("Trakt credentials missing, skipping authorized request")
            return None
        try:
            response = await call(f"Bearer {self._access_token}")
        except httpx.HTTPError as exc:
            logger.warning("Transient error talking to Trakt (%s): %s", exc.__class__.__name__, exc)
            return None
        if response.status_code in (401, 403):
            logger.warning(
                "Trakt rejected credentials for %s (%s)",
                response.request.url.path,
                response.status_code,
            )
            return None
        return response
