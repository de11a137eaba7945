"""Helper client for fetching metadata from Cinemeta-compatible add-ons."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from ..models import Meta

logger = logging.getLogger(__name__)


class MetadataAddonClient:
    """Wrapper around the ``meta`` endpoint of Cinemeta-compatible add-ons."""

    _META_PATH = "/meta/{type}/{id}.json"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_urls: Iterable[str | None] = (),
    ) -> None:
        self._client = http_client
        self._base_urls: list[str] = []
        for url in base_urls:
            normalized = self._normalize_base_url(url)
            if normalized and normalized not in self._base_urls:
                self._base_urls.append(normalized)
        self._semaphore = asyncio.Semaphore(8)

    @property
    def base_urls(self) -> tuple[str, ...]:
        return tuple(self._base_urls)

    async def fetch_meta(self, content_type: str, content_id: str) -> Meta | None:
        """Return the first add-on ``meta`` payload found for the title."""

        normalized_id = (content_id or "").strip()
        if not normalized_id:
            return None

        path = self._META_PATH.format(
            type=quote(content_type, safe=""),
            id=quote(normalized_id, safe=":"),
        )
        for base_url in self._base_urls:
            meta = await self._fetch_from(f"{base_url}{path}", base_url)
            if meta is not None:
                return meta
        return None

    async def _fetch_from(self, url: str, base_url: str) -> Meta | None:
        try:
            async with self._semaphore:
                response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Metadata add-on lookup failed via %s: %s", base_url, exc)
            return None

        try:
            payload = response.json()
        except ValueError:
            return None
        meta = payload.get("meta") if isinstance(payload, dict) else None
        if not isinstance(meta, dict):
            return None
        try:
            return Meta.model_validate(meta)
        except ValidationError as exc:
            logger.warning("Malformed metadata payload from %s: %s", base_url, exc)
            return None

    @staticmethod
    def _normalize_base_url(value: str | None) -> str | None:
        if not value:
            return None
        normalized = value.strip()
        if not normalized:
            return None
        normalized = normalized.split("?", 1)[0].rstrip("/")
        lowered = normalized.lower()
        for suffix in ("/manifest.json", "/manifest"):
            if lowered.endswith(suffix):
                normalized = normalized[: -len(suffix)].rstrip("/")
                break
        return normalized or None
