"""Identifier helpers shared by the rating and progress services."""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping, TYPE_CHECKING

from .models import ContentIds

if TYPE_CHECKING:
    from .services.tmdb import TMDBClient

logger = logging.getLogger(__name__)

IMDB_ID_RE = re.compile(r"tt\d+")


def extract_imdb_id(raw_id: str | None) -> str | None:
    """Return the first IMDb id embedded in ``raw_id``."""

    if not raw_id or not raw_id.strip():
        return None
    match = IMDB_ID_RE.search(raw_id)
    return match.group(0) if match else None


def extract_tmdb_id(raw_id: str | None) -> int | None:
    """Return the numeric TMDB id from a ``tmdb:<id>[:...]`` identifier."""

    if not raw_id or not raw_id.strip():
        return None
    trimmed = raw_id.strip()
    if not trimmed.lower().startswith("tmdb:"):
        return None
    return _parse_int(trimmed.split(":", 2)[1])


def extract_trakt_id(raw_id: str | None) -> int | None:
    if not raw_id or not raw_id.strip():
        return None
    trimmed = raw_id.strip()
    if not trimmed.lower().startswith("trakt:"):
        return None
    return _parse_int(trimmed.split(":", 2)[1])


def normalize_media_type(raw_type: str | None) -> str:
    """Map the many spellings of a title kind onto MDBList's ``movie``/``show``."""

    lowered = (raw_type or "").strip().lower()
    if lowered in {"series", "tv", "show", "tvshow"}:
        return "show"
    return "movie"


def parse_content_ids(content_id: str | None) -> ContentIds:
    return ContentIds(
        imdb=extract_imdb_id(content_id),
        tmdb=extract_tmdb_id(content_id),
        trakt=extract_trakt_id(content_id),
    )


def normalize_content_id(ids: Mapping[str, Any] | None) -> str:
    """Build the canonical content id from a Trakt ``ids`` object.

    IMDb ids win, then ``tmdb:<id>``, then ``trakt:<id>``; an empty string
    means the entry cannot be keyed.
    """

    if not ids:
        return ""
    imdb = ids.get("imdb")
    if isinstance(imdb, str) and imdb.strip():
        return imdb.strip()
    tmdb = ids.get("tmdb")
    if tmdb:
        return f"tmdb:{tmdb}"
    trakt = ids.get("trakt")
    if trakt:
        return f"trakt:{trakt}"
    return ""


def to_trakt_ids(parsed: ContentIds) -> dict[str, Any]:
    """Return the ``ids`` body Trakt expects for sync endpoints."""

    return parsed.model_dump(exclude_none=True)


def to_trakt_path_id(content_id: str) -> str:
    """Return the identifier used in Trakt URL paths."""

    trimmed = content_id.strip()
    imdb = extract_imdb_id(trimmed)
    if imdb:
        return imdb
    trakt = extract_trakt_id(trimmed)
    if trakt is not None:
        return str(trakt)
    return trimmed


def _parse_int(value: str) -> int | None:
    value = value.strip()
    if not value.isdigit():
        return None
    return int(value)


def _bare_numeric_id(raw_id: str | None) -> int | None:
    if not raw_id:
        return None
    return _parse_int(raw_id)


class IdResolver:
    """Resolve the IMDb id MDBList needs from whatever id a title carries."""

    def __init__(self, tmdb_client: "TMDBClient | None" = None):
        self._tmdb = tmdb_client

    async def resolve_imdb_id(
        self,
        meta_id: str,
        fallback_item_id: str,
        fallback_item_type: str,
        media_type: str,
    ) -> str | None:
        imdb_id = extract_imdb_id(meta_id) or extract_imdb_id(fallback_item_id)
        if imdb_id:
            return imdb_id
        if self._tmdb is None:
            return None

        tmdb_id = (
            extract_tmdb_id(meta_id)
            or extract_tmdb_id(fallback_item_id)
            or _bare_numeric_id(meta_id)
            or _bare_numeric_id(fallback_item_id)
        )
        if tmdb_id is not None:
            mapped = await self._tmdb.tmdb_to_imdb(tmdb_id, fallback_item_type)
            if mapped:
                return mapped

        lookup_type = fallback_item_type or media_type
        converted = await self._tmdb.ensure_tmdb_id(meta_id, lookup_type)
        if converted is None:
            logger.debug("No TMDB mapping available for %s", meta_id)
            return None
        mapped = await self._tmdb.tmdb_to_imdb(converted, lookup_type)
        if mapped and mapped.startswith("tt"):
            return mapped
        return None
