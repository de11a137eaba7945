"""Watch progress reconciled from the Trakt sync API."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, AsyncIterator

from ..config import Settings
from ..flows import distinct_until_changed, map_latest
from ..ids import normalize_content_id, parse_content_ids, to_trakt_ids, to_trakt_path_id
from ..models import (
    SOURCE_TRAKT_HISTORY,
    SOURCE_TRAKT_PLAYBACK,
    SOURCE_TRAKT_SHOW_PROGRESS,
    ProgressRecord,
)
from .metadata_addon import MetadataAddonClient
from .trakt import TraktAuthService, TraktClient

logger = logging.getLogger(__name__)

EpisodeKey = tuple[int, int]

_EPISODE_LOOKUP_TYPES = ("series", "tv")


class TraktProgressService:
    """Recomputing view over Trakt playback, history and show progress.

    Nothing is persisted here apart from the episode video id memo; every
    refresh rebuilds the snapshot from the remote API.
    """

    def __init__(
        self,
        settings: Settings,
        trakt_client: TraktClient,
        auth_service: TraktAuthService,
        metadata_client: MetadataAddonClient,
    ):
        self._settings = settings
        self._trakt = trakt_client
        self._auth = auth_service
        self._metadata = metadata_client
        self._refresh_listeners: set[asyncio.Event] = set()
        self._episode_video_ids: dict[str, str] = {}

    def refresh_now(self) -> None:
        """Ask every subscriber to rebuild its snapshot."""

        for listener in self._refresh_listeners:
            listener.set()

    def observe_all_progress(self) -> AsyncIterator[list[ProgressRecord]]:
        return distinct_until_changed(
            map_latest(
                self._refresh_events(),
                lambda _: self.fetch_all_progress_snapshot(),
            )
        )

    def observe_episode_progress(
        self, content_id: str
    ) -> AsyncIterator[dict[EpisodeKey, ProgressRecord]]:
        return distinct_until_changed(
            map_latest(
                self._refresh_events(),
                lambda _: self.fetch_episode_progress_snapshot(content_id),
            )
        )

    async def _refresh_events(self) -> AsyncIterator[None]:
        """Emit once on subscription, on every tick and on refresh signals.

        A signal raised while the previous one is still pending is dropped.
        """

        loop = asyncio.get_running_loop()
        interval = self._settings.progress_refresh_seconds
        signal = asyncio.Event()
        self._refresh_listeners.add(signal)
        try:
            yield None
            next_tick = loop.time() + interval
            while True:
                timeout = max(0.0, next_tick - loop.time())
                try:
                    await asyncio.wait_for(signal.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    next_tick += interval
                signal.clear()
                yield None
        finally:
            self._refresh_listeners.discard(signal)

    async def fetch_all_progress_snapshot(self) -> list[ProgressRecord]:
        """Merge history and paused playback into one record per title/episode."""

        playback_movies, playback_episodes, history = await asyncio.gather(
            self._get_playback("movies"),
            self._get_playback("episodes"),
            self._get_episode_history(limit=self._settings.trakt_history_limit),
        )
        movies = [self._map_playback_movie(item) for item in playback_movies]
        # Video ids resolve one at a time so every lookup gets its whole timeout.
        episodes = [await self._map_playback_episode(item) for item in playback_episodes]
        history_records = [await self._map_episode_history(item) for item in history]

        merged: dict[str, ProgressRecord] = {}
        # In-progress entries are applied last so a rewatch beats a finished watch.
        for record in _newest_first(history_records):
            merged[record.merge_key] = record
        for record in _newest_first([*movies, *episodes]):
            merged[record.merge_key] = record

        return sorted(merged.values(), key=lambda record: record.last_watched, reverse=True)

    async def fetch_episode_progress_snapshot(
        self, content_id: str
    ) -> dict[EpisodeKey, ProgressRecord]:
        """Return per-episode progress for one show keyed by (season, episode)."""

        path_id = to_trakt_path_id(content_id)
        progress: dict[EpisodeKey, ProgressRecord] = {}

        response = await self._auth.execute_authorized_request(
            lambda auth: self._trakt.get_show_progress_watched(auth, path_id)
        )
        payload = _json_body(response, expected=dict, context=f"show progress {path_id}")
        if payload:
            for season in payload.get("seasons") or []:
                if not isinstance(season, dict):
                    continue
                for record in self._map_season_progress(content_id, season):
                    progress[(record.season, record.episode)] = record  # type: ignore[index]

        playback = await self._get_playback("episodes")
        for item in playback:
            if normalize_content_id(_ids_of(item.get("show"))) != content_id:
                continue
            record = await self._map_playback_episode(item)
            if record is None or record.content_id != content_id:
                continue
            progress[(record.season, record.episode)] = record  # type: ignore[index]

        return progress

    async def remove_progress(
        self,
        content_id: str,
        season: int | None = None,
        episode: int | None = None,
    ) -> None:
        """Delete paused playback and watch history for a title or one episode."""

        playback_movies, playback_episodes = await asyncio.gather(
            self._get_playback("movies"),
            self._get_playback("episodes"),
        )
        target = content_id.strip()
        episode_scoped = season is not None and episode is not None

        playback_ids: list[int] = []
        for item in playback_movies:
            if normalize_content_id(_ids_of(item.get("movie"))) == target:
                playback_ids.extend(_int_list(item.get("id")))
        for item in playback_episodes:
            if normalize_content_id(_ids_of(item.get("show"))) != target:
                continue
            if episode_scoped:
                details = item.get("episode") or {}
                if details.get("season") != season or details.get("number") != episode:
                    continue
            playback_ids.extend(_int_list(item.get("id")))

        for playback_id in playback_ids:
            await self._auth.execute_authorized_request(
                lambda auth, pid=playback_id: self._trakt.delete_playback(auth, pid)
            )

        ids = to_trakt_ids(parse_content_ids(content_id))
        if not ids:
            logger.info("No Trakt ids for %s, skipping history removal", content_id)
            self.refresh_now()
            return

        likely_series = episode_scoped or any(
            normalize_content_id(_ids_of(item.get("show"))) == target
            for item in playback_episodes
        )
        body = self.build_history_removal(ids, likely_series, season, episode)
        response = await self._auth.execute_authorized_request(
            lambda auth: self._trakt.remove_history(auth, body)
        )
        if response is not None and not response.is_success:
            logger.warning(
                "Trakt history removal for %s failed (%s)", content_id, response.status_code
            )

        self.refresh_now()

    @staticmethod
    def build_history_removal(
        ids: dict[str, Any],
        likely_series: bool,
        season: int | None,
        episode: int | None,
    ) -> dict[str, Any]:
        if not likely_series:
            return {"movies": [{"ids": ids}]}
        show: dict[str, Any] = {"ids": ids}
        if season is not None and episode is not None:
            show["seasons"] = [{"number": season, "episodes": [{"number": episode}]}]
        return {"shows": [show]}

    async def resolve_episode_video_id(
        self, content_id: str, season: int, episode: int
    ) -> str:
        """Find the add-on video id for an episode, falling back to ``id:s:e``."""

        key = f"{content_id}:{season}:{episode}"
        cached = self._episode_video_ids.get(key)
        if cached is not None:
            return cached

        candidates = [content_id]
        for prefix in ("tmdb:", "trakt:"):
            if content_id.startswith(prefix):
                candidates.append(content_id[len(prefix):])

        timeout = self._settings.episode_lookup_timeout_seconds
        for candidate in dict.fromkeys(candidates):
            for lookup_type in _EPISODE_LOOKUP_TYPES:
                try:
                    meta = await asyncio.wait_for(
                        self._metadata.fetch_meta(lookup_type, candidate), timeout=timeout
                    )
                except asyncio.TimeoutError:
                    logger.debug("Episode lookup for %s (%s) timed out", candidate, lookup_type)
                    continue
                if meta is None:
                    continue
                video = meta.find_video(season, episode)
                if video is not None and video.id:
                    self._episode_video_ids[key] = video.id
                    return video.id

        return key

    async def _get_playback(self, content_type: str) -> list[dict[str, Any]]:
        response = await self._auth.execute_authorized_request(
            lambda auth: self._trakt.get_playback(auth, content_type)
        )
        return _json_body(response, expected=list, context=f"playback {content_type}") or []

    async def _get_episode_history(self, *, limit: int) -> list[dict[str, Any]]:
        response = await self._auth.execute_authorized_request(
            lambda auth: self._trakt.get_episode_history(auth, page=1, limit=limit)
        )
        return _json_body(response, expected=list, context="episode history") or []

    def _map_playback_movie(self, item: dict[str, Any]) -> ProgressRecord | None:
        movie = item.get("movie")
        if not isinstance(movie, dict):
            return None
        content_id = normalize_content_id(_ids_of(movie))
        if not content_id:
            return None
        return ProgressRecord(
            content_id=content_id,
            content_type="movie",
            name=movie.get("title") or content_id,
            video_id=content_id,
            last_watched=parse_iso_to_millis(item.get("paused_at")),
            progress_percent=_clamp_percent(item.get("progress")),
            source=SOURCE_TRAKT_PLAYBACK,
            trakt_playback_id=_as_int(item.get("id")),
            trakt_movie_id=_as_int(_ids_of(movie).get("trakt")),
        )

    async def _map_playback_episode(self, item: dict[str, Any]) -> ProgressRecord | None:
        parsed = await self._map_episode(item, timestamp_field="paused_at")
        if parsed is None:
            return None
        fields, show, details = parsed
        return ProgressRecord(
            **fields,
            progress_percent=_clamp_percent(item.get("progress")),
            source=SOURCE_TRAKT_PLAYBACK,
            trakt_playback_id=_as_int(item.get("id")),
            trakt_show_id=_as_int(_ids_of(show).get("trakt")),
            trakt_episode_id=_as_int(_ids_of(details).get("trakt")),
        )

    async def _map_episode_history(self, item: dict[str, Any]) -> ProgressRecord | None:
        parsed = await self._map_episode(item, timestamp_field="watched_at")
        if parsed is None:
            return None
        fields, show, details = parsed
        return ProgressRecord(
            **fields,
            position=1,
            duration=1,
            progress_percent=100.0,
            source=SOURCE_TRAKT_HISTORY,
            trakt_show_id=_as_int(_ids_of(show).get("trakt")),
            trakt_episode_id=_as_int(_ids_of(details).get("trakt")),
        )

    async def _map_episode(
        self, item: dict[str, Any], *, timestamp_field: str
    ) -> tuple[dict[str, Any], dict[str, Any], dict[str, Any]] | None:
        show = item.get("show")
        details = item.get("episode")
        if not isinstance(show, dict) or not isinstance(details, dict):
            return None
        season = _as_int(details.get("season"))
        number = _as_int(details.get("number"))
        if season is None or number is None:
            return None
        content_id = normalize_content_id(_ids_of(show))
        if not content_id:
            return None

        video_id = await self.resolve_episode_video_id(content_id, season, number)
        fields = {
            "content_id": content_id,
            "content_type": "series",
            "name": show.get("title") or content_id,
            "video_id": video_id,
            "season": season,
            "episode": number,
            "episode_title": details.get("title"),
            "last_watched": parse_iso_to_millis(item.get(timestamp_field)),
        }
        return fields, show, details

    @staticmethod
    def _map_season_progress(
        content_id: str, season: dict[str, Any]
    ) -> list[ProgressRecord]:
        season_number = _as_int(season.get("number"))
        if season_number is None:
            return []
        records: list[ProgressRecord] = []
        for episode in season.get("episodes") or []:
            if not isinstance(episode, dict) or episode.get("completed") is not True:
                continue
            episode_number = _as_int(episode.get("number"))
            if episode_number is None:
                continue
            records.append(
                ProgressRecord(
                    content_id=content_id,
                    content_type="series",
                    name=content_id,
                    video_id=f"{content_id}:{season_number}:{episode_number}",
                    season=season_number,
                    episode=episode_number,
                    position=1,
                    duration=1,
                    last_watched=parse_iso_to_millis(episode.get("last_watched_at")),
                    progress_percent=100.0,
                    source=SOURCE_TRAKT_SHOW_PROGRESS,
                )
            )
        return records


def parse_iso_to_millis(value: Any) -> int:
    """Convert a Trakt ISO-8601 timestamp to epoch milliseconds (0 if invalid)."""

    if not isinstance(value, str) or not value:
        return 0
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return 0
    return int(parsed.timestamp() * 1000)


def _newest_first(records: list[ProgressRecord | None]) -> list[ProgressRecord]:
    present = [record for record in records if record is not None]
    return sorted(present, key=lambda record: record.last_watched, reverse=True)


def _json_body(response: Any, *, expected: type, context: str) -> Any:
    if response is None:
        return None
    if not response.is_success:
        logger.warning("Failed to fetch Trakt %s: %s", context, response.status_code)
        return None
    try:
        payload = response.json()
    except ValueError:
        logger.warning("Unexpected non-JSON Trakt response for %s", context)
        return None
    if not isinstance(payload, expected):
        logger.warning("Unexpected Trakt response structure for %s", context)
        return None
    if isinstance(payload, list):
        return [entry for entry in payload if isinstance(entry, dict)]
    return payload


def _ids_of(media: Any) -> dict[str, Any]:
    if not isinstance(media, dict):
        return {}
    ids = media.get("ids")
    return ids if isinstance(ids, dict) else {}


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _int_list(value: Any) -> list[int]:
    parsed = _as_int(value)
    return [] if parsed is None else [parsed]


def _clamp_percent(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return max(0.0, min(float(value), 100.0))
