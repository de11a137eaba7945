"""Watch progress routed to Trakt or the local store depending on sign-in."""

from __future__ import annotations

import logging
from typing import AsyncIterator, Callable, TypeVar

from .flows import MutableState, flat_map_latest, map_values
from .local_store import LocalProgressStore
from .models import ProgressRecord
from .services.progress import EpisodeKey, TraktProgressService

logger = logging.getLogger(__name__)

T = TypeVar("T")


class WatchProgressRepository:
    """Single entry point for progress reads and writes.

    Reads follow the authentication state: when it flips, the active stream is
    torn down and rebuilt against the other source without the subscriber
    having to resubscribe. Writes other than removal only touch the local
    store, since Trakt progress is written by scrobbling instead.
    """

    def __init__(
        self,
        local_store: LocalProgressStore,
        auth_state: MutableState[bool],
        progress_service: TraktProgressService,
    ):
        self._local = local_store
        self._auth_state = auth_state
        self._remote = progress_service

    def all_progress(self) -> AsyncIterator[list[ProgressRecord]]:
        return self._route(
            self._remote.observe_all_progress,
            self._local.observe_all,
        )

    def continue_watching(self) -> AsyncIterator[list[ProgressRecord]]:
        return map_values(
            self.all_progress(),
            lambda records: [record for record in records if record.is_in_progress()],
        )

    def get_progress(self, content_id: str) -> AsyncIterator[ProgressRecord | None]:
        def _latest(records: list[ProgressRecord]) -> ProgressRecord | None:
            matching = [record for record in records if record.content_id == content_id]
            return max(matching, key=lambda record: record.last_watched, default=None)

        return self._route(
            lambda: map_values(self._remote.observe_all_progress(), _latest),
            lambda: self._local.observe_progress(content_id),
        )

    def get_episode_progress(
        self, content_id: str, season: int, episode: int
    ) -> AsyncIterator[ProgressRecord | None]:
        def _match(records: list[ProgressRecord]) -> ProgressRecord | None:
            for record in records:
                if (
                    record.content_id == content_id
                    and record.season == season
                    and record.episode == episode
                ):
                    return record
            return None

        return self._route(
            lambda: map_values(self._remote.observe_all_progress(), _match),
            lambda: self._local.observe_episode_progress(content_id, season, episode),
        )

    def get_all_episode_progress(
        self, content_id: str
    ) -> AsyncIterator[dict[EpisodeKey, ProgressRecord]]:
        return self._route(
            lambda: self._remote.observe_episode_progress(content_id),
            lambda: self._local.observe_all_episode_progress(content_id),
        )

    async def save_progress(self, record: ProgressRecord) -> None:
        if self._auth_state.value:
            return
        await self._local.save_progress(record)

    async def mark_as_completed(self, record: ProgressRecord) -> None:
        if self._auth_state.value:
            return
        await self._local.mark_as_completed(record)

    async def clear_all(self) -> None:
        if self._auth_state.value:
            return
        await self._local.clear_all()

    async def remove_progress(
        self,
        content_id: str,
        season: int | None = None,
        episode: int | None = None,
    ) -> None:
        if self._auth_state.value:
            await self._remote.remove_progress(content_id, season, episode)
            return
        await self._local.remove_progress(content_id, season, episode)

    def _route(
        self,
        remote: Callable[[], AsyncIterator[T]],
        local: Callable[[], AsyncIterator[T]],
    ) -> AsyncIterator[T]:
        def _select(authenticated: bool) -> AsyncIterator[T]:
            logger.debug("Progress source switched to %s", "trakt" if authenticated else "local")
            return remote() if authenticated else local()

        return flat_map_latest(self._auth_state.observe(), _select)
