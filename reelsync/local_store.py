"""Local watch progress persisted in SQLite, used while Trakt is not linked."""

from __future__ import annotations

import logging
import time
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db_models import ProgressRow
from .flows import MutableState, distinct_until_changed, map_latest
from .models import SOURCE_LOCAL, ProgressRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NO_EPISODE = -1


class LocalProgressStore:
    """Progress records keyed by (content id, season, episode).

    Every read is exposed as a stream that re-queries after each write.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._version: MutableState[int] = MutableState(0)

    def observe_all(self) -> AsyncIterator[list[ProgressRecord]]:
        return self._observe(self.load_all)

    def observe_progress(self, content_id: str) -> AsyncIterator[ProgressRecord | None]:
        return self._observe(lambda: self._load_latest(content_id))

    def observe_episode_progress(
        self, content_id: str, season: int, episode: int
    ) -> AsyncIterator[ProgressRecord | None]:
        return self._observe(lambda: self._load_episode(content_id, season, episode))

    def observe_all_episode_progress(
        self, content_id: str
    ) -> AsyncIterator[dict[tuple[int, int], ProgressRecord]]:
        return self._observe(lambda: self._load_episodes(content_id))

    async def load_all(self) -> list[ProgressRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProgressRow).order_by(ProgressRow.last_watched.desc())
            )
            return [_to_record(row) for row in result.scalars().all()]

    async def save_progress(self, record: ProgressRecord) -> None:
        season, episode = _key_parts(record.season, record.episode)
        async with self._session_factory() as session:
            async with session.begin():
                row = await _find_row(session, record.content_id, season, episode)
                if row is None:
                    row = ProgressRow(
                        content_id=record.content_id, season=season, episode=episode
                    )
                    session.add(row)
                row.content_type = record.content_type
                row.name = record.name
                row.video_id = record.video_id
                row.episode_title = record.episode_title
                row.poster = record.poster
                row.position = record.position
                row.duration = record.duration
                row.progress_percent = record.progress_percent
                row.last_watched = record.last_watched or _now_millis()
        self._bump()

    async def mark_as_completed(self, record: ProgressRecord) -> None:
        if record.duration > 0:
            completed = record.model_copy(
                update={"position": record.duration, "progress_percent": None}
            )
        else:
            completed = record.model_copy(update={"progress_percent": 100.0})
        await self.save_progress(completed.model_copy(update={"last_watched": _now_millis()}))

    async def remove_progress(
        self,
        content_id: str,
        season: int | None = None,
        episode: int | None = None,
    ) -> None:
        stmt = delete(ProgressRow).where(ProgressRow.content_id == content_id)
        if season is not None and episode is not None:
            stmt = stmt.where(
                ProgressRow.season == season, ProgressRow.episode == episode
            )
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(stmt)
        self._bump()

    async def clear_all(self) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(delete(ProgressRow))
        logger.info("Cleared local watch progress")
        self._bump()

    def _bump(self) -> None:
        self._version.set(self._version.value + 1)

    def _observe(self, loader: Callable[[], Awaitable[T]]) -> AsyncIterator[T]:
        return distinct_until_changed(
            map_latest(self._version.observe(), lambda _: loader())
        )

    async def _load_latest(self, content_id: str) -> ProgressRecord | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProgressRow)
                .where(ProgressRow.content_id == content_id)
                .order_by(ProgressRow.last_watched.desc())
                .limit(1)
            )
            row = result.scalars().first()
            return _to_record(row) if row is not None else None

    async def _load_episode(
        self, content_id: str, season: int, episode: int
    ) -> ProgressRecord | None:
        async with self._session_factory() as session:
            row = await _find_row(session, content_id, season, episode)
            return _to_record(row) if row is not None else None

    async def _load_episodes(self, content_id: str) -> dict[tuple[int, int], ProgressRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProgressRow).where(
                    ProgressRow.content_id == content_id,
                    ProgressRow.season != _NO_EPISODE,
                    ProgressRow.episode != _NO_EPISODE,
                )
            )
            return {
                (row.season, row.episode): _to_record(row)
                for row in result.scalars().all()
            }


async def _find_row(
    session: AsyncSession, content_id: str, season: int, episode: int
) -> ProgressRow | None:
    result = await session.execute(
        select(ProgressRow).where(
            ProgressRow.content_id == content_id,
            ProgressRow.season == season,
            ProgressRow.episode == episode,
        )
    )
    return result.scalars().first()


def _key_parts(season: int | None, episode: int | None) -> tuple[int, int]:
    if season is None or episode is None:
        return _NO_EPISODE, _NO_EPISODE
    return season, episode


def _to_record(row: ProgressRow) -> ProgressRecord:
    has_episode = row.season != _NO_EPISODE and row.episode != _NO_EPISODE
    return ProgressRecord(
        content_id=row.content_id,
        content_type="series" if row.content_type == "series" else "movie",
        name=row.name,
        video_id=row.video_id,
        season=row.season if has_episode else None,
        episode=row.episode if has_episode else None,
        episode_title=row.episode_title,
        poster=row.poster,
        position=row.position,
        duration=row.duration,
        last_watched=row.last_watched,
        progress_percent=row.progress_percent,
        source=SOURCE_LOCAL,
    )


def _now_millis() -> int:
    return int(time.time() * 1000)
