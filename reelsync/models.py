"""Pydantic models describing ratings, titles and watch progress."""

from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

ContentType = Literal["movie", "series"]
ProgressSource = Literal[
    "trakt_playback",
    "trakt_history",
    "trakt_show_progress",
    "local",
]

SOURCE_LOCAL: ProgressSource = "local"
SOURCE_TRAKT_PLAYBACK: ProgressSource = "trakt_playback"
SOURCE_TRAKT_HISTORY: ProgressSource = "trakt_history"
SOURCE_TRAKT_SHOW_PROGRESS: ProgressSource = "trakt_show_progress"

COMPLETION_THRESHOLD = 0.9


class RatingBundle(BaseModel):
    """Ratings returned by MDBList, one optional value per provider."""

    model_config = ConfigDict(frozen=True)

    trakt: float | None = None
    imdb: float | None = None
    tmdb: float | None = None
    letterboxd: float | None = None
    tomatoes: float | None = None
    audience: float | None = None
    metacritic: float | None = None

    def is_empty(self) -> bool:
        return all(value is None for value in self.model_dump().values())

    @property
    def has_imdb_rating(self) -> bool:
        return self.imdb is not None


class Video(BaseModel):
    """Playable unit (usually an episode) listed on a title."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str | None = Field(
        default=None, validation_alias=AliasChoices("title", "name")
    )
    season: int | None = None
    episode: int | None = Field(
        default=None, validation_alias=AliasChoices("episode", "number")
    )


class Meta(BaseModel):
    """Title metadata as exposed by a Stremio-compatible metadata add-on."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: str = ""
    name: str | None = None
    imdb_id: str | None = None
    videos: list[Video] = Field(default_factory=list)

    def find_video(self, season: int, episode: int) -> Video | None:
        for video in self.videos:
            if video.season == season and video.episode == episode:
                return video
        return None


class ContentIds(BaseModel):
    """Remote identifiers parsed out of a canonical content id."""

    imdb: str | None = None
    tmdb: int | None = None
    trakt: int | None = None

    def has_any_id(self) -> bool:
        return bool(self.imdb or self.tmdb or self.trakt)


class ProgressRecord(BaseModel):
    """Watch state for a movie or a single episode of a series.

    Local records carry ``position``/``duration`` in milliseconds while Trakt
    records carry ``progress_percent``. The ``trakt_*`` ids are only used to
    delete the matching remote entries.
    """

    model_config = ConfigDict(frozen=True)

    content_id: str
    content_type: ContentType
    name: str
    video_id: str
    season: int | None = None
    episode: int | None = None
    episode_title: str | None = None
    poster: str | None = None
    position: int = 0
    duration: int = 0
    last_watched: int = 0
    progress_percent: float | None = None
    source: ProgressSource = SOURCE_LOCAL
    trakt_playback_id: int | None = None
    trakt_movie_id: int | None = None
    trakt_show_id: int | None = None
    trakt_episode_id: int | None = None

    @property
    def progress_fraction(self) -> float:
        if self.progress_percent is not None:
            return max(0.0, min(self.progress_percent / 100.0, 1.0))
        if self.duration <= 0:
            return 0.0
        return max(0.0, min(self.position / self.duration, 1.0))

    @property
    def merge_key(self) -> str:
        """Key under which duplicate records collapse into one."""

        if self.season is not None and self.episode is not None:
            return f"{self.content_id}_s{self.season}e{self.episode}"
        return self.content_id

    def is_completed(self) -> bool:
        return self.progress_fraction >= COMPLETION_THRESHOLD

    def is_in_progress(self) -> bool:
        return 0.0 < self.progress_fraction < COMPLETION_THRESHOLD
