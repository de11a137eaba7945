"""SQLAlchemy ORM models backing the local progress store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class ProgressRow(Base):
    """Persisted watch progress for a movie or a single episode.

    Movies store ``-1`` for season and episode so the unique key stays usable
    (SQL treats NULLs as distinct).
    """

    __tablename__ = "watch_progress"
    __table_args__ = (
        UniqueConstraint("content_id", "season", "episode", name="uq_progress_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content_id: Mapped[str] = mapped_column(String(200), index=True)
    content_type: Mapped[str] = mapped_column(String(16))
    season: Mapped[int] = mapped_column(Integer, default=-1)
    episode: Mapped[int] = mapped_column(Integer, default=-1)
    name: Mapped[str] = mapped_column(String(500))
    video_id: Mapped[str] = mapped_column(String(300))
    episode_title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    poster: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    position: Mapped[int] = mapped_column(BigInteger, default=0)
    duration: Mapped[int] = mapped_column(BigInteger, default=0)
    progress_percent: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_watched: Mapped[int] = mapped_column(BigInteger, default=0, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
