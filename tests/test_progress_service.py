"""Tests for the Trakt progress reconciliation service."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable

import httpx

from reelsync.config import Settings
from reelsync.models import SOURCE_TRAKT_HISTORY, SOURCE_TRAKT_PLAYBACK, SOURCE_TRAKT_SHOW_PROGRESS
from reelsync.services.metadata_addon import MetadataAddonClient
from reelsync.services.progress import TraktProgressService, parse_iso_to_millis
from reelsync.services.trakt import TraktAuthService, TraktClient

SHOW_IDS = {"trakt": 1390, "imdb": "tt0944947", "tmdb": 1399}


def build_settings(**overrides: Any) -> Settings:
    base = {
        "TRAKT_CLIENT_ID": "client-id",
        "TRAKT_ACCESS_TOKEN": "access-token",
        "METADATA_ADDON_URLS": "https://meta.example.com",
    }
    base.update(overrides)
    return Settings(_env_file=None, **base)  # type: ignore[arg-type]


def movie_playback(playback_id: int, imdb: str, progress: float, paused_at: str) -> dict[str, Any]:
    return {
        "id": playback_id,
        "progress": progress,
        "paused_at": paused_at,
        "type": "movie",
        "movie": {"title": f"Movie {imdb}", "ids": {"imdb": imdb, "trakt": playback_id * 10}},
    }


def episode_entry(
    *,
    season: int,
    number: int,
    timestamp_field: str,
    timestamp: str,
    entry_id: int,
    progress: float | None = None,
) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "id": entry_id,
        timestamp_field: timestamp,
        "show": {"title": "Game of Thrones", "ids": SHOW_IDS},
        "episode": {
            "season": season,
            "number": number,
            "title": f"Episode {season}x{number}",
            "ids": {"trakt": entry_id * 7},
        },
    }
    if progress is not None:
        entry["progress"] = progress
    return entry


class FakeTrakt:
    """Routes Trakt sync requests to canned payloads and records them."""

    def __init__(
        self,
        *,
        movies: list[dict[str, Any]] | None = None,
        episodes: list[dict[str, Any]] | None = None,
        history: list[dict[str, Any]] | None = None,
        show_progress: dict[str, Any] | None = None,
        status_overrides: dict[str, int] | None = None,
    ):
        self.movies = movies or []
        self.episodes = episodes or []
        self.history = history or []
        self.show_progress = show_progress or {"seasons": []}
        self.status_overrides = status_overrides or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.status_overrides:
            return httpx.Response(self.status_overrides[path], json={})
        if request.method == "GET" and path == "/sync/playback/movies":
            return httpx.Response(200, json=self.movies)
        if request.method == "GET" and path == "/sync/playback/episodes":
            return httpx.Response(200, json=self.episodes)
        if request.method == "GET" and path == "/sync/history/episodes":
            return httpx.Response(200, json=self.history)
        if request.method == "GET" and path.endswith("/progress/watched"):
            return httpx.Response(200, json=self.show_progress)
        if request.method == "DELETE" and path.startswith("/sync/playback/"):
            return httpx.Response(204)
        if request.method == "POST" and path == "/sync/history/remove":
            return httpx.Response(200, json={"deleted": {}})
        return httpx.Response(404, json={})

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]


def meta_handler(videos: dict[str, list[dict[str, Any]]], requests: list[httpx.Request]):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        # /meta/{type}/{id}.json
        content_id = request.url.path.rsplit("/", 1)[-1].removesuffix(".json")
        if content_id not in videos:
            return httpx.Response(404, json={})
        return httpx.Response(200, json={"meta": {"id": content_id, "type": "series", "videos": videos[content_id]}})

    return handler


async def run_with_service(
    trakt: FakeTrakt,
    body: Callable[[TraktProgressService], Awaitable[Any]],
    *,
    settings: Settings | None = None,
    meta: Callable[[httpx.Request], Any] | None = None,
) -> Any:
    settings = settings or build_settings()
    meta = meta or meta_handler({}, [])
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(trakt), base_url="https://api.trakt.example"
    ) as trakt_http, httpx.AsyncClient(transport=httpx.MockTransport(meta)) as meta_http:
        service = TraktProgressService(
            settings,
            TraktClient(settings, trakt_http),
            TraktAuthService(settings),
            MetadataAddonClient(meta_http, settings.metadata_addon_urls),
        )
        return await body(service)


def test_in_progress_entry_overrides_completed_history() -> None:
    trakt = FakeTrakt(
        movies=[movie_playback(11, "tt0111161", 41.5, "2024-03-01T20:00:00.000Z")],
        episodes=[
            episode_entry(
                season=1, number=2, timestamp_field="paused_at",
                timestamp="2024-02-01T20:00:00.000Z", entry_id=21, progress=30.0,
            )
        ],
        history=[
            episode_entry(
                season=1, number=2, timestamp_field="watched_at",
                timestamp="2024-02-10T20:00:00.000Z", entry_id=31,
            ),
            episode_entry(
                season=1, number=1, timestamp_field="watched_at",
                timestamp="2024-01-01T20:00:00.000Z", entry_id=32,
            ),
        ],
    )

    snapshot = asyncio.run(run_with_service(trakt, lambda s: s.fetch_all_progress_snapshot()))

    assert [(r.content_id, r.season, r.episode) for r in snapshot] == [
        ("tt0111161", None, None),
        ("tt0944947", 1, 2),
        ("tt0944947", 1, 1),
    ]
    rewatch = snapshot[1]
    assert rewatch.source == SOURCE_TRAKT_PLAYBACK
    assert rewatch.progress_percent == 30.0
    assert rewatch.trakt_playback_id == 21
    assert rewatch.is_in_progress()
    finished = snapshot[2]
    assert finished.source == SOURCE_TRAKT_HISTORY
    assert finished.is_completed()
    assert finished.video_id == "tt0944947:1:1"
    assert trakt.calls("GET", "/sync/history/episodes")[0].url.params["limit"] == "100"
    assert trakt.requests[0].headers["Authorization"] == "Bearer access-token"
    assert trakt.requests[0].headers["trakt-api-key"] == "client-id"


def test_snapshot_is_empty_without_credentials() -> None:
    trakt = FakeTrakt(movies=[movie_playback(11, "tt0111161", 41.5, "2024-03-01T20:00:00.000Z")])

    snapshot = asyncio.run(
        run_with_service(
            trakt,
            lambda s: s.fetch_all_progress_snapshot(),
            settings=build_settings(TRAKT_ACCESS_TOKEN=None),
        )
    )

    assert snapshot == []
    assert trakt.requests == []


def test_failing_source_degrades_to_empty_without_affecting_others() -> None:
    trakt = FakeTrakt(
        movies=[movie_playback(11, "tt0111161", 41.5, "2024-03-01T20:00:00.000Z")],
        history=[
            episode_entry(
                season=1, number=1, timestamp_field="watched_at",
                timestamp="2024-01-01T20:00:00.000Z", entry_id=32,
            )
        ],
        status_overrides={"/sync/history/episodes": 503, "/sync/playback/episodes": 401},
    )

    snapshot = asyncio.run(run_with_service(trakt, lambda s: s.fetch_all_progress_snapshot()))

    assert [record.content_id for record in snapshot] == ["tt0111161"]


def test_episode_progress_combines_show_progress_and_playback() -> None:
    trakt = FakeTrakt(
        episodes=[
            episode_entry(
                season=1, number=2, timestamp_field="paused_at",
                timestamp="2024-02-01T20:00:00.000Z", entry_id=21, progress=55.0,
            )
        ],
        show_progress={
            "seasons": [
                {
                    "number": 1,
                    "episodes": [
                        {"number": 1, "completed": True, "last_watched_at": "2024-01-01T20:00:00.000Z"},
                        {"number": 2, "completed": True, "last_watched_at": "2024-01-02T20:00:00.000Z"},
                        {"number": 3, "completed": False, "last_watched_at": None},
                    ],
                }
            ]
        },
    )

    progress = asyncio.run(
        run_with_service(trakt, lambda s: s.fetch_episode_progress_snapshot("tt0944947"))
    )

    assert sorted(progress) == [(1, 1), (1, 2)]
    assert progress[(1, 1)].source == SOURCE_TRAKT_SHOW_PROGRESS
    assert progress[(1, 2)].source == SOURCE_TRAKT_PLAYBACK
    assert trakt.calls("GET", "/shows/tt0944947/progress/watched")


def test_remove_movie_issues_movie_shaped_history_removal() -> None:
    trakt = FakeTrakt(
        movies=[
            movie_playback(11, "tt0111161", 41.5, "2024-03-01T20:00:00.000Z"),
            movie_playback(12, "tt0068646", 10.0, "2024-03-02T20:00:00.000Z"),
        ]
    )

    asyncio.run(run_with_service(trakt, lambda s: s.remove_progress("tt0111161", None, None)))

    assert [r.url.path for r in trakt.requests if r.method == "DELETE"] == ["/sync/playback/11"]
    (removal,) = trakt.calls("POST", "/sync/history/remove")
    assert json.loads(removal.content) == {"movies": [{"ids": {"imdb": "tt0111161"}}]}


def test_remove_episode_issues_episode_scoped_removal() -> None:
    trakt = FakeTrakt(
        episodes=[
            episode_entry(
                season=2, number=5, timestamp_field="paused_at",
                timestamp="2024-02-01T20:00:00.000Z", entry_id=25, progress=20.0,
            ),
            episode_entry(
                season=2, number=6, timestamp_field="paused_at",
                timestamp="2024-02-02T20:00:00.000Z", entry_id=26, progress=20.0,
            ),
        ]
    )

    asyncio.run(run_with_service(trakt, lambda s: s.remove_progress("tt0944947", 2, 5)))

    assert [r.url.path for r in trakt.requests if r.method == "DELETE"] == ["/sync/playback/25"]
    (removal,) = trakt.calls("POST", "/sync/history/remove")
    assert json.loads(removal.content) == {
        "shows": [
            {
                "ids": {"imdb": "tt0944947"},
                "seasons": [{"number": 2, "episodes": [{"number": 5}]}],
            }
        ]
    }


def test_remove_whole_show_detected_from_playback() -> None:
    trakt = FakeTrakt(
        episodes=[
            episode_entry(
                season=2, number=5, timestamp_field="paused_at",
                timestamp="2024-02-01T20:00:00.000Z", entry_id=25, progress=20.0,
            ),
        ]
    )

    asyncio.run(run_with_service(trakt, lambda s: s.remove_progress("tt0944947")))

    (removal,) = trakt.calls("POST", "/sync/history/remove")
    assert json.loads(removal.content) == {"shows": [{"ids": {"imdb": "tt0944947"}}]}


def test_remove_without_remote_ids_only_refreshes() -> None:
    trakt = FakeTrakt()

    async def scenario(service: TraktProgressService) -> None:
        # Snapshots are identical here, so watch the raw refresh trigger.
        events = service._refresh_events()
        await anext(events)
        await service.remove_progress("kitsu:12")
        await asyncio.wait_for(anext(events), timeout=1)
        await events.aclose()

    asyncio.run(run_with_service(trakt, scenario))
    assert trakt.calls("POST", "/sync/history/remove") == []


def test_observe_all_progress_recomputes_on_refresh_signal() -> None:
    trakt = FakeTrakt()

    async def scenario(service: TraktProgressService) -> list[list[str]]:
        stream = service.observe_all_progress()
        seen = [[r.content_id for r in await anext(stream)]]
        trakt.movies = [movie_playback(11, "tt0111161", 41.5, "2024-03-01T20:00:00.000Z")]
        service.refresh_now()
        seen.append([r.content_id for r in await asyncio.wait_for(anext(stream), timeout=1)])
        await stream.aclose()
        return seen

    assert asyncio.run(run_with_service(trakt, scenario)) == [[], ["tt0111161"]]


def test_observe_all_progress_ticks_periodically() -> None:
    trakt = FakeTrakt()

    async def scenario(service: TraktProgressService) -> list[str]:
        stream = service.observe_all_progress()
        assert await anext(stream) == []
        trakt.movies = [movie_playback(11, "tt0111161", 41.5, "2024-03-01T20:00:00.000Z")]
        latest = await asyncio.wait_for(anext(stream), timeout=1)
        await stream.aclose()
        return [record.content_id for record in latest]

    fast = build_settings(PROGRESS_REFRESH_INTERVAL=0.05)
    assert asyncio.run(run_with_service(trakt, scenario, settings=fast)) == ["tt0111161"]


def test_episode_video_id_is_resolved_and_memoised() -> None:
    meta_requests: list[httpx.Request] = []
    meta = meta_handler(
        {"tmdb:1399": [{"id": "tt0944947:3:4", "season": 3, "episode": 4}]},
        meta_requests,
    )

    async def scenario(service: TraktProgressService) -> tuple[str, str]:
        first = await service.resolve_episode_video_id("tmdb:1399", 3, 4)
        second = await service.resolve_episode_video_id("tmdb:1399", 3, 4)
        return first, second

    first, second = asyncio.run(run_with_service(FakeTrakt(), scenario, meta=meta))

    assert first == second == "tt0944947:3:4"
    assert len(meta_requests) == 1
    assert meta_requests[0].url.path == "/meta/series/tmdb:1399.json"


def test_episode_video_id_tries_stripped_prefix_and_tv_kind() -> None:
    meta_requests: list[httpx.Request] = []
    meta = meta_handler({"1399": [{"id": "custom-1399-3-4", "season": 3, "episode": 4}]}, meta_requests)

    resolved = asyncio.run(
        run_with_service(
            FakeTrakt(), lambda s: s.resolve_episode_video_id("tmdb:1399", 3, 4), meta=meta
        )
    )

    assert resolved == "custom-1399-3-4"
    assert [r.url.path for r in meta_requests] == [
        "/meta/series/tmdb:1399.json",
        "/meta/tv/tmdb:1399.json",
        "/meta/series/1399.json",
    ]


def test_unresolved_episode_falls_back_without_memoising() -> None:
    meta_requests: list[httpx.Request] = []
    meta = meta_handler({}, meta_requests)

    async def scenario(service: TraktProgressService) -> str:
        await service.resolve_episode_video_id("tt0944947", 9, 9)
        return await service.resolve_episode_video_id("tt0944947", 9, 9)

    resolved = asyncio.run(run_with_service(FakeTrakt(), scenario, meta=meta))

    assert resolved == "tt0944947:9:9"
    assert len(meta_requests) == 4


def test_slow_episode_lookup_times_out_to_fallback() -> None:
    async def slow(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1)
        return httpx.Response(200, json={"meta": {"id": "tt0944947", "videos": []}})

    resolved = asyncio.run(
        run_with_service(
            FakeTrakt(),
            lambda s: s.resolve_episode_video_id("tt0944947", 1, 1),
            settings=build_settings(EPISODE_LOOKUP_TIMEOUT=0.02),
            meta=slow,
        )
    )

    assert resolved == "tt0944947:1:1"


def test_parse_iso_to_millis() -> None:
    assert parse_iso_to_millis("1970-01-01T00:00:01.000Z") == 1_000
    assert parse_iso_to_millis("not a date") == 0
    assert parse_iso_to_millis(None) == 0


def test_large_history_gives_each_lookup_its_full_timeout() -> None:
    numbers = range(1, 31)
    history = [
        episode_entry(
            season=1, number=number, timestamp_field="watched_at",
            timestamp=f"2024-01-{number:02d}T20:00:00.000Z", entry_id=100 + number,
        )
        for number in numbers
    ]
    videos = [{"id": f"got-1-{number}", "season": 1, "episode": number} for number in numbers]

    async def slow_addon(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.04)
        return httpx.Response(200, json={"meta": {"id": "tt0944947", "videos": videos}})

    snapshot = asyncio.run(
        run_with_service(
            FakeTrakt(history=history),
            lambda s: s.fetch_all_progress_snapshot(),
            settings=build_settings(EPISODE_LOOKUP_TIMEOUT=0.1),
            meta=slow_addon,
        )
    )

    assert sorted(record.video_id for record in snapshot) == sorted(
        f"got-1-{number}" for number in numbers
    )


class GatedTrakt(FakeTrakt):
    """Holds movie playback responses until ``release`` is set."""

    def __init__(self, **kwargs: Any):
        super().__init__(**kwargs)
        self.gated = False
        self.release = asyncio.Event()

    async def __call__(self, request: httpx.Request) -> httpx.Response:  # type: ignore[override]
        response = super().__call__(request)
        if self.gated and request.url.path == "/sync/playback/movies":
            await self.release.wait()
        return response


async def _until(condition: Callable[[], bool]) -> None:
    async def _poll() -> None:
        while not condition():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout=1)


def test_refresh_signals_during_slow_fetch_collapse_into_one_recompute() -> None:
    trakt = GatedTrakt()

    def movie_requests() -> int:
        return len(trakt.calls("GET", "/sync/playback/movies"))

    async def scenario(service: TraktProgressService) -> list[str]:
        stream = service.observe_all_progress()
        assert await anext(stream) == []
        assert movie_requests() == 1

        trakt.gated = True
        trakt.movies = [movie_playback(11, "tt0111161", 41.5, "2024-03-01T20:00:00.000Z")]
        service.refresh_now()
        await _until(lambda: movie_requests() == 2)

        # Supersedes the stalled fetch; repeated signals before it runs are dropped.
        trakt.movies = [movie_playback(12, "tt0068646", 10.0, "2024-03-02T20:00:00.000Z")]
        service.refresh_now()
        service.refresh_now()
        service.refresh_now()
        await _until(lambda: movie_requests() == 3)

        trakt.release.set()
        latest = await asyncio.wait_for(anext(stream), timeout=1)
        await asyncio.sleep(0.05)
        assert movie_requests() == 3
        await stream.aclose()
        return [record.content_id for record in latest]

    assert asyncio.run(run_with_service(trakt, scenario)) == ["tt0068646"]
