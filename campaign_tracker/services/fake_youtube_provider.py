from __future__ import annotations

from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from threading import Lock

from campaign_tracker.services.youtube_provider import (
    QuotaExceededError,
    VideoMetadata,
)


class FakeProviderNetworkError(ConnectionError):
    pass


@dataclass(frozen=True)
class FakeProviderConfig:
    simulate_quota_exceeded: bool = False
    simulate_network_error: bool = False
    simulate_not_found: bool = False


_SEED_VIDEOS: tuple[VideoMetadata, ...] = (
    VideoMetadata(
        video_id="dQw4w9WgXcQ",
        title="Rick Astley - Never Gonna Give You Up (Official Video)",
        thumbnail_url="https://i.ytimg.com/vi/dQw4w9WgXcQ/hqdefault.jpg",
        view_count=1_234_567_890,
        channel_title="Rick Astley",
        published_at=datetime(2009, 10, 25, 6, 57, 33, tzinfo=UTC),
    ),
    VideoMetadata(
        video_id="jNQXAC9IVRw",
        title="Me at the zoo",
        thumbnail_url="https://i.ytimg.com/vi/jNQXAC9IVRw/hqdefault.jpg",
        view_count=987_654_321,
        channel_title="jawed",
        published_at=datetime(2005, 4, 23, 19, 31, 24, tzinfo=UTC),
    ),
    VideoMetadata(
        video_id="demo1234567",
        title="Demo Product Launch Video",
        thumbnail_url="https://i.ytimg.com/vi/demo1234567/hqdefault.jpg",
        view_count=98_765,
        channel_title="Product Demo Channel",
        published_at=datetime(2023, 9, 1, 9, 15, tzinfo=UTC),
    ),
)


class FakeVideoProvider:
    """
    In-memory `VideoProvider` for local development and tests.

    Unknown ids are reported with a deterministic synthetic view count unless
    `simulate_not_found` is set, in which case they are omitted like the real API
    omits deleted or private videos. Failures can be forced globally through the
    config flags, or one call at a time with `fail_next`.
    """

    def __init__(
        self,
        config: FakeProviderConfig | None = None,
        *,
        videos: Sequence[VideoMetadata] | None = None,
        seed_defaults: bool = True,
    ) -> None:
        self._config = config if config is not None else FakeProviderConfig()
        self._lock = Lock()
        self._videos: dict[str, VideoMetadata] = {}
        if seed_defaults:
            for video in _SEED_VIDEOS:
                self._videos[video.video_id] = video
        for video in videos or ():
            self._videos[video.video_id] = video
        self._queued_failures: deque[BaseException] = deque()
        self.request_count = 0
        self.requests: list[tuple[str, ...]] = []

    @property
    def config(self) -> FakeProviderConfig:
        return self._config

    def update_config(
        self,
        *,
        simulate_quota_exceeded: bool | None = None,
        simulate_network_error: bool | None = None,
        simulate_not_found: bool | None = None,
    ) -> None:
        updates: dict[str, bool] = {}
        if simulate_quota_exceeded is not None:
            updates["simulate_quota_exceeded"] = simulate_quota_exceeded
        if simulate_network_error is not None:
            updates["simulate_network_error"] = simulate_network_error
        if simulate_not_found is not None:
            updates["simulate_not_found"] = simulate_not_found
        self._config = replace(self._config, **updates)

    def fail_next(self, error: BaseException, *, times: int = 1) -> None:
        with self._lock:
            for _ in range(max(1, times)):
                self._queued_failures.append(error)

    def add_video(
        self,
        video_id: str,
        *,
        view_count: int,
        title: str | None = None,
        channel_title: str | None = "Mock Channel",
    ) -> None:
        self._videos[video_id] = VideoMetadata(
            video_id=video_id,
            title=title or f"Mock Video {video_id}",
            thumbnail_url=f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg",
            view_count=view_count,
            channel_title=channel_title,
            published_at=datetime.now(UTC),
        )

    def remove_video(self, video_id: str) -> None:
        self._videos.pop(video_id, None)

    def clear_videos(self) -> None:
        self._videos.clear()

    def reset_request_count(self) -> None:
        with self._lock:
            self.request_count = 0
            self.requests.clear()

    def fetch_view_counts(self, video_ids: Sequence[str]) -> dict[str, int]:
        self._record_request(video_ids)
        view_counts: dict[str, int] = {}
        for video_id in video_ids:
            video = self._lookup(video_id)
            if video is not None:
                view_counts[video_id] = video.view_count
        return view_counts

    def fetch_video(self, video_id: str) -> VideoMetadata | None:
        self._record_request([video_id])
        return self._lookup(video_id)

    def fetch_videos(self, video_ids: Sequence[str]) -> list[VideoMetadata]:
        self._record_request(video_ids)
        found = (self._lookup(video_id) for video_id in video_ids)
        return [video for video in found if video is not None]

    def _record_request(self, video_ids: Sequence[str]) -> None:
        with self._lock:
            self.request_count += 1
            self.requests.append(tuple(video_ids))
            queued = self._queued_failures.popleft() if self._queued_failures else None

        if queued is not None:
            raise queued
        if self._config.simulate_quota_exceeded:
            raise QuotaExceededError()
        if self._config.simulate_network_error:
            raise FakeProviderNetworkError("Network error: unable to reach the YouTube API")

    def _lookup(self, video_id: str) -> VideoMetadata | None:
        video = self._videos.get(video_id)
        if video is not None:
            return video
        if self._config.simulate_not_found:
            return None
        return VideoMetadata(
            video_id=video_id,
            title=f"Generated Mock Video {video_id}",
            thumbnail_url=f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg",
            view_count=_synthetic_view_count(video_id),
            channel_title="Generated Mock Channel",
            published_at=None,
        )


def _synthetic_view_count(video_id: str) -> int:
    # Stable across runs and processes, unlike hash().
    return 1_000 + sum((index + 1) * ord(char) for index, char in enumerate(video_id)) * 37
