from __future__ import annotations

import math
import threading
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

import pytest
from structlog.contextvars import get_contextvars

from campaign_tracker.repositories.database import Database
from campaign_tracker.repositories.video_stats_repository import (
    VideoStats,
    VideoStatsRepository,
)
from campaign_tracker.services.fake_youtube_provider import (
    FakeProviderConfig,
    FakeVideoProvider,
)
from campaign_tracker.services.rate_limiter import FixedWindowRateLimiter
from campaign_tracker.services.view_sync_service import (
    BatchConfig,
    JobResult,
    SyncAlreadyRunningError,
    ViewSyncService,
)
from campaign_tracker.services.youtube_client import RateLimitedYouTubeClient, RetryPolicy
from campaign_tracker.services.youtube_provider import QuotaExceededError
from campaign_tracker.telemetry import TelemetryClient


class _InMemoryStats:
    def __init__(self, active_video_ids: Sequence[str] = ()) -> None:
        self.active_video_ids = list(active_video_ids)
        self.view_counts: dict[str, int] = {}
        self.failing_ids: set[str] = set()
        self.find_error: Exception | None = None

    def find_active_video_ids(self) -> list[str]:
        if self.find_error is not None:
            raise self.find_error
        return list(self.active_video_ids)

    def upsert(self, video_id: str, view_count: int) -> VideoStats:
        if video_id in self.failing_ids:
            raise RuntimeError("database is locked")
        self.view_counts[video_id] = view_count
        return VideoStats(video_id=video_id, view_count=view_count, last_updated=datetime.now(UTC))

    def delete_unused(self) -> int:
        return 0


class _MappingClient:
    def __init__(self, view_counts: Mapping[str, int]) -> None:
        self._view_counts = dict(view_counts)
        self.batches: list[list[str]] = []
        self.failing_batches: set[int] = set()

    def bulk_fetch_view_counts(self, video_ids: Sequence[str]) -> dict[str, int]:
        self.batches.append(list(video_ids))
        if len(self.batches) in self.failing_batches:
            raise ConnectionError("upstream reset")
        return {
            video_id: self._view_counts[video_id]
            for video_id in video_ids
            if video_id in self._view_counts
        }


class _BlockingClient:
    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()
        self.observed_context: dict[str, Any] = {}

    def bulk_fetch_view_counts(self, video_ids: Sequence[str]) -> dict[str, int]:
        self.observed_context = dict(get_contextvars())
        self.entered.set()
        assert self.release.wait(timeout=5)
        return {video_id: 1 for video_id in video_ids}


class _CaptureSink:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, *, event_name: str, attributes: Mapping[str, Any]) -> None:
        self.events.append((event_name, dict(attributes)))


def _service(
    client: Any,
    stats: Any,
    *,
    max_per_batch: int = 50,
    inter_batch_delay_ms: int = 1_000,
    sleep: Any = None,
    telemetry: TelemetryClient | None = None,
) -> ViewSyncService:
    return ViewSyncService(
        client,
        stats,
        batch_config=BatchConfig(
            max_per_batch=max_per_batch,
            inter_batch_delay_ms=inter_batch_delay_ms,
        ),
        telemetry=telemetry,
        sleep=sleep if sleep is not None else (lambda _seconds: None),
    )


def test_full_sync_updates_every_active_video_in_batches(recording_sleep: Any) -> None:
    stats = _InMemoryStats(["v1", "v2", "v3"])
    client = _MappingClient({"v1": 10, "v2": 20, "v3": 30})
    service = _service(client, stats, max_per_batch=2, sleep=recording_sleep)

    result = service.run_full_sync()

    assert result == JobResult(success=True, updated_count=3, errors=[])
    assert client.batches == [["v1", "v2"], ["v3"]]
    assert stats.view_counts == {"v1": 10, "v2": 20, "v3": 30}
    assert recording_sleep.calls == [1.0]
    assert service.is_running is False


@pytest.mark.parametrize(("count", "batch_size"), [(1, 50), (50, 50), (51, 50), (23, 4)])
def test_full_sync_issues_one_provider_call_per_chunk(count: int, batch_size: int) -> None:
    video_ids = [f"video{index:06d}" for index in range(count)]
    client = _MappingClient({video_id: 1 for video_id in video_ids})
    service = _service(client, _InMemoryStats(video_ids), max_per_batch=batch_size)

    result = service.run_full_sync()

    assert len(client.batches) == math.ceil(count / batch_size)
    assert result.updated_count == count


def test_full_sync_sleeps_between_batches_only(recording_sleep: Any) -> None:
    video_ids = [f"video{index:06d}" for index in range(5)]
    client = _MappingClient({video_id: 1 for video_id in video_ids})
    service = _service(
        client,
        _InMemoryStats(video_ids),
        max_per_batch=2,
        inter_batch_delay_ms=250,
        sleep=recording_sleep,
    )

    service.run_full_sync()
    assert recording_sleep.calls == [0.25, 0.25]

    recording_sleep.calls.clear()
    service.update_batch_config(inter_batch_delay_ms=0)
    service.run_full_sync()
    assert recording_sleep.calls == []


def test_full_sync_with_no_active_videos_succeeds_without_calls() -> None:
    client = _MappingClient({})
    service = _service(client, _InMemoryStats([]))

    assert service.run_full_sync() == JobResult(success=True, updated_count=0, errors=[])
    assert client.batches == []


def test_missing_view_count_is_reported_per_video() -> None:
    stats = _InMemoryStats(["v1", "v2", "v3"])
    client = _MappingClient({"v1": 10, "v3": 30})
    service = _service(client, stats)

    result = service.run_full_sync()

    assert result.updated_count == 2
    assert result.errors == ["No view count data received for v2"]
    # One error out of three is under half.
    assert result.success is True
    assert "v2" not in stats.view_counts


def test_specific_sync_fails_on_any_error() -> None:
    client = _MappingClient({"v1": 10, "v3": 30})
    service = _service(client, _InMemoryStats())

    result = service.run_specific_sync(["v1", "v2", "v3"])

    assert result == JobResult(
        success=False,
        updated_count=2,
        errors=["No view count data received for v2"],
    )


def test_specific_sync_with_empty_input_skips_everything() -> None:
    client = _MappingClient({})
    service = _service(client, _InMemoryStats())

    assert service.run_specific_sync([]) == JobResult(success=True, updated_count=0, errors=[])
    assert client.batches == []
    assert service.is_running is False


def test_specific_sync_deduplicates_ids() -> None:
    client = _MappingClient({"v1": 1, "v2": 2})
    stats = _InMemoryStats()
    service = _service(client, stats)

    result = service.run_specific_sync(["v2", "v1", "v2"])

    assert result.updated_count == 2
    assert client.batches == [["v2", "v1"]]


def test_failed_batch_is_recorded_and_later_batches_still_run() -> None:
    stats = _InMemoryStats(["v1", "v2", "v3", "v4", "v5"])
    client = _MappingClient({video_id: 1 for video_id in stats.active_video_ids})
    client.failing_batches = {1}
    service = _service(client, stats, max_per_batch=2)

    result = service.run_full_sync()

    assert result.errors == ["Failed to process batch 1/3: upstream reset"]
    assert result.updated_count == 3
    assert result.success is True
    assert sorted(stats.view_counts) == ["v3", "v4", "v5"]


def test_failed_upsert_is_recorded_per_video() -> None:
    stats = _InMemoryStats(["v1", "v2"])
    stats.failing_ids = {"v1"}
    service = _service(_MappingClient({"v1": 1, "v2": 2}), stats)

    result = service.run_full_sync()

    assert result.errors == ["Failed to update v1: database is locked"]
    assert result.updated_count == 1
    # One error out of two is not under half.
    assert result.success is False


def test_network_failure_on_every_retry_fails_the_run(recording_sleep: Any) -> None:
    provider = FakeVideoProvider(FakeProviderConfig(simulate_network_error=True))
    client = RateLimitedYouTubeClient(
        provider,
        retry_policy=RetryPolicy(max_retries=3, retry_delay_base_ms=1_000),
        sleep=recording_sleep,
    )
    service = _service(client, _InMemoryStats(["dQw4w9WgXcQ"]))

    result = service.run_full_sync()

    assert result.success is False
    assert result.updated_count == 0
    assert result.errors == [
        "Failed to process batch 1/1: Network error: unable to reach the YouTube API"
    ]
    assert provider.request_count == 3
    assert recording_sleep.calls == [1.0, 2.0]


def test_quota_failure_in_one_batch_leaves_later_batches_running(recording_sleep: Any) -> None:
    provider = FakeVideoProvider()
    provider.fail_next(QuotaExceededError())
    client = RateLimitedYouTubeClient(provider, sleep=recording_sleep)
    stats = _InMemoryStats(["dQw4w9WgXcQ", "jNQXAC9IVRw", "demo1234567"])
    service = _service(client, stats, max_per_batch=1, inter_batch_delay_ms=0)

    result = service.run_full_sync()

    assert result == JobResult(
        success=True,
        updated_count=2,
        errors=["Failed to process batch 1/3: YouTube API quota exceeded"],
    )
    assert stats.view_counts == {"jNQXAC9IVRw": 987_654_321, "demo1234567": 98_765}
    # Quota errors are not retried, so each batch made exactly one request.
    assert provider.request_count == 3
    assert recording_sleep.calls == []


def test_local_rate_limit_fails_each_batch_past_the_window(
    recording_sleep: Any,
    fake_clock: Any,
) -> None:
    provider = FakeVideoProvider()
    client = RateLimitedYouTubeClient(
        provider,
        rate_limiter=FixedWindowRateLimiter(max_requests=1, window_seconds=100, clock=fake_clock),
        sleep=recording_sleep,
    )
    stats = _InMemoryStats(["dQw4w9WgXcQ", "jNQXAC9IVRw", "demo1234567"])
    service = _service(client, stats, max_per_batch=1, inter_batch_delay_ms=0)

    result = service.run_full_sync()

    rate_limited = "Rate limit exceeded. Please wait before making more requests."
    assert result == JobResult(
        success=False,
        updated_count=1,
        errors=[
            f"Failed to process batch 2/3: {rate_limited}",
            f"Failed to process batch 3/3: {rate_limited}",
        ],
    )
    assert stats.view_counts == {"dQw4w9WgXcQ": 1_234_567_890}
    assert provider.request_count == 1
    assert recording_sleep.calls == []

def test_critical_error_is_captured_in_result() -> None:
    stats = _InMemoryStats()
    stats.find_error = RuntimeError("no such table: campaign_links")
    service = _service(_MappingClient({}), stats)

    result = service.run_full_sync()

    assert result == JobResult(
        success=False,
        updated_count=0,
        errors=["Critical error in view count update: no such table: campaign_links"],
    )
    assert service.is_running is False


def test_concurrent_runs_are_rejected_while_a_sync_is_active() -> None:
    client = _BlockingClient()
    service = _service(client, _InMemoryStats(["v1"]))
    results: list[JobResult] = []

    worker = threading.Thread(target=lambda: results.append(service.run_full_sync()))
    worker.start()
    assert client.entered.wait(timeout=5)

    try:
        assert service.is_running is True
        with pytest.raises(SyncAlreadyRunningError, match="Update is already in progress"):
            service.run_full_sync()
        with pytest.raises(SyncAlreadyRunningError):
            service.run_specific_sync(["v2"])
        assert service.run_specific_sync([]).success is True
    finally:
        client.release.set()
        worker.join(timeout=5)

    assert results == [JobResult(success=True, updated_count=1, errors=[])]
    assert service.is_running is False
    assert client.observed_context["sync_trigger"] == "manual"
    assert "sync_run_id" in client.observed_context
    assert "sync_run_id" not in get_contextvars()

    client.release.set()
    assert service.run_full_sync(trigger="scheduled").success is True
    assert client.observed_context["sync_trigger"] == "scheduled"


def test_cleanup_stale_removes_unreferenced_rows(database: Database, link_video: Any) -> None:
    link_video("aaaaaaaaaaa")
    repository = VideoStatsRepository(database)
    repository.upsert("aaaaaaaaaaa", 1)
    repository.upsert("bbbbbbbbbbb", 2)
    service = _service(_MappingClient({}), repository)

    assert service.cleanup_stale().deleted_count == 1
    assert repository.find_by_video_id("bbbbbbbbbbb") is None


def test_cleanup_stale_propagates_persistence_errors() -> None:
    class _BrokenStats(_InMemoryStats):
        def delete_unused(self) -> int:
            raise RuntimeError("disk I/O error")

    service = _service(_MappingClient({}), _BrokenStats())
    with pytest.raises(RuntimeError, match="disk I/O error"):
        service.cleanup_stale()


def test_end_to_end_sync_against_sqlite(database: Database, link_video: Any) -> None:
    for video_id in ("dQw4w9WgXcQ", "jNQXAC9IVRw", "demo1234567"):
        link_video(video_id)
    provider = FakeVideoProvider()
    client = RateLimitedYouTubeClient(provider, sleep=lambda _seconds: None)
    repository = VideoStatsRepository(database)
    service = _service(client, repository, max_per_batch=2, inter_batch_delay_ms=0)

    first = service.run_full_sync()
    second = service.run_full_sync()

    assert first == JobResult(success=True, updated_count=3, errors=[])
    assert second == first
    assert provider.request_count == 4
    stats = repository.find_by_video_id("demo1234567")
    assert stats is not None
    assert stats.view_count == 98_765


def test_runs_emit_timed_telemetry() -> None:
    sink = _CaptureSink()
    service = _service(
        _MappingClient({"v1": 1}),
        _InMemoryStats(["v1", "v2"]),
        telemetry=TelemetryClient(enabled=True, sink=sink),
    )

    service.run_full_sync()

    assert [event_name for event_name, _ in sink.events] == [
        "view_sync.run.start",
        "view_sync.run.finish",
    ]
    finish = sink.events[1][1]
    assert finish["trigger"] == "manual"
    assert finish["requested"] == 2
    assert finish["updated"] == 1
    assert finish["errors"] == 1
    assert finish["success"] is False
    assert isinstance(finish["duration_ms"], int)


def test_update_batch_config_validates_and_applies() -> None:
    service = _service(_MappingClient({}), _InMemoryStats())

    assert service.update_batch_config(max_per_batch=10) == BatchConfig(
        max_per_batch=10,
        inter_batch_delay_ms=1_000,
    )
    with pytest.raises(ValueError):
        service.update_batch_config(max_per_batch=51)
    with pytest.raises(ValueError):
        service.update_batch_config(inter_batch_delay_ms=-5)
    assert service.batch_config.max_per_batch == 10
    assert JobResult(success=True, updated_count=1).to_dict() == {
        "success": True,
        "updated_count": 1,
        "errors": [],
    }
