from __future__ import annotations

from dataclasses import dataclass

from campaign_tracker.config import AppSettings
from campaign_tracker.repositories.database import Database
from campaign_tracker.repositories.video_stats_repository import VideoStatsRepository
from campaign_tracker.repositories.youtube_quota_repository import YouTubeQuotaRepository
from campaign_tracker.services.fake_youtube_provider import FakeVideoProvider
from campaign_tracker.services.rate_limiter import FixedWindowRateLimiter
from campaign_tracker.services.view_sync_scheduler import ViewSyncScheduler
from campaign_tracker.services.view_sync_service import BatchConfig, ViewSyncService
from campaign_tracker.services.youtube_client import RateLimitedYouTubeClient, RetryPolicy
from campaign_tracker.services.youtube_provider import VideoProvider, YouTubeDataApiProvider
from campaign_tracker.telemetry import TelemetryClient, build_telemetry_client

SCHEDULER_LOCK_FILENAME = "view-sync-scheduler.lock"


@dataclass(frozen=True)
class AppContainer:
    settings: AppSettings
    database: Database
    stats_repository: VideoStatsRepository
    quota_repository: YouTubeQuotaRepository
    provider: VideoProvider
    client: RateLimitedYouTubeClient
    runner: ViewSyncService
    scheduler: ViewSyncScheduler
    telemetry: TelemetryClient


def build_provider(settings: AppSettings) -> VideoProvider:
    if settings.youtube_provider == "fake":
        return FakeVideoProvider()
    return YouTubeDataApiProvider(
        settings.youtube_api_key or "",
        http_timeout_seconds=settings.youtube_http_timeout_seconds,
    )


def build_container(
    settings: AppSettings,
    *,
    provider: VideoProvider | None = None,
) -> AppContainer:
    database = Database(settings.db_path)
    database.initialize()

    telemetry = build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )
    stats_repository = VideoStatsRepository(database)
    quota_repository = YouTubeQuotaRepository(database)
    resolved_provider = provider if provider is not None else build_provider(settings)

    client = RateLimitedYouTubeClient(
        resolved_provider,
        rate_limiter=FixedWindowRateLimiter(
            max_requests=settings.youtube_rate_limit_max_requests,
            window_seconds=settings.youtube_rate_limit_window_seconds,
        ),
        retry_policy=RetryPolicy(
            max_retries=settings.youtube_max_retries,
            retry_delay_base_ms=settings.youtube_retry_delay_ms,
        ),
        daily_quota_limit=settings.youtube_daily_quota_limit,
        quota_warning_percent=settings.youtube_quota_warning_percent,
        quota_repository=quota_repository,
        health_check_video_id=settings.youtube_health_check_video_id,
    )
    runner = ViewSyncService(
        client,
        stats_repository,
        batch_config=BatchConfig(
            max_per_batch=settings.view_sync_max_videos_per_batch,
            inter_batch_delay_ms=settings.view_sync_batch_delay_ms,
        ),
        telemetry=telemetry,
    )
    scheduler = ViewSyncScheduler(
        runner,
        enabled=settings.view_sync_enabled,
        schedule=settings.view_sync_schedule,
        timezone=settings.view_sync_timezone,
        telemetry=telemetry,
        client=client,
        lock_path=(
            settings.data_dir / SCHEDULER_LOCK_FILENAME
            if settings.scheduler_lock_enabled
            else None
        ),
    )

    return AppContainer(
        settings=settings,
        database=database,
        stats_repository=stats_repository,
        quota_repository=quota_repository,
        provider=resolved_provider,
        client=client,
        runner=runner,
        scheduler=scheduler,
        telemetry=telemetry,
    )
