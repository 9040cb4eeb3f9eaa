from __future__ import annotations

import errno
import logging
import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from threading import RLock
from typing import Any, TextIO

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from campaign_tracker.services.view_sync_service import (
    CleanupResult,
    JobResult,
    SyncAlreadyRunningError,
    ViewSyncService,
)
from campaign_tracker.services.youtube_client import RateLimitedYouTubeClient
from campaign_tracker.telemetry import TelemetryClient

LOGGER = logging.getLogger("campaign_tracker.scheduler")
VIEW_SYNC_JOB_ID = "view-count-sync"

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX fallback
    fcntl = None


@dataclass(frozen=True)
class SchedulerStatus:
    enabled: bool
    running: bool
    schedule: str
    timezone: str


def build_cron_trigger(schedule: str, timezone: str) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(schedule, timezone=timezone)
    except (ValueError, KeyError) as exc:
        raise ValueError(
            f"Invalid view sync schedule {schedule!r} (timezone {timezone!r}): {exc}"
        ) from exc


def default_scheduler_factory() -> BackgroundScheduler:
    return BackgroundScheduler(
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 300,
        }
    )


class ViewSyncScheduler:
    """
    Cron trigger and manual entry points for `ViewSyncService`.

    The background scheduler is created lazily on first attach. A single-instance
    file lock keeps several processes sharing a data directory from syncing on the
    same schedule.
    """

    def __init__(
        self,
        runner: ViewSyncService,
        *,
        enabled: bool,
        schedule: str,
        timezone: str,
        telemetry: TelemetryClient | None = None,
        lock_path: Path | None = None,
        client: RateLimitedYouTubeClient | None = None,
        scheduler_factory: Callable[[], Any] = default_scheduler_factory,
    ) -> None:
        build_cron_trigger(schedule, timezone)
        self._runner = runner
        self._client = client
        self._enabled = enabled
        self._schedule = schedule
        self._timezone = timezone
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._process_lock = _ProcessLock(lock_path) if lock_path is not None else None
        self._scheduler_factory = scheduler_factory
        self._scheduler: Any | None = None
        self._job_attached = False
        self._state_lock = RLock()

    @property
    def is_attached(self) -> bool:
        return self._job_attached

    def start(self) -> None:
        with self._state_lock:
            if not self._enabled:
                LOGGER.info("view sync scheduler disabled; not starting")
                return
            if self._job_attached:
                LOGGER.info("view sync scheduler already started")
                return
            self._attach()

    def stop(self) -> None:
        with self._state_lock:
            self._detach()
            scheduler = self._scheduler
            self._scheduler = None
        if scheduler is not None:
            scheduler.shutdown(wait=False)
            LOGGER.info("view sync scheduler stopped")

    def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            enabled=self._enabled,
            running=self._runner.is_running,
            schedule=self._schedule,
            timezone=self._timezone,
        )

    def update_config(
        self,
        *,
        enabled: bool | None = None,
        schedule: str | None = None,
        timezone: str | None = None,
        max_videos_per_batch: int | None = None,
        batch_delay_ms: int | None = None,
        max_retries: int | None = None,
        retry_delay_ms: int | None = None,
    ) -> SchedulerStatus:
        next_schedule = schedule if schedule is not None else self._schedule
        next_timezone = timezone if timezone is not None else self._timezone
        if schedule is not None or timezone is not None:
            build_cron_trigger(next_schedule, next_timezone)

        retry_changed = max_retries is not None or retry_delay_ms is not None
        if retry_changed:
            if self._client is None:
                raise ValueError("retry settings can only be changed with a YouTube client")
            current = self._client.retry_policy
            # Raises before any state changes when the values are invalid.
            replace(
                current,
                max_retries=current.max_retries if max_retries is None else max_retries,
                retry_delay_base_ms=(
                    current.retry_delay_base_ms if retry_delay_ms is None else retry_delay_ms
                ),
            )

        with self._state_lock:
            if max_videos_per_batch is not None or batch_delay_ms is not None:
                self._runner.update_batch_config(
                    max_per_batch=max_videos_per_batch,
                    inter_batch_delay_ms=batch_delay_ms,
                )
            if retry_changed and self._client is not None:
                self._client.update_retry_policy(
                    max_retries=max_retries,
                    retry_delay_base_ms=retry_delay_ms,
                )

            reschedule = schedule is not None or timezone is not None
            if self._job_attached and (reschedule or enabled is False):
                self._detach()

            if enabled is not None:
                self._enabled = enabled
            self._schedule = next_schedule
            self._timezone = next_timezone

            if self._enabled and not self._job_attached:
                self._attach()

        LOGGER.info(
            "view sync scheduler config updated enabled=%s schedule=%s timezone=%s",
            self._enabled,
            self._schedule,
            self._timezone,
        )
        return self.get_status()

    def trigger_full_sync(self) -> JobResult:
        return self._runner.run_full_sync(trigger="manual")

    def trigger_specific_sync(self, video_ids: Sequence[str]) -> JobResult:
        return self._runner.run_specific_sync(video_ids)

    def trigger_cleanup(self) -> CleanupResult:
        return self._runner.cleanup_stale()

    def _run_scheduled(self) -> None:
        try:
            result = self._runner.run_full_sync(trigger="scheduled")
        except SyncAlreadyRunningError:
            LOGGER.info("scheduled view sync skipped; a sync is already in progress")
            self._telemetry.emit("view_sync.scheduled.skipped", reason="already_running")
            return
        except Exception:
            LOGGER.error("scheduled view sync failed", exc_info=True)
            return

        if not result.success:
            LOGGER.warning(
                "scheduled view sync finished with errors updated=%s errors=%s",
                result.updated_count,
                len(result.errors),
            )

    def _attach(self) -> None:
        if self._process_lock is not None and not self._process_lock.acquire():
            LOGGER.info(
                "view sync scheduling skipped; lock held by another process path=%s",
                self._process_lock.path,
            )
            return

        trigger = build_cron_trigger(self._schedule, self._timezone)
        if self._scheduler is None:
            self._scheduler = self._scheduler_factory()
            self._scheduler.start()
        self._scheduler.add_job(
            self._run_scheduled,
            trigger,
            id=VIEW_SYNC_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._job_attached = True
        LOGGER.info(
            "view sync scheduled schedule=%s timezone=%s",
            self._schedule,
            self._timezone,
        )

    def _detach(self) -> None:
        if self._job_attached and self._scheduler is not None:
            self._scheduler.remove_job(VIEW_SYNC_JOB_ID)
            LOGGER.info("view sync schedule detached")
        self._job_attached = False
        if self._process_lock is not None:
            self._process_lock.release()


class _ProcessLock:
    """Non-blocking `flock` on a file; the holder's pid is written into it."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._handle: TextIO | None = None

    def acquire(self) -> bool:
        if self._handle is not None:
            return True
        if fcntl is None:
            LOGGER.warning("file locks unsupported on this platform; scheduling anyway")
            return True

        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            handle.close()
            if exc.errno not in (errno.EACCES, errno.EAGAIN):
                raise
            return False

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        return True

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()
