from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from threading import Lock
from typing import Any, Literal, Protocol
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from campaign_tracker.repositories.video_stats_repository import VideoStatsSink
from campaign_tracker.services.batching import chunk_video_ids, dedupe_video_ids
from campaign_tracker.services.youtube_client import (
    MAX_IDS_PER_REQUEST,
    summarize_exception_message,
)
from campaign_tracker.telemetry import TelemetryClient

LOGGER = logging.getLogger("campaign_tracker.view_sync")

SyncTrigger = Literal["scheduled", "manual", "specific"]


class ViewCountClient(Protocol):
    def bulk_fetch_view_counts(self, video_ids: Sequence[str]) -> dict[str, int]:
        ...


class SyncAlreadyRunningError(RuntimeError):
    def __init__(self) -> None:
        super().__init__("Update is already in progress")


@dataclass(frozen=True)
class BatchConfig:
    max_per_batch: int = MAX_IDS_PER_REQUEST
    inter_batch_delay_ms: int = 1_000

    def __post_init__(self) -> None:
        if not 1 <= self.max_per_batch <= MAX_IDS_PER_REQUEST:
            raise ValueError(
                f"max_per_batch must be between 1 and {MAX_IDS_PER_REQUEST}, "
                f"got {self.max_per_batch}"
            )
        if self.inter_batch_delay_ms < 0:
            raise ValueError("inter_batch_delay_ms must not be negative")


@dataclass(frozen=True)
class JobResult:
    success: bool
    updated_count: int
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CleanupResult:
    deleted_count: int


@dataclass
class _RunProgress:
    updated_count: int = 0
    errors: list[str] = field(default_factory=list)


class ViewSyncService:
    """
    Single-flight view-count synchronization.

    Full, specific-id and scheduled runs all go through one non-blocking lock, so
    at most one run is active per service instance and a concurrent caller gets
    `SyncAlreadyRunningError` instead of waiting.
    """

    def __init__(
        self,
        client: ViewCountClient,
        stats_repository: VideoStatsSink,
        *,
        batch_config: BatchConfig | None = None,
        telemetry: TelemetryClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._stats_repository = stats_repository
        self._batch_config = batch_config if batch_config is not None else BatchConfig()
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._sleep = sleep
        self._run_lock = Lock()

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    @property
    def batch_config(self) -> BatchConfig:
        return self._batch_config

    def update_batch_config(
        self,
        *,
        max_per_batch: int | None = None,
        inter_batch_delay_ms: int | None = None,
    ) -> BatchConfig:
        updates: dict[str, int] = {}
        if max_per_batch is not None:
            updates["max_per_batch"] = max_per_batch
        if inter_batch_delay_ms is not None:
            updates["inter_batch_delay_ms"] = inter_batch_delay_ms
        # Runs snapshot the config on entry, so an in-flight run is unaffected.
        self._batch_config = replace(self._batch_config, **updates)
        return self._batch_config

    def run_full_sync(self, *, trigger: SyncTrigger = "manual") -> JobResult:
        with self._exclusive_run(trigger=trigger) as (run_id, config):
            progress = _RunProgress()
            started_at = time.perf_counter()
            with self._telemetry.timed("view_sync.run", run_id=run_id, trigger=trigger) as outcome:
                try:
                    LOGGER.info("view sync started trigger=%s", trigger)
                    active_video_ids = self._stats_repository.find_active_video_ids()
                    if not active_video_ids:
                        LOGGER.info("view sync found no active video ids")
                        outcome.update(requested=0, updated=0, errors=0, success=True)
                        return JobResult(success=True, updated_count=0, errors=[])

                    LOGGER.info("view sync found %s active video ids", len(active_video_ids))
                    self._process_batches(active_video_ids, config=config, progress=progress)
                except Exception as exc:
                    return self._critical_failure(exc, progress=progress, outcome=outcome)

                total = len(active_video_ids)
                result = JobResult(
                    success=len(progress.errors) < total / 2,
                    updated_count=progress.updated_count,
                    errors=list(progress.errors),
                )
                self._log_completion(result, total=total, started_at=started_at)
                outcome.update(
                    requested=total,
                    updated=result.updated_count,
                    errors=len(result.errors),
                    success=result.success,
                )
                return result

    def run_specific_sync(self, video_ids: Sequence[str]) -> JobResult:
        # Empty input returns before the run lock is taken.
        requested_ids = dedupe_video_ids(video_ids)
        if not requested_ids:
            return JobResult(success=True, updated_count=0, errors=[])

        with self._exclusive_run(trigger="specific") as (run_id, config):
            progress = _RunProgress()
            started_at = time.perf_counter()
            with self._telemetry.timed(
                "view_sync.run",
                run_id=run_id,
                trigger="specific",
            ) as outcome:
                try:
                    LOGGER.info("view sync updating %s specific video ids", len(requested_ids))
                    self._process_batches(requested_ids, config=config, progress=progress)
                except Exception as exc:
                    return self._critical_failure(exc, progress=progress, outcome=outcome)

                result = JobResult(
                    success=not progress.errors,
                    updated_count=progress.updated_count,
                    errors=list(progress.errors),
                )
                self._log_completion(result, total=len(requested_ids), started_at=started_at)
                outcome.update(
                    requested=len(requested_ids),
                    updated=result.updated_count,
                    errors=len(result.errors),
                    success=result.success,
                )
                return result

    def cleanup_stale(self) -> CleanupResult:
        LOGGER.info("view stats cleanup started")
        try:
            deleted_count = self._stats_repository.delete_unused()
        except Exception:
            LOGGER.error("view stats cleanup failed", exc_info=True)
            raise
        LOGGER.info("view stats cleanup removed %s stale rows", deleted_count)
        self._telemetry.emit("view_sync.cleanup.finish", deleted=deleted_count)
        return CleanupResult(deleted_count=deleted_count)

    @contextmanager
    def _exclusive_run(self, *, trigger: SyncTrigger) -> Iterator[tuple[str, BatchConfig]]:
        if not self._run_lock.acquire(blocking=False):
            LOGGER.info("view sync already running; rejecting trigger=%s", trigger)
            raise SyncAlreadyRunningError()

        run_id = uuid4().hex
        context_tokens = bind_contextvars(sync_run_id=run_id, sync_trigger=trigger)
        try:
            yield run_id, self._batch_config
        finally:
            reset_contextvars(**context_tokens)
            self._run_lock.release()

    def _process_batches(
        self,
        video_ids: Sequence[str],
        *,
        config: BatchConfig,
        progress: _RunProgress,
    ) -> None:
        batches = chunk_video_ids(video_ids, config.max_per_batch)
        total_batches = len(batches)

        for index, batch in enumerate(batches, start=1):
            LOGGER.info(
                "view sync processing batch %s/%s size=%s",
                index,
                total_batches,
                len(batch),
            )
            try:
                view_counts = self._client.bulk_fetch_view_counts(batch)
            except Exception as exc:
                message = (
                    f"Failed to process batch {index}/{total_batches}: "
                    f"{summarize_exception_message(exc)}"
                )
                LOGGER.error(message)
                progress.errors.append(message)
            else:
                self._persist_batch(batch, view_counts, progress=progress)

            if index < total_batches and config.inter_batch_delay_ms > 0:
                self._sleep(config.inter_batch_delay_ms / 1000)

    def _persist_batch(
        self,
        batch: Sequence[str],
        view_counts: dict[str, int],
        *,
        progress: _RunProgress,
    ) -> None:
        for video_id in batch:
            if video_id not in view_counts:
                message = f"No view count data received for {video_id}"
                LOGGER.warning(message)
                progress.errors.append(message)
                continue

            view_count = view_counts[video_id]
            try:
                self._stats_repository.upsert(video_id, view_count)
            except Exception as exc:
                message = f"Failed to update {video_id}: {summarize_exception_message(exc)}"
                LOGGER.error(message)
                progress.errors.append(message)
                continue

            progress.updated_count += 1
            LOGGER.debug("view sync updated video_id=%s views=%s", video_id, view_count)

    def _critical_failure(
        self,
        exc: Exception,
        *,
        progress: _RunProgress,
        outcome: dict[str, Any],
    ) -> JobResult:
        message = f"Critical error in view count update: {summarize_exception_message(exc)}"
        LOGGER.error(message, exc_info=True)
        progress.errors.append(message)
        outcome.update(
            updated=progress.updated_count,
            errors=len(progress.errors),
            success=False,
            critical=True,
        )
        return JobResult(
            success=False,
            updated_count=progress.updated_count,
            errors=list(progress.errors),
        )

    def _log_completion(self, result: JobResult, *, total: int, started_at: float) -> None:
        LOGGER.info(
            "view sync finished updated=%s/%s errors=%s success=%s duration_ms=%s",
            result.updated_count,
            total,
            len(result.errors),
            result.success,
            int((time.perf_counter() - started_at) * 1000),
        )
