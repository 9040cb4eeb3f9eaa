from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from threading import Lock
from typing import TypeVar

from campaign_tracker.repositories.common import utc_now
from campaign_tracker.repositories.youtube_quota_repository import YouTubeQuotaRepository
from campaign_tracker.services.rate_limiter import FixedWindowRateLimiter
from campaign_tracker.services.youtube_provider import (
    QuotaExceededError,
    RateLimitedError,
    VideoMetadata,
    VideoNotFoundError,
    VideoProvider,
    http_status_from_error,
)

LOGGER = logging.getLogger("campaign_tracker.youtube")

MAX_IDS_PER_REQUEST = 50
DEFAULT_HEALTH_CHECK_VIDEO_ID = "dQw4w9WgXcQ"
_QUOTA_HTTP_STATUS = 403

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    retry_delay_base_ms: int = 1_000

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.retry_delay_base_ms < 0:
            raise ValueError("retry_delay_base_ms must not be negative")

    def delay_seconds(self, attempt: int) -> float:
        return (self.retry_delay_base_ms * attempt) / 1000


@dataclass(frozen=True)
class QuotaInfo:
    request_count: int
    window_limit: int
    window_seconds: int
    window_resets_in_seconds: int
    calls_today: int
    daily_limit: int
    daily_warning: bool


class RateLimitedYouTubeClient:
    """
    Provider calls guarded by a local request window, a daily call counter and
    bounded linear-backoff retries.

    Every attempt takes one slot from the window before it is made, so failed
    attempts consume budget the same way the upstream API bills them. Quota
    exhaustion and local rate limiting are never retried.
    """

    def __init__(
        self,
        provider: VideoProvider,
        *,
        rate_limiter: FixedWindowRateLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        max_ids_per_request: int = MAX_IDS_PER_REQUEST,
        daily_quota_limit: int = 10_000,
        quota_warning_percent: float = 0.8,
        quota_repository: YouTubeQuotaRepository | None = None,
        health_check_video_id: str = DEFAULT_HEALTH_CHECK_VIDEO_ID,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._provider = provider
        self._rate_limiter = (
            rate_limiter
            if rate_limiter is not None
            else FixedWindowRateLimiter(max_requests=100, window_seconds=100)
        )
        self._retry_policy = retry_policy if retry_policy is not None else RetryPolicy()
        self._max_ids_per_request = max(1, min(MAX_IDS_PER_REQUEST, max_ids_per_request))
        self._daily_quota_limit = max(0, daily_quota_limit)
        self._quota_warning_threshold = int(
            self._daily_quota_limit * min(1.0, max(0.0, quota_warning_percent))
        )
        self._quota_repository = quota_repository
        self._health_check_video_id = health_check_video_id
        self._sleep = sleep
        self._daily_lock = Lock()
        self._daily_date = utc_now().date().isoformat()
        self._daily_calls = 0
        self._daily_warning_logged = False

    @property
    def max_ids_per_request(self) -> int:
        return self._max_ids_per_request

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def update_retry_policy(
        self,
        *,
        max_retries: int | None = None,
        retry_delay_base_ms: int | None = None,
    ) -> RetryPolicy:
        updates: dict[str, int] = {}
        if max_retries is not None:
            updates["max_retries"] = max_retries
        if retry_delay_base_ms is not None:
            updates["retry_delay_base_ms"] = retry_delay_base_ms
        # Calls already retrying keep the policy they started with.
        self._retry_policy = replace(self._retry_policy, **updates)
        LOGGER.info(
            "youtube retry policy updated max_retries=%s retry_delay_base_ms=%s",
            self._retry_policy.max_retries,
            self._retry_policy.retry_delay_base_ms,
        )
        return self._retry_policy

    def bulk_fetch_view_counts(self, video_ids: Sequence[str]) -> dict[str, int]:
        if not video_ids:
            return {}
        self._check_request_size(video_ids)

        requested = list(video_ids)
        reported = self._call_with_retry(
            "videos.statistics.bulk",
            lambda: self._provider.fetch_view_counts(requested),
        )
        wanted = set(requested)
        return {
            video_id: view_count
            for video_id, view_count in reported.items()
            if video_id in wanted
        }

    def bulk_fetch_metadata(self, video_ids: Sequence[str]) -> list[VideoMetadata]:
        """Metadata for up to one request worth of ids; unknown ids are left out."""
        if not video_ids:
            return []
        self._check_request_size(video_ids)

        requested = list(video_ids)
        videos = self._call_with_retry(
            "videos.metadata.bulk",
            lambda: self._provider.fetch_videos(requested),
        )
        wanted = set(requested)
        return [video for video in videos if video.video_id in wanted]

    def fetch_metadata(self, video_id: str) -> VideoMetadata:
        metadata = self._call_with_retry(
            "videos.metadata",
            lambda: self._provider.fetch_video(video_id),
        )
        if metadata is None:
            raise VideoNotFoundError(video_id)
        return metadata

    def fetch_view_count(self, video_id: str) -> int:
        view_counts = self._call_with_retry(
            "videos.statistics",
            lambda: self._provider.fetch_view_counts([video_id]),
        )
        if video_id not in view_counts:
            raise VideoNotFoundError(video_id)
        return view_counts[video_id]

    def health_check(self) -> bool:
        try:
            self._call_with_retry(
                "health_check",
                lambda: self._provider.fetch_video(self._health_check_video_id),
                max_attempts=1,
            )
        except Exception:
            LOGGER.warning(
                "youtube health_check failed video_id=%s",
                self._health_check_video_id,
                exc_info=True,
            )
            return False
        return True

    def quota_info(self) -> QuotaInfo:
        window = self._rate_limiter.snapshot()
        calls_today = self._calls_today()
        return QuotaInfo(
            request_count=window.request_count,
            window_limit=window.window_limit,
            window_seconds=window.window_seconds,
            window_resets_in_seconds=self._rate_limiter.reset_after_seconds(),
            calls_today=calls_today,
            daily_limit=self._daily_quota_limit,
            daily_warning=(
                self._daily_quota_limit > 0 and calls_today >= self._quota_warning_threshold
            ),
        )

    def _call_with_retry(
        self,
        operation: str,
        call: Callable[[], T],
        *,
        max_attempts: int | None = None,
    ) -> T:
        policy = self._retry_policy
        attempts = policy.max_retries if max_attempts is None else max(1, max_attempts)
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            self._acquire_window_slot(operation)
            self._record_daily_call()
            try:
                return call()
            except QuotaExceededError:
                LOGGER.warning(
                    "youtube quota exceeded operation=%s attempt=%s; not retrying",
                    operation,
                    attempt,
                )
                raise
            except Exception as exc:
                if http_status_from_error(exc) == _QUOTA_HTTP_STATUS:
                    LOGGER.warning(
                        "youtube request forbidden operation=%s attempt=%s; treating as quota exhaustion",
                        operation,
                        attempt,
                    )
                    raise QuotaExceededError() from exc
                last_error = exc

            if attempt < attempts:
                delay_seconds = policy.delay_seconds(attempt)
                LOGGER.info(
                    "youtube request failed operation=%s attempt=%s/%s retry_in=%.2fs error=%s",
                    operation,
                    attempt,
                    attempts,
                    delay_seconds,
                    summarize_exception_message(last_error),
                )
                if delay_seconds > 0:
                    self._sleep(delay_seconds)

        assert last_error is not None
        LOGGER.warning(
            "youtube request failed operation=%s attempts=%s error=%s",
            operation,
            attempts,
            summarize_exception_message(last_error),
        )
        raise last_error

    def _check_request_size(self, video_ids: Sequence[str]) -> None:
        if len(video_ids) > self._max_ids_per_request:
            raise ValueError(
                f"at most {self._max_ids_per_request} video ids per request, got {len(video_ids)}"
            )

    def _acquire_window_slot(self, operation: str) -> None:
        decision = self._rate_limiter.try_acquire()
        if decision.allowed:
            return
        LOGGER.warning(
            "youtube local rate limit reached operation=%s limit=%s retry_after=%ss",
            operation,
            decision.limit,
            decision.retry_after_seconds,
        )
        raise RateLimitedError(
            "Rate limit exceeded. Please wait before making more requests.",
            retry_after_seconds=decision.retry_after_seconds,
        )

    def _record_daily_call(self) -> None:
        today = utc_now().date().isoformat()
        with self._daily_lock:
            if today != self._daily_date:
                self._daily_date = today
                self._daily_calls = 0
                self._daily_warning_logged = False
            self._daily_calls += 1
            calls_today = self._daily_calls

        if self._quota_repository is not None:
            try:
                usage = self._quota_repository.record_calls(
                    calls=1,
                    daily_limit=self._daily_quota_limit,
                    warning_threshold=self._quota_warning_threshold,
                )
            except sqlite3.Error:
                LOGGER.warning("youtube quota usage could not be persisted", exc_info=True)
            else:
                calls_today = usage.calls_today

        self._maybe_warn_daily_quota(calls_today)

    def _calls_today(self) -> int:
        if self._quota_repository is not None:
            try:
                return self._quota_repository.usage_today(
                    daily_limit=self._daily_quota_limit,
                    warning_threshold=self._quota_warning_threshold,
                ).calls_today
            except sqlite3.Error:
                LOGGER.warning("youtube quota usage could not be read", exc_info=True)

        today = utc_now().date().isoformat()
        with self._daily_lock:
            if today != self._daily_date:
                return 0
            return self._daily_calls

    def _maybe_warn_daily_quota(self, calls_today: int) -> None:
        if self._daily_quota_limit <= 0 or calls_today < self._quota_warning_threshold:
            return
        with self._daily_lock:
            if self._daily_warning_logged:
                return
            self._daily_warning_logged = True
        LOGGER.warning(
            "youtube daily quota warning calls_today=%s threshold=%s daily_limit=%s",
            calls_today,
            self._quota_warning_threshold,
            self._daily_quota_limit,
        )


def summarize_exception_message(exc: BaseException, *, max_length: int = 400) -> str:
    raw = str(exc).strip()
    if not raw:
        raw = repr(exc)
    if len(raw) <= max_length:
        return raw
    return f"{raw[: max_length - 3]}..."
