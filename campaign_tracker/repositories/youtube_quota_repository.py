from __future__ import annotations

from dataclasses import dataclass

from campaign_tracker.repositories.common import utc_now, utc_now_iso
from campaign_tracker.repositories.database import Database


@dataclass(frozen=True)
class YouTubeDailyUsage:
    date_utc: str
    calls_today: int
    daily_limit: int
    warning_threshold: int
    warning: bool


class YouTubeQuotaRepository:
    """Persists provider calls per UTC day so usage survives process restarts."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def record_calls(
        self,
        *,
        calls: int,
        daily_limit: int,
        warning_threshold: int,
    ) -> YouTubeDailyUsage:
        date_utc = utc_now().date().isoformat()
        calls_this_record = max(0, calls)

        with self._db.connection() as conn:
            if calls_this_record > 0:
                conn.execute(
                    """
                    INSERT INTO youtube_quota_daily (date_utc, calls, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(date_utc) DO UPDATE SET
                        calls = youtube_quota_daily.calls + excluded.calls,
                        updated_at = excluded.updated_at
                    """,
                    (date_utc, calls_this_record, utc_now_iso()),
                )

            row = conn.execute(
                "SELECT calls FROM youtube_quota_daily WHERE date_utc = ?",
                (date_utc,),
            ).fetchone()

        calls_today = int(row["calls"]) if row is not None else 0
        return YouTubeDailyUsage(
            date_utc=date_utc,
            calls_today=calls_today,
            daily_limit=daily_limit,
            warning_threshold=warning_threshold,
            warning=daily_limit > 0 and calls_today >= warning_threshold,
        )

    def usage_today(self, *, daily_limit: int, warning_threshold: int) -> YouTubeDailyUsage:
        return self.record_calls(
            calls=0,
            daily_limit=daily_limit,
            warning_threshold=warning_threshold,
        )
