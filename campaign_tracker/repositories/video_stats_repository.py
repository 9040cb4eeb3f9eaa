from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from campaign_tracker.repositories.common import parse_iso_utc, utc_now, utc_now_iso
from campaign_tracker.repositories.database import Database


@dataclass(frozen=True)
class VideoStats:
    video_id: str
    view_count: int
    last_updated: datetime


class VideoStatsSink(Protocol):
    """Persistence contract the view-count synchronization writes through."""

    def find_active_video_ids(self) -> list[str]:
        ...

    def upsert(self, video_id: str, view_count: int) -> VideoStats:
        ...

    def delete_unused(self) -> int:
        ...


class VideoStatsRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def upsert(self, video_id: str, view_count: int) -> VideoStats:
        if view_count < 0:
            raise ValueError(f"view_count must be non-negative, got {view_count}")

        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO youtube_video_stats (video_id, view_count, last_updated)
                VALUES (?, ?, ?)
                ON CONFLICT(video_id) DO UPDATE SET
                    view_count = excluded.view_count,
                    last_updated = excluded.last_updated
                """,
                (video_id, view_count, utc_now_iso()),
            )
            row = conn.execute(
                """
                SELECT video_id, view_count, last_updated
                FROM youtube_video_stats
                WHERE video_id = ?
                """,
                (video_id,),
            ).fetchone()

        assert row is not None
        return _row_to_stats(row)

    def find_by_video_id(self, video_id: str) -> VideoStats | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT video_id, view_count, last_updated
                FROM youtube_video_stats
                WHERE video_id = ?
                """,
                (video_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_stats(row)

    def find_all(self) -> list[VideoStats]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT video_id, view_count, last_updated
                FROM youtube_video_stats
                ORDER BY last_updated DESC
                """
            ).fetchall()
        return [_row_to_stats(row) for row in rows]

    def find_stale(self, hours_old: int = 24) -> list[VideoStats]:
        cutoff = utc_now() - timedelta(hours=max(0, hours_old))
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT video_id, view_count, last_updated
                FROM youtube_video_stats
                WHERE last_updated < ?
                ORDER BY last_updated ASC
                """,
                (cutoff.isoformat(),),
            ).fetchall()
        return [_row_to_stats(row) for row in rows]

    def get_bulk(self, video_ids: Sequence[str]) -> list[VideoStats]:
        if not video_ids:
            return []

        placeholders = ", ".join("?" for _ in video_ids)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT video_id, view_count, last_updated
                FROM youtube_video_stats
                WHERE video_id IN ({placeholders})
                ORDER BY last_updated DESC
                """,
                tuple(video_ids),
            ).fetchall()
        return [_row_to_stats(row) for row in rows]

    def find_active_video_ids(self) -> list[str]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT youtube_video_id
                FROM campaign_links
                WHERE youtube_video_id IS NOT NULL AND youtube_video_id != ''
                GROUP BY youtube_video_id
                ORDER BY MIN(created_at) ASC, youtube_video_id ASC
                """
            ).fetchall()
        return [str(row["youtube_video_id"]) for row in rows]

    def delete_unused(self) -> int:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                DELETE FROM youtube_video_stats
                WHERE video_id NOT IN (
                    SELECT DISTINCT youtube_video_id
                    FROM campaign_links
                    WHERE youtube_video_id IS NOT NULL
                )
                """
            )
            deleted = cursor.rowcount
        return max(0, deleted)


def _row_to_stats(row: sqlite3.Row) -> VideoStats:
    last_updated = parse_iso_utc(str(row["last_updated"]))
    assert last_updated is not None
    return VideoStats(
        video_id=str(row["video_id"]),
        view_count=int(row["view_count"]),
        last_updated=last_updated,
    )
