from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

# campaign_links is owned by the campaign CRUD layer; only the columns the
# view-count sync reads are declared here.
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS campaign_links (
    id TEXT PRIMARY KEY,
    campaign_id TEXT NOT NULL,
    youtube_video_id TEXT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_campaign_links_youtube_video_id
ON campaign_links(youtube_video_id);

CREATE TABLE IF NOT EXISTS youtube_video_stats (
    video_id TEXT PRIMARY KEY,
    view_count INTEGER NOT NULL,
    last_updated TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_youtube_video_stats_last_updated
ON youtube_video_stats(last_updated);

CREATE TABLE IF NOT EXISTS youtube_quota_daily (
    date_utc TEXT PRIMARY KEY,
    calls INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        # One connection per unit of work; the scheduler thread and manual
        # triggers never share a sqlite3 connection object.
        conn = sqlite3.connect(self._path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA_SQL)
