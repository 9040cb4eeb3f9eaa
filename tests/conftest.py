from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import uuid4

import pytest

from campaign_tracker.repositories.database import Database

LinkVideo = Callable[..., None]


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:  # pyright: ignore[reportUnusedFunction]
    for name in (
        "CAMPAIGN_TRACKER_YOUTUBE_API_KEY",
        "CAMPAIGN_TRACKER_YOUTUBE_PROVIDER",
        "CAMPAIGN_TRACKER_DATA_DIR",
        "CAMPAIGN_TRACKER_DB_PATH",
        "CAMPAIGN_TRACKER_LOG_DIR",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "state.db")
    db.initialize()
    return db


@pytest.fixture
def link_video(database: Database) -> Iterator[LinkVideo]:
    """Insert campaign links the way the campaign CRUD layer would."""
    base = datetime(2024, 1, 1, tzinfo=UTC)
    counter = {"value": 0}

    def _link(video_id: str | None, *, campaign_id: str = "campaign-1") -> None:
        counter["value"] += 1
        created_at = (base + timedelta(minutes=counter["value"])).isoformat()
        with database.connection() as conn:
            conn.execute(
                """
                INSERT INTO campaign_links (id, campaign_id, youtube_video_id, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (uuid4().hex, campaign_id, video_id, created_at),
            )

    yield _link


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
