from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from importlib import import_module
from typing import Any, Protocol, cast

from campaign_tracker.repositories.common import parse_iso_utc


QUOTA_RETRY_AFTER_SECONDS = 86_400
_QUOTA_HTTP_STATUS = 403
_THUMBNAIL_PREFERENCE: tuple[str, ...] = ("high", "medium", "default")


@dataclass(frozen=True)
class VideoMetadata:
    video_id: str
    title: str
    thumbnail_url: str | None
    view_count: int
    channel_title: str | None
    published_at: datetime | None


class YouTubeServiceError(Exception):
    pass


class RateLimitedError(YouTubeServiceError):
    def __init__(self, message: str, *, retry_after_seconds: int) -> None:
        super().__init__(message)
        self.retry_after_seconds = max(1, retry_after_seconds)


class QuotaExceededError(YouTubeServiceError):
    def __init__(
        self,
        message: str = "YouTube API quota exceeded",
        *,
        retry_after_seconds: int = QUOTA_RETRY_AFTER_SECONDS,
    ) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class VideoNotFoundError(YouTubeServiceError):
    def __init__(self, video_id: str) -> None:
        super().__init__(f"Video not found: {video_id}")
        self.video_id = video_id


class VideoProvider(Protocol):
    def fetch_view_counts(self, video_ids: Sequence[str]) -> dict[str, int]:
        ...

    def fetch_video(self, video_id: str) -> VideoMetadata | None:
        ...

    def fetch_videos(self, video_ids: Sequence[str]) -> list[VideoMetadata]:
        ...


class YouTubeDataApiProvider:
    """Reads video statistics from the YouTube Data API v3 with an API key."""

    def __init__(self, api_key: str, *, http_timeout_seconds: float = 10.0) -> None:
        # An empty key is only rejected when a request is made.
        self._api_key = api_key.strip()
        self._http_timeout_seconds = max(1.0, http_timeout_seconds)

    def fetch_view_counts(self, video_ids: Sequence[str]) -> dict[str, int]:
        if not video_ids:
            return {}

        response = self._list_videos(part="statistics", video_ids=video_ids)
        view_counts: dict[str, int] = {}
        for raw_item in _as_list(response.get("items")):
            item = _as_dict(raw_item)
            video_id = item.get("id")
            if not isinstance(video_id, str) or not video_id:
                continue
            statistics = _as_dict(item.get("statistics"))
            view_counts[video_id] = _coerce_view_count(statistics.get("viewCount"))
        return view_counts

    def fetch_video(self, video_id: str) -> VideoMetadata | None:
        response = self._list_videos(part="snippet,statistics", video_ids=[video_id])
        items = _as_list(response.get("items"))
        if not items:
            return None
        return _item_to_metadata(_as_dict(items[0]), fallback_video_id=video_id)

    def fetch_videos(self, video_ids: Sequence[str]) -> list[VideoMetadata]:
        if not video_ids:
            return []

        response = self._list_videos(part="snippet,statistics", video_ids=video_ids)
        videos: list[VideoMetadata] = []
        for raw_item in _as_list(response.get("items")):
            item = _as_dict(raw_item)
            video_id = item.get("id")
            if isinstance(video_id, str) and video_id:
                videos.append(_item_to_metadata(item, fallback_video_id=video_id))
        return videos

    def _list_videos(self, *, part: str, video_ids: Sequence[str]) -> dict[str, Any]:
        client = self._build_client()
        try:
            response = client.videos().list(
                part=part,
                id=",".join(video_ids),
                maxResults=len(video_ids),
            ).execute()
        except Exception as exc:
            if http_status_from_error(exc) == _QUOTA_HTTP_STATUS:
                raise QuotaExceededError() from exc
            raise
        return _as_dict(response)

    def _build_client(self) -> Any:
        if not self._api_key:
            raise YouTubeServiceError("YouTube Data API key must not be empty")
        try:
            discovery_module = import_module("googleapiclient.discovery")
            httplib2_module = import_module("httplib2")
        except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
            raise YouTubeServiceError(
                "The YouTube Data API provider requires google-api-python-client"
            ) from exc

        build_fn: Any = discovery_module.build
        http = httplib2_module.Http(timeout=self._http_timeout_seconds)
        return build_fn(
            "youtube",
            "v3",
            developerKey=self._api_key,
            http=http,
            cache_discovery=False,
        )


def http_status_from_error(exc: BaseException) -> int | None:
    """Best-effort HTTP status of a provider error (googleapiclient `HttpError.resp`)."""
    response = getattr(exc, "resp", None)
    status = getattr(response, "status", None)
    if status is None:
        status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    if isinstance(status, str) and status.isdigit():
        return int(status)
    return None


def _item_to_metadata(item: dict[str, Any], *, fallback_video_id: str) -> VideoMetadata:
    snippet = _as_dict(item.get("snippet"))
    statistics = _as_dict(item.get("statistics"))
    raw_video_id = item.get("id")
    video_id = raw_video_id if isinstance(raw_video_id, str) and raw_video_id else fallback_video_id

    raw_title = snippet.get("title")
    title = raw_title.strip() if isinstance(raw_title, str) and raw_title.strip() else video_id
    raw_channel_title = snippet.get("channelTitle")
    channel_title = (
        raw_channel_title.strip()
        if isinstance(raw_channel_title, str) and raw_channel_title.strip()
        else None
    )
    raw_published_at = snippet.get("publishedAt")
    published_at = parse_iso_utc(raw_published_at) if isinstance(raw_published_at, str) else None

    return VideoMetadata(
        video_id=video_id,
        title=title,
        thumbnail_url=_pick_thumbnail_url(_as_dict(snippet.get("thumbnails"))),
        view_count=_coerce_view_count(statistics.get("viewCount")),
        channel_title=channel_title,
        published_at=published_at,
    )


def _pick_thumbnail_url(thumbnails: dict[str, Any]) -> str | None:
    for size in _THUMBNAIL_PREFERENCE:
        url = _as_dict(thumbnails.get(size)).get("url")
        if isinstance(url, str) and url.strip():
            return url.strip()
    return None


def _coerce_view_count(raw_value: object) -> int:
    # The API reports counts as decimal strings and omits them for hidden stats.
    if isinstance(raw_value, bool):
        return 0
    if isinstance(raw_value, int):
        return max(0, raw_value)
    if isinstance(raw_value, str):
        try:
            return max(0, int(raw_value.strip()))
        except ValueError:
            return 0
    return 0


def _as_dict(value: Any) -> dict[str, Any]:
    """API payload objects as str-keyed dicts; anything else becomes empty."""
    if not isinstance(value, dict):
        return {}
    payload = cast(dict[object, Any], value)
    return {key: item for key, item in payload.items() if isinstance(key, str)}


def _as_list(value: Any) -> list[Any]:
    return list(cast(list[Any], value)) if isinstance(value, list) else []
