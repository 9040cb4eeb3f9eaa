from __future__ import annotations

import re

VIDEO_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{11}$")
_VIDEO_URL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/)([A-Za-z0-9_-]{11})"),
    re.compile(r"youtube\.com/watch\?.*v=([A-Za-z0-9_-]{11})"),
    re.compile(r"youtube\.com/shorts/([A-Za-z0-9_-]{11})"),
)


def is_valid_video_id(value: str) -> bool:
    return VIDEO_ID_PATTERN.fullmatch(value) is not None


def extract_video_id(value: str) -> str | None:
    """Return the video id from a YouTube URL, or the value itself if it already is one."""
    candidate = value.strip()
    if is_valid_video_id(candidate):
        return candidate

    for pattern in _VIDEO_URL_PATTERNS:
        match = pattern.search(candidate)
        if match is not None and is_valid_video_id(match.group(1)):
            return match.group(1)
    return None
