from __future__ import annotations

from collections.abc import Iterable


def chunk_video_ids(video_ids: Iterable[str], size: int) -> list[list[str]]:
    """Split ids into consecutive chunks of at most `size`, preserving input order."""
    if size < 1:
        raise ValueError(f"chunk size must be at least 1, got {size}")

    chunks: list[list[str]] = []
    current: list[str] = []
    for video_id in video_ids:
        current.append(video_id)
        if len(current) == size:
            chunks.append(current)
            current = []
    if current:
        chunks.append(current)
    return chunks


def dedupe_video_ids(video_ids: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(video_ids))
