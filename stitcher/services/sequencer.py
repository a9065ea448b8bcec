from __future__ import annotations

import logging
from collections import Counter
from typing import Any, List, Optional

from stitcher.errors import InputValidationError
from stitcher.models.domain import SequencedScenes, VideoSegment

log = logging.getLogger(__name__)


def parse_scene_number(value: Any) -> Optional[int]:
    """Return a positive scene number, or None when ``value`` is not one."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        number = value
    elif isinstance(value, float):
        if not value.is_integer():
            return None
        number = int(value)
    elif isinstance(value, str):
        try:
            number = int(value.strip(), 10)
        except ValueError:
            return None
    else:
        return None
    return number if number > 0 else None


def _source_url(entry: Any) -> Optional[str]:
    url = entry.get("final_video_url")
    if not isinstance(url, str) or not url.strip():
        return None
    return url.strip()


def sequence_scenes(videos: Any) -> SequencedScenes:
    if not isinstance(videos, list):
        raise InputValidationError("Invalid input. Expected videos array and mv_audio URL")
    if not videos:
        raise InputValidationError("No videos provided")

    segments: List[VideoSegment] = []
    invalid = 0
    for entry in videos:
        if not isinstance(entry, dict):
            invalid += 1
            continue
        scene_number = parse_scene_number(entry.get("scene_number"))
        url = _source_url(entry)
        if scene_number is None or url is None:
            invalid += 1
            continue
        segments.append(VideoSegment(scene_number=scene_number, source_url=url))
    if invalid:
        raise InputValidationError(
            f"Invalid video entries: {invalid} videos missing scene_number or final_video_url"
        )

    duplicates = sorted(number for number, seen in Counter(s.scene_number for s in segments).items() if seen > 1)
    if duplicates:
        raise InputValidationError(f"Duplicate scene numbers: {duplicates}")

    segments.sort(key=lambda segment: segment.scene_number)
    present = {segment.scene_number for segment in segments}
    missing = [number for number in range(1, len(segments) + 1) if number not in present]
    if missing:
        log.warning("non-sequential scene numbers detected", extra={"missing_scenes": missing})
    log.info(
        "video processing order",
        extra={"order": " -> ".join(f"Scene {segment.scene_number}" for segment in segments)},
    )
    return SequencedScenes(segments=segments, missing_scenes=missing)
