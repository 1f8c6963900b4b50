"""Media validation helpers."""

from __future__ import annotations

import logging
import os

from media.ffprobe import get_media_duration

logger = logging.getLogger(__name__)


def is_nonempty_file(file_path) -> bool:
    try:
        return os.path.isfile(file_path) and os.path.getsize(file_path) > 0
    except OSError:
        return False


def validate_duration(
    file_path: str,
    expected_seconds: float,
    tolerance_seconds: float = 1.0,
    *,
    ffprobe_bin: str = "ffprobe",
) -> bool:
    """Validate that a media file duration is within tolerance of an expected value.

    Returns:
        ``True`` when ``abs(actual_seconds - expected_seconds) <= tolerance_seconds``.
        ``False`` when the duration falls outside tolerance or probing fails.

    Constraints:
        - ``expected_seconds`` and ``tolerance_seconds`` must be non-negative.
        - Any ffprobe/probe parsing error is handled non-fatally and returns ``False``.
    """
    if expected_seconds < 0:
        logger.warning("Duration validation failed: expected_seconds must be non-negative")
        return False
    if tolerance_seconds < 0:
        logger.warning("Duration validation failed: tolerance_seconds must be non-negative")
        return False

    try:
        actual_duration_seconds = get_media_duration(file_path, ffprobe_bin)
    except Exception:
        logger.exception("Failed to probe media duration for path=%s", file_path)
        return False

    return abs(actual_duration_seconds - expected_seconds) <= tolerance_seconds
