"""Wrapper utilities for retrieving media information using ffprobe."""

from __future__ import annotations

import json
import subprocess
from typing import Optional


def _run_ffprobe(arguments: list[str], file_path: str, ffprobe_bin: str = "ffprobe") -> dict:
    command = [ffprobe_bin, "-v", "error", "-print_format", "json", *arguments, file_path]

    try:
        completed = subprocess.run(
            command,
            capture_output=True,
            text=True,
            check=True,
            timeout=15,
        )
    except FileNotFoundError as exc:
        raise RuntimeError("ffprobe is not installed or not available in PATH") from exc
    except subprocess.TimeoutExpired as exc:
        raise RuntimeError(f"ffprobe timed out while probing: {file_path}") from exc
    except subprocess.CalledProcessError as exc:
        stderr_text = (exc.stderr or "").strip()
        raise RuntimeError(f"ffprobe failed for {file_path}: {stderr_text or exc}") from exc

    try:
        return json.loads(completed.stdout or "{}")
    except json.JSONDecodeError as exc:
        raise ValueError(f"ffprobe returned invalid JSON for {file_path}") from exc


def get_media_duration(file_path: str, ffprobe_bin: str = "ffprobe") -> float:
    """Return media duration in seconds using ``ffprobe`` JSON output.

    Raises:
        RuntimeError: If ``ffprobe`` execution fails or the command is missing.
        ValueError: If duration data is missing or not parseable as a float.
    """
    payload = _run_ffprobe(["-show_format"], file_path, ffprobe_bin)

    duration_value = (payload.get("format") or {}).get("duration")
    if duration_value in (None, ""):
        raise ValueError(f"ffprobe did not return a duration for {file_path}")

    try:
        return float(duration_value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"ffprobe returned a non-numeric duration for {file_path}") from exc


def get_video_size(file_path: str, ffprobe_bin: str = "ffprobe") -> Optional[tuple[int, int]]:
    """Return ``(width, height)`` of the first video stream, or None for audio-only media."""
    payload = _run_ffprobe(
        ["-select_streams", "v:0", "-show_entries", "stream=width,height"],
        file_path,
        ffprobe_bin,
    )
    streams = payload.get("streams") or []
    if not streams:
        return None
    try:
        width = int(streams[0]["width"])
        height = int(streams[0]["height"])
    except (KeyError, TypeError, ValueError):
        return None
    if width <= 0 or height <= 0:
        return None
    return width, height
