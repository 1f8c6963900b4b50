"""Application settings constants, defaults and config-file handling."""

from __future__ import annotations

import copy
import json
import math

# Toggle for the post-compose ffprobe duration check.
ENABLE_DURATION_VALIDATION = True

# Allowed absolute difference between the requested and the composed duration.
DURATION_TOLERANCE_SECONDS = 1.0

JOB_MODES = ("combined", "separate", "audio")
BACKGROUND_WINDOW_POLICIES = ("rebased", "mirror")
STRATEGY_NAMES = ("ytdlp", "browser", "scrape", "ytdlp_cookies", "ytdlp_proxy")

DEFAULT_CONFIG = {
    "max_workers": 2,
    "max_segment_seconds": 600,
    "background_window": "rebased",
    "canvas": {"width": 1080, "height": 1920},
    "fps": 30,
    "main_zoom": 1.2,
    "video": {
        "codec": "libx264",
        "preset": "veryfast",
        "crf": 28,
        "profile": "baseline",
        "pix_fmt": "yuv420p",
    },
    "audio_bitrate": "128k",
    "public_base_url": "",
    "retry": {"max_attempts": 3, "base_delay": 1.0},
    "timeouts": {"network_seconds": 300, "ffmpeg_seconds": 300},
    "download": {
        "strategies": list(STRATEGY_NAMES),
        "format": "bestvideo*+bestaudio/best",
        "background_format": "bestvideo[ext=mp4]/bestvideo/best",
        "audio_format": "bestaudio/best",
        "proxies": [],
        "user_agent": (
            "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
        ),
        "no_check_certificate": True,
    },
    "workspace_max_age_minutes": 120,
    "validate_duration": ENABLE_DURATION_VALIDATION,
    "duration_tolerance_seconds": DURATION_TOLERANCE_SECONDS,
    "ffmpeg_bin": "ffmpeg",
    "ffprobe_bin": "ffprobe",
    "ytdlp_bin": "yt-dlp",
}


def merge_config(base, override):
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path):
    with open(path, "r") as f:
        return merge_config(DEFAULT_CONFIG, json.load(f))


def _is_positive_number(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def validate_config(config):
    errors = []
    if not isinstance(config, dict):
        return ["config must be a JSON object"]

    for key in ("max_workers", "max_segment_seconds", "fps"):
        if not _is_positive_number(config.get(key)):
            errors.append(f"{key} must be a positive number")

    if config.get("background_window") not in BACKGROUND_WINDOW_POLICIES:
        errors.append("background_window must be 'rebased' or 'mirror'")

    canvas = config.get("canvas")
    if not isinstance(canvas, dict):
        errors.append("canvas must be an object")
    else:
        for dim in ("width", "height"):
            value = canvas.get(dim)
            if not isinstance(value, int) or value <= 0 or value % 2:
                errors.append(f"canvas.{dim} must be a positive even integer")
        if isinstance(canvas.get("height"), int) and canvas["height"] % 4:
            errors.append("canvas.height must be divisible by 4 so each stacked half stays even")

    zoom = config.get("main_zoom")
    if not _is_positive_number(zoom) or zoom < 1:
        errors.append("main_zoom must be a number >= 1")

    retry_cfg = config.get("retry")
    if not isinstance(retry_cfg, dict):
        errors.append("retry must be an object")
    else:
        attempts = retry_cfg.get("max_attempts")
        if not isinstance(attempts, int) or attempts < 1:
            errors.append("retry.max_attempts must be an integer >= 1")
        delay = retry_cfg.get("base_delay")
        if isinstance(delay, bool) or not isinstance(delay, (int, float)) or delay < 0:
            errors.append("retry.base_delay must be a non-negative number")

    timeouts = config.get("timeouts")
    if not isinstance(timeouts, dict):
        errors.append("timeouts must be an object")
    else:
        for key in ("network_seconds", "ffmpeg_seconds"):
            if not _is_positive_number(timeouts.get(key)):
                errors.append(f"timeouts.{key} must be a positive number")

    download = config.get("download")
    if not isinstance(download, dict):
        errors.append("download must be an object")
    else:
        strategies = download.get("strategies")
        if not isinstance(strategies, list) or not strategies:
            errors.append("download.strategies must be a non-empty list")
        else:
            for idx, name in enumerate(strategies):
                if name not in STRATEGY_NAMES:
                    errors.append(f"download.strategies[{idx}] unknown strategy {name!r}")
        proxies = download.get("proxies")
        if proxies is not None and (
            not isinstance(proxies, list) or not all(isinstance(p, str) and p for p in proxies)
        ):
            errors.append("download.proxies must be a list of proxy URLs")

    base_url = config.get("public_base_url")
    if base_url is not None and not isinstance(base_url, str):
        errors.append("public_base_url must be a string")

    return errors
