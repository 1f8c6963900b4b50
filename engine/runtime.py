import os
import shutil
import sys

from yt_dlp.version import __version__ as ytdlp_version


def get_runtime_info(config=None):
    cfg = config or {}
    return {
        "app_version": os.environ.get("CLIPSTACK_VERSION", "0.1.0"),
        "python_version": sys.version.split()[0],
        "yt_dlp_version": ytdlp_version,
        "ffmpeg_available": shutil.which(cfg.get("ffmpeg_bin") or "ffmpeg") is not None,
        "ffprobe_available": shutil.which(cfg.get("ffprobe_bin") or "ffprobe") is not None,
    }
