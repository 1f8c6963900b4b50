"""Source descriptors: what to fetch and which window of it."""

from __future__ import annotations

import re
import urllib.parse
from dataclasses import dataclass
from typing import Optional

STREAM_AUDIO_VIDEO = "av"
STREAM_VIDEO = "video"
STREAM_AUDIO = "audio"

_VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{11}$")
_YOUTUBE_HOSTS = {"youtube.com", "www.youtube.com", "m.youtube.com", "music.youtube.com"}


@dataclass(frozen=True)
class SegmentWindow:
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start

    def to_dict(self):
        return {"start": self.start, "end": self.end}


def _is_http_url(value):
    try:
        return urllib.parse.urlparse(value).scheme in ("http", "https")
    except Exception:
        return False


def extract_video_id(value) -> Optional[str]:
    """Return the YouTube video id for a bare id or a watch/short/embed URL."""
    text = str(value or "").strip()
    if not text:
        return None
    if _VIDEO_ID_RE.match(text):
        return text
    if not _is_http_url(text):
        return None
    parsed = urllib.parse.urlparse(text)
    host = (parsed.hostname or "").lower()
    candidate = None
    if host == "youtu.be":
        candidate = parsed.path.strip("/").split("/")[0]
    elif host in _YOUTUBE_HOSTS:
        if parsed.path == "/watch":
            candidate = (urllib.parse.parse_qs(parsed.query).get("v") or [None])[0]
        else:
            parts = [p for p in parsed.path.split("/") if p]
            if len(parts) >= 2 and parts[0] in {"shorts", "embed", "live", "v"}:
                candidate = parts[1]
    if candidate and _VIDEO_ID_RE.match(candidate):
        return candidate
    return None


def canonical_source_url(reference) -> Optional[str]:
    """http(s) URLs pass through; bare video ids become watch URLs; anything else is None."""
    text = str(reference or "").strip()
    if _is_http_url(text):
        return text
    if _VIDEO_ID_RE.match(text):
        return f"https://www.youtube.com/watch?v={text}"
    return None


@dataclass(frozen=True)
class SourceDescriptor:
    role: str
    reference: str
    window: SegmentWindow
    stream: str = STREAM_AUDIO_VIDEO

    @property
    def page_url(self) -> Optional[str]:
        return canonical_source_url(self.reference)

    @property
    def video_id(self) -> Optional[str]:
        return extract_video_id(self.reference)

    def to_dict(self):
        return {
            "role": self.role,
            "reference": self.reference,
            "window": self.window.to_dict(),
            "stream": self.stream,
        }
