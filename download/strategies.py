"""Download strategies, each able to materialize one source window locally.

Strategies raise whatever their engine raises; the resolver classifies the
exception at the call boundary. Every network attempt is time-bounded.
"""

from __future__ import annotations

import html
import importlib.util
import itertools
import logging
import os
import re
import signal
import subprocess
import threading
import time
import urllib.parse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import requests

from config.settings import DEFAULT_CONFIG
from download.sources import STREAM_AUDIO, STREAM_AUDIO_VIDEO, STREAM_VIDEO
from engine.errors import RetryableDownloadError, SourceUnavailableError
from engine.events import log_event, redact_argv
from engine.publish import atomic_move
from media.ffmpeg import fetch_stream_segment

logger = logging.getLogger(__name__)

_PARTIAL_SUFFIXES = {".part", ".ytdl", ".temp", ".tmp"}
_MEDIA_EXTENSIONS = (".mp4", ".webm", ".m3u8", ".mov", ".m4v", ".mkv")
_STREAM_URL_PATTERNS = (
    re.compile(r"""<meta[^>]+property=["']og:video(?::secure_url|:url)?["'][^>]+content=["']([^"']+)["']""", re.I),
    re.compile(r"""<video[^>]+src=["']([^"']+)["']""", re.I),
    re.compile(r"""<source[^>]+src=["']([^"']+)["']""", re.I),
    re.compile(r'"url"\s*:\s*"(https?:[^"]+?videoplayback[^"]*)"'),
    re.compile(r'"(?:hlsManifestUrl|contentUrl)"\s*:\s*"(https?:[^"]+)"'),
)
_SOCKET_TIMEOUT_CAP = 30


@dataclass(frozen=True)
class DownloadSettings:
    av_format: str
    video_format: str
    audio_format: str
    user_agent: str
    no_check_certificate: bool = True
    network_timeout: float = 300
    ffmpeg_bin: str = "ffmpeg"
    ytdlp_bin: str = "yt-dlp"
    proxies: tuple[str, ...] = field(default_factory=tuple)
    browser_settle_ms: int = 4000

    @classmethod
    def from_config(cls, config):
        cfg = config or {}
        download = {**DEFAULT_CONFIG["download"], **(cfg.get("download") or {})}
        timeouts = {**DEFAULT_CONFIG["timeouts"], **(cfg.get("timeouts") or {})}
        return cls(
            av_format=str(download["format"]),
            video_format=str(download["background_format"]),
            audio_format=str(download["audio_format"]),
            user_agent=str(download["user_agent"]),
            no_check_certificate=bool(download.get("no_check_certificate", True)),
            network_timeout=float(timeouts["network_seconds"]),
            ffmpeg_bin=str(cfg.get("ffmpeg_bin") or "ffmpeg"),
            ytdlp_bin=str(cfg.get("ytdlp_bin") or "yt-dlp"),
            proxies=tuple(download.get("proxies") or ()),
        )

    def format_for(self, stream):
        if stream == STREAM_AUDIO:
            return self.audio_format
        if stream == STREAM_VIDEO:
            return self.video_format
        return self.av_format


def _output_template(destination: Path) -> str:
    return str(destination.with_suffix("")) + ".%(ext)s"


def collect_download_output(destination) -> None:
    """Move the file yt-dlp wrote next to ``destination`` onto ``destination``."""
    destination = Path(destination)
    if destination.is_file() and destination.stat().st_size > 0:
        return
    candidates = [
        path
        for path in destination.parent.glob(f"{destination.stem}.*")
        if path.is_file() and path.suffix not in _PARTIAL_SUFFIXES and path != destination
    ]
    if not candidates:
        raise RetryableDownloadError("yt-dlp finished without producing an output file")
    best = max(candidates, key=lambda path: path.stat().st_size)
    atomic_move(str(best), str(destination))


def _kill_process_group(proc):
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    proc.wait()


def run_ytdlp_cli(argv, *, timeout):
    """Run yt-dlp for at most ``timeout`` seconds and return its stderr.

    yt-dlp hands section downloads to an ffmpeg child, so the whole process
    group is killed on expiry and ``subprocess.TimeoutExpired`` is raised.
    A non-zero exit raises ``subprocess.CalledProcessError`` carrying stderr.
    """
    stderr_lines = []

    proc = subprocess.Popen(
        argv,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        bufsize=1,
        start_new_session=True,
    )

    def _read_stderr():
        stream = proc.stderr
        if stream is None:
            return
        for raw_line in iter(stream.readline, ""):
            stderr_lines.append(raw_line)
        stream.close()

    reader = threading.Thread(target=_read_stderr, name="ytdlp-stderr-reader", daemon=True)
    reader.start()

    deadline = time.monotonic() + timeout
    while proc.poll() is None:
        if time.monotonic() >= deadline:
            _kill_process_group(proc)
            reader.join(timeout=1)
            log_event(logging.WARNING, "ytdlp_cli_timeout", argv=redact_argv(argv), timeout_seconds=timeout)
            raise subprocess.TimeoutExpired(argv, timeout, stderr="".join(stderr_lines))
        time.sleep(0.2)

    return_code = proc.wait()
    reader.join(timeout=1)
    stderr_output = "".join(stderr_lines).strip()
    if return_code != 0:
        raise subprocess.CalledProcessError(return_code, argv, stderr=stderr_output)
    return stderr_output


class DownloadStrategy:
    name = "base"
    uses_credentials = False

    def __init__(self, settings: DownloadSettings):
        self.settings = settings

    def is_available(self, source) -> bool:
        return bool(source.page_url or source.reference)

    def fetch(self, source, destination, *, credential=None) -> None:
        raise NotImplementedError


# Render yt-dlp CLI argv for subprocess (shell=False), supporting cookies, proxies and safe quoting.
def render_ytdlp_cli_argv(settings: DownloadSettings, source, destination, *, cookie_file=None, proxy=None):
    window = source.window
    argv = [
        settings.ytdlp_bin,
        "--no-playlist",
        "--no-progress",
        "--quiet",
        "-f", settings.format_for(source.stream),
        "--download-sections", f"*{window.start}-{window.end}",
        "--force-overwrites",
        "--retries", "1",
        "--fragment-retries", "3",
        "--socket-timeout", str(int(min(_SOCKET_TIMEOUT_CAP, settings.network_timeout))),
        "--user-agent", settings.user_agent,
    ]
    if source.stream == STREAM_AUDIO_VIDEO:
        argv += ["--merge-output-format", "mp4"]
    if settings.no_check_certificate:
        argv.append("--no-check-certificate")
    if settings.ffmpeg_bin and settings.ffmpeg_bin != "ffmpeg":
        argv += ["--ffmpeg-location", settings.ffmpeg_bin]
    if proxy:
        argv += ["--proxy", str(proxy)]
    if cookie_file:
        argv += ["--cookies", str(cookie_file)]
    argv += ["-o", _output_template(Path(destination)), str(source.page_url or source.reference)]
    return argv


class YtdlpStrategy(DownloadStrategy):
    """yt-dlp section download in a child process bounded by the network timeout."""

    name = "ytdlp"

    def build_argv(self, source, destination, *, proxy=None, cookie_file=None):
        return render_ytdlp_cli_argv(self.settings, source, destination, cookie_file=cookie_file, proxy=proxy)

    def _download(self, source, destination, *, proxy=None, credential=None):
        argv = self.build_argv(
            source,
            destination,
            proxy=proxy,
            cookie_file=credential.payload if credential is not None else None,
        )
        log_event(
            logging.INFO,
            "ytdlp_cli_start",
            strategy=self.name,
            role=source.role,
            credential_id=credential.id if credential is not None else None,
            window=source.window.to_dict(),
            argv=redact_argv(argv),
        )
        run_ytdlp_cli(argv, timeout=self.settings.network_timeout)
        collect_download_output(destination)

    def fetch(self, source, destination, *, credential=None, proxy=None) -> None:
        self._download(source, destination, proxy=proxy)


class ProxyRotator:
    """Round-robin over configured upstream proxies."""

    def __init__(self, proxies):
        self._proxies = tuple(p for p in proxies or () if p)
        self._cycle = itertools.cycle(self._proxies) if self._proxies else None
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._proxies)

    def next(self) -> Optional[str]:
        if self._cycle is None:
            return None
        with self._lock:
            return next(self._cycle)


class ProxyYtdlpStrategy(YtdlpStrategy):
    """yt-dlp routed through the next proxy on every attempt."""

    name = "ytdlp_proxy"

    def __init__(self, settings: DownloadSettings, rotator: Optional[ProxyRotator] = None):
        super().__init__(settings)
        self.rotator = rotator if rotator is not None else ProxyRotator(settings.proxies)

    def is_available(self, source) -> bool:
        return len(self.rotator) > 0 and super().is_available(source)

    def fetch(self, source, destination, *, credential=None, proxy=None) -> None:
        super().fetch(source, destination, proxy=proxy or self.rotator.next())


class CookieYtdlpStrategy(YtdlpStrategy):
    """yt-dlp with a rotated cookie jar from the credential pool."""

    name = "ytdlp_cookies"
    uses_credentials = True

    def fetch(self, source, destination, *, credential=None, proxy=None) -> None:
        if credential is None:
            raise ValueError("ytdlp_cookies requires a credential")
        self._download(source, destination, proxy=proxy, credential=credential)


def _clean_stream_url(raw, base_url):
    url = raw.replace("\\u0026", "&").replace("\\/", "/")
    url = html.unescape(url)
    url = urllib.parse.urljoin(base_url, url)
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return None
    if "videoplayback" in parsed.path:
        query = [(k, v) for k, v in urllib.parse.parse_qsl(parsed.query) if k != "range"]
        url = urllib.parse.urlunparse(parsed._replace(query=urllib.parse.urlencode(query)))
    return url


def looks_like_media_url(url, content_type="") -> bool:
    lowered = (url or "").lower()
    if (content_type or "").lower().startswith("video/"):
        return True
    if "videoplayback" in lowered and "mime=audio" not in lowered:
        return True
    path = urllib.parse.urlparse(lowered).path
    return path.endswith(_MEDIA_EXTENSIONS)


def extract_stream_url(page_html, base_url) -> Optional[str]:
    """First media-looking URL referenced by a page, or None."""
    for pattern in _STREAM_URL_PATTERNS:
        for match in pattern.finditer(page_html or ""):
            url = _clean_stream_url(match.group(1), base_url)
            if url and looks_like_media_url(url):
                return url
    return None


class ScrapeStrategy(DownloadStrategy):
    """Fetch the page with requests and cut the window from a stream URL found in it."""

    name = "scrape"

    def __init__(self, settings: DownloadSettings, session: Optional[requests.Session] = None):
        super().__init__(settings)
        self._session = session
        self._local = threading.local()

    @property
    def session(self):
        """A requests.Session owned by the calling worker thread."""
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session

    def is_available(self, source) -> bool:
        return source.page_url is not None

    def fetch(self, source, destination, *, credential=None) -> None:
        headers = {"User-Agent": self.settings.user_agent, "Accept-Language": "en-US,en;q=0.9"}
        response = self.session.get(
            source.page_url,
            headers=headers,
            timeout=(10, self.settings.network_timeout),
        )
        response.raise_for_status()
        stream_url = extract_stream_url(response.text, source.page_url)
        if not stream_url:
            raise SourceUnavailableError("no stream url found in page", strategy=self.name)
        fetch_stream_segment(
            stream_url,
            source.window.start,
            source.window.duration,
            destination,
            ffmpeg_bin=self.settings.ffmpeg_bin,
            timeout=self.settings.network_timeout,
            headers={"User-Agent": self.settings.user_agent},
        )


class BrowserStrategy(DownloadStrategy):
    """Headless Chromium (playwright) captures the stream URL the player requests."""

    name = "browser"

    def is_available(self, source) -> bool:
        return source.page_url is not None and importlib.util.find_spec("playwright") is not None

    def capture_stream_url(self, page_url) -> Optional[str]:
        from playwright.sync_api import sync_playwright

        captured = []

        def _on_response(response):
            content_type = response.headers.get("content-type", "")
            if looks_like_media_url(response.url, content_type):
                captured.append(response.url)

        timeout_ms = int(self.settings.network_timeout * 1000)
        with sync_playwright() as pw:
            browser = pw.chromium.launch(headless=True)
            try:
                context = browser.new_context(user_agent=self.settings.user_agent)
                page = context.new_page()
                page.on("response", _on_response)
                page.goto(page_url, wait_until="domcontentloaded", timeout=timeout_ms)
                page.wait_for_timeout(self.settings.browser_settle_ms)
                element_src = page.evaluate(
                    "() => { const v = document.querySelector('video');"
                    " return v ? (v.currentSrc || v.src || null) : null; }"
                )
            finally:
                browser.close()

        for raw in ([element_src] if element_src else []) + captured:
            url = _clean_stream_url(raw, page_url)
            if url:
                return url
        return None

    def fetch(self, source, destination, *, credential=None) -> None:
        stream_url = self.capture_stream_url(source.page_url)
        if not stream_url:
            raise SourceUnavailableError("no stream url captured by headless browser", strategy=self.name)
        fetch_stream_segment(
            stream_url,
            source.window.start,
            source.window.duration,
            destination,
            ffmpeg_bin=self.settings.ffmpeg_bin,
            timeout=self.settings.network_timeout,
            headers={"User-Agent": self.settings.user_agent},
        )


_STRATEGY_TYPES = {
    YtdlpStrategy.name: YtdlpStrategy,
    BrowserStrategy.name: BrowserStrategy,
    ScrapeStrategy.name: ScrapeStrategy,
    CookieYtdlpStrategy.name: CookieYtdlpStrategy,
    ProxyYtdlpStrategy.name: ProxyYtdlpStrategy,
}


def build_strategies(config) -> list[DownloadStrategy]:
    settings = DownloadSettings.from_config(config)
    names = ((config or {}).get("download") or {}).get("strategies") or DEFAULT_CONFIG["download"]["strategies"]
    strategies = []
    for name in names:
        strategy_type = _STRATEGY_TYPES.get(name)
        if strategy_type is None:
            logger.warning("unknown download strategy %r ignored", name)
            continue
        strategies.append(strategy_type(settings))
    return strategies
