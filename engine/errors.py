"""Error taxonomy for the job pipeline and the download error classifier.

Every failure that can end a job derives from :class:`PipelineError`, so the
job manager has exactly one boundary to catch. Download failures additionally
carry a :class:`DownloadErrorKind`, assigned once at the boundary of each
strategy call by :func:`classify_download_error`.
"""

from __future__ import annotations

import subprocess
from enum import Enum

import requests


class ClipstackError(Exception):
    """Base class for all errors raised by this service."""


class ValidationError(ClipstackError):
    """Malformed or missing request fields. Surfaced as HTTP 400."""


class PipelineError(ClipstackError):
    """A failure that terminates a job."""


class DownloadErrorKind(str, Enum):
    RETRYABLE = "retryable"
    AUTH = "auth"
    FATAL = "fatal"


class DownloadError(PipelineError):
    kind = DownloadErrorKind.RETRYABLE

    def __init__(self, message, *, strategy=None):
        super().__init__(message)
        self.strategy = strategy


class RetryableDownloadError(DownloadError):
    kind = DownloadErrorKind.RETRYABLE


class AuthenticationError(DownloadError):
    kind = DownloadErrorKind.AUTH


class SourceUnavailableError(DownloadError):
    """The strategy can never succeed for this source (removed, private, no stream)."""

    kind = DownloadErrorKind.FATAL


class FatalDownloadError(DownloadError):
    """Every download strategy was exhausted."""

    kind = DownloadErrorKind.FATAL

    def __init__(self, message, *, attempts=None, strategy=None):
        super().__init__(message, strategy=strategy)
        self.attempts = list(attempts or [])


class CompositionError(PipelineError):
    """ffmpeg exited non-zero, timed out, or produced an empty/missing output."""


class PublishError(PipelineError):
    """Outputs could not be moved to the public directory."""


_AUTH_MARKERS: tuple[str, ...] = (
    "cookie",
    "certificate",
    "403",
    "forbidden",
    "sign in to confirm",
    "login required",
    "401",
    "unauthorized",
)

_UNAVAILABLE_MARKERS: tuple[str, ...] = (
    "private video",
    "this video is private",
    "video unavailable",
    "this video is unavailable",
    "removed by the uploader",
    "has been removed",
    "not available in your country",
    "geo-restricted",
    "drm protected",
    "unsupported url",
    "no stream url",
    "http error 404",
    "http error 410",
)

_RETRYABLE_STATUS = {408, 425, 429}
_AUTH_STATUS = {401, 403}
_FATAL_STATUS = {404, 410}


def _status_from_http_error(exc):
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None)


def _error_text(exc):
    parts = [str(exc)]
    stderr = getattr(exc, "stderr", None)
    if stderr:
        parts.append(stderr if isinstance(stderr, str) else stderr.decode("utf-8", "replace"))
    return " ".join(parts).lower()


def classify_download_error(exc) -> DownloadErrorKind:
    """Map an exception raised by a download strategy to a retry class.

    Structured signals win: already-classified errors, HTTP status codes and
    timeout/connection exception types. Message substrings are consulted only
    when no structured signal exists.
    """
    if isinstance(exc, DownloadError):
        return exc.kind
    if isinstance(exc, requests.HTTPError):
        status = _status_from_http_error(exc)
        if status in _AUTH_STATUS:
            return DownloadErrorKind.AUTH
        if status in _FATAL_STATUS:
            return DownloadErrorKind.FATAL
        if status in _RETRYABLE_STATUS or (status is not None and status >= 500):
            return DownloadErrorKind.RETRYABLE
    if isinstance(exc, (requests.Timeout, requests.ConnectionError, subprocess.TimeoutExpired, TimeoutError)):
        return DownloadErrorKind.RETRYABLE

    message = _error_text(exc)
    if any(marker in message for marker in _AUTH_MARKERS):
        return DownloadErrorKind.AUTH
    if any(marker in message for marker in _UNAVAILABLE_MARKERS):
        return DownloadErrorKind.FATAL
    return DownloadErrorKind.RETRYABLE


def as_download_error(exc, *, strategy=None) -> DownloadError:
    """Wrap ``exc`` in the DownloadError subclass matching its classification."""
    if isinstance(exc, DownloadError):
        if exc.strategy is None:
            exc.strategy = strategy
        return exc
    kind = classify_download_error(exc)
    message = str(exc).strip() or exc.__class__.__name__
    stderr = getattr(exc, "stderr", None)
    if isinstance(stderr, str) and stderr.strip():
        message = f"{message}: {stderr.strip().splitlines()[-1]}"
    if kind is DownloadErrorKind.AUTH:
        wrapped = AuthenticationError(message, strategy=strategy)
    elif kind is DownloadErrorKind.FATAL:
        wrapped = SourceUnavailableError(message, strategy=strategy)
    else:
        wrapped = RetryableDownloadError(message, strategy=strategy)
    wrapped.__cause__ = exc
    return wrapped
