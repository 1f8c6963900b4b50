from __future__ import annotations

import subprocess

import pytest
import requests

from engine.errors import (
    AuthenticationError,
    DownloadErrorKind,
    RetryableDownloadError,
    SourceUnavailableError,
    as_download_error,
    classify_download_error,
)


def _http_error(status: int) -> requests.HTTPError:
    response = requests.Response()
    response.status_code = status
    return requests.HTTPError(f"{status} error", response=response)


@pytest.mark.parametrize(
    ("status", "kind"),
    [
        (401, DownloadErrorKind.AUTH),
        (403, DownloadErrorKind.AUTH),
        (404, DownloadErrorKind.FATAL),
        (410, DownloadErrorKind.FATAL),
        (429, DownloadErrorKind.RETRYABLE),
        (503, DownloadErrorKind.RETRYABLE),
    ],
)
def test_http_status_wins_over_message(status: int, kind: DownloadErrorKind) -> None:
    assert classify_download_error(_http_error(status)) is kind


def test_timeouts_and_connection_errors_are_retryable() -> None:
    assert classify_download_error(requests.Timeout("read timed out")) is DownloadErrorKind.RETRYABLE
    assert classify_download_error(requests.ConnectionError("reset")) is DownloadErrorKind.RETRYABLE
    assert (
        classify_download_error(subprocess.TimeoutExpired(["yt-dlp"], 300)) is DownloadErrorKind.RETRYABLE
    )
    assert classify_download_error(TimeoutError("budget")) is DownloadErrorKind.RETRYABLE


def test_message_heuristic_detects_cookie_rejection() -> None:
    exc = RuntimeError("ERROR: [youtube] abc: Sign in to confirm you're not a bot")
    assert classify_download_error(exc) is DownloadErrorKind.AUTH


def test_called_process_stderr_is_inspected() -> None:
    exc = subprocess.CalledProcessError(1, ["yt-dlp"], stderr="ERROR: Private video. Sign in if you've been granted access")
    # the auth marker is not present, "private video" is
    assert classify_download_error(exc) is DownloadErrorKind.FATAL


def test_unknown_errors_default_to_retryable() -> None:
    assert classify_download_error(RuntimeError("something odd")) is DownloadErrorKind.RETRYABLE


def test_already_classified_errors_keep_their_kind() -> None:
    assert classify_download_error(SourceUnavailableError("gone")) is DownloadErrorKind.FATAL
    assert classify_download_error(AuthenticationError("nope")) is DownloadErrorKind.AUTH


def test_as_download_error_wraps_and_chains() -> None:
    original = subprocess.CalledProcessError(1, ["yt-dlp"], stderr="line one\nHTTP Error 403: Forbidden\n")

    wrapped = as_download_error(original, strategy="ytdlp_cookies")

    assert isinstance(wrapped, AuthenticationError)
    assert wrapped.strategy == "ytdlp_cookies"
    assert wrapped.__cause__ is original
    assert "HTTP Error 403: Forbidden" in str(wrapped)


def test_as_download_error_fills_missing_strategy_only() -> None:
    existing = RetryableDownloadError("empty output")
    assert as_download_error(existing, strategy="scrape") is existing
    assert existing.strategy == "scrape"

    tagged = RetryableDownloadError("empty output", strategy="browser")
    assert as_download_error(tagged, strategy="scrape").strategy == "browser"
