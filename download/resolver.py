"""Ordered fallback over download strategies with credential eviction."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from engine.errors import (
    DownloadError,
    DownloadErrorKind,
    FatalDownloadError,
    RetryableDownloadError,
    as_download_error,
    classify_download_error,
)
from engine.events import log_event
from engine.retry import RetryPolicy, retry
from engine.staging import remove_path
from media.validation import is_nonempty_file

logger = logging.getLogger(__name__)


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


@dataclass(frozen=True)
class DownloadAttempt:
    strategy: str
    credential_id: Optional[str]
    outcome: AttemptOutcome
    error: Optional[str] = None

    def to_dict(self):
        return {
            "strategy": self.strategy,
            "outcome": self.outcome.value,
            "credential_id": self.credential_id,
            "error": self.error,
        }


def _is_retryable(exc) -> bool:
    return classify_download_error(exc) is DownloadErrorKind.RETRYABLE


class DownloadResolver:
    def __init__(self, strategies, pool=None, retry_policy: Optional[RetryPolicy] = None, *, sleep=time.sleep):
        self.strategies = list(strategies)
        self.pool = pool
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def download(self, source, destination) -> list[DownloadAttempt]:
        """Materialize ``source`` at ``destination`` using the first strategy that works.

        Returns the attempt log on success; raises :class:`FatalDownloadError`
        carrying every attempt when all strategies fail or none applies.
        """
        destination = Path(destination)
        attempts: list[DownloadAttempt] = []
        for strategy in self.strategies:
            if not strategy.is_available(source):
                log_event(logging.INFO, "download_strategy_skipped", strategy=strategy.name, role=source.role)
                continue
            if strategy.uses_credentials:
                succeeded = self._run_with_credentials(strategy, source, destination, attempts)
            else:
                succeeded = self._attempt(strategy, source, destination, attempts) is None
            if succeeded:
                log_event(
                    logging.INFO,
                    "download_resolved",
                    strategy=strategy.name,
                    role=source.role,
                    attempts=len(attempts),
                )
                return attempts

        summary = "; ".join(f"{a.strategy}: {a.error}" for a in attempts if a.error)
        if not summary:
            summary = "no download strategy was applicable"
        log_event(
            logging.ERROR,
            "download_exhausted",
            role=source.role,
            reference=source.reference,
            attempts=[a.to_dict() for a in attempts],
        )
        raise FatalDownloadError(
            f"could not download {source.role} source {source.reference}: {summary}",
            attempts=attempts,
        )

    def _run_with_credentials(self, strategy, source, destination, attempts) -> bool:
        if self.pool is None:
            log_event(logging.INFO, "download_strategy_skipped", strategy=strategy.name, reason="no_pool")
            return False
        tried = set()
        while True:
            credential = self.pool.acquire(strategy.name, exclude=tried)
            if credential is None:
                if not tried:
                    log_event(logging.INFO, "download_strategy_skipped", strategy=strategy.name, reason="no_credentials")
                return False
            tried.add(credential.id)
            error = self._attempt(strategy, source, destination, attempts, credential=credential)
            if error is None:
                return True
            if error.kind is not DownloadErrorKind.AUTH:
                return False
            self.pool.revoke(credential.id)

    def _attempt(self, strategy, source, destination, attempts, *, credential=None) -> Optional[DownloadError]:
        credential_id = credential.id if credential is not None else None

        def _operation():
            remove_path(destination)
            try:
                strategy.fetch(source, destination, credential=credential)
            except Exception as exc:
                raise as_download_error(exc, strategy=strategy.name)
            if not is_nonempty_file(destination):
                raise RetryableDownloadError("download produced an empty file", strategy=strategy.name)

        policy = self.retry_policy
        try:
            retry(
                _operation,
                policy.max_attempts,
                policy.base_delay,
                should_retry=_is_retryable,
                sleep=self._sleep,
                label=f"{strategy.name}:{source.role}",
            )
        except DownloadError as exc:
            remove_path(destination)
            outcome = (
                AttemptOutcome.RETRYABLE_FAILURE
                if exc.kind is DownloadErrorKind.RETRYABLE
                else AttemptOutcome.FATAL_FAILURE
            )
            attempt = DownloadAttempt(strategy.name, credential_id, outcome, str(exc))
            attempts.append(attempt)
            log_event(logging.WARNING, "download_attempt_failed", role=source.role, kind=exc.kind.value, **attempt.to_dict())
            return exc
        attempts.append(DownloadAttempt(strategy.name, credential_id, AttemptOutcome.SUCCESS))
        return None
