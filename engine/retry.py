"""Bounded retry with exponential backoff and jitter."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 1.0
JITTER_RANGE = (0.5, 1.0)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY

    @classmethod
    def from_config(cls, config):
        cfg = (config or {}).get("retry") or {}
        return cls(
            max_attempts=max(1, int(cfg.get("max_attempts", DEFAULT_MAX_ATTEMPTS))),
            base_delay=max(0.0, float(cfg.get("base_delay", DEFAULT_BASE_DELAY))),
        )


def backoff_delay(attempt, base_delay, *, jitter=None):
    """Delay to wait after failed ``attempt`` (1-based)."""
    factor = jitter() if jitter is not None else random.uniform(*JITTER_RANGE)
    return base_delay * (2 ** (attempt - 1)) * factor


def retry(
    operation,
    max_attempts=DEFAULT_MAX_ATTEMPTS,
    base_delay=DEFAULT_BASE_DELAY,
    *,
    should_retry=None,
    idempotent=True,
    allow_non_idempotent=False,
    sleep=time.sleep,
    jitter=None,
    label=None,
):
    """Call ``operation`` until it succeeds or the attempt budget is spent.

    Returns the operation's result. When every attempt fails the last
    exception is re-raised unchanged. ``should_retry(exc)`` returning False
    stops immediately. Operations flagged non-idempotent run once unless the
    caller opts in with ``allow_non_idempotent``.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    budget = max_attempts if (idempotent or allow_non_idempotent) else 1
    last_error = None
    for attempt in range(1, budget + 1):
        try:
            return operation()
        except Exception as exc:
            last_error = exc
            if attempt >= budget:
                break
            if should_retry is not None and not should_retry(exc):
                break
            delay = backoff_delay(attempt, base_delay, jitter=jitter)
            logger.info(
                "retry label=%s attempt=%s/%s delay=%.3fs error=%s",
                label or getattr(operation, "__name__", "operation"),
                attempt,
                budget,
                delay,
                exc,
            )
            sleep(delay)
    raise last_error
