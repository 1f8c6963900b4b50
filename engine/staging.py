"""Per-job scratch paths with guaranteed cleanup."""

from __future__ import annotations

import itertools
import logging
import os
import shutil
import threading
import time
from pathlib import Path

logger = logging.getLogger(__name__)

_COUNTER = itertools.count(1)
_COUNTER_LOCK = threading.Lock()


def _next_token():
    with _COUNTER_LOCK:
        value = next(_COUNTER)
    return f"{int(time.time() * 1000)}-{value}"


def remove_path(path):
    """Best-effort delete of a file or directory tree. Never raises."""
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        elif os.path.lexists(path):
            os.remove(path)
        else:
            return False
        logger.info("removed temp path %s", path)
        return True
    except Exception as exc:
        logger.warning("failed to remove temp path %s: %s", path, exc)
        return False


class StagingArea:
    """Issue collision-free paths under ``<work_dir>/<job_id>`` and delete them on exit.

    Cleanup runs on both success and failure paths. Files that tools wrote
    next to an issued path (yt-dlp ``.part``/``.webm`` siblings sharing the
    stem) are removed with it, and finally the job directory itself.
    """

    def __init__(self, work_dir, job_id):
        self.job_id = job_id
        self.root = Path(work_dir) / job_id
        self._issued: list[Path] = []
        self._lock = threading.Lock()
        self.closed = False

    def __enter__(self):
        self.root.mkdir(parents=True, exist_ok=True)
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cleanup()
        return False

    def path(self, role, suffix=".mp4") -> Path:
        if self.closed:
            raise RuntimeError(f"staging area for job {self.job_id} is closed")
        candidate = self.root / f"{role}-{_next_token()}{suffix}"
        with self._lock:
            self._issued.append(candidate)
        return candidate

    @property
    def issued(self) -> list[Path]:
        with self._lock:
            return list(self._issued)

    def cleanup(self):
        self.closed = True
        for issued in self.issued:
            remove_path(issued)
            if issued.parent.is_dir():
                for sibling in issued.parent.glob(f"{issued.stem}.*"):
                    remove_path(sibling)
        remove_path(self.root)


def sweep_stale_workspace(work_dir, *, max_age_seconds, active_job_ids=(), now=None):
    """Delete job directories older than ``max_age_seconds`` not owned by an active job."""
    root = Path(work_dir)
    if not root.is_dir():
        return []
    current = now if now is not None else time.time()
    active = set(active_job_ids or ())
    removed = []
    for entry in root.iterdir():
        if entry.name in active:
            continue
        try:
            age = current - entry.stat().st_mtime
        except OSError:
            continue
        if age < max_age_seconds:
            continue
        if remove_path(entry):
            removed.append(entry.name)
    if removed:
        logger.info("workspace sweep removed %d stale entries", len(removed))
    return removed
