"""Move composed outputs into the statically served directory."""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from engine.errors import PublishError
from engine.staging import remove_path

logger = logging.getLogger(__name__)

PUBLIC_URL_PREFIX = "/videos"


@dataclass(frozen=True)
class PublishedOutput:
    path: str
    url: str

    def to_dict(self):
        return {"path": self.path, "url": self.url}


def atomic_move(src, dst):
    try:
        os.replace(src, dst)
    except OSError:
        shutil.copy2(src, dst)
        os.remove(src)


def public_url(filename, base_url=None):
    base = (base_url or "").rstrip("/")
    return f"{base}{PUBLIC_URL_PREFIX}/{filename}"


def publish_outputs(job_id, produced, public_dir, *, base_url=None) -> dict[str, PublishedOutput]:
    """Publish ``{role: local_path}`` as ``<public_dir>/<role>-<job_id><ext>``.

    On any failure the files already published for this job are removed and
    :class:`PublishError` is raised.
    """
    public_root = Path(public_dir)
    published: dict[str, PublishedOutput] = {}
    try:
        public_root.mkdir(parents=True, exist_ok=True)
        for role, local_path in produced.items():
            src = Path(local_path)
            if not src.is_file() or src.stat().st_size == 0:
                raise PublishError(f"output {role} is missing or empty: {src}")
            filename = f"{role}-{job_id}{src.suffix}"
            dst = public_root / filename
            atomic_move(str(src), str(dst))
            published[role] = PublishedOutput(path=str(dst), url=public_url(filename, base_url))
            logger.info("published job_id=%s role=%s path=%s", job_id, role, dst)
    except PublishError:
        _rollback(published)
        raise
    except OSError as exc:
        _rollback(published)
        raise PublishError(f"failed to publish outputs: {exc}") from exc
    return published


def _rollback(published):
    for output in published.values():
        remove_path(output.path)
