"""Pool of revocable download credentials (yt-dlp cookie jars).

The pool is the only state shared across concurrently running jobs. Selection
never mutates record state; revocation is the only transition and it is
idempotent.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Protocol

from engine.events import log_event

logger = logging.getLogger(__name__)

COOKIE_FILE_PATTERN = "*.txt"


class CredentialState(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"


@dataclass(frozen=True)
class CredentialRecord:
    id: str
    payload: str
    state: CredentialState = CredentialState.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.state is CredentialState.ACTIVE


class CredentialRepository(Protocol):
    def list(self) -> list[CredentialRecord]:
        """Return every stored credential."""

    def revoke(self, credential_id: str) -> None:
        """Remove a credential from the backing store."""


class FileCredentialRepository:
    """One Netscape cookie file per credential; the payload is the file path."""

    def __init__(self, directory, pattern=COOKIE_FILE_PATTERN):
        self.directory = Path(directory)
        self.pattern = pattern

    def list(self) -> list[CredentialRecord]:
        if not self.directory.is_dir():
            return []
        records = []
        for path in sorted(self.directory.glob(self.pattern)):
            if not path.is_file() or path.stat().st_size == 0:
                continue
            records.append(CredentialRecord(id=path.name, payload=str(path)))
        return records

    def revoke(self, credential_id: str) -> None:
        path = self.directory / credential_id
        try:
            os.remove(path)
        except FileNotFoundError:
            return
        except OSError:
            logger.warning("failed to delete revoked credential file %s", path, exc_info=True)


class InMemoryCredentialRepository:
    def __init__(self, payloads: Optional[dict] = None):
        self._payloads = dict(payloads or {})
        self.revoked: list[str] = []

    def list(self) -> list[CredentialRecord]:
        return [CredentialRecord(id=key, payload=value) for key, value in self._payloads.items()]

    def revoke(self, credential_id: str) -> None:
        self.revoked.append(credential_id)
        self._payloads.pop(credential_id, None)


class CredentialPool:
    def __init__(self, repository: CredentialRepository):
        self._repository = repository
        self._lock = threading.Lock()
        self._records = {record.id: record for record in repository.list()}
        self._order = list(self._records)
        self._cursor = 0
        logger.info("credential pool loaded count=%s", len(self._order))

    def acquire(self, strategy_class=None, exclude: Iterable[str] = ()) -> Optional[CredentialRecord]:
        """Return the next Active credential in round-robin order, or None."""
        excluded = set(exclude or ())
        with self._lock:
            total = len(self._order)
            for offset in range(total):
                index = (self._cursor + offset) % total
                record = self._records[self._order[index]]
                if not record.is_active or record.id in excluded:
                    continue
                self._cursor = (index + 1) % total
                return record
        return None

    def revoke(self, credential_id: str) -> bool:
        """Mark a credential Revoked. Returns False when it was not Active."""
        with self._lock:
            record = self._records.get(credential_id)
            if record is None or not record.is_active:
                return False
            self._records[credential_id] = replace(record, state=CredentialState.REVOKED)
        log_event(logging.WARNING, "credential_revoked", credential_id=credential_id)
        try:
            self._repository.revoke(credential_id)
        except Exception:
            logger.exception("credential repository revoke failed id=%s", credential_id)
        return True

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for record in self._records.values() if record.is_active)

    def snapshot(self) -> list[CredentialRecord]:
        with self._lock:
            return [self._records[key] for key in self._order]
