"""Exception types raised by the scanning engine.

File-level errors (``ArchiveError`` and subclasses) never escape the per-library
pipeline; they are converted into warnings. ``LibraryScanError`` fails a single
library. ``ScanCancelled`` stops a scan at the next safe boundary.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional


class ShelfscanError(Exception):
    """Base class for all scanning errors."""


class ArchiveError(ShelfscanError):
    """A single file could not be read."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"{path.name}: {reason}")
        self.path = path
        self.reason = reason


class CorruptArchiveError(ArchiveError):
    pass


class NestedArchiveError(ArchiveError):
    pass


class ArchiveTimeoutError(ArchiveError):
    pass


class LibraryScanError(ShelfscanError):
    """The whole library pass cannot continue (root missing, store unreachable)."""

    def __init__(self, library_id: int, reason: str, cause: Optional[BaseException] = None):
        super().__init__(f"Library {library_id}: {reason}")
        self.library_id = library_id
        self.reason = reason
        self.cause = cause


class ScanCancelled(ShelfscanError):
    pass


class CancellationToken:
    """Cooperative cancellation flag shared by one scan run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ScanCancelled("Scan cancelled")
