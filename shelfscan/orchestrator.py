"""Scan orchestration.

``ScanOrchestrator`` owns the worker pools for one process and runs library
scans through them: walk + parse + archive reads on the file pools, then
assembly and a single-threaded reconciliation per library. Libraries can run
side by side (``library_workers``); one library never reconciles twice at
the same time.

No exception escapes ``scan_library``: file and series problems become
warnings, anything else fails that library only.
"""

from __future__ import annotations

import enum
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .assembler import SeriesAssembler
from .config import LibrarySettings, ScanSettings
from .domain import CommitResult, CreateSeries, EntityKind, ReconciliationResult, ScanWarning, WarningKind
from .errors import CancellationToken, LibraryScanError, ScanCancelled
from .events import EventKind, NotificationSink, NullNotificationSink
from .logging_config import get_logger
from .parser import FilenameParser
from .pipeline import FilePipeline
from .reconciler import ReconciliationEngine
from .walker import DirectoryWalker

logger = get_logger(__name__)


class ScanStatus(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ScanStats:
    files_scanned: int = 0
    files_unchanged: int = 0
    series_created: int = 0
    series_updated: int = 0
    series_removed: int = 0
    entities_removed: int = 0
    errors: int = 0

    def as_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


@dataclass
class LibraryScanResult:
    library_id: int
    library_name: str
    status: ScanStatus
    stats: ScanStats = field(default_factory=ScanStats)
    warnings: List[ScanWarning] = field(default_factory=list)
    elapsed: float = 0.0
    error: Optional[str] = None
    diff: Optional[ReconciliationResult] = None
    commit: Optional[CommitResult] = None

    def summary(self) -> Dict[str, object]:
        return {
            "library_id": self.library_id,
            "library": self.library_name,
            "status": self.status.value,
            "elapsed": round(self.elapsed, 3),
            "warnings": len(self.warnings),
            **self.stats.as_dict(),
        }


class ScanOrchestrator:
    """Process-scoped scan runner. Close it (or use ``with``) to stop its pools."""

    def __init__(
        self,
        settings: ScanSettings,
        store,
        sink: Optional[NotificationSink] = None,
        parser: Optional[FilenameParser] = None,
    ):
        self.settings = settings
        self.store = store
        self.sink = sink or NullNotificationSink()
        scanner = settings.scanner
        self.parser = parser or FilenameParser(budget_seconds=scanner.parse_budget_ms / 1000.0)
        self._library_pool = ThreadPoolExecutor(max_workers=scanner.library_workers, thread_name_prefix="library")
        self._file_pool = ThreadPoolExecutor(max_workers=scanner.file_workers, thread_name_prefix="file")
        self._archive_pool = ThreadPoolExecutor(max_workers=scanner.max_open_archives, thread_name_prefix="archive")
        self._archive_slots = threading.BoundedSemaphore(scanner.max_open_archives)
        self._running: Dict[int, threading.Lock] = {}
        self._running_guard = threading.Lock()
        self._closed = False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._library_pool.shutdown(wait=True)
        self._file_pool.shutdown(wait=True)
        # Hung archive reads are abandoned, not waited for.
        self._archive_pool.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "ScanOrchestrator":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # -- public API --------------------------------------------------------

    def scan_all(
        self,
        libraries: Optional[Sequence[LibrarySettings]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> List[LibraryScanResult]:
        """Scan libraries on the library pool; results keep the input order."""
        libraries = list(libraries if libraries is not None else self.settings.libraries)
        cancel = cancel or CancellationToken()
        futures = [self._library_pool.submit(self.scan_library, library, cancel) for library in libraries]
        return [future.result() for future in futures]

    def scan_library(
        self,
        library: LibrarySettings,
        cancel: Optional[CancellationToken] = None,
    ) -> LibraryScanResult:
        lock = self._library_lock(library.id)
        with lock:
            return self._scan(library, cancel or CancellationToken())

    # -- internals ---------------------------------------------------------

    def _library_lock(self, library_id: int) -> threading.Lock:
        with self._running_guard:
            return self._running.setdefault(library_id, threading.Lock())

    def _publish(self, kind: EventKind, payload: Dict[str, object]) -> None:
        try:
            self.sink.publish(kind, payload)
        except Exception as exc:
            logger.error(f"Notification sink rejected {kind.value}: {exc}")

    def _scan(self, library: LibrarySettings, cancel: CancellationToken) -> LibraryScanResult:
        started = time.monotonic()
        result = LibraryScanResult(library.id, library.name, ScanStatus.COMPLETED)

        if cancel.cancelled:
            result.status = ScanStatus.CANCELLED
            result.warnings.append(ScanWarning(None, "Scan cancelled before start", WarningKind.LIBRARY))
            return result

        logger.info(f"[SCAN] {library.name} ({library.type.value}, {len(library.paths)} root(s))")
        self._publish(EventKind.SCAN_STARTED, {"library_id": library.id, "library": library.name})

        def on_warning(warning: ScanWarning) -> None:
            if warning.kind is WarningKind.FILE and warning.path is not None:
                self._publish(EventKind.FILE_ERROR, {"library_id": library.id, "path": str(warning.path), "reason": warning.reason})

        try:
            self._run(library, cancel, result, on_warning)
        except ScanCancelled:
            result.status = ScanStatus.CANCELLED
            result.warnings.append(ScanWarning(None, "Scan cancelled before reconciliation; nothing committed", WarningKind.LIBRARY))
            logger.info(f"[SCAN] {library.name} cancelled")
        except LibraryScanError as exc:
            result.status = ScanStatus.FAILED
            result.error = exc.reason
            result.warnings.append(ScanWarning(None, exc.reason, WarningKind.LIBRARY))
            logger.error(f"✗ Library '{library.name}' failed: {exc.reason}")
        except Exception as exc:
            result.status = ScanStatus.FAILED
            result.error = f"unexpected error: {exc}"
            result.warnings.append(ScanWarning(None, result.error, WarningKind.LIBRARY))
            logger.exception(f"✗ Library '{library.name}' failed unexpectedly")

        result.elapsed = time.monotonic() - started
        result.stats.errors = sum(1 for w in result.warnings if w.kind is not WarningKind.LIBRARY)
        self._publish(EventKind.SCAN_COMPLETED, {"library_id": library.id, "summary": result.summary()})
        if result.status is ScanStatus.COMPLETED:
            s = result.stats
            logger.info(
                f"✓ {library.name}: {s.files_scanned} files, {s.series_created} series created, "
                f"{s.series_updated} updated, {s.series_removed} removed, {s.errors} error(s) "
                f"in {result.elapsed:.1f}s"
            )
        return result

    def _run(self, library: LibrarySettings, cancel: CancellationToken, result: LibraryScanResult, on_warning) -> None:
        settings = self.settings
        walker = DirectoryWalker(
            library.id,
            library.paths,
            exclude=library.exclude,
            max_depth=settings.effective_depth(library),
            ignore_names=settings.scanner.ignore_patterns,
        )
        pipeline = FilePipeline(
            self.parser,
            self._file_pool,
            self._archive_pool,
            self._archive_slots,
            archive_timeout=settings.scanner.archive_timeout,
            window=settings.scanner.file_workers * 4,
        )

        cancel.raise_if_cancelled()
        output = pipeline.run(walker, library.type, cancel, on_warning)
        result.warnings.extend(output.warnings)
        result.stats.files_scanned = len(output.files)

        if output.report.missing_roots and len(output.report.missing_roots) == len(library.paths):
            raise LibraryScanError(library.id, "no library root is accessible")
        for root in output.report.missing_roots:
            result.warnings.append(ScanWarning(root, "Library root is not accessible; its entries are kept", WarningKind.LIBRARY))
        for root in output.report.empty_roots:
            result.warnings.append(ScanWarning(root, "Library root holds no supported files", WarningKind.LIBRARY))

        assembler = SeriesAssembler(library.id, library.type, settings.metadata)
        assembler.add_all(output.files, output.folder_comicinfo, output.series_json)
        scanned = assembler.build()
        for warning in assembler.warnings:
            result.warnings.append(warning)

        # The walk has fully drained here; only now may the diff remove anything.
        engine = ReconciliationEngine(library.id, self.store, settings.metadata, settings.scanner.allow_empty_roots)
        protected = set(output.protected_paths) | set(output.report.missing_roots)
        nothing_found = output.report.files == 0 and not output.protected_paths
        diff = engine.reconcile(scanned, protected, nothing_found, cancel)
        result.diff = diff
        result.warnings.extend(diff.warnings)

        commit = engine.commit(diff)
        result.commit = commit
        for failed in commit.failed:
            result.warnings.append(
                ScanWarning(None, f"{type(failed.operation).__name__} not applied: {failed.reason}", WarningKind.SERIES)
            )

        self._count(diff, commit, result)
        for series in scanned:
            self._publish(
                EventKind.SERIES_PROCESSED,
                {
                    "library_id": library.id,
                    "series": series.name,
                    "volumes": len(series.volumes),
                    "files": series.file_count(),
                },
            )
        if diff.cancelled:
            result.status = ScanStatus.CANCELLED

    @staticmethod
    def _count(diff: ReconciliationResult, commit: CommitResult, result: LibraryScanResult) -> None:
        failed = {id(f.operation) for f in commit.failed}
        stats = result.stats
        stats.files_unchanged = diff.unchanged_files
        stats.series_created = sum(1 for op in diff.to_create if isinstance(op, CreateSeries) and id(op) not in failed)
        touched = {
            op.series_id for op in diff.to_update if id(op) not in failed
        } | {
            op.series_id for op in diff.to_create if not isinstance(op, CreateSeries) and id(op) not in failed
        }
        removed_series = {
            op.series_id for op in diff.to_remove if op.kind is EntityKind.SERIES and id(op) not in failed
        }
        touched |= {op.series_id for op in diff.to_remove if op.kind is not EntityKind.SERIES and id(op) not in failed}
        stats.series_updated = len(touched - removed_series)
        stats.series_removed = len(removed_series)
        stats.entities_removed = sum(1 for op in diff.to_remove if id(op) not in failed)
