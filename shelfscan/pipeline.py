"""Per-library file pipeline.

Walk -> classify/parse -> archive read, with a bounded number of files in
flight. Archive reads are the scarce resource: a semaphore caps how many are
open at once and each read runs on a separate pool so a hung filesystem can be
abandoned after ``archive_timeout`` seconds. Results come back in walk order.
Every file-level failure becomes a ``ScanWarning``; nothing is raised past
``run()`` except ``ScanCancelled``.
"""

from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from .archive import open_archive
from .classifier import Format, LibraryType
from .comicinfo import EmbeddedMetadata, parse_comicinfo_xml, parse_series_json
from .domain import DiscoveredFile, ScannedFile, ScanWarning, WarningKind
from .errors import ArchiveError, ArchiveTimeoutError, CancellationToken
from .logging_config import get_logger
from .parser import FilenameParser
from .path_utils import short_path
from .walker import DirectoryWalker, WalkReport

logger = get_logger(__name__)

WarningCallback = Callable[[ScanWarning], None]


@dataclass
class PipelineOutput:
    files: List[ScannedFile] = field(default_factory=list)
    warnings: List[ScanWarning] = field(default_factory=list)
    # Paths that exist but could not be read this pass; their catalog rows stay.
    protected_paths: Set[Path] = field(default_factory=set)
    folder_comicinfo: Dict[Path, EmbeddedMetadata] = field(default_factory=dict)
    series_json: Dict[Path, EmbeddedMetadata] = field(default_factory=dict)
    report: WalkReport = field(default_factory=WalkReport)


class FilePipeline:
    def __init__(
        self,
        parser: FilenameParser,
        file_pool: ThreadPoolExecutor,
        archive_pool: ThreadPoolExecutor,
        archive_slots: threading.BoundedSemaphore,
        archive_timeout: float = 30.0,
        window: int = 16,
    ):
        self.parser = parser
        self.file_pool = file_pool
        self.archive_pool = archive_pool
        self.archive_slots = archive_slots
        self.archive_timeout = archive_timeout
        self.window = max(1, window)

    def run(
        self,
        walker: DirectoryWalker,
        library_type: LibraryType,
        cancel: Optional[CancellationToken] = None,
        on_warning: Optional[WarningCallback] = None,
    ) -> PipelineOutput:
        output = PipelineOutput()

        def warn(warning: ScanWarning) -> None:
            output.warnings.append(warning)
            if on_warning is not None:
                on_warning(warning)

        walker.on_error = lambda path, reason: warn(ScanWarning(path, reason))

        in_flight: Deque[Tuple[DiscoveredFile, Future]] = deque()
        try:
            for discovered in walker.walk():
                if cancel is not None:
                    cancel.raise_if_cancelled()
                in_flight.append((discovered, self.file_pool.submit(self._process, discovered, library_type)))
                while len(in_flight) >= self.window:
                    self._collect(in_flight.popleft(), output, warn)
            while in_flight:
                self._collect(in_flight.popleft(), output, warn)
        finally:
            for _, future in in_flight:
                future.cancel()

        output.report = walker.report
        output.protected_paths.update(walker.report.unreadable)
        self._read_loose_sidecars(output, warn)
        logger.debug(
            f"Pipeline done: {len(output.files)} file(s), {len(output.warnings)} warning(s), "
            f"{output.report.excluded} excluded, {output.report.ignored} ignored"
        )
        return output

    def _collect(self, item: Tuple[DiscoveredFile, Future], output: PipelineOutput, warn: WarningCallback) -> None:
        discovered, future = item
        scanned, error = future.result()
        if error is not None:
            output.protected_paths.add(discovered.path)
            warn(ScanWarning(discovered.path, error))
            return
        output.files.append(scanned)

    def _process(self, discovered: DiscoveredFile, library_type: LibraryType) -> Tuple[Optional[ScannedFile], Optional[str]]:
        """Runs on the file pool. Returns (scanned, None) or (None, reason)."""
        info = self.parser.parse(discovered.path, library_type, discovered.root)
        try:
            pages, metadata = self._read_archive(discovered)
        except ArchiveError as exc:
            logger.warning(f"✗ {short_path(discovered.path)} - {exc.reason}")
            return None, exc.reason
        except Exception as exc:
            logger.error(f"✗ {short_path(discovered.path)} - Unexpected error: {exc}")
            return None, f"unexpected error: {exc}"

        if pages == 0 and discovered.format is Format.ARCHIVE:
            logger.warning(f"✗ {short_path(discovered.path)} - No pages found")
            return None, "no pages found"
        return ScannedFile(file=discovered, info=info, pages=pages, metadata=metadata), None

    def _read_archive(self, discovered: DiscoveredFile) -> Tuple[int, Optional[EmbeddedMetadata]]:
        # A slot can stay held by a hung read; waiting for one is bounded too.
        if not self.archive_slots.acquire(timeout=self.archive_timeout):
            raise ArchiveTimeoutError(discovered.path, f"no archive slot free within {self.archive_timeout:g}s")
        try:
            future = self.archive_pool.submit(_read_handle, discovered)
        except BaseException:
            self.archive_slots.release()
            raise
        # The slot is held until the read really finishes, even after a timeout.
        future.add_done_callback(lambda _: self.archive_slots.release())
        try:
            return future.result(timeout=self.archive_timeout)
        except FutureTimeout:
            future.cancel()
            raise ArchiveTimeoutError(discovered.path, f"read timed out after {self.archive_timeout:g}s") from None

    def _read_loose_sidecars(self, output: PipelineOutput, warn: WarningCallback) -> None:
        for sidecar in output.report.sidecars:
            try:
                data = sidecar.read_bytes()
            except OSError as exc:
                warn(ScanWarning(sidecar, f"Unable to read sidecar: {exc.strerror or exc}", WarningKind.FILE))
                continue
            if sidecar.name.lower() == "series.json":
                metadata = parse_series_json(data)
                if metadata is not None:
                    output.series_json[sidecar.parent] = metadata
            else:
                metadata = parse_comicinfo_xml(data)
                if metadata is not None:
                    output.folder_comicinfo[sidecar.parent] = metadata


def _read_handle(discovered: DiscoveredFile) -> Tuple[int, Optional[EmbeddedMetadata]]:
    with open_archive(discovered.path, discovered.format) as handle:
        pages = handle.entry_count()
        try:
            metadata = handle.read_sidecar_metadata()
        except ArchiveError:
            raise
        except (OSError, KeyError, ValueError) as exc:
            # A broken sidecar entry is logged and treated as absent.
            logger.warning(f"Ignoring unreadable sidecar in {short_path(discovered.path)}: {exc}")
            metadata = None
    return pages, metadata

