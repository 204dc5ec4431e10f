"""Filesystem monitoring for Shelfscan.

Uses Watchdog to notice changes under library roots. Events are queued,
batched over a short window and collapsed into one rescan per affected
library; the rescan itself is a normal orchestrator pass, so renames and
deletes go through reconciliation like any other scan.
"""

from __future__ import annotations

import queue
import time
from pathlib import Path
from threading import Event, Thread
from typing import Dict, List, NamedTuple, Optional, Sequence

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .classifier import FileClass, classify
from .config import LibrarySettings, ScanSettings
from .logging_config import get_logger
from .path_utils import find_root
from .walker import IGNORE_FILE_NAME

logger = get_logger(__name__)

BATCH_WINDOW = 1.0  # Seconds to wait for more events


class MonitorTask(NamedTuple):
    action: str
    path: Path
    dest_path: Optional[Path] = None


def is_relevant(path: Path, is_directory: bool = False) -> bool:
    """Directories, supported files, sidecars and ignore files trigger a rescan."""
    if path.name.startswith("._"):
        return False
    if is_directory or path.name == IGNORE_FILE_NAME:
        return True
    return classify(path).kind is not FileClass.IGNORED


class LibraryEventHandler(FileSystemEventHandler):
    """Handle filesystem events and push them to a processing queue."""

    def __init__(self, task_queue: queue.Queue, debounce_seconds: int = 2):
        super().__init__()
        self.task_queue = task_queue
        self.debounce_seconds = debounce_seconds
        self._last_modified: Dict[str, float] = {}

    def on_created(self, event: FileSystemEvent) -> None:
        path = Path(event.src_path)
        if is_relevant(path, event.is_directory):
            self.task_queue.put(MonitorTask("created", path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        path = Path(event.src_path)
        if is_relevant(path, event.is_directory):
            self.task_queue.put(MonitorTask("deleted", path))

    def on_moved(self, event: FileSystemEvent) -> None:
        src_path = Path(event.src_path)
        dest_path = Path(event.dest_path)
        if is_relevant(src_path, event.is_directory) or is_relevant(dest_path, event.is_directory):
            self.task_queue.put(MonitorTask("moved", src_path, dest_path=dest_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return

        path = Path(event.src_path)
        if not is_relevant(path):
            return

        # Simple debounce for modified files
        now = time.time()
        key = str(path)
        last = self._last_modified.get(key, 0)
        if now - last < self.debounce_seconds:
            return

        self._last_modified[key] = now
        self.task_queue.put(MonitorTask("modified", path))

        # Prune stale entries to prevent unbounded growth
        cutoff = now - self.debounce_seconds * 2
        self._last_modified = {
            k: v for k, v in self._last_modified.items() if v > cutoff
        }


def affected_libraries(tasks: Sequence[MonitorTask], libraries: Sequence[LibrarySettings]) -> List[LibrarySettings]:
    """Collapse a batch of tasks into the libraries that need a rescan.

    A move touches both the library it left and the one it entered. Libraries
    come back in configuration order, each at most once.
    """
    roots = {root: library for library in libraries for root in library.paths}
    hit: set[int] = set()
    for task in tasks:
        for path in (task.path, task.dest_path):
            if path is None:
                continue
            root = find_root(path, roots)
            if root is not None:
                hit.add(roots[root].id)
    return [library for library in libraries if library.id in hit]


def drain_batch(task_queue: queue.Queue, first_task: MonitorTask, window: float = BATCH_WINDOW) -> List[MonitorTask]:
    """Collect everything that arrives within ``window`` seconds of the first task."""
    batch = [first_task]
    start_time = time.time()
    while (time.time() - start_time) < window:
        try:
            batch.append(task_queue.get_nowait())
        except queue.Empty:
            # Queue empty, wait a bit to see if more come (debounce burst)
            time.sleep(0.1)
    return batch


def process_queue(task_queue: queue.Queue, settings: ScanSettings, orchestrator, stop_event: Event) -> None:
    """Worker loop: batch events, then rescan each affected library once."""
    while not stop_event.is_set():
        try:
            # Block until first task arrives
            first_task = task_queue.get(timeout=1.0)
        except queue.Empty:
            continue

        batch = drain_batch(task_queue, first_task)
        libraries = affected_libraries(batch, settings.libraries)
        logger.debug(f"Monitor batch: {len(batch)} event(s) -> {len(libraries)} library rescan(s)")

        for library in libraries:
            if stop_event.is_set():
                break
            result = orchestrator.scan_library(library)
            logger.info(f"[WATCH] {library.name}: {result.status.value} ({len(result.warnings)} warning(s))")


class MonitorHandle(NamedTuple):
    observer: Observer
    worker: Thread
    stop_event: Event

    def stop(self, timeout: float = 5.0) -> None:
        self.stop_event.set()
        self.observer.stop()
        self.observer.join(timeout)
        self.worker.join(timeout)


def start_file_monitoring(settings: ScanSettings, orchestrator) -> Optional[MonitorHandle]:
    """Start filesystem monitoring if enabled in config."""
    if not settings.monitoring.enabled:
        logger.info("File monitoring disabled")
        return None

    task_queue: queue.Queue = queue.Queue()
    stop_event = Event()
    event_handler = LibraryEventHandler(task_queue, settings.monitoring.debounce_seconds)

    observer = Observer()
    watched = 0
    for library in settings.libraries:
        for root in library.paths:
            if not root.exists():
                logger.error(f"Library path does not exist: {root}")
                continue
            observer.schedule(event_handler, str(root), recursive=True)
            watched += 1
    if watched == 0:
        logger.error("No library root can be watched")
        return None

    # Start the worker thread
    worker = Thread(
        target=process_queue,
        args=(task_queue, settings, orchestrator, stop_event),
        daemon=True,
        name="ShelfscanMonitorWorker",
    )
    worker.start()
    observer.start()
    logger.info(f"Watching {watched} library root(s)")
    return MonitorHandle(observer, worker, stop_event)
