"""Tests for the per-library file pipeline."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from shelfscan.classifier import LibraryType
from shelfscan.domain import WarningKind
from shelfscan.parser import FilenameParser
from shelfscan.pipeline import FilePipeline
from shelfscan.walker import DirectoryWalker


def _create_files(folder: Path, count: int) -> list:
    folder.mkdir(parents=True, exist_ok=True)
    names = []
    for index in range(1, count + 1):
        name = f"S v{index:02d}.cbz"
        (folder / name).write_bytes(name.encode("utf-8"))
        names.append(name)
    return names


def _run(root: Path, file_workers: int, archive_workers: int, slots: int, timeout: float):
    file_pool = ThreadPoolExecutor(max_workers=file_workers)
    archive_pool = ThreadPoolExecutor(max_workers=archive_workers)
    pipeline = FilePipeline(
        FilenameParser(),
        file_pool,
        archive_pool,
        threading.BoundedSemaphore(slots),
        archive_timeout=timeout,
    )
    try:
        return pipeline.run(DirectoryWalker(1, [root]), LibraryType.MANGA)
    finally:
        file_pool.shutdown(wait=False)
        archive_pool.shutdown(wait=False)


def test_hung_read_becomes_one_warning(tmp_path, monkeypatch):
    _create_files(tmp_path / "S", 3)
    release = threading.Event()

    def fake_read(discovered):
        if discovered.path.name == "S v01.cbz":
            release.wait(10)
        return 1, None

    monkeypatch.setattr("shelfscan.pipeline._read_handle", fake_read)
    try:
        output = _run(tmp_path, file_workers=3, archive_workers=2, slots=2, timeout=0.3)
    finally:
        release.set()

    (warning,) = output.warnings
    assert warning.path == tmp_path / "S" / "S v01.cbz"
    assert warning.kind is WarningKind.FILE
    assert "timed out" in warning.reason
    assert [f.file.path.name for f in output.files] == ["S v02.cbz", "S v03.cbz"]
    assert warning.path in output.protected_paths


def test_hung_read_holding_every_slot_does_not_block_library(tmp_path, monkeypatch):
    _create_files(tmp_path / "S", 3)
    release = threading.Event()

    def fake_read(discovered):
        if discovered.path.name == "S v01.cbz":
            release.wait(10)
        return 1, None

    monkeypatch.setattr("shelfscan.pipeline._read_handle", fake_read)
    started = time.monotonic()
    try:
        output = _run(tmp_path, file_workers=1, archive_workers=1, slots=1, timeout=0.3)
    finally:
        release.set()
    elapsed = time.monotonic() - started

    assert elapsed < 5
    assert len(output.warnings) == 3
    assert "no archive slot free" in output.warnings[1].reason
    assert output.files == []


def test_open_reads_never_exceed_slots(tmp_path, monkeypatch):
    _create_files(tmp_path / "S", 8)
    lock = threading.Lock()
    open_reads = 0
    peak = 0

    def fake_read(discovered):
        nonlocal open_reads, peak
        with lock:
            open_reads += 1
            peak = max(peak, open_reads)
        time.sleep(0.05)
        with lock:
            open_reads -= 1
        return 1, None

    monkeypatch.setattr("shelfscan.pipeline._read_handle", fake_read)
    output = _run(tmp_path, file_workers=6, archive_workers=6, slots=2, timeout=5)

    assert 1 <= peak <= 2
    assert len(output.files) == 8
    assert output.warnings == []


def test_results_follow_walk_order(tmp_path, monkeypatch):
    names = _create_files(tmp_path / "S", 6)

    def fake_read(discovered):
        # Earlier files finish last.
        index = int(discovered.path.stem.split("v")[-1])
        time.sleep(0.02 * (7 - index))
        return 1, None

    monkeypatch.setattr("shelfscan.pipeline._read_handle", fake_read)
    output = _run(tmp_path, file_workers=4, archive_workers=4, slots=4, timeout=5)

    assert [f.file.path.name for f in output.files] == names
