"""End-to-end scan tests: real files on disk, real SQLite catalog."""

import io
import shutil
import zipfile
from pathlib import Path

from PIL import Image

from shelfscan.classifier import LibraryType
from shelfscan.config import LibrarySettings, ScannerConfig, ScanSettings
from shelfscan.domain import EntityKind, WarningKind
from shelfscan.errors import CancellationToken
from shelfscan.events import CallbackNotificationSink, EventKind, RecordingNotificationSink
from shelfscan.orchestrator import ScanOrchestrator, ScanStatus
from shelfscan.store import SqlCatalogStore


def _create_minimal_cbz(path: Path) -> None:
    """Create a valid CBZ file with a tiny PNG image (content unique per path)."""
    img = Image.new("RGB", (10, 10), color="red")
    img_bytes = io.BytesIO()
    img.save(img_bytes, format="PNG")

    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        zf.comment = path.name.encode("utf-8")
        zf.writestr("page001.png", img_bytes.getvalue())


def _library(root: Path, library_id: int = 1, name: str = "Manga") -> LibrarySettings:
    return LibrarySettings(id=library_id, name=name, type=LibraryType.MANGA, paths=(root,))


def _settings(tmp_path: Path, *libraries: LibrarySettings, allow_empty_roots: bool = False) -> ScanSettings:
    return ScanSettings(
        libraries=libraries,
        scanner=ScannerConfig(library_workers=2, file_workers=2, max_open_archives=2, allow_empty_roots=allow_empty_roots),
        data_dir=tmp_path,
    )


def test_scan_rescan_and_delete(tmp_path):
    root = tmp_path / "lib"
    folder = root / "SeriesA - Manga"
    _create_minimal_cbz(folder / "SeriesA v01.cbz")
    _create_minimal_cbz(folder / "SeriesA v02.cbz")
    library = _library(root)

    with SqlCatalogStore(tmp_path / "catalog.db") as store, ScanOrchestrator(_settings(tmp_path, library), store) as orch:
        first = orch.scan_library(library)
        assert first.status is ScanStatus.COMPLETED
        assert first.stats.files_scanned == 2
        assert first.stats.series_created == 1
        assert first.warnings == []
        (series,) = store.load_existing_series(1)
        assert series.name == "SeriesA"
        assert sorted(v.number for v in series.volumes) == ["1", "2"]

        second = orch.scan_library(library)
        assert second.diff.is_empty
        assert second.stats.files_unchanged == 2
        assert second.stats.series_created == 0

        (folder / "SeriesA v02.cbz").unlink()
        third = orch.scan_library(library)
        assert third.status is ScanStatus.COMPLETED
        (removed,) = third.diff.to_remove
        assert removed.kind is EntityKind.VOLUME
        assert third.diff.to_create == ()
        assert third.stats.entities_removed == 1
        assert third.stats.series_removed == 0
        (series,) = store.load_existing_series(1)
        assert [v.number for v in series.volumes] == ["1"]


def test_corrupt_file_is_isolated(tmp_path):
    root = tmp_path / "lib"
    _create_minimal_cbz(root / "SeriesA" / "SeriesA v01.cbz")
    _create_minimal_cbz(root / "SeriesA" / "SeriesA v02.cbz")
    corrupt = root / "SeriesA" / "SeriesA v03.cbz"
    corrupt.write_bytes(b"not a zip at all")
    library = _library(root)
    sink = RecordingNotificationSink()

    with SqlCatalogStore(tmp_path / "catalog.db") as store, ScanOrchestrator(_settings(tmp_path, library), store, sink) as orch:
        result = orch.scan_library(library)
        assert result.status is ScanStatus.COMPLETED
        (warning,) = result.warnings
        assert warning.path == corrupt
        assert warning.kind is WarningKind.FILE
        assert result.stats.errors == 1
        assert store.stats(1)["files"] == 2

    (error_event,) = sink.of_kind(EventKind.FILE_ERROR)
    assert error_event["path"] == str(corrupt)


def test_file_that_turns_corrupt_keeps_its_catalog_entry(tmp_path):
    root = tmp_path / "lib"
    _create_minimal_cbz(root / "SeriesA" / "SeriesA v01.cbz")
    _create_minimal_cbz(root / "SeriesA" / "SeriesA v02.cbz")
    library = _library(root)

    with SqlCatalogStore(tmp_path / "catalog.db") as store, ScanOrchestrator(_settings(tmp_path, library), store) as orch:
        orch.scan_library(library)
        (root / "SeriesA" / "SeriesA v02.cbz").write_bytes(b"garbage")
        result = orch.scan_library(library)
        assert result.status is ScanStatus.COMPLETED
        assert len(result.warnings) == 1
        assert result.stats.entities_removed == 0
        assert store.stats(1)["volumes"] == 2


def test_folder_rename_is_an_update(tmp_path):
    root = tmp_path / "lib"
    _create_minimal_cbz(root / "SeriesA" / "SeriesA v01.cbz")
    _create_minimal_cbz(root / "SeriesA" / "SeriesA v02.cbz")
    library = _library(root)

    with SqlCatalogStore(tmp_path / "catalog.db") as store, ScanOrchestrator(_settings(tmp_path, library), store) as orch:
        orch.scan_library(library)
        (before,) = store.load_existing_series(1)

        renamed = root / "Renamed"
        (root / "SeriesA").rename(renamed)
        for number in ("01", "02"):
            (renamed / f"SeriesA v{number}.cbz").rename(renamed / f"Renamed v{number}.cbz")

        result = orch.scan_library(library)
        assert result.stats.series_created == 0
        assert result.stats.series_removed == 0
        assert result.stats.series_updated == 1
        (after,) = store.load_existing_series(1)
        assert after.id == before.id
        assert after.name == "Renamed"


def test_same_series_name_in_two_libraries(tmp_path):
    first_root, second_root = tmp_path / "one", tmp_path / "two"
    _create_minimal_cbz(first_root / "Alpha" / "Alpha v01.cbz")
    _create_minimal_cbz(second_root / "Alpha" / "Alpha v01.cbz")
    first, second = _library(first_root, 1, "One"), _library(second_root, 2, "Two")

    with SqlCatalogStore(tmp_path / "catalog.db") as store, ScanOrchestrator(_settings(tmp_path, first, second), store) as orch:
        results = orch.scan_all()
        assert [r.library_name for r in results] == ["One", "Two"]
        assert all(r.status is ScanStatus.COMPLETED for r in results)
        assert store.stats(1)["series"] == 1
        assert store.stats(2)["series"] == 1
        assert store.stats()["series"] == 2


def test_emptied_library_is_not_wiped(tmp_path):
    root = tmp_path / "lib"
    _create_minimal_cbz(root / "SeriesA" / "SeriesA v01.cbz")
    library = _library(root)

    with SqlCatalogStore(tmp_path / "catalog.db") as store, ScanOrchestrator(_settings(tmp_path, library), store) as orch:
        orch.scan_library(library)
        shutil.rmtree(root / "SeriesA")
        result = orch.scan_library(library)
        assert result.status is ScanStatus.FAILED
        assert result.error
        assert store.stats(1)["series"] == 1


def test_emptied_library_is_wiped_when_allowed(tmp_path):
    root = tmp_path / "lib"
    _create_minimal_cbz(root / "SeriesA" / "SeriesA v01.cbz")
    library = _library(root)
    settings = _settings(tmp_path, library, allow_empty_roots=True)

    with SqlCatalogStore(tmp_path / "catalog.db") as store, ScanOrchestrator(settings, store) as orch:
        orch.scan_library(library)
        shutil.rmtree(root / "SeriesA")
        result = orch.scan_library(library)
        assert result.status is ScanStatus.COMPLETED
        assert result.stats.series_removed == 1
        assert store.stats(1)["series"] == 0


def test_missing_root_fails_library(tmp_path):
    library = _library(tmp_path / "does-not-exist")
    with SqlCatalogStore(tmp_path / "catalog.db") as store, ScanOrchestrator(_settings(tmp_path, library), store) as orch:
        result = orch.scan_library(library)
    assert result.status is ScanStatus.FAILED
    assert "no library root" in result.error


def test_empty_root_is_reported(tmp_path):
    root, spare = tmp_path / "lib", tmp_path / "spare"
    _create_minimal_cbz(root / "SeriesA" / "SeriesA v01.cbz")
    spare.mkdir()
    library = LibrarySettings(id=1, name="Manga", type=LibraryType.MANGA, paths=(root, spare))

    with SqlCatalogStore(tmp_path / "catalog.db") as store, ScanOrchestrator(_settings(tmp_path, library), store) as orch:
        result = orch.scan_library(library)
        assert result.status is ScanStatus.COMPLETED
        (warning,) = result.warnings
        assert warning.path == spare
        assert warning.kind is WarningKind.LIBRARY
        assert store.stats(1)["series"] == 1


def test_cancel_before_start(tmp_path):
    root = tmp_path / "lib"
    _create_minimal_cbz(root / "SeriesA" / "SeriesA v01.cbz")
    library = _library(root)
    token = CancellationToken()
    token.cancel()

    with SqlCatalogStore(tmp_path / "catalog.db") as store, ScanOrchestrator(_settings(tmp_path, library), store) as orch:
        result = orch.scan_library(library, token)
        assert result.status is ScanStatus.CANCELLED
        assert store.stats(1)["series"] == 0


def test_cancel_during_walk_commits_nothing(tmp_path):
    root = tmp_path / "lib"
    _create_minimal_cbz(root / "SeriesA" / "SeriesA v01.cbz")
    _create_minimal_cbz(root / "SeriesB" / "SeriesB v01.cbz")
    library = _library(root)
    token = CancellationToken()

    def on_event(kind, payload):
        if kind is EventKind.SCAN_STARTED:
            token.cancel()

    sink = CallbackNotificationSink(on_event)
    with SqlCatalogStore(tmp_path / "catalog.db") as store, ScanOrchestrator(_settings(tmp_path, library), store, sink) as orch:
        result = orch.scan_library(library, token)
        assert result.status is ScanStatus.CANCELLED
        assert result.warnings[-1].kind is WarningKind.LIBRARY
        assert store.stats(1)["series"] == 0


def test_events_are_published(tmp_path):
    root = tmp_path / "lib"
    _create_minimal_cbz(root / "SeriesA" / "SeriesA v01.cbz")
    _create_minimal_cbz(root / "SeriesB" / "SeriesB v01.cbz")
    library = _library(root)
    sink = RecordingNotificationSink()

    with SqlCatalogStore(tmp_path / "catalog.db") as store, ScanOrchestrator(_settings(tmp_path, library), store, sink) as orch:
        orch.scan_library(library)

    kinds = [kind for kind, _ in sink.events]
    assert kinds[0] is EventKind.SCAN_STARTED
    assert kinds[-1] is EventKind.SCAN_COMPLETED
    processed = sink.of_kind(EventKind.SERIES_PROCESSED)
    assert sorted(p["series"] for p in processed) == ["SeriesA", "SeriesB"]
    (completed,) = sink.of_kind(EventKind.SCAN_COMPLETED)
    assert completed["summary"]["status"] == "completed"
