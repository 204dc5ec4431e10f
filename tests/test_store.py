"""Tests for the SQLite catalog store."""

import sqlite3
from pathlib import Path

import pytest

from shelfscan.assembler import SeriesAssembler
from shelfscan.classifier import Format, LibraryType
from shelfscan.comicinfo import EmbeddedMetadata
from shelfscan.domain import CreateSeries, DiscoveredFile, ReconciliationResult, ScannedFile, UpdateSeries, VolumeSpec
from shelfscan.parser import parse
from shelfscan.reconciler import compute_diff
from shelfscan.store import SqlCatalogStore

ROOT = Path("/library")


def _file(relative: str, fingerprint=None, metadata=None) -> ScannedFile:
    path = ROOT / relative
    discovered = DiscoveredFile(path, 100, 1.5, fingerprint or f"fp:{relative}", Format.ARCHIVE, 1, ROOT)
    return ScannedFile(discovered, parse(path, LibraryType.MANGA, ROOT), pages=10, metadata=metadata)


def _scan(*files: ScannedFile):
    return SeriesAssembler(1).add_all(files).build()


def _sync(store: SqlCatalogStore, *files: ScannedFile) -> ReconciliationResult:
    """Run one reconcile + commit pass the way a scan does."""
    diff = compute_diff(1, _scan(*files), store.load_existing_series(1))
    if not diff.is_empty:
        result = store.commit(1, diff)
        assert result.ok, result.failed
    return diff


def test_init_creates_schema(tmp_path):
    db_file = tmp_path / "catalog.db"
    with SqlCatalogStore(db_file):
        pass
    conn = sqlite3.connect(db_file)
    try:
        cur = conn.cursor()
        cur.execute("SELECT name FROM sqlite_master WHERE type='table'")
        table_names = {row[0] for row in cur.fetchall()}
        assert {"series", "volumes", "chapters", "chapter_files"} <= table_names
    finally:
        conn.close()


def test_commit_then_rescan_is_empty(tmp_path):
    files = [_file("SeriesA/SeriesA v01.cbz"), _file("SeriesA/SeriesA v02.cbz")]
    with SqlCatalogStore(tmp_path / "catalog.db") as store:
        _sync(store, *files)
        (series,) = store.load_existing_series(1)
        assert series.name == "SeriesA"
        assert [v.number for v in series.volumes] == ["1", "2"]

        again = compute_diff(1, _scan(*files), store.load_existing_series(1))
        assert again.is_empty
        assert again.unchanged_files == 2


def test_deleted_volume_is_removed(tmp_path):
    v01, v02 = _file("SeriesA/SeriesA v01.cbz"), _file("SeriesA/SeriesA v02.cbz")
    with SqlCatalogStore(tmp_path / "catalog.db") as store:
        _sync(store, v01, v02)
        _sync(store, v01)
        (series,) = store.load_existing_series(1)
        assert [v.number for v in series.volumes] == ["1"]
        assert store.stats(1) == {"series": 1, "volumes": 1, "chapters": 1, "files": 1}


def test_rename_keeps_ids(tmp_path):
    with SqlCatalogStore(tmp_path / "catalog.db") as store:
        _sync(store, _file("Old Name/Old Name v01.cbz", "a"))
        (before,) = store.load_existing_series(1)
        _sync(store, _file("New Name/New Name v01.cbz", "a"))
        (after,) = store.load_existing_series(1)

    assert after.id == before.id
    assert after.name == "New Name"
    assert after.normalized_name == "newname"
    (_, _, moved), = list(after.iter_files())
    (_, _, original), = list(before.iter_files())
    assert moved.id == original.id
    assert moved.path == ROOT / "New Name" / "New Name v01.cbz"


def test_file_moved_between_series(tmp_path):
    with SqlCatalogStore(tmp_path / "catalog.db") as store:
        _sync(store, _file("Alpha/Alpha v01.cbz", "a"), _file("Beta/Beta v01.cbz", "b"))
        beta_file_id = next(f.id for s in store.load_existing_series(1) if s.name == "Beta" for _, _, f in s.iter_files())

        diff = _sync(store, _file("Alpha/Alpha v01.cbz", "a"), _file("Alpha/Alpha v02.cbz", "b"))
        assert len(diff.dropped) == 1

        (alpha,) = store.load_existing_series(1)
        assert alpha.name == "Alpha"
        ids = {f.id for _, _, f in alpha.iter_files()}
        assert beta_file_id in ids


def test_failed_operation_does_not_block_others(tmp_path):
    create = CreateSeries(
        name="Fresh",
        normalized_name="fresh",
        format=Format.ARCHIVE,
        localized_name="",
        volumes=(VolumeSpec(number="1", chapters=()),),
    )
    bogus = UpdateSeries(series_id=999, new_name="Nope", new_normalized_name="nope")
    diff = ReconciliationResult(library_id=1, to_create=(create,), to_update=(bogus,))

    with SqlCatalogStore(tmp_path / "catalog.db") as store:
        result = store.commit(1, diff)
        assert result.applied == 1
        (failure,) = result.failed
        assert failure.operation is bogus
        assert [s.name for s in store.load_existing_series(1)] == ["Fresh"]


def test_manual_edit_locks_field(tmp_path):
    files = [_file("SeriesA/SeriesA v01.cbz", metadata=EmbeddedMetadata(summary="From sidecar"))]
    with SqlCatalogStore(tmp_path / "catalog.db") as store:
        _sync(store, *files)
        (series,) = store.load_existing_series(1)
        assert series.metadata["summary"] == "From sidecar"

        store.edit_series_field(series.id, "summary", "Edited by hand")
        diff = _sync(store, *files)
        assert diff.is_empty
        (series,) = store.load_existing_series(1)
        assert series.metadata["summary"] == "Edited by hand"
        assert "summary" in series.locked_fields

        store.unlock_series_field(series.id, "summary")
        _sync(store, *files)
        (series,) = store.load_existing_series(1)
        assert series.metadata["summary"] == "From sidecar"


def test_edit_rejects_unknown_field(tmp_path):
    with SqlCatalogStore(tmp_path / "catalog.db") as store:
        with pytest.raises(ValueError):
            store.edit_series_field(1, "fingerprint", "x")
        with pytest.raises(LookupError):
            store.edit_series_field(1, "summary", "x")


def test_libraries_are_isolated(tmp_path):
    with SqlCatalogStore(tmp_path / "catalog.db") as store:
        _sync(store, _file("Alpha/Alpha v01.cbz"))
        assert store.load_existing_series(2) == []
        assert store.stats(2)["series"] == 0
        assert store.stats()["series"] == 1


def test_reset_clears_catalog(tmp_path):
    with SqlCatalogStore(tmp_path / "catalog.db") as store:
        _sync(store, _file("Alpha/Alpha v01.cbz"))
        store.reset()
        assert store.stats() == {"series": 0, "volumes": 0, "chapters": 0, "files": 0}
