"""Tests for series assembly."""

from pathlib import Path

import pytest

from shelfscan.assembler import SeriesAssembler, assemble
from shelfscan.classifier import Format, LibraryType, format_for
from shelfscan.comicinfo import EmbeddedMetadata
from shelfscan.domain import LOOSE_LEAF, SPECIAL_VOLUME, DiscoveredFile, ParsedInfo, ScannedFile, WarningKind
from shelfscan.parser import parse

ROOT = Path("/library")


def _scanned(relative: str, library_id: int = 1, metadata=None, library_type=LibraryType.MANGA) -> ScannedFile:
    path = ROOT / relative
    discovered = DiscoveredFile(
        path=path,
        size=100,
        mtime=1.0,
        fingerprint=f"fp:{relative}",
        format=format_for(path),
        library_id=library_id,
        root=ROOT,
    )
    return ScannedFile(discovered, parse(path, library_type, ROOT), pages=5, metadata=metadata)


def test_volumes_group_under_one_series():
    series, warnings = assemble(1, [_scanned("SeriesA/SeriesA v01.cbz"), _scanned("SeriesA/SeriesA v02.cbz")])
    assert warnings == []
    assert len(series) == 1
    assert series[0].name == "SeriesA"
    assert [v.number for v in series[0].sorted_volumes()] == ["1", "2"]
    assert series[0].file_count() == 2


def test_names_differing_in_case_and_punctuation_merge():
    series, _ = assemble(1, [_scanned("a/Love-Hina v01.cbz"), _scanned("b/love hina v02.cbz")])
    assert len(series) == 1


def test_format_families_stay_apart():
    series, _ = assemble(1, [_scanned("Alpha/Alpha v01.cbz"), _scanned("Alpha/Alpha v01.epub")])
    assert sorted(s.format.family for s in series) == ["archive", "book"]


def test_rejects_file_from_another_library():
    assembler = SeriesAssembler(1)
    with pytest.raises(ValueError):
        assembler.add(_scanned("Alpha/Alpha v01.cbz", library_id=2))


def test_sidecar_series_overrides_filename():
    metadata = EmbeddedMetadata(series="Real Name", number="3")
    series, _ = assemble(1, [_scanned("Misc/scan v01.cbz", metadata=metadata)])
    assert series[0].name == "Real Name"
    volume = series[0].volumes["1"]
    assert list(volume.chapters) == ["3"]


def test_sidecar_respects_policy():
    from shelfscan.config import MetadataPolicy

    policy = MetadataPolicy(prefer_sidecar=frozenset())
    metadata = EmbeddedMetadata(series="Real Name")
    series, _ = assemble(1, [_scanned("Misc/scan v01.cbz", metadata=metadata)], policy=policy)
    assert series[0].name == "scan"


def test_special_format_in_sidecar_makes_a_special():
    metadata = EmbeddedMetadata(format="One-Shot", title="The Story")
    series, _ = assemble(1, [_scanned("Alpha/Alpha 05.cbz", metadata=metadata)])
    volume = series[0].volumes[SPECIAL_VOLUME]
    (chapter,) = volume.chapters.values()
    assert chapter.is_special
    assert chapter.title == "The Story"


def test_specials_never_merge():
    series, _ = assemble(1, [_scanned("Alpha/Specials/First.cbz"), _scanned("Alpha/Specials/Second.cbz")])
    assert len(series) == 1
    volume = series[0].volumes[SPECIAL_VOLUME]
    assert sorted(c.title for c in volume.chapters.values()) == ["First", "Second"]


def test_localized_name_merges_series():
    series, _ = assemble(1, [_scanned("x/Main ~ Alt v01.cbz"), _scanned("y/Alt v02.cbz")])
    assert len(series) == 1
    assert series[0].name == "Main"
    assert series[0].localized_name == "Alt"
    assert sorted(series[0].volumes) == ["1", "2"]


def test_unnamed_file_is_a_series_warning():
    path = ROOT / "---.cbz"
    discovered = DiscoveredFile(path, 10, 1.0, "fp", Format.ARCHIVE, 1, ROOT)
    scanned = ScannedFile(discovered, ParsedInfo(filename="---.cbz", series="---", format=Format.ARCHIVE))
    series, warnings = assemble(1, [scanned])
    assert series == []
    assert len(warnings) == 1
    assert warnings[0].kind is WarningKind.SERIES


def test_series_json_is_attached():
    meta = EmbeddedMetadata(source="series.json", series="Alpha", summary="About Alpha")
    series, _ = assemble(
        1,
        [_scanned("Alpha/Alpha v01.cbz")],
        series_json={ROOT / "Alpha": meta},
    )
    assert series[0].series_metadata is meta


def test_loose_comicinfo_applies_to_image_folder():
    meta = EmbeddedMetadata(series="Gallery", summary="Pictures")
    scanned = _scanned("Gallery/Set 1/001.png", library_type=LibraryType.IMAGE)
    series, _ = assemble(
        1,
        [scanned],
        LibraryType.IMAGE,
        folder_comicinfo={ROOT / "Gallery" / "Set 1": meta},
    )
    assert series[0].name == "Gallery"
    assert scanned.metadata is meta


def test_build_is_deterministic():
    files = [_scanned("B/B v01.cbz"), _scanned("A/A c001.cbz"), _scanned("A/A c002.cbz")]
    first, _ = assemble(1, files)
    second, _ = assemble(1, [_scanned("A/A c002.cbz"), _scanned("B/B v01.cbz"), _scanned("A/A c001.cbz")])
    assert [s.name for s in first] == [s.name for s in second] == ["A", "B"]
    assert [c.number for c in first[0].volumes[LOOSE_LEAF].sorted_chapters()] == ["1", "2"]
