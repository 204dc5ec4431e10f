"""Tests for the filename parser."""

from pathlib import Path

import pytest

from shelfscan.classifier import Format, LibraryType
from shelfscan.domain import LOOSE_LEAF, SPECIAL_VOLUME, ParsedInfo
from shelfscan.parser import (
    FilenameParser,
    clean_title,
    normalize,
    normalize_number,
    parse,
    plausible_number,
)


def test_decimal_chapter_without_volume():
    info = parse("Series_c012.5.cbz")
    assert info.series == "Series"
    assert info.chapter == "12.5"
    assert info.volume == LOOSE_LEAF
    assert info.is_special is False
    assert info.format is Format.ARCHIVE


def test_volume_only():
    info = parse("SeriesA v01.cbz")
    assert info.series == "SeriesA"
    assert info.volume == "1"
    assert info.chapter == LOOSE_LEAF


def test_combined_volume_and_chapter():
    info = parse("One Piece v05 c042.cbz")
    assert info.series == "One Piece"
    assert info.volume == "5"
    assert info.chapter == "42"


def test_issue_hash_for_comics():
    info = parse("Batman #012.cbr", LibraryType.COMIC)
    assert info.series == "Batman"
    assert info.chapter == "12"


def test_special_marker():
    info = parse("Series SP01.cbz")
    assert info.series == "Series"
    assert info.is_special is True
    assert info.special_index == 1
    assert info.volume == SPECIAL_VOLUME
    assert info.chapter == LOOSE_LEAF


def test_specials_folder_uses_series_folder(tmp_path):
    root = tmp_path / "lib"
    info = parse(root / "Series" / "Specials" / "Some Story.cbz", LibraryType.MANGA, root)
    assert info.series == "Series"
    assert info.is_special is True
    assert info.volume == SPECIAL_VOLUME
    assert info.title == "Some Story"


def test_edition_is_captured_and_stripped():
    info = parse("Berserk Deluxe Edition v01.cbz")
    assert info.series == "Berserk"
    assert info.edition == "Deluxe Edition"
    assert info.volume == "1"


def test_implausible_volume_is_rejected():
    info = parse("Series v2000.cbz")
    assert info.volume == LOOSE_LEAF


def test_comic_vine_series_from_year_folder(tmp_path):
    root = tmp_path / "lib"
    path = root / "DC Comics" / "Batman (2016)" / "Batman #001.cbz"
    info = parse(path, LibraryType.COMIC_VINE, root)
    assert info.series == "Batman (2016)"
    assert info.volume == "2016"
    assert info.chapter == "1"


def test_number_only_file_takes_series_from_folder(tmp_path):
    root = tmp_path / "lib"
    info = parse(root / "My Series" / "01.cbz", LibraryType.MANGA, root)
    assert info.series == "My Series"
    assert info.chapter == "1"


def test_image_library_uses_folders(tmp_path):
    root = tmp_path / "lib"
    info = parse(root / "Series" / "Vol 1" / "001.png", LibraryType.IMAGE, root)
    assert info.format is Format.IMAGE
    assert info.series == "Series"
    assert info.volume == "1"


def test_book_extensions_map_to_book_formats():
    assert parse("Novel.epub", LibraryType.BOOK).format is Format.EPUB
    assert parse("Novel.pdf", LibraryType.BOOK).format is Format.PDF


def test_parse_is_deterministic():
    first = parse("Some Series - Vol.03 Ch.017 [Group].cbz")
    second = parse("Some Series - Vol.03 Ch.017 [Group].cbz")
    assert first == second


@pytest.mark.parametrize(
    "name",
    [
        "",
        "[[[((({{{",
        "v9999999 c-1",
        "\x00\x01.cbz",
        "a" * 5000 + ".cbz",
        "1920x1080.cbz",
        "第3巻.cbz",
    ],
)
def test_parse_never_raises(name):
    info = parse(name)
    assert isinstance(info, ParsedInfo)


def test_exhausted_budget_gives_best_effort():
    parser = FilenameParser(budget_seconds=0.0)
    info = parser.parse(Path("Series v01.cbz"))
    assert isinstance(info, ParsedInfo)
    assert info.series


def test_normalize_number():
    assert normalize_number("001.50") == "1.5"
    assert normalize_number("01-03") == "1-3"
    assert normalize_number("02-02") == "2"
    assert normalize_number("000") == "0"


def test_plausible_number():
    assert plausible_number("5-3", 1000) == "5"
    assert plausible_number("2-4", 1000) == "2-4"
    assert plausible_number("1920", 1000) is None
    assert plausible_number("abc", 1000) is None


def test_normalize_ignores_case_and_punctuation():
    assert normalize("Alpha  Beta") == normalize("alpha-beta") == "alphabeta"
    assert normalize(None) == ""


def test_clean_title_removes_groups():
    assert clean_title("[Group] My Series (2010)") == "My Series"
