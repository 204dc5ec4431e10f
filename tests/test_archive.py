"""Tests for archive handles."""

import io
import zipfile
from pathlib import Path

import pytest
from PIL import Image

from shelfscan.archive import EpubHandle, ImageHandle, front_cover_index, open_archive, read_cover
from shelfscan.classifier import Format
from shelfscan.errors import ArchiveError, CorruptArchiveError, NestedArchiveError


def _png_bytes(color: str = "red") -> bytes:
    img = Image.new("RGB", (10, 10), color=color)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def _create_minimal_cbz(path: Path, pages: int = 3, comicinfo: bytes = b"") -> None:
    """Create a valid CBZ file with tiny PNG pages (written out of order)."""
    with zipfile.ZipFile(path, "w") as zf:
        for number in reversed(range(1, pages + 1)):
            zf.writestr(f"page{number}.png", _png_bytes())
        if comicinfo:
            zf.writestr("ComicInfo.xml", comicinfo)


def _create_epub(path: Path) -> None:
    container = b"""<?xml version="1.0"?>
<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">
  <rootfiles><rootfile full-path="OEBPS/content.opf" media-type="application/oebps-package+xml"/></rootfiles>
</container>"""
    opf = b"""<?xml version="1.0" encoding="utf-8"?>
<package xmlns="http://www.idpf.org/2007/opf" version="3.0">
  <metadata xmlns:dc="http://purl.org/dc/elements/1.1/">
    <dc:title>Novel</dc:title>
    <meta name="calibre:series" content="Saga"/>
  </metadata>
  <manifest>
    <item id="c1" href="c1.xhtml" media-type="application/xhtml+xml"/>
    <item id="c2" href="c2.xhtml" media-type="application/xhtml+xml"/>
    <item id="img" href="images/cover.png" media-type="image/png" properties="cover-image"/>
  </manifest>
  <spine><itemref idref="c1"/><itemref idref="c2"/></spine>
</package>"""
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("mimetype", "application/epub+zip")
        zf.writestr("META-INF/container.xml", container)
        zf.writestr("OEBPS/content.opf", opf)
        zf.writestr("OEBPS/c1.xhtml", "<html/>")
        zf.writestr("OEBPS/c2.xhtml", "<html/>")
        zf.writestr("OEBPS/images/cover.png", _png_bytes("blue"))


def test_cbz_page_count_and_metadata(tmp_path):
    cbz = tmp_path / "issue01.cbz"
    _create_minimal_cbz(cbz, pages=3, comicinfo=b"<ComicInfo><Series>Saga</Series></ComicInfo>")
    with open_archive(cbz) as handle:
        assert handle.entry_count() == 3
        assert handle.list_images() == ["page1.png", "page2.png", "page3.png"]
        assert handle.read_sidecar_metadata().series == "Saga"


def test_cover_prefers_front_cover_page(tmp_path):
    cbz = tmp_path / "issue01.cbz"
    comicinfo = b'<ComicInfo><Pages><Page Image="1" Type="FrontCover"/></Pages></ComicInfo>'
    _create_minimal_cbz(cbz, pages=3, comicinfo=comicinfo)
    with zipfile.ZipFile(cbz) as zf:
        expected = zf.read("page2.png")
    assert read_cover(cbz) == expected


def test_front_cover_index():
    assert front_cover_index(b'<ComicInfo><Pages><Page Image="4" Type="FrontCover"/></Pages></ComicInfo>') == 4
    assert front_cover_index(b"<ComicInfo/>") is None
    assert front_cover_index(b"not xml") is None


def test_corrupt_archive_raises(tmp_path):
    bad = tmp_path / "broken.cbz"
    bad.write_bytes(b"this is not a zip file")
    with pytest.raises(CorruptArchiveError):
        open_archive(bad)


def test_nested_archive_without_pages(tmp_path):
    cbz = tmp_path / "nested.cbz"
    with zipfile.ZipFile(cbz, "w") as zf:
        zf.writestr("inner.cbz", b"whatever")
    with open_archive(cbz) as handle:
        with pytest.raises(NestedArchiveError):
            handle.entry_count()


def test_unsupported_and_missing_files(tmp_path):
    with pytest.raises(ArchiveError):
        open_archive(tmp_path / "missing.cbz")
    seven = tmp_path / "archive.cb7"
    seven.write_bytes(b"7z")
    with pytest.raises(ArchiveError):
        open_archive(seven)


def test_epub_handle(tmp_path):
    epub = tmp_path / "novel.epub"
    _create_epub(epub)
    with open_archive(epub) as handle:
        assert isinstance(handle, EpubHandle)
        assert handle.entry_count() == 2
        assert handle.read_sidecar_metadata().series == "Saga"
        assert handle.extract_cover_bytes() == _png_bytes("blue")


def test_image_handle(tmp_path):
    image = tmp_path / "001.png"
    image.write_bytes(_png_bytes())
    with open_archive(image, Format.IMAGE) as handle:
        assert isinstance(handle, ImageHandle)
        assert handle.entry_count() == 1
        assert handle.read_sidecar_metadata() is None


def test_broken_image_raises(tmp_path):
    image = tmp_path / "001.png"
    image.write_bytes(b"not an image")
    with pytest.raises(CorruptArchiveError):
        open_archive(image)
