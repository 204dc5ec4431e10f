"""Archive handling for Shelfscan.

One handle type per ``Format`` variant, all exposing the same capabilities:
``entry_count()``, ``read_sidecar_metadata()`` and ``extract_cover_bytes()``.
Handles are context managers; the underlying file is closed on every exit
path. Zip and rar archives are detected by extension with a fallback to the
other container type (handles misnamed files).
"""

from __future__ import annotations

import posixpath
import xml.etree.ElementTree as ET
import zipfile
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional, Protocol

import rarfile
from PIL import Image, UnidentifiedImageError

from .classifier import ARCHIVE_EXTENSIONS, IMAGE_EXTENSIONS, READABLE_ARCHIVE_EXTENSIONS, Format, format_for
from .comicinfo import EmbeddedMetadata, metadata_from_pdf_info, parse_comicinfo_xml, parse_opf
from .errors import ArchiveError, CorruptArchiveError, NestedArchiveError
from .logging_config import get_logger
from .path_utils import natural_sort_key

logger = get_logger(__name__)

COVER_STEMS = ("cover", "folder", "front")


def is_image(filename: str) -> bool:
    name = PurePosixPath(filename).name
    if not name or name.startswith(".") or "__MACOSX" in filename:
        return False
    return PurePosixPath(filename).suffix.lower() in IMAGE_EXTENSIONS


def is_nested_archive(filename: str) -> bool:
    return PurePosixPath(filename).suffix.lower() in ARCHIVE_EXTENSIONS


class ArchiveHandle(Protocol):
    path: Path

    def entry_count(self) -> int:
        ...

    def read_sidecar_metadata(self) -> Optional[EmbeddedMetadata]:
        ...

    def extract_cover_bytes(self) -> Optional[bytes]:
        ...

    def close(self) -> None:
        ...

    def __enter__(self) -> "ArchiveHandle":
        ...

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        ...


def front_cover_index(xml_bytes: bytes) -> Optional[int]:
    """Return the page index ComicInfo declares as FrontCover, if any."""
    try:
        root = ET.fromstring(xml_bytes)
    except ET.ParseError:
        return None
    for elem in root.iter():
        if elem.tag.split("}")[-1].lower() != "page":
            continue
        if elem.attrib.get("Type", "").lower() == "frontcover":
            try:
                return int(elem.attrib.get("Image", ""))
            except ValueError:
                return None
    return None


class _ContainerHandle:
    """Shared behaviour for page-image containers (zip, rar)."""

    path: Path

    def list_names(self) -> List[str]:
        raise NotImplementedError

    def read(self, filename: str) -> bytes:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def list_images(self) -> List[str]:
        images = [n for n in self.list_names() if is_image(n)]
        images.sort(key=natural_sort_key)
        return images

    def _check_nesting(self, images: List[str]) -> None:
        if images:
            return
        nested = [n for n in self.list_names() if is_nested_archive(n)]
        if nested:
            raise NestedArchiveError(self.path, f"contains {len(nested)} nested archive(s) and no pages")

    def _comicinfo_name(self) -> Optional[str]:
        return next(
            (n for n in self.list_names() if PurePosixPath(n).name.lower() == "comicinfo.xml"),
            None,
        )

    def entry_count(self) -> int:
        images = self.list_images()
        self._check_nesting(images)
        return len(images)

    def read_sidecar_metadata(self) -> Optional[EmbeddedMetadata]:
        name = self._comicinfo_name()
        if name is None:
            return None
        return parse_comicinfo_xml(self.read(name))

    def extract_cover_bytes(self) -> Optional[bytes]:
        images = self.list_images()
        self._check_nesting(images)
        if not images:
            return None

        comicinfo = self._comicinfo_name()
        if comicinfo is not None:
            index = front_cover_index(self.read(comicinfo))
            if index is not None and 0 <= index < len(images):
                return self.read(images[index])

        named = next((n for n in images if PurePosixPath(n).stem.lower() in COVER_STEMS), None)
        return self.read(named or images[0])

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class ZipArchiveWrapper(_ContainerHandle):
    def __init__(self, path: Path):
        self.path = path
        self.zf = zipfile.ZipFile(path, mode="r")

    def list_names(self) -> List[str]:
        return [info.filename for info in self.zf.infolist() if not info.is_dir()]

    def read(self, filename: str) -> bytes:
        return self.zf.read(filename)

    def close(self) -> None:
        self.zf.close()


class RarArchiveWrapper(_ContainerHandle):
    def __init__(self, path: Path):
        self.path = path
        self.rf = rarfile.RarFile(path, mode="r")

    def list_names(self) -> List[str]:
        return [info.filename for info in self.rf.infolist() if not info.is_dir()]

    def read(self, filename: str) -> bytes:
        return self.rf.read(filename)

    def close(self) -> None:
        self.rf.close()


class EpubHandle:
    """EPUB books: OPF metadata, spine length, declared cover image."""

    def __init__(self, path: Path):
        self.path = path
        self.zf = zipfile.ZipFile(path, mode="r")
        try:
            self._opf_path = self._find_opf()
            self._opf = ET.fromstring(self.zf.read(self._opf_path))
        except (KeyError, ET.ParseError) as exc:
            self.zf.close()
            raise CorruptArchiveError(path, f"invalid EPUB package: {exc}") from exc

    def _find_opf(self) -> str:
        container = ET.fromstring(self.zf.read("META-INF/container.xml"))
        for elem in container.iter():
            if elem.tag.split("}")[-1] == "rootfile" and elem.attrib.get("full-path"):
                return elem.attrib["full-path"]
        raise KeyError("rootfile")

    def _section(self, name: str) -> Optional[ET.Element]:
        return next((e for e in self._opf if e.tag.split("}")[-1] == name), None)

    def _href(self, href: str) -> str:
        return posixpath.normpath(posixpath.join(posixpath.dirname(self._opf_path), href))

    def entry_count(self) -> int:
        spine = self._section("spine")
        return len(list(spine)) if spine is not None else 0

    def read_sidecar_metadata(self) -> Optional[EmbeddedMetadata]:
        return parse_opf(self.zf.read(self._opf_path))

    def extract_cover_bytes(self) -> Optional[bytes]:
        manifest = self._section("manifest")
        items = list(manifest) if manifest is not None else []
        metadata = self._section("metadata")

        cover_id = None
        if metadata is not None:
            for elem in metadata:
                if elem.tag.split("}")[-1] == "meta" and elem.attrib.get("name") == "cover":
                    cover_id = elem.attrib.get("content")
        for item in items:
            props = item.attrib.get("properties", "").split()
            if "cover-image" in props or (cover_id and item.attrib.get("id") == cover_id):
                return self.zf.read(self._href(item.attrib["href"]))

        images = sorted((n for n in self.zf.namelist() if is_image(n)), key=natural_sort_key)
        return self.zf.read(images[0]) if images else None

    def close(self) -> None:
        self.zf.close()

    def __enter__(self) -> "EpubHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class PdfHandle:
    """PDF books via PyMuPDF: page count, info dictionary, first page render."""

    def __init__(self, path: Path):
        import fitz  # PyMuPDF

        self.path = path
        try:
            self.doc = fitz.open(path)
        except (RuntimeError, ValueError) as exc:
            raise CorruptArchiveError(path, f"unreadable PDF: {exc}") from exc

    def entry_count(self) -> int:
        return self.doc.page_count

    def read_sidecar_metadata(self) -> Optional[EmbeddedMetadata]:
        return metadata_from_pdf_info(self.doc.metadata or {})

    def extract_cover_bytes(self) -> Optional[bytes]:
        if self.doc.page_count == 0:
            return None
        pixmap = self.doc[0].get_pixmap()
        return pixmap.tobytes("png")

    def close(self) -> None:
        self.doc.close()

    def __enter__(self) -> "PdfHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class ImageHandle:
    """A single loose image file; one page, no sidecar."""

    def __init__(self, path: Path):
        self.path = path
        try:
            with Image.open(path) as im:
                im.verify()
        except (UnidentifiedImageError, OSError, SyntaxError) as exc:
            raise CorruptArchiveError(path, f"unreadable image: {exc}") from exc

    def entry_count(self) -> int:
        return 1

    def read_sidecar_metadata(self) -> Optional[EmbeddedMetadata]:
        return None

    def extract_cover_bytes(self) -> Optional[bytes]:
        return self.path.read_bytes()

    def close(self) -> None:
        pass

    def __enter__(self) -> "ImageHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def _open_container(path: Path) -> ArchiveHandle:
    """Tries the expected format first (cbz->zip, cbr->rar), then the other one."""
    suffix = path.suffix.lower()
    if suffix not in READABLE_ARCHIVE_EXTENSIONS:
        raise ArchiveError(path, f"unsupported archive format: {suffix}")
    if suffix in (".cbz", ".zip"):
        primary, fallback = ZipArchiveWrapper, RarArchiveWrapper
    else:
        primary, fallback = RarArchiveWrapper, ZipArchiveWrapper

    try:
        return primary(path)
    except (zipfile.BadZipFile, rarfile.Error, OSError) as first:
        try:
            return fallback(path)
        except (zipfile.BadZipFile, rarfile.Error, OSError):
            raise CorruptArchiveError(path, str(first) or type(first).__name__) from first


_OPENERS: Dict[Format, Callable[[Path], ArchiveHandle]] = {
    Format.ARCHIVE: _open_container,
    Format.EPUB: EpubHandle,
    Format.PDF: PdfHandle,
    Format.IMAGE: ImageHandle,
}


def open_archive(path: Path, fmt: Optional[Format] = None) -> ArchiveHandle:
    """Open ``path`` with the handle for its format.

    Raises ``ArchiveError`` (or a subclass) for anything unreadable.
    """
    if not path.exists():
        raise ArchiveError(path, "file not found")
    fmt = fmt or format_for(path)
    if fmt is None:
        raise ArchiveError(path, f"unsupported file type: {path.suffix}")
    try:
        return _OPENERS[fmt](path)
    except ArchiveError:
        raise
    except (zipfile.BadZipFile, rarfile.Error, OSError, KeyError) as exc:
        raise CorruptArchiveError(path, str(exc) or type(exc).__name__) from exc


def read_cover(path: Path, fmt: Optional[Format] = None) -> Optional[bytes]:
    """Convenience wrapper used by callers that only need the cover bytes."""
    with open_archive(path, fmt) as handle:
        return handle.extract_cover_bytes()
