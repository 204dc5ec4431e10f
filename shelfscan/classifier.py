"""Path classification: supported file, sidecar metadata, or ignorable.

Pure path inspection; nothing here opens a file. Zero-byte detection takes the
size from the caller (the walker already has the stat result).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import PurePath
from typing import Iterable, Optional


class LibraryType(str, enum.Enum):
    MANGA = "manga"
    COMIC = "comic"
    COMIC_VINE = "comicvine"
    BOOK = "book"
    LIGHT_NOVEL = "lightnovel"
    IMAGE = "image"

    @classmethod
    def from_string(cls, value: str) -> "LibraryType":
        cleaned = value.strip().lower().replace("_", "").replace(" ", "")
        for member in cls:
            if member.value == cleaned:
                return member
        raise ValueError(f"Unknown library type: {value}")


class Format(str, enum.Enum):
    """Closed set of content formats. Each has exactly one archive handle."""

    ARCHIVE = "archive"
    EPUB = "epub"
    PDF = "pdf"
    IMAGE = "image"

    @property
    def family(self) -> str:
        if self in (Format.EPUB, Format.PDF):
            return "book"
        return self.value


class FileClass(str, enum.Enum):
    SUPPORTED = "supported"
    SIDECAR = "sidecar"
    IGNORED = "ignored"


ARCHIVE_EXTENSIONS = frozenset({".cbz", ".zip", ".cbr", ".rar", ".cb7", ".7z", ".cbt", ".tar"})
BOOK_EXTENSIONS = {".epub": Format.EPUB, ".pdf": Format.PDF}
IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".webp", ".gif", ".avif", ".jxl", ".bmp"})

# Only these archive extensions have a reader; the rest are recognised so they
# are reported as unsupported by the archive layer instead of silently skipped.
READABLE_ARCHIVE_EXTENSIONS = frozenset({".cbz", ".zip", ".cbr", ".rar"})

SIDECAR_NAMES = frozenset({"comicinfo.xml", "series.json"})

PARTIAL_DOWNLOAD_EXTENSIONS = frozenset(
    {".part", ".crdownload", ".download", ".partial", ".tmp", ".!qb", ".aria2"}
)

DEFAULT_IGNORED_NAMES = frozenset({".DS_Store", "Thumbs.db", "desktop.ini", "@eaDir", "__MACOSX"})

# Folders whose contents are treated as specials.
SPECIAL_FOLDER_NAMES = frozenset({"specials", "special", "extras", "extra", "sp", "omake", "bonus"})


@dataclass(frozen=True)
class Classification:
    kind: FileClass
    format: Optional[Format] = None
    reason: str = ""


def format_for(path: PurePath) -> Optional[Format]:
    """Return the format family for a path's extension, or None."""
    suffix = path.suffix.lower()
    if suffix in ARCHIVE_EXTENSIONS:
        return Format.ARCHIVE
    if suffix in BOOK_EXTENSIONS:
        return BOOK_EXTENSIONS[suffix]
    if suffix in IMAGE_EXTENSIONS:
        return Format.IMAGE
    return None


def is_hidden(name: str) -> bool:
    # Covers macOS resource forks (._*) as well as dotfiles.
    return name.startswith(".")


def is_ignored_name(name: str, ignore_names: Iterable[str] = DEFAULT_IGNORED_NAMES) -> bool:
    """Check if a file/folder name is ignored outright (hidden or listed)."""
    return is_hidden(name) or name in ignore_names


def classify(
    path: PurePath,
    size: Optional[int] = None,
    ignore_names: Iterable[str] = DEFAULT_IGNORED_NAMES,
) -> Classification:
    """Decide whether ``path`` is a supported file, a sidecar, or ignored.

    Never raises; anything unrecognised is IGNORED.
    """
    name = path.name
    if not name or is_ignored_name(name, ignore_names):
        return Classification(FileClass.IGNORED, reason="hidden or ignored name")

    suffix = path.suffix.lower()
    if suffix in PARTIAL_DOWNLOAD_EXTENSIONS:
        return Classification(FileClass.IGNORED, reason="partial download")

    if name.lower() in SIDECAR_NAMES:
        return Classification(FileClass.SIDECAR)

    if size is not None and size == 0:
        return Classification(FileClass.IGNORED, reason="zero-byte file")

    fmt = format_for(path)
    if fmt is None:
        return Classification(FileClass.IGNORED, reason="unsupported extension")
    return Classification(FileClass.SUPPORTED, format=fmt)


def is_special_folder(name: str) -> bool:
    return name.strip().lower() in SPECIAL_FOLDER_NAMES
