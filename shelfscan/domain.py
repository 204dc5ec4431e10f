"""Data model for one scan pass and for the reconciliation diff.

``DiscoveredFile`` and ``ParsedInfo`` live for a single pass. ``Scanned*``
aggregates are built by the assembler and discarded after reconciliation.
``Persisted*`` types are read-only snapshots handed over by the catalog store,
and the operation types are the only thing that crosses back into it.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .classifier import Format

LOOSE_LEAF = "-100000"
SPECIAL_VOLUME = "100000"


def number_bounds(value: str) -> Tuple[float, float]:
    """Return (min, max) for '3', '1.5' or '1-5'. Unparseable values sort last."""
    try:
        if value.startswith("-"):
            # sentinel (negative number), not a range
            parts = [float(value)]
        else:
            parts = [float(p) for p in value.split("-") if p]
    except ValueError:
        return float("inf"), float("inf")
    if not parts:
        return float("inf"), float("inf")
    return min(parts), max(parts)


def chapter_key(number: str, is_special: bool, title: str) -> str:
    """Identity of a chapter inside its volume.

    Numbered chapters are keyed by their number. Specials and loose-leaf
    chapters that carry a title (image folders) are keyed by that title so
    different specials never merge.
    """
    from .parser import normalize

    if is_special or (number == LOOSE_LEAF and title):
        return f"{number}|{normalize(title)}"
    return number


# --- One scan pass ---------------------------------------------------------


@dataclass(frozen=True)
class DiscoveredFile:
    path: Path
    size: int
    mtime: float
    fingerprint: str
    format: Format
    library_id: int
    root: Path


@dataclass(frozen=True)
class ParsedInfo:
    """Everything the filename (and folder names) say about a file."""

    filename: str
    series: str
    format: Format
    volume: str = LOOSE_LEAF
    chapter: str = LOOSE_LEAF
    localized_series: str = ""
    is_special: bool = False
    special_index: int = 0
    edition: str = ""
    title: str = ""

    @property
    def normalized_series(self) -> str:
        from .parser import normalize

        return normalize(self.series)

    def with_changes(self, **changes: Any) -> "ParsedInfo":
        return replace(self, **changes)


class WarningKind(str, enum.Enum):
    FILE = "file"
    SERIES = "series"
    LIBRARY = "library"


@dataclass(frozen=True)
class ScanWarning:
    path: Optional[Path]
    reason: str
    kind: WarningKind = WarningKind.FILE


@dataclass
class ScannedFile:
    file: DiscoveredFile
    info: ParsedInfo
    pages: int = 0
    metadata: Optional[Any] = None  # EmbeddedMetadata


@dataclass
class ScannedChapter:
    number: str
    is_special: bool = False
    title: str = ""
    files: List[ScannedFile] = field(default_factory=list)

    @property
    def key(self) -> str:
        return chapter_key(self.number, self.is_special, self.title)

    @property
    def metadata(self) -> Optional[Any]:
        for scanned in self.files:
            if scanned.metadata is not None:
                return scanned.metadata
        return None


@dataclass
class ScannedVolume:
    number: str
    chapters: Dict[str, ScannedChapter] = field(default_factory=dict)

    def sorted_chapters(self) -> List[ScannedChapter]:
        return sorted(self.chapters.values(), key=lambda c: (number_bounds(c.number), c.title))


@dataclass
class ScannedSeries:
    library_id: int
    name: str
    normalized_name: str
    format: Format
    localized_name: str = ""
    volumes: Dict[str, ScannedVolume] = field(default_factory=dict)
    series_metadata: Optional[Any] = None  # from series.json

    @property
    def key(self) -> Tuple[int, str, str]:
        return self.library_id, self.normalized_name, self.format.family

    def sorted_volumes(self) -> List[ScannedVolume]:
        return sorted(self.volumes.values(), key=lambda v: number_bounds(v.number))

    def iter_files(self) -> Iterator[ScannedFile]:
        for volume in self.sorted_volumes():
            for chapter in volume.sorted_chapters():
                yield from chapter.files

    def file_count(self) -> int:
        return sum(1 for _ in self.iter_files())


# --- Persisted catalog snapshot -------------------------------------------


@dataclass(frozen=True)
class PersistedFile:
    id: int
    path: Path
    fingerprint: str
    size: int
    mtime: float
    pages: int = 0


@dataclass(frozen=True)
class PersistedChapter:
    id: int
    number: str
    is_special: bool = False
    title: str = ""
    files: Tuple[PersistedFile, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)
    locked_fields: frozenset = frozenset()

    @property
    def key(self) -> str:
        return chapter_key(self.number, self.is_special, self.title)


@dataclass(frozen=True)
class PersistedVolume:
    id: int
    number: str
    chapters: Tuple[PersistedChapter, ...] = ()


@dataclass(frozen=True)
class PersistedSeries:
    id: int
    library_id: int
    name: str
    normalized_name: str
    format: Format
    localized_name: str = ""
    volumes: Tuple[PersistedVolume, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)
    locked_fields: frozenset = frozenset()

    def iter_files(self) -> Iterator[Tuple[PersistedVolume, PersistedChapter, PersistedFile]]:
        for volume in self.volumes:
            for chapter in volume.chapters:
                for persisted in chapter.files:
                    yield volume, chapter, persisted


# --- Diff operations -------------------------------------------------------


@dataclass(frozen=True)
class FileSpec:
    path: Path
    fingerprint: str
    size: int
    mtime: float
    pages: int = 0
    existing_id: Optional[int] = None  # set when an existing file row is re-homed


@dataclass(frozen=True)
class ChapterSpec:
    number: str
    is_special: bool
    title: str
    files: Tuple[FileSpec, ...]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class VolumeSpec:
    number: str
    chapters: Tuple[ChapterSpec, ...]


@dataclass(frozen=True)
class CreateSeries:
    name: str
    normalized_name: str
    format: Format
    localized_name: str
    volumes: Tuple[VolumeSpec, ...]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CreateVolume:
    series_id: int
    volume: VolumeSpec


@dataclass(frozen=True)
class CreateChapter:
    series_id: int
    volume_id: int
    chapter: ChapterSpec


@dataclass(frozen=True)
class UpdateSeries:
    series_id: int
    new_name: Optional[str] = None
    new_normalized_name: Optional[str] = None
    changes: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_rename(self) -> bool:
        return self.new_name is not None or self.new_normalized_name is not None


@dataclass(frozen=True)
class UpdateChapter:
    series_id: int
    chapter_id: int
    added_files: Tuple[FileSpec, ...] = ()
    changed_files: Tuple[FileSpec, ...] = ()
    removed_file_ids: Tuple[int, ...] = ()
    metadata_changes: Dict[str, Any] = field(default_factory=dict)


class EntityKind(str, enum.Enum):
    SERIES = "series"
    VOLUME = "volume"
    CHAPTER = "chapter"


@dataclass(frozen=True)
class RemoveEntity:
    kind: EntityKind
    entity_id: int
    series_id: int
    label: str = ""


CreateOp = Union[CreateSeries, CreateVolume, CreateChapter]
UpdateOp = Union[UpdateSeries, UpdateChapter]
Operation = Union[CreateSeries, CreateVolume, CreateChapter, UpdateSeries, UpdateChapter, RemoveEntity]


@dataclass(frozen=True)
class ReconciliationResult:
    library_id: int
    to_create: Tuple[CreateOp, ...] = ()
    to_update: Tuple[UpdateOp, ...] = ()
    to_remove: Tuple[RemoveEntity, ...] = ()
    dropped: Tuple[RemoveEntity, ...] = ()
    warnings: Tuple[ScanWarning, ...] = ()
    unchanged_files: int = 0
    cancelled: bool = False

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_remove or self.dropped)

    @property
    def renames(self) -> List[UpdateSeries]:
        return [op for op in self.to_update if isinstance(op, UpdateSeries) and op.is_rename]


@dataclass(frozen=True)
class FailedOperation:
    operation: Operation
    reason: str


@dataclass(frozen=True)
class CommitResult:
    library_id: int
    applied: int = 0
    failed: Tuple[FailedOperation, ...] = ()
    created_series_ids: Tuple[int, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failed
