"""Series assembly: group parsed files into ScannedSeries aggregates.

Grouping key is (library id, normalized series name, format family). A
well-formed sidecar overrides the filename per naming field as the metadata
policy allows; otherwise the filename/folder-derived values stand.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .classifier import Format, LibraryType
from .comicinfo import EmbeddedMetadata
from .config import MetadataPolicy
from .domain import (
    LOOSE_LEAF,
    SPECIAL_VOLUME,
    ParsedInfo,
    ScannedChapter,
    ScannedFile,
    ScannedSeries,
    ScannedVolume,
    ScanWarning,
    WarningKind,
)
from .logging_config import get_logger
from .parser import MAX_CHAPTER, MAX_VOLUME, clean_title, normalize, normalize_number, plausible_number

logger = get_logger(__name__)

SeriesKey = Tuple[int, str, str]


class SeriesAssembler:
    def __init__(
        self,
        library_id: int,
        library_type: LibraryType = LibraryType.MANGA,
        policy: Optional[MetadataPolicy] = None,
    ):
        self.library_id = library_id
        self.library_type = library_type
        self.policy = policy or MetadataPolicy()
        self.warnings: List[ScanWarning] = []
        self._series: Dict[SeriesKey, ScannedSeries] = {}
        # Names that came from a trusted sidecar win over parsed names.
        self._trusted_name: Dict[SeriesKey, bool] = {}
        self._localized: Dict[SeriesKey, Tuple[str, bool]] = {}

    # -- input -------------------------------------------------------------

    def add(
        self,
        scanned: ScannedFile,
        folder_comicinfo: Optional[EmbeddedMetadata] = None,
        series_json: Optional[EmbeddedMetadata] = None,
    ) -> None:
        if scanned.file.library_id != self.library_id:
            raise ValueError(
                f"File {scanned.file.path} belongs to library {scanned.file.library_id}, not {self.library_id}"
            )
        metadata = scanned.metadata
        if metadata is None and scanned.file.format is Format.IMAGE and folder_comicinfo is not None:
            metadata = folder_comicinfo
            scanned.metadata = metadata

        info, trusted_name, trusted_localized = self._apply_sidecar(scanned.info, metadata)
        scanned.info = info

        normalized = info.normalized_series or normalize(Path(info.filename).stem)
        if not normalized:
            self.warnings.append(
                ScanWarning(scanned.file.path, "could not derive a series name", WarningKind.SERIES)
            )
            return

        key = (self.library_id, normalized, info.format.family)
        series = self._series.get(key)
        if series is None:
            series = ScannedSeries(
                library_id=self.library_id,
                name=info.series,
                normalized_name=normalized,
                format=info.format,
            )
            self._series[key] = series
            self._trusted_name[key] = trusted_name
        elif trusted_name and not self._trusted_name[key]:
            series.name = info.series
            self._trusted_name[key] = True

        if info.localized_series:
            current = self._localized.get(key)
            if current is None or (trusted_localized and not current[1]):
                self._localized[key] = (info.localized_series, trusted_localized)

        if series_json is not None and series.series_metadata is None:
            series.series_metadata = series_json

        self._place(series, scanned)

    def add_all(
        self,
        files: Iterable[ScannedFile],
        folder_comicinfo: Optional[Mapping[Path, EmbeddedMetadata]] = None,
        series_json: Optional[Mapping[Path, EmbeddedMetadata]] = None,
    ) -> "SeriesAssembler":
        folder_comicinfo = folder_comicinfo or {}
        series_json = series_json or {}
        for scanned in files:
            self.add(
                scanned,
                folder_comicinfo.get(scanned.file.path.parent),
                _nearest(series_json, scanned.file.path, scanned.file.root),
            )
        return self

    # -- output ------------------------------------------------------------

    def build(self) -> List[ScannedSeries]:
        """Merge localized-name groups and return series in a stable order."""
        self._merge_localized()
        for key, series in self._series.items():
            localized = self._localized.get(key)
            if localized and normalize(localized[0]) != series.normalized_name:
                series.localized_name = localized[0]
        return sorted(self._series.values(), key=lambda s: (s.normalized_name, s.format.family))

    # -- internals ---------------------------------------------------------

    def _apply_sidecar(
        self, info: ParsedInfo, metadata: Optional[EmbeddedMetadata]
    ) -> Tuple[ParsedInfo, bool, bool]:
        if metadata is None:
            return info, False, False

        prefers = self.policy.prefers_sidecar
        changes: Dict[str, object] = {}
        trusted_name = trusted_localized = False

        if prefers("series") and metadata.series and normalize(metadata.series):
            changes["series"] = metadata.series.strip()
            trusted_name = True
        if prefers("localized_series") and metadata.localized_series:
            changes["localized_series"] = metadata.localized_series.strip()
            trusted_localized = True

        if metadata.is_special_format and not info.is_special:
            changes.update(
                is_special=True,
                volume=SPECIAL_VOLUME,
                chapter=LOOSE_LEAF,
                title=(metadata.title if prefers("title") else None)
                or clean_title(Path(info.filename).stem)
                or info.filename,
            )
        elif not info.is_special:
            volume_ceiling = float("inf") if self.library_type is LibraryType.COMIC_VINE else MAX_VOLUME
            if prefers("volume") and metadata.volume:
                volume = plausible_number(normalize_number(metadata.volume), volume_ceiling)
                if volume is not None:
                    changes["volume"] = volume
            if prefers("chapter") and metadata.number:
                chapter = plausible_number(normalize_number(metadata.number), MAX_CHAPTER)
                if chapter is not None:
                    changes["chapter"] = chapter

        return (info.with_changes(**changes) if changes else info), trusted_name, trusted_localized

    def _place(self, series: ScannedSeries, scanned: ScannedFile) -> None:
        info = scanned.info
        volume = series.volumes.get(info.volume)
        if volume is None:
            volume = series.volumes[info.volume] = ScannedVolume(number=info.volume)

        probe = ScannedChapter(number=info.chapter, is_special=info.is_special, title=info.title)
        chapter = volume.chapters.get(probe.key)
        if chapter is None:
            chapter = volume.chapters[probe.key] = probe
        chapter.files.append(scanned)

    def _merge_localized(self) -> None:
        for key in list(self._series):
            if key not in self._series or key not in self._localized:
                continue
            localized_norm = normalize(self._localized[key][0])
            other_key = (key[0], localized_norm, key[2])
            if not localized_norm or other_key == key or other_key not in self._series:
                continue
            absorbed = self._series.pop(other_key)
            target = self._series[key]
            logger.debug(f"Merging series '{absorbed.name}' into '{target.name}' (localized name)")
            for scanned in absorbed.iter_files():
                self._place(target, scanned)
            if target.series_metadata is None:
                target.series_metadata = absorbed.series_metadata
            self._localized.pop(other_key, None)


def _nearest(
    sidecars: Mapping[Path, EmbeddedMetadata], path: Path, root: Path
) -> Optional[EmbeddedMetadata]:
    """Closest series.json at or above the file's folder, not above the root."""
    if not sidecars:
        return None
    folder = path.parent
    while True:
        if folder in sidecars:
            return sidecars[folder]
        if folder == root or folder.parent == folder:
            return None
        folder = folder.parent


def assemble(
    library_id: int,
    files: Iterable[ScannedFile],
    library_type: LibraryType = LibraryType.MANGA,
    policy: Optional[MetadataPolicy] = None,
    folder_comicinfo: Optional[Mapping[Path, EmbeddedMetadata]] = None,
    series_json: Optional[Mapping[Path, EmbeddedMetadata]] = None,
) -> Tuple[List[ScannedSeries], List[ScanWarning]]:
    assembler = SeriesAssembler(library_id, library_type, policy)
    series = assembler.add_all(files, folder_comicinfo, series_json).build()
    return series, assembler.warnings
