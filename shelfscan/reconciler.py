"""Reconciliation: diff scanned series against the persisted catalog.

Per library, one pass walks the states

    IDLE -> LOADING -> MATCHING -> DIFFING -> COMMITTING -> COMPLETED

and moves to FAILED only when the catalog store cannot be reached (or the
library looks wiped, see ``allow_empty_roots``). File and series problems are
collected as warnings.

Matching order for a scanned series: exact (library, normalized name, format
family) key, then localized name, then file identity (a persisted series that
owns the most of the scanned files by path or fingerprint). The last two turn
into a rename of the persisted series so its id survives.

The engine never writes to the catalog itself: it builds an immutable
``ReconciliationResult`` and hands it to ``CatalogStore.commit``.
"""

from __future__ import annotations

import enum
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .comicinfo import age_rating_rank
from .config import MetadataPolicy
from .domain import (
    ChapterSpec,
    CommitResult,
    CreateChapter,
    CreateSeries,
    CreateVolume,
    EntityKind,
    FileSpec,
    PersistedChapter,
    PersistedFile,
    PersistedSeries,
    PersistedVolume,
    ReconciliationResult,
    RemoveEntity,
    ScannedChapter,
    ScannedFile,
    ScannedSeries,
    ScannedVolume,
    ScanWarning,
    UpdateChapter,
    UpdateSeries,
    VolumeSpec,
    WarningKind,
)
from .errors import CancellationToken, LibraryScanError
from .logging_config import get_logger
from .parser import normalize

logger = get_logger(__name__)


class ReconcileState(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    MATCHING = "matching"
    DIFFING = "diffing"
    COMMITTING = "committing"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS = {
    ReconcileState.IDLE: {ReconcileState.LOADING},
    ReconcileState.LOADING: {ReconcileState.MATCHING, ReconcileState.FAILED},
    ReconcileState.MATCHING: {ReconcileState.DIFFING, ReconcileState.FAILED},
    ReconcileState.DIFFING: {ReconcileState.COMMITTING, ReconcileState.FAILED},
    ReconcileState.COMMITTING: {ReconcileState.COMPLETED, ReconcileState.FAILED},
    ReconcileState.COMPLETED: set(),
    ReconcileState.FAILED: set(),
}


# --- Metadata helpers ------------------------------------------------------


def aggregate_series_metadata(series: ScannedSeries) -> Dict[str, Any]:
    """Roll chapter metadata up to the series.

    Summary from series.json or the first chapter that has one, the highest
    age rating, the earliest release date, the union of genres/tags/people,
    and the first publisher, language, web link and issue count seen.
    """
    chapters = [c.metadata.persisted_fields() for v in series.sorted_volumes() for c in v.sorted_chapters() if c.metadata]
    if series.series_metadata is not None:
        chapters.insert(0, series.series_metadata.persisted_fields())
    if not chapters:
        return {}

    result: Dict[str, Any] = {}
    for key in ("summary", "publisher", "language", "web", "count"):
        value = next((c[key] for c in chapters if c.get(key)), None)
        if value is not None:
            result[key] = value

    ratings = [c["age_rating"] for c in chapters if c.get("age_rating")]
    if ratings:
        result["age_rating"] = max(ratings, key=age_rating_rank)

    dates = [c["release_date"] for c in chapters if c.get("release_date")]
    if dates:
        result["release_date"] = min(dates)

    for key in ("genres", "tags"):
        merged = sorted({item for c in chapters for item in c.get(key, ())})
        if merged:
            result[key] = merged

    people: Dict[str, Set[str]] = defaultdict(set)
    for c in chapters:
        for role, names in c.get("people", {}).items():
            people[role].update(names)
    if people:
        result["people"] = {role: sorted(names) for role, names in sorted(people.items())}
    return result


def _writable(values: Dict[str, Any], policy: MetadataPolicy, locked: Iterable[str] = ()) -> Dict[str, Any]:
    locked = set(locked)
    return {k: v for k, v in values.items() if policy.writes(k) and k not in locked}


def metadata_changes(
    scanned: Dict[str, Any],
    persisted: Dict[str, Any],
    policy: MetadataPolicy,
    locked: Iterable[str],
) -> Dict[str, Any]:
    """Field changes a scan may write. Locked fields are never touched.

    A field the catalog has but the sidecar no longer provides is cleared
    (value ``None``).
    """
    locked = set(locked)
    changes: Dict[str, Any] = {}
    for key in sorted(set(scanned) | set(persisted)):
        if key in locked or not policy.writes(key):
            continue
        new = scanned.get(key)
        if persisted.get(key) != new:
            changes[key] = new
    return changes


def _file_spec(scanned: ScannedFile, existing_id: Optional[int] = None) -> FileSpec:
    f = scanned.file
    return FileSpec(
        path=f.path,
        fingerprint=f.fingerprint,
        size=f.size,
        mtime=f.mtime,
        pages=scanned.pages,
        existing_id=existing_id,
    )


def _file_changed(scanned: ScannedFile, persisted: PersistedFile) -> bool:
    f = scanned.file
    return (
        f.fingerprint != persisted.fingerprint
        or f.size != persisted.size
        or f.mtime != persisted.mtime
        or scanned.pages != persisted.pages
    )


# --- Diff computation ------------------------------------------------------


@dataclass
class _Located:
    series: PersistedSeries
    volume: PersistedVolume
    chapter: PersistedChapter
    file: PersistedFile


@dataclass
class _DiffBuilder:
    library_id: int
    policy: MetadataPolicy
    persisted: Sequence[PersistedSeries]
    protected_paths: Set[Path] = field(default_factory=set)

    to_create: List[Any] = field(default_factory=list)
    to_update: List[Any] = field(default_factory=list)
    to_remove: List[RemoveEntity] = field(default_factory=list)
    dropped: List[RemoveEntity] = field(default_factory=list)
    warnings: List[ScanWarning] = field(default_factory=list)
    unchanged: int = 0

    def __post_init__(self) -> None:
        self.by_path: Dict[Path, _Located] = {}
        self.by_fingerprint: Dict[str, List[_Located]] = defaultdict(list)
        for series in self.persisted:
            for volume, chapter, persisted_file in series.iter_files():
                located = _Located(series, volume, chapter, persisted_file)
                self.by_path[persisted_file.path] = located
                self.by_fingerprint[persisted_file.fingerprint].append(located)
        # scanned file path -> persisted file it continues (same path or moved)
        self.claims: Dict[Path, _Located] = {}
        self.claimed_ids: Set[int] = set()

    # -- file identity -----------------------------------------------------

    def is_protected(self, path: Path) -> bool:
        return any(path == p or path.is_relative_to(p) for p in self.protected_paths)

    def claim_files(self, scanned_series: Sequence[ScannedSeries]) -> None:
        """Decide which persisted file each scanned file continues.

        Same path first; otherwise an unclaimed persisted file with the same
        fingerprint whose own path was not seen again (a move or rename).
        """
        scanned_paths = {s.file.path for series in scanned_series for s in series.iter_files()}
        pending: List[ScannedFile] = []
        for series in scanned_series:
            for scanned in series.iter_files():
                located = self.by_path.get(scanned.file.path)
                if located is not None:
                    self.claims[scanned.file.path] = located
                    self.claimed_ids.add(located.file.id)
                else:
                    pending.append(scanned)

        for scanned in pending:
            for located in self.by_fingerprint.get(scanned.file.fingerprint, ()):
                if (
                    located.file.id in self.claimed_ids
                    or located.file.path in scanned_paths
                    or located.file.size != scanned.file.size
                ):
                    continue
                self.claims[scanned.file.path] = located
                self.claimed_ids.add(located.file.id)
                logger.debug(f"File moved: {located.file.path} -> {scanned.file.path}")
                break

    def existing_id(self, scanned: ScannedFile) -> Optional[int]:
        located = self.claims.get(scanned.file.path)
        return located.file.id if located is not None else None

    def survives(self, persisted_file: PersistedFile) -> bool:
        return persisted_file.id in self.claimed_ids or self.is_protected(persisted_file.path)

    # -- matching ----------------------------------------------------------

    def match(self, scanned_series: Sequence[ScannedSeries]) -> Dict[int, Tuple[ScannedSeries, Optional[PersistedSeries], str]]:
        """Return index -> (scanned, persisted or None, how) for every scanned series."""
        by_key = {(p.library_id, p.normalized_name, p.format.family): p for p in self.persisted}
        taken: Set[int] = set()
        matches: Dict[int, Tuple[ScannedSeries, Optional[PersistedSeries], str]] = {}

        for index, series in enumerate(scanned_series):
            persisted = by_key.get(series.key)
            if persisted is not None:
                matches[index] = (series, persisted, "exact")
                taken.add(persisted.id)

        for index, series in enumerate(scanned_series):
            if index in matches:
                continue
            localized = normalize(series.localized_name)
            for persisted in self.persisted:
                if persisted.id in taken or persisted.format.family != series.format.family:
                    continue
                if (localized and persisted.normalized_name == localized) or (
                    persisted.localized_name and normalize(persisted.localized_name) == series.normalized_name
                ):
                    matches[index] = (series, persisted, "localized")
                    taken.add(persisted.id)
                    break

        for index, series in enumerate(scanned_series):
            if index in matches:
                continue
            hits: Counter = Counter()
            for scanned in series.iter_files():
                located = self.claims.get(scanned.file.path)
                if located is not None and located.series.format.family == series.format.family:
                    hits[located.series.id] += 1
            candidates = [
                (count, -sid) for sid, count in hits.items() if sid not in taken
            ]
            if candidates:
                _, neg_id = max(candidates)
                persisted = next(p for p in self.persisted if p.id == -neg_id)
                matches[index] = (series, persisted, "fingerprint")
                taken.add(persisted.id)
            else:
                matches[index] = (series, None, "new")
        return matches

    # -- per series diff ---------------------------------------------------

    def chapter_spec(self, chapter: ScannedChapter) -> ChapterSpec:
        metadata = chapter.metadata.persisted_fields() if chapter.metadata else {}
        return ChapterSpec(
            number=chapter.number,
            is_special=chapter.is_special,
            title=chapter.title,
            files=tuple(_file_spec(s, self.existing_id(s)) for s in chapter.files),
            metadata=_writable(metadata, self.policy),
        )

    def volume_spec(self, volume: ScannedVolume) -> VolumeSpec:
        return VolumeSpec(number=volume.number, chapters=tuple(self.chapter_spec(c) for c in volume.sorted_chapters()))

    def create_series(self, series: ScannedSeries) -> None:
        self.to_create.append(
            CreateSeries(
                name=series.name,
                normalized_name=series.normalized_name,
                format=series.format,
                localized_name=series.localized_name,
                volumes=tuple(self.volume_spec(v) for v in series.sorted_volumes()),
                metadata=_writable(aggregate_series_metadata(series), self.policy),
            )
        )

    def diff_series(self, series: ScannedSeries, persisted: PersistedSeries, how: str) -> None:
        locked = persisted.locked_fields
        new_name = new_normalized = None
        if how != "exact":
            new_normalized = series.normalized_name
            if "name" not in locked and series.name != persisted.name:
                new_name = series.name
            logger.info(f"Series renamed: '{persisted.name}' -> '{series.name}' (matched by {how})")

        changes = metadata_changes(aggregate_series_metadata(series), persisted.metadata, self.policy, locked)
        if "localized_name" not in locked and series.localized_name != persisted.localized_name:
            changes["localized_name"] = series.localized_name
        if new_name is not None or new_normalized is not None or changes:
            self.to_update.append(
                UpdateSeries(
                    series_id=persisted.id,
                    new_name=new_name,
                    new_normalized_name=new_normalized,
                    changes=changes,
                )
            )

        persisted_volumes = {v.number: v for v in persisted.volumes}
        for volume in series.sorted_volumes():
            existing = persisted_volumes.pop(volume.number, None)
            if existing is None:
                self.to_create.append(CreateVolume(series_id=persisted.id, volume=self.volume_spec(volume)))
            else:
                self.diff_volume(series, persisted, volume, existing)

        for leftover in persisted_volumes.values():
            self.retire_volume(persisted, leftover)

    def diff_volume(
        self,
        series: ScannedSeries,
        persisted_series: PersistedSeries,
        volume: ScannedVolume,
        persisted: PersistedVolume,
    ) -> None:
        persisted_chapters = {c.key: c for c in persisted.chapters}
        for chapter in volume.sorted_chapters():
            existing = persisted_chapters.pop(chapter.key, None)
            if existing is None:
                self.to_create.append(
                    CreateChapter(series_id=persisted_series.id, volume_id=persisted.id, chapter=self.chapter_spec(chapter))
                )
            else:
                self.diff_chapter(persisted_series, chapter, existing)

        for leftover in persisted_chapters.values():
            self.retire_chapter(persisted_series, persisted, leftover)

    def diff_chapter(self, series: PersistedSeries, chapter: ScannedChapter, persisted: PersistedChapter) -> None:
        own = {f.id: f for f in persisted.files}
        added: List[FileSpec] = []
        changed: List[FileSpec] = []
        kept: Set[int] = set()

        for scanned in chapter.files:
            located = self.claims.get(scanned.file.path)
            if located is not None and located.file.id in own:
                kept.add(located.file.id)
                if located.file.path != scanned.file.path or _file_changed(scanned, located.file):
                    changed.append(_file_spec(scanned, located.file.id))
                else:
                    self.unchanged += 1
            else:
                added.append(_file_spec(scanned, located.file.id if located else None))

        removed = tuple(
            f.id for f in persisted.files if f.id not in kept and not self.survives(f)
        )

        scanned_meta = chapter.metadata.persisted_fields() if chapter.metadata else {}
        meta = metadata_changes(scanned_meta, persisted.metadata, self.policy, persisted.locked_fields)

        if added or changed or removed or meta:
            self.to_update.append(
                UpdateChapter(
                    series_id=series.id,
                    chapter_id=persisted.id,
                    added_files=tuple(added),
                    changed_files=tuple(changed),
                    removed_file_ids=removed,
                    metadata_changes=meta,
                )
            )

    # -- removals ----------------------------------------------------------

    def _fate(self, files: Iterable[PersistedFile]) -> str:
        """'keep' if any file is protected, 'drop' if every file moved, else 'remove'."""
        files = list(files)
        if any(self.is_protected(f.path) for f in files):
            return "keep"
        if files and all(f.id in self.claimed_ids for f in files):
            return "drop"
        return "remove"

    def _retire(self, kind: EntityKind, entity_id: int, series_id: int, label: str, fate: str) -> None:
        op = RemoveEntity(kind=kind, entity_id=entity_id, series_id=series_id, label=label)
        if fate == "drop":
            self.dropped.append(op)
        elif fate == "remove":
            self.to_remove.append(op)

    def retire_chapter(self, series: PersistedSeries, volume: PersistedVolume, chapter: PersistedChapter) -> None:
        fate = self._fate(chapter.files)
        label = f"{series.name} v{volume.number} c{chapter.number}"
        if fate == "keep":
            self._trim_unprotected(series, chapter)
            return
        self._retire(EntityKind.CHAPTER, chapter.id, series.id, label, fate)

    def retire_volume(self, series: PersistedSeries, volume: PersistedVolume) -> None:
        fate = self._fate(f for c in volume.chapters for f in c.files)
        if fate == "keep":
            for chapter in volume.chapters:
                self.retire_chapter(series, volume, chapter)
            return
        self._retire(EntityKind.VOLUME, volume.id, series.id, f"{series.name} v{volume.number}", fate)

    def retire_series(self, series: PersistedSeries) -> None:
        fate = self._fate(f for _, _, f in series.iter_files())
        if fate == "keep":
            for volume in series.volumes:
                self.retire_volume(series, volume)
            return
        self._retire(EntityKind.SERIES, series.id, series.id, series.name, fate)

    def _trim_unprotected(self, series: PersistedSeries, chapter: PersistedChapter) -> None:
        removed = tuple(f.id for f in chapter.files if not self.survives(f))
        if removed:
            self.to_update.append(UpdateChapter(series_id=series.id, chapter_id=chapter.id, removed_file_ids=removed))


def compute_diff(
    library_id: int,
    scanned: Sequence[ScannedSeries],
    persisted: Sequence[PersistedSeries],
    policy: Optional[MetadataPolicy] = None,
    protected_paths: Iterable[Path] = (),
    cancel: Optional[CancellationToken] = None,
) -> ReconciliationResult:
    """Pure diff of one library's scanned state against its catalog snapshot."""
    builder = _DiffBuilder(library_id, policy or MetadataPolicy(), list(persisted), set(protected_paths))
    ordered = sorted(scanned, key=lambda s: (s.normalized_name, s.format.family))
    builder.claim_files(ordered)
    matches = builder.match(ordered)

    cancelled = False
    matched_ids: Set[int] = set()
    for index, series in enumerate(ordered):
        if cancel is not None and cancel.cancelled:
            cancelled = True
            builder.warnings.append(
                ScanWarning(
                    None,
                    f"Scan cancelled: {len(ordered) - index} series not reconciled, removals skipped",
                    WarningKind.LIBRARY,
                )
            )
            break
        _, existing, how = matches[index]
        if existing is None:
            builder.create_series(series)
        else:
            matched_ids.add(existing.id)
            builder.diff_series(series, existing, how)

    if not cancelled:
        for series in persisted:
            if series.id not in matched_ids:
                builder.retire_series(series)

    return ReconciliationResult(
        library_id=library_id,
        to_create=tuple(builder.to_create),
        to_update=tuple(builder.to_update),
        to_remove=tuple(builder.to_remove),
        dropped=tuple(builder.dropped),
        warnings=tuple(builder.warnings),
        unchanged_files=builder.unchanged,
        cancelled=cancelled,
    )


# --- Engine ----------------------------------------------------------------


class ReconciliationEngine:
    """Runs one library's reconciliation against a catalog store."""

    def __init__(
        self,
        library_id: int,
        store,
        policy: Optional[MetadataPolicy] = None,
        allow_empty_roots: bool = False,
    ):
        self.library_id = library_id
        self.store = store
        self.policy = policy or MetadataPolicy()
        self.allow_empty_roots = allow_empty_roots
        self.state = ReconcileState.IDLE
        self.persisted: List[PersistedSeries] = []

    def _move(self, state: ReconcileState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid reconciliation transition {self.state.value} -> {state.value}")
        logger.debug(f"Library {self.library_id}: {self.state.value} -> {state.value}")
        self.state = state

    def _fail(self, reason: str, cause: Optional[BaseException] = None) -> LibraryScanError:
        self.state = ReconcileState.FAILED
        return LibraryScanError(self.library_id, reason, cause)

    def reconcile(
        self,
        scanned: Sequence[ScannedSeries],
        protected_paths: Iterable[Path] = (),
        nothing_found: bool = False,
        cancel: Optional[CancellationToken] = None,
    ) -> ReconciliationResult:
        """LOADING -> MATCHING -> DIFFING. Raises LibraryScanError on failure."""
        self._move(ReconcileState.LOADING)
        try:
            self.persisted = list(self.store.load_existing_series(self.library_id))
        except Exception as exc:
            raise self._fail(f"catalog store unavailable: {exc}", exc) from exc

        if nothing_found and self.persisted and not self.allow_empty_roots:
            raise self._fail(
                f"no files found in any library root but the catalog holds {len(self.persisted)} series; "
                "refusing to remove them (set allow_empty_roots to override)"
            )

        self._move(ReconcileState.MATCHING)
        self._move(ReconcileState.DIFFING)
        result = compute_diff(self.library_id, scanned, self.persisted, self.policy, protected_paths, cancel)
        logger.debug(
            f"Library {self.library_id} diff: {len(result.to_create)} create, {len(result.to_update)} update, "
            f"{len(result.to_remove)} remove, {len(result.dropped)} dropped, {result.unchanged_files} unchanged"
        )
        return result

    def commit(self, result: ReconciliationResult) -> CommitResult:
        """COMMITTING -> COMPLETED. An empty diff skips the store entirely."""
        self._move(ReconcileState.COMMITTING)
        if result.is_empty:
            self._move(ReconcileState.COMPLETED)
            return CommitResult(library_id=self.library_id)
        try:
            commit = self.store.commit(self.library_id, result)
        except Exception as exc:
            raise self._fail(f"commit failed: {exc}", exc) from exc
        self._move(ReconcileState.COMPLETED)
        return commit
