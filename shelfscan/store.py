"""Catalog store: the persistence side of reconciliation.

``CatalogStore`` is the interface the scanner depends on. ``SqlCatalogStore``
implements it on SQLite with SQLModel. A commit applies every operation of a
diff inside its own SAVEPOINT, so one failing operation is reported without
rejecting the rest; commits for the same library are serialized.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload
from sqlmodel import Session, col, func, select

from .classifier import Format
from .comicinfo import METADATA_FIELDS
from .database import create_catalog_engine, init_db, reset_database
from .domain import (
    ChapterSpec,
    CommitResult,
    CreateChapter,
    CreateSeries,
    CreateVolume,
    EntityKind,
    FailedOperation,
    FileSpec,
    Operation,
    PersistedChapter,
    PersistedFile,
    PersistedSeries,
    PersistedVolume,
    ReconciliationResult,
    RemoveEntity,
    UpdateChapter,
    UpdateSeries,
    VolumeSpec,
)
from .logging_config import get_logger
from .models import Chapter, ChapterFile, Series, Volume

logger = get_logger(__name__)

SERIES_EDITABLE = frozenset(METADATA_FIELDS) | {"name", "localized_name"}
CHAPTER_EDITABLE = frozenset(METADATA_FIELDS)


class CatalogStore(Protocol):
    def load_existing_series(self, library_id: int) -> List[PersistedSeries]:
        ...

    def commit(self, library_id: int, diff: ReconciliationResult) -> CommitResult:
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _apply_fields(row: Any, changes: Dict[str, Any], locked: Iterable[str]) -> None:
    """Write meta changes to a Series/Chapter row; ``None`` clears a field."""
    locked = set(locked)
    meta = dict(row.meta or {})
    for key, value in changes.items():
        if key in locked:
            continue
        if key == "localized_name":
            row.localized_name = value or ""
        elif value is None:
            meta.pop(key, None)
        else:
            meta[key] = value
    row.meta = meta
    row.updated_at = _now()


class SqlCatalogStore:
    """SQLite catalog. Use as a context manager or call ``close()``."""

    def __init__(self, database_path: Path):
        self.database_path = database_path
        self.engine = create_catalog_engine(database_path)
        init_db(self.engine)
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def close(self) -> None:
        self.engine.dispose()

    def __enter__(self) -> "SqlCatalogStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def library_lock(self, library_id: int) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(library_id, threading.Lock())

    # -- reading -----------------------------------------------------------

    def load_existing_series(self, library_id: int) -> List[PersistedSeries]:
        statement = (
            select(Series)
            .where(Series.library_id == library_id)
            .options(selectinload(Series.volumes).selectinload(Volume.chapters).selectinload(Chapter.files))
            .order_by(Series.id)
        )
        with Session(self.engine) as session:
            return [self._snapshot(series) for series in session.exec(statement).all()]

    @staticmethod
    def _snapshot(series: Series) -> PersistedSeries:
        volumes = []
        for volume in sorted(series.volumes, key=lambda v: v.id):
            chapters = []
            for chapter in sorted(volume.chapters, key=lambda c: c.id):
                files = tuple(
                    PersistedFile(
                        id=f.id,
                        path=Path(f.path),
                        fingerprint=f.fingerprint,
                        size=f.file_size,
                        mtime=f.file_mtime,
                        pages=f.page_count,
                    )
                    for f in sorted(chapter.files, key=lambda f: f.id)
                )
                chapters.append(
                    PersistedChapter(
                        id=chapter.id,
                        number=chapter.number,
                        is_special=chapter.is_special,
                        title=chapter.title,
                        files=files,
                        metadata=dict(chapter.meta or {}),
                        locked_fields=frozenset(chapter.locked_fields or ()),
                    )
                )
            volumes.append(PersistedVolume(id=volume.id, number=volume.number, chapters=tuple(chapters)))
        return PersistedSeries(
            id=series.id,
            library_id=series.library_id,
            name=series.name,
            normalized_name=series.normalized_name,
            format=Format(series.format),
            localized_name=series.localized_name,
            volumes=tuple(volumes),
            metadata=dict(series.meta or {}),
            locked_fields=frozenset(series.locked_fields or ()),
        )

    # -- committing --------------------------------------------------------

    def commit(self, library_id: int, diff: ReconciliationResult) -> CommitResult:
        """Apply a diff. Creates, then updates, then removals, each in a SAVEPOINT."""
        operations: List[Operation] = [*diff.to_create, *diff.to_update, *diff.to_remove, *diff.dropped]
        applied = 0
        failed: List[FailedOperation] = []
        created: List[int] = []

        with self.library_lock(library_id):
            with Session(self.engine) as session:
                session.connection(execution_options={"sqlite_immediate": True})
                for operation in operations:
                    savepoint = session.begin_nested()
                    try:
                        new_id = self._apply(session, library_id, operation)
                        session.flush()
                        savepoint.commit()
                    except (SQLAlchemyError, LookupError, ValueError) as exc:
                        savepoint.rollback()
                        reason = str(exc).splitlines()[0] if str(exc) else type(exc).__name__
                        logger.warning(f"Commit of {type(operation).__name__} failed: {reason}")
                        failed.append(FailedOperation(operation, reason))
                        continue
                    applied += 1
                    if new_id is not None:
                        created.append(new_id)
                session.commit()

        logger.debug(f"Library {library_id}: {applied} operation(s) applied, {len(failed)} failed")
        return CommitResult(
            library_id=library_id,
            applied=applied,
            failed=tuple(failed),
            created_series_ids=tuple(created),
        )

    def _apply(self, session: Session, library_id: int, operation: Operation) -> Optional[int]:
        if isinstance(operation, CreateSeries):
            return self._create_series(session, library_id, operation)
        if isinstance(operation, CreateVolume):
            series = self._series(session, library_id, operation.series_id)
            self._add_volume(session, series.id, operation.volume)
        elif isinstance(operation, CreateChapter):
            volume = session.get(Volume, operation.volume_id)
            if volume is None or volume.series_id != operation.series_id:
                raise LookupError(f"Volume {operation.volume_id} not found in series {operation.series_id}")
            self._add_chapter(session, volume.id, operation.chapter)
        elif isinstance(operation, UpdateSeries):
            self._update_series(session, library_id, operation)
        elif isinstance(operation, UpdateChapter):
            self._update_chapter(session, library_id, operation)
        elif isinstance(operation, RemoveEntity):
            self._remove(session, library_id, operation)
        else:
            raise ValueError(f"Unknown operation {operation!r}")
        return None

    def _series(self, session: Session, library_id: int, series_id: int) -> Series:
        series = session.get(Series, series_id)
        if series is None or series.library_id != library_id:
            raise LookupError(f"Series {series_id} not found in library {library_id}")
        return series

    def _create_series(self, session: Session, library_id: int, op: CreateSeries) -> int:
        series = Series(
            library_id=library_id,
            name=op.name,
            normalized_name=op.normalized_name,
            format=op.format.value,
            localized_name=op.localized_name,
            meta=dict(op.metadata),
            locked_fields=[],
        )
        session.add(series)
        session.flush()
        for volume in op.volumes:
            self._add_volume(session, series.id, volume)
        return series.id

    def _add_volume(self, session: Session, series_id: int, spec: VolumeSpec) -> None:
        volume = Volume(series_id=series_id, number=spec.number)
        session.add(volume)
        session.flush()
        for chapter in spec.chapters:
            self._add_chapter(session, volume.id, chapter)

    def _add_chapter(self, session: Session, volume_id: int, spec: ChapterSpec) -> None:
        chapter = Chapter(
            volume_id=volume_id,
            number=spec.number,
            is_special=spec.is_special,
            title=spec.title,
            meta=dict(spec.metadata),
            locked_fields=[],
        )
        session.add(chapter)
        session.flush()
        for file_spec in spec.files:
            self._put_file(session, chapter.id, file_spec)

    def _put_file(self, session: Session, chapter_id: int, spec: FileSpec) -> None:
        """Insert a file row, or re-home an existing one (same id, new place)."""
        if spec.existing_id is not None:
            row = session.get(ChapterFile, spec.existing_id)
            if row is None:
                raise LookupError(f"File {spec.existing_id} no longer exists")
            row.chapter_id = chapter_id
        else:
            row = ChapterFile(
                chapter_id=chapter_id,
                path=str(spec.path),
                fingerprint=spec.fingerprint,
                file_size=spec.size,
                file_mtime=spec.mtime,
            )
        row.path = str(spec.path)
        row.fingerprint = spec.fingerprint
        row.file_size = spec.size
        row.file_mtime = spec.mtime
        row.page_count = spec.pages
        row.last_scanned_at = _now()
        session.add(row)

    def _update_series(self, session: Session, library_id: int, op: UpdateSeries) -> None:
        series = self._series(session, library_id, op.series_id)
        locked = set(series.locked_fields or ())
        if op.new_normalized_name is not None:
            series.normalized_name = op.new_normalized_name
        if op.new_name is not None and "name" not in locked:
            series.name = op.new_name
        _apply_fields(series, op.changes, locked)
        session.add(series)

    def _update_chapter(self, session: Session, library_id: int, op: UpdateChapter) -> None:
        chapter = session.get(Chapter, op.chapter_id)
        if chapter is None or chapter.volume is None or chapter.volume.series_id != op.series_id:
            raise LookupError(f"Chapter {op.chapter_id} not found in series {op.series_id}")
        self._series(session, library_id, op.series_id)

        for file_id in op.removed_file_ids:
            row = session.get(ChapterFile, file_id)
            if row is not None and row.chapter_id == chapter.id:
                session.delete(row)
        # Deletes first so a freed path can be reused by an added file.
        session.flush()
        for spec in (*op.changed_files, *op.added_files):
            self._put_file(session, chapter.id, spec)
        if op.metadata_changes:
            _apply_fields(chapter, op.metadata_changes, chapter.locked_fields or ())
        session.add(chapter)

    def _remove(self, session: Session, library_id: int, op: RemoveEntity) -> None:
        self._series(session, library_id, op.series_id)
        model = {EntityKind.SERIES: Series, EntityKind.VOLUME: Volume, EntityKind.CHAPTER: Chapter}[op.kind]
        row = session.get(model, op.entity_id)
        if row is None:
            raise LookupError(f"{op.kind.value.capitalize()} {op.entity_id} not found")
        # Reload so cascades only see files still attached after earlier re-homes.
        session.expire_all()
        session.delete(row)

    # -- manual edits ------------------------------------------------------

    def edit_series_field(self, series_id: int, field: str, value: Any, lock: bool = True) -> None:
        """Set a series field by hand; the field is locked against scans by default."""
        if field not in SERIES_EDITABLE:
            raise ValueError(f"Field '{field}' cannot be edited on a series")
        with Session(self.engine) as session:
            series = session.get(Series, series_id)
            if series is None:
                raise LookupError(f"Series {series_id} not found")
            if field == "name":
                series.name = value
            else:
                _apply_fields(series, {field: value}, ())
            if lock:
                series.locked_fields = sorted(set(series.locked_fields or ()) | {field})
            session.add(series)
            session.commit()

    def edit_chapter_field(self, chapter_id: int, field: str, value: Any, lock: bool = True) -> None:
        if field not in CHAPTER_EDITABLE:
            raise ValueError(f"Field '{field}' cannot be edited on a chapter")
        with Session(self.engine) as session:
            chapter = session.get(Chapter, chapter_id)
            if chapter is None:
                raise LookupError(f"Chapter {chapter_id} not found")
            _apply_fields(chapter, {field: value}, ())
            if lock:
                chapter.locked_fields = sorted(set(chapter.locked_fields or ()) | {field})
            session.add(chapter)
            session.commit()

    def unlock_series_field(self, series_id: int, field: str) -> None:
        with Session(self.engine) as session:
            series = session.get(Series, series_id)
            if series is None:
                raise LookupError(f"Series {series_id} not found")
            series.locked_fields = sorted(set(series.locked_fields or ()) - {field})
            session.add(series)
            session.commit()

    # -- maintenance -------------------------------------------------------

    def stats(self, library_id: Optional[int] = None) -> Dict[str, int]:
        with Session(self.engine) as session:
            def count(model) -> int:
                statement = select(func.count(col(model.id)))
                if library_id is not None:
                    if model is Series:
                        statement = statement.where(Series.library_id == library_id)
                    elif model is Volume:
                        statement = statement.join(Series).where(Series.library_id == library_id)
                    elif model is Chapter:
                        statement = statement.join(Volume).join(Series).where(Series.library_id == library_id)
                    else:
                        statement = (
                            statement.join(Chapter).join(Volume).join(Series).where(Series.library_id == library_id)
                        )
                return session.exec(statement).one()

            return {
                "series": count(Series),
                "volumes": count(Volume),
                "chapters": count(Chapter),
                "files": count(ChapterFile),
            }

    def reset(self) -> None:
        reset_database(self.engine)
