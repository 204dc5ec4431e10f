"""SQLModel database models for the Shelfscan catalog."""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Series(SQLModel, table=True):
    __tablename__ = "series"
    __table_args__ = (UniqueConstraint("library_id", "normalized_name", "format"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    library_id: int = Field(index=True)
    name: str
    normalized_name: str = Field(index=True)
    format: str
    localized_name: str = ""
    # Field values written by scans or manual edits (keys from comicinfo.METADATA_FIELDS)
    meta: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    locked_fields: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    volumes: List["Volume"] = Relationship(
        back_populates="series",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class Volume(SQLModel, table=True):
    __tablename__ = "volumes"
    __table_args__ = (UniqueConstraint("series_id", "number"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    series_id: int = Field(foreign_key="series.id", index=True)
    number: str

    series: Optional[Series] = Relationship(back_populates="volumes")
    chapters: List["Chapter"] = Relationship(
        back_populates="volume",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class Chapter(SQLModel, table=True):
    __tablename__ = "chapters"

    id: Optional[int] = Field(default=None, primary_key=True)
    volume_id: int = Field(foreign_key="volumes.id", index=True)
    number: str
    is_special: bool = False
    title: str = ""
    meta: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    locked_fields: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    volume: Optional[Volume] = Relationship(back_populates="chapters")
    files: List["ChapterFile"] = Relationship(
        back_populates="chapter",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class ChapterFile(SQLModel, table=True):
    __tablename__ = "chapter_files"

    id: Optional[int] = Field(default=None, primary_key=True)
    chapter_id: int = Field(foreign_key="chapters.id", index=True)
    path: str = Field(unique=True, index=True)
    fingerprint: str = Field(index=True)
    file_size: int
    file_mtime: float
    page_count: int = 0
    last_scanned_at: datetime = Field(default_factory=_now)

    chapter: Optional[Chapter] = Relationship(back_populates="files")
