"""Sidecar metadata parsing for Shelfscan.

Reads the metadata a file carries about itself:
- ComicInfo.xml inside CBZ/CBR archives (or loose next to image folders)
- the OPF package document inside EPUBs
- the document information dictionary of PDFs
- Mylar-style ``series.json`` files in series folders

Every parser returns ``None`` for missing, malformed or empty input; a broken
sidecar is logged and treated as absent.
"""

from __future__ import annotations

import json
import re
import xml.etree.ElementTree as ET
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError

from .logging_config import get_logger

logger = get_logger(__name__)


# Persisted metadata fields a scan may write (series and chapter level).
METADATA_FIELDS = (
    "title",
    "summary",
    "release_date",
    "age_rating",
    "genres",
    "tags",
    "people",
    "publisher",
    "language",
    "web",
    "count",
)

# Naming/numbering fields where a sidecar can override the filename.
NAMING_FIELDS = ("series", "localized_series", "volume", "chapter", "title")

AGE_RATINGS = (
    "Unknown",
    "Rating Pending",
    "Early Childhood",
    "Everyone",
    "G",
    "Everyone 10+",
    "PG",
    "Kids to Adults",
    "Teen",
    "MA15+",
    "Mature 17+",
    "M",
    "R18+",
    "Adults Only 18+",
    "X18+",
)
_AGE_RANK = {rating.lower(): index for index, rating in enumerate(AGE_RATINGS)}

PEOPLE_ROLES = {
    "writer": "writer",
    "penciller": "penciller",
    "inker": "inker",
    "colorist": "colorist",
    "letterer": "letterer",
    "coverartist": "cover_artist",
    "editor": "editor",
    "translator": "translator",
    "publisher": "publisher",
    "imprint": "imprint",
    "characters": "character",
    "teams": "team",
    "locations": "location",
}

# Scalar ComicInfo tags (lower-cased) -> model field
TAG_MAP = {
    "title": "title",
    "series": "series",
    "localizedseries": "localized_series",
    "number": "number",
    "volume": "volume",
    "count": "count",
    "summary": "summary",
    "year": "year",
    "month": "month",
    "day": "day",
    "agerating": "age_rating",
    "languageiso": "language_iso",
    "web": "web",
    "format": "format",
    "pagecount": "page_count",
}

_INT_FIELDS = {"count", "year", "month", "day", "page_count"}


def age_rating_rank(value: Optional[str]) -> int:
    if not value:
        return 0
    return _AGE_RANK.get(value.strip().lower(), 0)


class EmbeddedMetadata(BaseModel):
    """Metadata parsed from a sidecar (all optional)."""

    model_config = {"extra": "ignore", "frozen": True}

    source: str = "comicinfo"
    title: Optional[str] = None
    series: Optional[str] = None
    localized_series: Optional[str] = None
    number: Optional[str] = None
    volume: Optional[str] = None
    count: Optional[int] = None
    summary: Optional[str] = None
    year: Optional[int] = None
    month: Optional[int] = None
    day: Optional[int] = None
    age_rating: Optional[str] = None
    language_iso: Optional[str] = None
    web: Optional[str] = None
    format: Optional[str] = None
    page_count: Optional[int] = None
    publisher: Optional[str] = None
    genres: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    people: Dict[str, List[str]] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.model_dump(exclude={"source"}, exclude_defaults=True)

    @property
    def release_date(self) -> Optional[str]:
        if not self.year or self.year < 1000:
            return None
        if self.month and 1 <= self.month <= 12:
            if self.day and 1 <= self.day <= 31:
                return f"{self.year:04d}-{self.month:02d}-{self.day:02d}"
            return f"{self.year:04d}-{self.month:02d}"
        return f"{self.year:04d}"

    @property
    def is_special_format(self) -> bool:
        return (self.format or "").strip().lower() in {"special", "one-shot", "oneshot", "sp"}

    def persisted_fields(self) -> Dict[str, object]:
        """Values keyed by METADATA_FIELDS; missing values are omitted."""
        values: Dict[str, object] = {
            "title": self.title,
            "summary": self.summary,
            "release_date": self.release_date,
            "age_rating": self.age_rating,
            "genres": sorted(set(self.genres)) or None,
            "tags": sorted(set(self.tags)) or None,
            "people": {role: sorted(set(names)) for role, names in sorted(self.people.items()) if names} or None,
            "publisher": self.publisher,
            "language": self.language_iso,
            "web": self.web,
            "count": self.count,
        }
        return {key: value for key, value in values.items() if value not in (None, "")}


def _text(elem: Optional[ET.Element]) -> Optional[str]:
    if elem is None or elem.text is None:
        return None
    t = elem.text.strip()
    return t or None


def _int_or_none(s: Optional[str]) -> Optional[int]:
    if s is None:
        return None
    try:
        return int(float(s.strip()))
    except ValueError:
        return None


def _local_name(tag: str) -> str:
    """Return tag without namespace (e.g. '{http://...}Issue' -> 'issue')."""
    return tag.split("}")[-1].lower() if "}" in tag else tag.lower()


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in re.split(r"[,;]", value) if item.strip()]


def _build(raw: Mapping[str, object], source: str) -> Optional[EmbeddedMetadata]:
    try:
        metadata = EmbeddedMetadata.model_validate({**raw, "source": source})
    except ValidationError as exc:
        logger.warning(f"Discarding invalid {source} metadata: {exc.error_count()} error(s)")
        return None
    return None if metadata.is_empty else metadata


def parse_comicinfo_xml(xml_bytes: bytes) -> Optional[EmbeddedMetadata]:
    """Parse ComicInfo.xml content. Malformed or empty XML returns None."""
    if not xml_bytes or not xml_bytes.strip():
        return None
    try:
        root = ET.fromstring(xml_bytes)
    except ET.ParseError as exc:
        logger.warning(f"Malformed ComicInfo.xml ignored: {exc}")
        return None

    raw: dict[str, object] = {}
    people: dict[str, list[str]] = {}
    by_lower = {_local_name(elem.tag): elem for elem in root}

    for xml_tag_lower, our_key in TAG_MAP.items():
        text = _text(by_lower.get(xml_tag_lower))
        if text is None:
            continue
        if our_key in _INT_FIELDS:
            val = _int_or_none(text)
            if val is not None:
                raw[our_key] = val
        else:
            raw[our_key] = text

    for xml_tag_lower, role in PEOPLE_ROLES.items():
        names = _split_list(_text(by_lower.get(xml_tag_lower)))
        if names:
            people[role] = names
    if people:
        raw["people"] = people
        if "publisher" in people:
            raw["publisher"] = people["publisher"][0]

    raw["genres"] = _split_list(_text(by_lower.get("genre")))
    raw["tags"] = _split_list(_text(by_lower.get("tags")))
    return _build(raw, "comicinfo")


_OPF_ROLES = {"aut": "writer", "art": "penciller", "ill": "penciller", "edt": "editor", "trl": "translator"}


def parse_opf(opf_bytes: bytes) -> Optional[EmbeddedMetadata]:
    """Parse an EPUB OPF package document (EPUB 2 and EPUB 3 series metadata)."""
    try:
        root = ET.fromstring(opf_bytes)
    except ET.ParseError as exc:
        logger.warning(f"Malformed OPF ignored: {exc}")
        return None

    metadata = next((e for e in root if _local_name(e.tag) == "metadata"), None)
    if metadata is None:
        return None

    raw: dict[str, object] = {}
    people: dict[str, list[str]] = {}
    genres: list[str] = []
    refines: dict[str, dict[str, str]] = {}
    collections: dict[str, str] = {}

    for elem in metadata:
        name = _local_name(elem.tag)
        text = _text(elem)
        attrs = {_local_name(k): v for k, v in elem.attrib.items()}
        if name == "title" and text and "title" not in raw:
            raw["title"] = text
        elif name == "creator" and text:
            role = _OPF_ROLES.get(attrs.get("role", "aut"), "writer")
            people.setdefault(role, []).append(text)
        elif name == "subject" and text:
            genres.extend(_split_list(text))
        elif name == "publisher" and text:
            raw["publisher"] = text
        elif name == "language" and text:
            raw["language_iso"] = text
        elif name == "description" and text:
            raw["summary"] = text
        elif name == "date" and text:
            match = re.match(r"(\d{4})(?:-(\d{2}))?(?:-(\d{2}))?", text)
            if match:
                raw["year"] = int(match.group(1))
                if match.group(2):
                    raw["month"] = int(match.group(2))
                if match.group(3):
                    raw["day"] = int(match.group(3))
        elif name == "meta":
            meta_name = attrs.get("name", "")
            prop = attrs.get("property", "")
            if meta_name == "calibre:series":
                raw["series"] = attrs.get("content", "").strip() or None
            elif meta_name == "calibre:series_index":
                raw["volume"] = attrs.get("content", "").strip() or None
            elif prop == "belongs-to-collection" and text:
                collections[attrs.get("id", "")] = text
            elif prop and attrs.get("refines", "").startswith("#") and text:
                refines.setdefault(attrs["refines"][1:], {})[prop] = text

    for collection_id, title in collections.items():
        details = refines.get(collection_id, {})
        if details.get("collection-type", "series") == "series":
            raw.setdefault("series", title)
            if "group-position" in details:
                raw.setdefault("volume", details["group-position"])

    if people:
        raw["people"] = people
    raw["genres"] = genres
    return _build(raw, "opf")


def metadata_from_pdf_info(info: Mapping[str, Optional[str]]) -> Optional[EmbeddedMetadata]:
    """Map a PDF document information dictionary (keys as PyMuPDF reports them)."""
    raw: dict[str, object] = {}
    if info.get("title"):
        raw["title"] = info["title"].strip()
    if info.get("author"):
        raw["people"] = {"writer": _split_list(info["author"])}
    if info.get("subject"):
        raw["genres"] = _split_list(info["subject"])
    if info.get("keywords"):
        raw["tags"] = _split_list(info["keywords"])
    date = info.get("creationDate") or ""
    match = re.match(r"(?:D:)?(\d{4})(\d{2})?(\d{2})?", date)
    if match:
        raw["year"] = int(match.group(1))
        if match.group(2):
            raw["month"] = int(match.group(2))
        if match.group(3):
            raw["day"] = int(match.group(3))
    return _build(raw, "pdf")


def parse_series_json(data: bytes) -> Optional[EmbeddedMetadata]:
    """Parse a Mylar-style series.json (``{"metadata": {...}}``)."""
    try:
        document = json.loads(data.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning(f"Malformed series.json ignored: {exc}")
        return None
    if not isinstance(document, dict):
        return None
    body = document.get("metadata", document)
    if not isinstance(body, dict):
        return None

    raw: dict[str, object] = {
        "series": body.get("name"),
        "summary": body.get("description_text") or body.get("description"),
        "publisher": body.get("publisher"),
        "year": _int_or_none(str(body["year"])) if body.get("year") is not None else None,
        "age_rating": body.get("age_rating"),
        "count": body.get("total_issues"),
    }
    return _build({k: v for k, v in raw.items() if v is not None}, "series.json")
