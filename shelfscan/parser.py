"""Filename parser for Shelfscan.

Turns a file path (plus the library type) into a ``ParsedInfo``: series name,
volume, chapter, special flag and edition. Pure text work, no I/O.

Pattern families are tried in a fixed order:

1. edition keywords (captured and removed from the name)
2. ``SPnn`` special markers
3. combined volume + chapter patterns
4. volume-only patterns
5. explicit chapter / issue patterns
6. a trailing bare number (not for book libraries)
7. special keywords, only when no number was found

Every regex runs through ``_Budget`` with a per-call timeout from the
``regex`` package and an overall deadline per ``parse`` call. A pattern that
runs out of time counts as a non-match.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import PurePath
from typing import Iterable, List, Optional, Sequence, Tuple

import regex

from .classifier import Format, LibraryType, format_for, is_special_folder
from .domain import LOOSE_LEAF, SPECIAL_VOLUME, ParsedInfo
from .logging_config import get_logger

logger = get_logger(__name__)


MAX_VOLUME = 1000
MAX_CHAPTER = 9999

DEFAULT_BUDGET_SECONDS = 0.25
DEFAULT_PATTERN_TIMEOUT = 0.05

_FLAGS = regex.IGNORECASE | regex.VERSION0

_NUM = r"\d+(?:\.\d+)?"
_RANGE = rf"{_NUM}(?:-{_NUM})?"
_NOT_WORD_BEFORE = r"(?<![\p{L}\d])"
_VOLUME_WORDS = r"(?:volume|vol|vl|v|tome|t(?=\s?\d)|том)"
_CHAPTER_WORDS = r"(?:chapitre|chapter|chp|ch|c|episode|ep|kapitel|глава)"

_NORMALIZE_RE = regex.compile(r"[^\p{L}\p{N}+!]")
_WHITESPACE_RE = regex.compile(r"\s+")


def normalize(value: Optional[str]) -> str:
    """Case-, whitespace- and punctuation-insensitive form of a name."""
    if not value:
        return ""
    return _NORMALIZE_RE.sub("", value.casefold())


def normalize_number(value: str) -> str:
    """'001.50' -> '1.5', '01-03' -> '1-3', '02-02' -> '2'."""
    parts = [_normalize_single(p) for p in value.replace(" ", "").split("-") if p]
    if len(parts) == 2 and parts[0] == parts[1]:
        parts = parts[:1]
    return "-".join(parts)


def _normalize_single(value: str) -> str:
    if "." in value:
        whole, frac = value.split(".", 1)
        whole = whole.lstrip("0") or "0"
        frac = frac.rstrip("0")
        return f"{whole}.{frac}" if frac else whole
    return value.lstrip("0") or "0"


def plausible_number(value: str, ceiling: float) -> Optional[str]:
    """Check a captured number or range against sanity bounds.

    A range whose bounds are out of order or above the ceiling degrades to its
    start bound; a start bound above the ceiling rejects the capture.
    """
    parts = value.split("-")
    try:
        bounds = [float(p) for p in parts]
    except ValueError:
        return None
    if bounds[0] > ceiling:
        return None
    if len(bounds) == 2 and (bounds[1] > ceiling or bounds[0] > bounds[1]):
        return parts[0]
    return value


@dataclass(frozen=True)
class _Pattern:
    name: str
    compiled: "regex.Pattern"
    types: Optional[frozenset] = None  # None = every library type

    def applies(self, library_type: LibraryType) -> bool:
        return self.types is None or library_type in self.types


_COMIC_TYPES = frozenset({LibraryType.COMIC, LibraryType.COMIC_VINE})
_NOT_BOOK = frozenset(set(LibraryType) - {LibraryType.BOOK})


def _p(name: str, pattern: str, types: Optional[Iterable[LibraryType]] = None) -> _Pattern:
    return _Pattern(name, regex.compile(pattern, _FLAGS), frozenset(types) if types else None)


EDITION_PATTERN = _p(
    "edition",
    r"(?<![\p{L}])(?P<edition>"
    r"omnibus(?:\s+edition)?|deluxe(?:\s+edition)?|digital(?:\s+edition)?"
    r"|full[\s-]?colou?r(?:\s+edition)?|uncensored(?:\s+edition)?|kanzenban"
    r"|(?:anniversary|collector'?s|perfect|special|limited)\s+edition"
    r"|director'?s\s+cut"
    r")(?![\p{L}])",
)

SPECIAL_MARKER_PATTERN = _p("special-marker", rf"{_NOT_WORD_BEFORE}sp\s?(?P<index>\d+)(?![\p{{L}}\d])")

SPECIAL_KEYWORD_PATTERNS: Tuple[_Pattern, ...] = (
    _p(
        "special-keyword",
        r"(?<![\p{L}])(?:specials?|omake|ova|oad|one[\s-]?shot|extra\s+chapter"
        r"|side[\s-]?stor(?:y|ies)|art\s?book|bonus)(?![\p{L}])",
    ),
    _p("comic-special", r"(?<![\p{L}])(?:annuals?|tpb|hc|graphic\s+novel)(?![\p{L}])", _COMIC_TYPES),
)

COMBINED_PATTERNS: Tuple[_Pattern, ...] = (
    _p(
        "volume-chapter",
        rf"{_NOT_WORD_BEFORE}{_VOLUME_WORDS}\.?\s*(?P<volume>{_RANGE})[\s.\-]*"
        rf"{_CHAPTER_WORDS}\.?\s*(?P<chapter>{_RANGE})",
    ),
    _p(
        "cjk-volume-chapter",
        rf"第?\s*(?P<volume>\d+)\s*[巻卷권冊]\s*第?\s*(?P<chapter>{_NUM})\s*[話话화章回]",
    ),
)

VOLUME_PATTERNS: Tuple[_Pattern, ...] = (
    _p("volume", rf"{_NOT_WORD_BEFORE}{_VOLUME_WORDS}\.?\s*(?P<volume>{_RANGE})(?!\d)"),
    _p("cjk-volume", r"第?\s*(?P<volume>\d+)\s*[巻卷권冊]"),
)

CHAPTER_PATTERNS: Tuple[_Pattern, ...] = (
    _p("chapter", rf"{_NOT_WORD_BEFORE}{_CHAPTER_WORDS}\.?\s*(?P<chapter>{_RANGE})(?!\d)"),
    _p("cjk-chapter", rf"第?\s*(?P<chapter>{_NUM})\s*[話话화章回]"),
    _p("issue-hash", rf"#\s*(?P<chapter>{_RANGE})(?!\d)"),
    _p("issue-word", rf"(?<![\p{{L}}])issue\s*#?\s*(?P<chapter>{_RANGE})(?!\d)", _COMIC_TYPES),
)

BARE_NUMBER_PATTERN = _p(
    "bare-number",
    rf"^(?P<series>.*?[^\s\-])\s+(?:-\s+)?(?P<chapter>{_RANGE})\s*$",
    _NOT_BOOK,
)

# "Batman v2 012": an issue number directly after the volume marker.
NUMBER_AFTER_VOLUME_PATTERN = _p(
    "number-after-volume",
    rf"^\s*(?:-\s*)?(?P<chapter>{_RANGE})(?![\p{{L}}\d])",
    _NOT_BOOK,
)

# "01.cbz": the whole name is a number; the series comes from the folder.
ONLY_NUMBER_PATTERN = _p("only-number", rf"^\s*(?P<chapter>{_RANGE})\s*$", _NOT_BOOK)

# Bracketed groups are removed for matching; unbalanced brackets are kept as is.
_GROUPS_RE = regex.compile(r"\[[^\[\]]*\]|\([^()]*\)|\{[^{}]*\}")
_RESOLUTION_RE = regex.compile(r"(?<!\d)\d{3,4}\s?[x×]\s?\d{3,4}(?!\d)", regex.IGNORECASE)
_ALTERNATE_RE = regex.compile(r"\s+(?:~|\|)\s+")
_COMIC_VINE_FOLDER_RE = regex.compile(r"^(?P<name>.+?)\s*\((?P<year>\d{4})\)\s*$")
_SEPARATOR_CHARS = " -_.,:;~|"


class _Budget:
    """Overall time allowance for one ``parse`` call."""

    def __init__(self, seconds: float, pattern_timeout: float):
        self.deadline = time.monotonic() + seconds
        self.pattern_timeout = pattern_timeout
        self.exhausted = False

    def timeout(self) -> Optional[float]:
        remaining = self.deadline - time.monotonic()
        if remaining <= 0:
            self.exhausted = True
            return None
        return min(remaining, self.pattern_timeout)

    def search(self, pattern: "regex.Pattern", text: str):
        timeout = self.timeout()
        if timeout is None:
            return None
        try:
            return pattern.search(text, timeout=timeout)
        except TimeoutError:
            self.exhausted = True
            logger.warning(f"Pattern timed out on {text[:80]!r}")
            return None

    def sub(self, pattern: "regex.Pattern", repl: str, text: str) -> str:
        timeout = self.timeout()
        if timeout is None:
            return text
        try:
            return pattern.sub(repl, text, timeout=timeout)
        except TimeoutError:
            self.exhausted = True
            logger.warning(f"Pattern timed out on {text[:80]!r}")
            return text


@dataclass
class _NameParts:
    series: str = ""
    volume: str = LOOSE_LEAF
    chapter: str = LOOSE_LEAF
    is_special: bool = False
    special_index: int = 0
    edition: str = ""
    cleaned: str = ""

    @property
    def has_numbers(self) -> bool:
        return self.volume != LOOSE_LEAF or self.chapter != LOOSE_LEAF


def _collapse(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


class FilenameParser:
    """Deterministic, total filename parser.

    ``parse`` never raises for any input string; the worst case is a series
    named after the folder (or the file) with loose-leaf numbering.
    """

    def __init__(
        self,
        budget_seconds: float = DEFAULT_BUDGET_SECONDS,
        pattern_timeout: float = DEFAULT_PATTERN_TIMEOUT,
    ):
        self.budget_seconds = budget_seconds
        self.pattern_timeout = pattern_timeout

    def parse(
        self,
        path: PurePath | str,
        library_type: LibraryType = LibraryType.MANGA,
        root: Optional[PurePath] = None,
    ) -> ParsedInfo:
        path = PurePath(path)
        fmt = format_for(path) or Format.ARCHIVE
        folders = _folders_below_root(path, root)
        budget = _Budget(self.budget_seconds, self.pattern_timeout)

        if fmt is Format.IMAGE:
            return self._parse_image(path, folders, budget)

        parts = self.parse_name(path.stem, library_type, budget)

        if any(is_special_folder(f) for f in folders):
            # Files under a specials folder belong to the series folder above it.
            parts.is_special = True
            parts.series = ""

        if library_type is LibraryType.COMIC_VINE:
            vine = self._comic_vine_series(folders)
            if vine is not None:
                parts.series, year = vine
                if parts.volume == LOOSE_LEAF:
                    parts.volume = year

        if not parts.series or not parts.has_numbers:
            self._apply_folder_fallback(parts, folders, path, library_type, budget)

        series, localized = _split_alternate(parts.series)
        if not series:
            series = _collapse(path.stem.replace("_", " ")) or path.name

        title = ""
        volume, chapter = parts.volume, parts.chapter
        if parts.is_special:
            volume, chapter = SPECIAL_VOLUME, LOOSE_LEAF
            title = parts.cleaned or path.stem

        if budget.exhausted:
            logger.debug(f"Parse budget exhausted for {path.name}; best-effort result used")

        return ParsedInfo(
            filename=path.name,
            series=series,
            localized_series=localized,
            format=fmt,
            volume=volume,
            chapter=chapter,
            is_special=parts.is_special,
            special_index=parts.special_index,
            edition=parts.edition,
            title=title,
        )

    def parse_name(
        self,
        name: str,
        library_type: LibraryType = LibraryType.MANGA,
        budget: Optional[_Budget] = None,
    ) -> _NameParts:
        """Parse a bare name (file stem or folder name) into its parts."""
        budget = budget or _Budget(self.budget_seconds, self.pattern_timeout)
        parts = _NameParts()

        text = _collapse(name.replace("_", " "))
        edition = budget.search(EDITION_PATTERN.compiled, _collapse(_spaced_groups(text)))
        if edition:
            parts.edition = _collapse(edition.group("edition"))
            text = _collapse(budget.sub(_literal(parts.edition), " ", text))

        matchable = _collapse(budget.sub(_RESOLUTION_RE, " ", budget.sub(_GROUPS_RE, " ", text)))
        parts.cleaned = clean_title(text, budget)
        cut_points: List[int] = []

        marker = budget.search(SPECIAL_MARKER_PATTERN.compiled, matchable)
        if marker:
            parts.is_special = True
            parts.special_index = int(marker.group("index"))
            cut_points.append(marker.start())

        volume = chapter = None
        combined = self._first(COMBINED_PATTERNS, library_type, matchable, budget, ("volume", "chapter"))
        if combined:
            match, numbers = combined
            parts.volume, parts.chapter = numbers
            cut_points.append(match.start())
        else:
            volume = self._first(VOLUME_PATTERNS, library_type, matchable, budget, ("volume",))
            if volume:
                parts.volume = volume[1][0]
                cut_points.append(volume[0].start())
            chapter = self._first(CHAPTER_PATTERNS, library_type, matchable, budget, ("chapter",))
            if chapter:
                parts.chapter = chapter[1][0]
                cut_points.append(chapter[0].start())

        series_text: Optional[str] = None
        if parts.chapter == LOOSE_LEAF and not parts.is_special:
            head = _collapse(matchable[: min(cut_points)] if cut_points else matchable)
            after_volume = matchable[volume[0].end():] if not combined and volume else ""
            only = self._first((ONLY_NUMBER_PATTERN,), library_type, head, budget, ("chapter",))
            bare = None if only else self._first((BARE_NUMBER_PATTERN,), library_type, head, budget, ("chapter",))
            trailing = (
                self._first((NUMBER_AFTER_VOLUME_PATTERN,), library_type, after_volume, budget, ("chapter",))
                if after_volume
                else None
            )
            if only:
                parts.chapter = only[1][0]
                series_text = ""
            elif bare:
                parts.chapter = bare[1][0]
                series_text = bare[0].group("series")
            elif trailing:
                parts.chapter = trailing[1][0]

        if not parts.is_special and not parts.has_numbers:
            for pattern in SPECIAL_KEYWORD_PATTERNS:
                if not pattern.applies(library_type):
                    continue
                keyword = budget.search(pattern.compiled, matchable)
                if keyword:
                    parts.is_special = True
                    cut_points.append(keyword.start())
                    break

        if series_text is None:
            series_text = matchable[: min(cut_points)] if cut_points else matchable
        if parts.is_special and " - " in series_text:
            series_text = series_text.split(" - ", 1)[0]
        parts.series = clean_title(series_text, budget)
        return parts

    def _first(
        self,
        patterns: Sequence[_Pattern],
        library_type: LibraryType,
        text: str,
        budget: _Budget,
        groups: Tuple[str, ...],
    ):
        """Return (match, normalized numbers) for the first plausible pattern."""
        for pattern in patterns:
            if not pattern.applies(library_type):
                continue
            match = budget.search(pattern.compiled, text)
            if not match:
                continue
            numbers = []
            for group in groups:
                ceiling = MAX_VOLUME if group == "volume" else MAX_CHAPTER
                value = plausible_number(normalize_number(match.group(group)), ceiling)
                if value is None:
                    break
                numbers.append(value)
            else:
                return match, tuple(numbers)
        return None

    def _apply_folder_fallback(
        self,
        parts: _NameParts,
        folders: Sequence[str],
        path: PurePath,
        library_type: LibraryType,
        budget: _Budget,
    ) -> None:
        """Fill series and missing numbers from folder names, deepest first."""
        found_series = bool(parts.series)
        for folder in reversed(folders):
            if is_special_folder(folder):
                continue
            folder_parts = self.parse_name(folder, library_type, budget)
            if not parts.has_numbers and not parts.is_special and folder_parts.has_numbers:
                parts.volume = folder_parts.volume
                parts.chapter = folder_parts.chapter
            if not found_series and folder_parts.series:
                parts.series = folder_parts.series
                found_series = True
            if found_series:
                return
        if not found_series:
            parent = path.parent.name
            if parent and not is_special_folder(parent):
                parts.series = clean_title(parent, budget)

    def _comic_vine_series(self, folders: Sequence[str]) -> Optional[Tuple[str, str]]:
        """Find the ``Series (Year)`` folder; publisher folders above it are ignored."""
        for folder in reversed(folders):
            match = _COMIC_VINE_FOLDER_RE.match(folder)
            if match:
                return _collapse(folder), match.group("year")
        return None

    def _parse_image(self, path: PurePath, folders: Sequence[str], budget: _Budget) -> ParsedInfo:
        """Loose images: the top folder is the series, sub-folders give numbering.

        Every image in one folder belongs to the same chapter.
        """
        series = clean_title(folders[0], budget) if folders else ""
        volume = chapter = LOOSE_LEAF
        is_special = False
        special_index = 0
        title = ""

        for folder in reversed(folders[1:]):
            folder_parts = self.parse_name(folder, LibraryType.IMAGE, budget)
            if is_special_folder(folder) or folder_parts.is_special:
                is_special = True
                special_index = special_index or folder_parts.special_index
                title = title or folder
                continue
            if volume == LOOSE_LEAF and folder_parts.volume != LOOSE_LEAF:
                volume = folder_parts.volume
            if chapter == LOOSE_LEAF and folder_parts.chapter != LOOSE_LEAF:
                chapter = folder_parts.chapter

        if is_special:
            volume, chapter = SPECIAL_VOLUME, LOOSE_LEAF
        elif chapter == LOOSE_LEAF and len(folders) > 1:
            title = folders[-1]

        if not series:
            series = clean_title(path.stem, budget) or path.name
        series, localized = _split_alternate(series)

        return ParsedInfo(
            filename=path.name,
            series=series,
            localized_series=localized,
            format=Format.IMAGE,
            volume=volume,
            chapter=chapter,
            is_special=is_special,
            special_index=special_index,
            title=title,
        )


def clean_title(text: str, budget: Optional[_Budget] = None) -> str:
    """Remove bracketed groups, editions and stray separators from a name."""
    budget = budget or _Budget(DEFAULT_BUDGET_SECONDS, DEFAULT_PATTERN_TIMEOUT)
    cleaned = text.replace("_", " ")
    cleaned = budget.sub(_GROUPS_RE, " ", cleaned)
    cleaned = budget.sub(EDITION_PATTERN.compiled, " ", cleaned)
    cleaned = _collapse(cleaned)
    return cleaned.strip(_SEPARATOR_CHARS)


def _spaced_groups(text: str) -> str:
    return text.translate(str.maketrans("[](){}", "      "))


def _literal(value: str) -> "regex.Pattern":
    return regex.compile(regex.escape(value), regex.IGNORECASE)


def _split_alternate(series: str) -> Tuple[str, str]:
    """'Main Name ~ Alternate Name' -> ('Main Name', 'Alternate Name')."""
    pieces = _ALTERNATE_RE.split(series, maxsplit=1)
    if len(pieces) == 2 and pieces[0].strip() and pieces[1].strip():
        return pieces[0].strip(_SEPARATOR_CHARS), pieces[1].strip(_SEPARATOR_CHARS)
    return series, ""


def _folders_below_root(path: PurePath, root: Optional[PurePath]) -> List[str]:
    """Folder names between the library root (exclusive) and the file, top-down."""
    parent = path.parent
    if root is not None:
        try:
            return list(parent.relative_to(root).parts)
        except ValueError:
            pass
    return [parent.name] if parent.name else []


_default_parser = FilenameParser()


def parse(
    path: PurePath | str,
    library_type: LibraryType = LibraryType.MANGA,
    root: Optional[PurePath] = None,
) -> ParsedInfo:
    """Parse with default time limits."""
    return _default_parser.parse(path, library_type, root)
