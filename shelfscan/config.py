"""Config management for Shelfscan.

Reads `config.ini` from DATA_DIR (the project root unless the DATA_DIR
environment variable points elsewhere). Settings are loaded once when a scan
starts and passed down explicitly; nothing here is cached at module level.
"""

from __future__ import annotations

import configparser
import dataclasses
import os
import pathlib
import sys
from typing import Optional

from .classifier import DEFAULT_IGNORED_NAMES, LibraryType
from .comicinfo import METADATA_FIELDS, NAMING_FIELDS
from .logging_config import get_logger

logger = get_logger(__name__)


def _get_project_root() -> pathlib.Path:
    if getattr(sys, "frozen", False):
        return pathlib.Path(sys.executable).resolve().parent
    return pathlib.Path(__file__).resolve().parents[1]


PROJECT_ROOT = _get_project_root()

# DATA_DIR holds all persistent state (config.ini, catalog.db, shelfscan.log).
DATA_DIR = pathlib.Path(os.environ.get("DATA_DIR", str(PROJECT_ROOT)))
DEFAULT_CONFIG_PATH = DATA_DIR / "config.ini"

LIBRARY_SECTION_PREFIX = "library:"


@dataclasses.dataclass(frozen=True)
class LibrarySettings:
    id: int
    name: str
    type: LibraryType
    paths: tuple[pathlib.Path, ...]
    exclude: tuple[str, ...] = ()
    max_depth: Optional[int] = None


@dataclasses.dataclass(frozen=True)
class ScannerConfig:
    library_workers: int = 2
    file_workers: int = 4
    max_open_archives: int = 8
    archive_timeout: float = 30.0
    parse_budget_ms: int = 250
    max_depth: int = 32
    ignore_patterns: tuple[str, ...] = tuple(sorted(DEFAULT_IGNORED_NAMES))
    allow_empty_roots: bool = False


@dataclasses.dataclass(frozen=True)
class MetadataPolicy:
    """Which metadata a scan may write, and where sidecars beat filenames."""

    enabled_fields: frozenset = frozenset(METADATA_FIELDS)
    prefer_sidecar: frozenset = frozenset(NAMING_FIELDS)

    def writes(self, field: str) -> bool:
        return field in self.enabled_fields

    def prefers_sidecar(self, field: str) -> bool:
        return field in self.prefer_sidecar


@dataclasses.dataclass(frozen=True)
class MonitoringConfig:
    enabled: bool = True
    debounce_seconds: int = 2


@dataclasses.dataclass(frozen=True)
class ScanSettings:
    libraries: tuple[LibrarySettings, ...] = ()
    scanner: ScannerConfig = ScannerConfig()
    metadata: MetadataPolicy = MetadataPolicy()
    monitoring: MonitoringConfig = MonitoringConfig()
    data_dir: pathlib.Path = DATA_DIR

    @property
    def database_path(self) -> pathlib.Path:
        return self.data_dir / "catalog.db"

    def library(self, key: str | int) -> Optional[LibrarySettings]:
        """Look a library up by id or (case-insensitive) name."""
        for lib in self.libraries:
            if lib.id == key or str(lib.id) == str(key) or lib.name.lower() == str(key).lower():
                return lib
        return None

    def effective_depth(self, library: LibrarySettings) -> int:
        return library.max_depth if library.max_depth is not None else self.scanner.max_depth


def _parse_bool(value: str, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _parse_library(parser: configparser.ConfigParser, section: str, fallback_id: int) -> LibrarySettings:
    name = section[len(LIBRARY_SECTION_PREFIX):].strip()
    if not name:
        raise ValueError(f"Library section [{section}] has no name")

    paths = tuple(
        pathlib.Path(p).expanduser() for p in _split_csv(parser.get(section, "paths", fallback=""))
    )
    if not paths:
        raise ValueError(f"Library '{name}' has no paths")

    max_depth = parser.get(section, "max_depth", fallback="").strip()
    return LibrarySettings(
        id=parser.getint(section, "id", fallback=fallback_id),
        name=name,
        type=LibraryType.from_string(parser.get(section, "type", fallback="manga")),
        paths=paths,
        exclude=_split_csv(parser.get(section, "exclude", fallback="")),
        max_depth=int(max_depth) if max_depth else None,
    )


def load_config(config_path: Optional[pathlib.Path] = None) -> ScanSettings:
    """Load configuration from config.ini.

    Defaults to `config.ini` in DATA_DIR.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    parser = configparser.ConfigParser()
    parser.read(path, encoding="utf-8")

    scanner = ScannerConfig(
        library_workers=max(1, parser.getint("scanner", "library_workers", fallback=2)),
        file_workers=max(1, parser.getint("scanner", "file_workers", fallback=4)),
        max_open_archives=max(1, parser.getint("scanner", "max_open_archives", fallback=8)),
        archive_timeout=parser.getfloat("scanner", "archive_timeout", fallback=30.0),
        parse_budget_ms=parser.getint("scanner", "parse_budget_ms", fallback=250),
        max_depth=parser.getint("scanner", "max_depth", fallback=32),
        ignore_patterns=_split_csv(
            parser.get("scanner", "ignore_patterns", fallback=",".join(sorted(DEFAULT_IGNORED_NAMES)))
        ),
        allow_empty_roots=_parse_bool(parser.get("scanner", "allow_empty_roots", fallback="false"), False),
    )

    enabled = parser.get("metadata", "enabled_fields", fallback="").strip()
    prefer = parser.get("metadata", "prefer_sidecar", fallback="").strip()
    unknown = set(_split_csv(enabled)) - set(METADATA_FIELDS)
    if unknown:
        logger.warning(f"Ignoring unknown metadata fields in config: {', '.join(sorted(unknown))}")
    metadata = MetadataPolicy(
        enabled_fields=frozenset(_split_csv(enabled)) & frozenset(METADATA_FIELDS) if enabled else frozenset(METADATA_FIELDS),
        prefer_sidecar=frozenset(_split_csv(prefer)) & frozenset(NAMING_FIELDS) if prefer else frozenset(NAMING_FIELDS),
    )

    monitoring = MonitoringConfig(
        enabled=_parse_bool(
            parser.get("monitoring", "enabled", fallback="true"), True
        ),
        debounce_seconds=parser.getint(
            "monitoring", "debounce_seconds", fallback=2
        ),
    )

    libraries = []
    for index, section in enumerate(s for s in parser.sections() if s.startswith(LIBRARY_SECTION_PREFIX)):
        libraries.append(_parse_library(parser, section, fallback_id=index + 1))

    ids = [lib.id for lib in libraries]
    if len(ids) != len(set(ids)):
        raise ValueError("Library ids must be unique")

    return ScanSettings(
        libraries=tuple(libraries),
        scanner=scanner,
        metadata=metadata,
        monitoring=monitoring,
        data_dir=path.parent,
    )


def write_default_config(
    config_path: pathlib.Path,
    library_path: pathlib.Path,
    library_name: str,
    library_type: LibraryType = LibraryType.MANGA,
) -> pathlib.Path:
    """Write a config.ini with one library and default scanner settings."""
    parser = configparser.ConfigParser()
    defaults = ScannerConfig()
    parser["scanner"] = {
        "library_workers": str(defaults.library_workers),
        "file_workers": str(defaults.file_workers),
        "max_open_archives": str(defaults.max_open_archives),
        "archive_timeout": str(defaults.archive_timeout),
        "parse_budget_ms": str(defaults.parse_budget_ms),
        "max_depth": str(defaults.max_depth),
        "ignore_patterns": ",".join(defaults.ignore_patterns),
        "allow_empty_roots": "false",
    }
    parser["metadata"] = {
        "enabled_fields": ",".join(METADATA_FIELDS),
        "prefer_sidecar": ",".join(NAMING_FIELDS),
    }
    parser["monitoring"] = {
        "enabled": "true",
        "debounce_seconds": "2",
    }
    parser[f"{LIBRARY_SECTION_PREFIX}{library_name}"] = {
        "id": "1",
        "type": library_type.value,
        "paths": str(library_path.expanduser()),
        "exclude": "",
    }

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        parser.write(handle)
    return config_path
