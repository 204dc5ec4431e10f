"""Directory walking for Shelfscan.

Enumerates a library's roots lazily: each directory is listed, sorted
naturally, and its files yielded before descending into sub-folders. Nothing
beyond the current directory listing is held in memory.
"""

from __future__ import annotations

import fnmatch
import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from .classifier import DEFAULT_IGNORED_NAMES, FileClass, classify, is_ignored_name
from .domain import DiscoveredFile
from .logging_config import get_logger
from .path_utils import natural_sort_key, short_path

logger = get_logger(__name__)

IGNORE_FILE_NAME = ".shelfignore"
FINGERPRINT_CHUNK = 64 * 1024

ErrorCallback = Callable[[Path, str], None]


def compute_fingerprint(path: Path, size: Optional[int] = None) -> str:
    """BLAKE2b over the size plus the first and last 64 KiB of the file."""
    if size is None:
        size = path.stat().st_size
    digest = hashlib.blake2b(digest_size=16)
    digest.update(str(size).encode("ascii"))
    with path.open("rb") as handle:
        digest.update(handle.read(FINGERPRINT_CHUNK))
        if size > FINGERPRINT_CHUNK:
            handle.seek(max(FINGERPRINT_CHUNK, size - FINGERPRINT_CHUNK))
            digest.update(handle.read(FINGERPRINT_CHUNK))
    return digest.hexdigest()


def read_ignore_file(root: Path) -> Tuple[str, ...]:
    """Exclude globs from ``<root>/.shelfignore`` (one per line, # comments)."""
    ignore_file = root / IGNORE_FILE_NAME
    if not ignore_file.is_file():
        return ()
    try:
        lines = ignore_file.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning(f"Could not read {ignore_file}: {exc}")
        return ()
    return tuple(line.strip() for line in lines if line.strip() and not line.strip().startswith("#"))


def is_excluded(relative: str, is_dir: bool, patterns: Iterable[str]) -> bool:
    """Match a root-relative posix path against exclude globs.

    A pattern matches the full relative path or just the entry name; a
    trailing ``/`` restricts it to directories. Matching is case-insensitive.
    """
    rel = relative.lower()
    name = rel.rsplit("/", 1)[-1]
    for pattern in patterns:
        pat = pattern.strip().lower()
        if not pat:
            continue
        dir_only = pat.endswith("/")
        pat = pat.rstrip("/").lstrip("/")
        if pat.startswith("**/"):
            pat = pat[3:]
        if dir_only and not is_dir:
            continue
        if fnmatch.fnmatchcase(rel, pat) or fnmatch.fnmatchcase(name, pat):
            return True
    return False


@dataclass
class WalkReport:
    """What a walk saw besides the files it yielded."""

    files: int = 0
    sidecars: List[Path] = field(default_factory=list)
    unreadable: List[Path] = field(default_factory=list)
    excluded: int = 0
    ignored: int = 0
    files_per_root: Dict[Path, int] = field(default_factory=dict)
    missing_roots: List[Path] = field(default_factory=list)

    @property
    def empty_roots(self) -> List[Path]:
        return [root for root, count in self.files_per_root.items() if count == 0]


class DirectoryWalker:
    """Walk one library's roots. ``walk()`` can be called again for a fresh pass."""

    def __init__(
        self,
        library_id: int,
        roots: Iterable[Path],
        exclude: Iterable[str] = (),
        max_depth: int = 32,
        ignore_names: Iterable[str] = DEFAULT_IGNORED_NAMES,
        on_error: Optional[ErrorCallback] = None,
    ):
        self.library_id = library_id
        self.roots = tuple(Path(r) for r in roots)
        self.exclude = tuple(exclude)
        self.max_depth = max_depth
        self.ignore_names = frozenset(ignore_names)
        self.on_error = on_error
        self.report = WalkReport()

    def _error(self, path: Path, reason: str) -> None:
        self.report.unreadable.append(path)
        logger.warning(f"✗ {short_path(path)} - {reason}")
        if self.on_error is not None:
            self.on_error(path, reason)

    def walk(self) -> Iterator[DiscoveredFile]:
        self.report = WalkReport()
        visited: Set[str] = set()
        for root in self.roots:
            if not root.is_dir():
                self.report.missing_roots.append(root)
                logger.warning(f"Library root is not accessible: {root}")
                continue
            self.report.files_per_root[root] = 0
            patterns = self.exclude + read_ignore_file(root)
            yield from self._walk_root(root, patterns, visited)

    def _walk_root(self, root: Path, patterns: Tuple[str, ...], visited: Set[str]) -> Iterator[DiscoveredFile]:
        stack: List[Tuple[Path, int]] = [(root, 0)]
        while stack:
            directory, depth = stack.pop()
            real = os.path.realpath(directory)
            if real in visited:
                logger.debug(f"Skipping already visited directory (symlink loop?): {directory}")
                continue
            visited.add(real)

            try:
                with os.scandir(directory) as it:
                    entries = sorted(it, key=lambda e: natural_sort_key(e.name))
            except OSError as exc:
                self._error(directory, f"Unable to list directory: {exc.strerror or exc}")
                continue

            subdirs: List[Path] = []
            for entry in entries:
                path = Path(entry.path)
                relative = path.relative_to(root).as_posix()
                try:
                    is_dir = entry.is_dir(follow_symlinks=True)
                except OSError:
                    is_dir = False

                if is_dir:
                    if is_ignored_name(entry.name, self.ignore_names):
                        continue
                    if is_excluded(relative, True, patterns):
                        self.report.excluded += 1
                        continue
                    if depth + 1 <= self.max_depth:
                        subdirs.append(path)
                    continue

                if is_excluded(relative, False, patterns):
                    self.report.excluded += 1
                    continue
                discovered = self._discover(entry, path, root)
                if discovered is not None:
                    yield discovered

            # Reverse so the stack pops sub-folders in natural order.
            stack.extend((sub, depth + 1) for sub in reversed(subdirs))

    def _discover(self, entry: os.DirEntry, path: Path, root: Path) -> Optional[DiscoveredFile]:
        try:
            stat = entry.stat(follow_symlinks=True)
        except OSError as exc:
            self._error(path, f"Unable to stat: {exc.strerror or exc}")
            return None

        result = classify(path, stat.st_size, self.ignore_names)
        if result.kind is FileClass.SIDECAR:
            self.report.sidecars.append(path)
            return None
        if result.kind is FileClass.IGNORED:
            self.report.ignored += 1
            return None

        try:
            fingerprint = compute_fingerprint(path, stat.st_size)
        except OSError as exc:
            self._error(path, f"Unable to read: {exc.strerror or exc}")
            return None

        self.report.files += 1
        self.report.files_per_root[root] = self.report.files_per_root.get(root, 0) + 1
        return DiscoveredFile(
            path=path,
            size=stat.st_size,
            mtime=stat.st_mtime,
            fingerprint=fingerprint,
            format=result.format,
            library_id=self.library_id,
            root=root,
        )
