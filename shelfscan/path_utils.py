"""Path utilities shared by the walker, pipeline and log output.

Library roots can be anywhere on disk, so the catalog stores absolute paths;
these helpers only shorten paths for display and give a stable natural order.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Optional


_DIGITS = re.compile(r"(\d+)")


def natural_sort_key(name: str) -> list:
    """Sort key so 1, 2, 10 order correctly (not 1, 10, 2)."""
    return [
        (0, int(part), "") if part.isdigit() else (1, 0, part.casefold())
        for part in _DIGITS.split(name)
        if part
    ]


def short_path(path: Path) -> str:
    """Return abbreviated path showing only parent folder + filename.

    Example: /very/long/path/to/folder/file.cbz -> folder/file.cbz
    """
    return f"{path.parent.name}/{path.name}"


def find_root(path: Path, roots: Iterable[Path]) -> Optional[Path]:
    """Return the library root containing ``path``, preferring the deepest one."""
    best: Optional[Path] = None
    for root in roots:
        if path == root or path.is_relative_to(root):
            if best is None or len(root.parts) > len(best.parts):
                best = root
    return best
