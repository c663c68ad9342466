"""Glob matching over site-relative paths.

``**`` matches any run of characters, ``*`` matches within one path segment.
Matching is case-insensitive and always against forward-slash paths.
"""

import os
import re
from functools import lru_cache


@lru_cache(maxsize=256)
def glob_to_regex(pattern: str) -> re.Pattern:
    escaped = re.escape(pattern.strip().replace("\\", "/"))
    body = escaped.replace(r"\*\*", ".*").replace(r"\*", "[^/]*")
    return re.compile(f"^{body}$", re.IGNORECASE)


def matches_any(patterns: list[str], relative_path: str) -> bool:
    return any(glob_to_regex(pattern).match(relative_path) for pattern in patterns if pattern.strip())


def relative_posix(root: str, path: str) -> str:
    return os.path.relpath(path, root).replace("\\", "/")


def normalize_extensions(extensions: list[str] | None, default: tuple[str, ...]) -> set[str]:
    values = extensions or list(default)
    return {
        (ext if ext.startswith(".") else "." + ext).strip().lower()
        for ext in values
        if ext and ext.strip()
    }


def collect_files(
    root: str,
    include: list[str] | None = None,
    exclude: list[str] | None = None,
    extensions: set[str] | None = None,
    max_files: int = 0,
) -> list[str]:
    """Files under ``root`` filtered by extension and globs, sorted by relative path."""
    matches: list[tuple[str, str]] = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            full = os.path.abspath(os.path.join(dirpath, name))
            if extensions and os.path.splitext(name)[1].lower() not in extensions:
                continue
            relative = relative_posix(root, full)
            if exclude and matches_any(exclude, relative):
                continue
            if include and not matches_any(include, relative):
                continue
            matches.append((relative.lower(), full))

    ordered = [full for _, full in sorted(matches)]
    return ordered[:max_files] if max_files > 0 else ordered
