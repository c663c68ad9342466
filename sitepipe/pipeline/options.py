"""Typed access to a step's option bag, plus path helpers.

Every accessor takes one or more alias names. Each camelCase name also
matches its kebab-case spelling, so ``timeoutSeconds`` finds
``timeout-seconds``. The first alias present with a non-null value wins.
"""

import os
import re
import sys
from pathlib import Path
from typing import Any

from sitepipe.exceptions import ConfigurationError

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")
_LIST_SEPARATORS = re.compile(r"[,;]")


def kebab(name: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"-\1", name).lower()


def _spellings(names: tuple[str, ...]) -> list[str]:
    seen: list[str] = []
    for name in names:
        for candidate in (name, kebab(name)):
            if candidate not in seen:
                seen.append(candidate)
    return seen


def split_list(value: str, pattern: re.Pattern = _LIST_SEPARATORS) -> list[str]:
    """Split a delimited string, dropping blank entries."""
    return [part.strip() for part in pattern.split(value) if part.strip()]


class StepOptions:
    """Read-only view over a step's raw option mapping."""

    def __init__(self, raw: dict[str, Any]):
        self.raw = raw

    def has(self, *names: str) -> bool:
        return any(name in self.raw for name in _spellings(names))

    def get(self, *names: str) -> Any:
        for name in _spellings(names):
            value = self.raw.get(name)
            if value is not None:
                return value
        return None

    def string(self, *names: str, default: str | None = None) -> str | None:
        value = self.get(*names)
        if value is None:
            return default
        if isinstance(value, bool):
            text = "true" if value else "false"
        elif isinstance(value, (dict, list)):
            return default
        else:
            text = str(value)
        return text if text.strip() else default

    def boolean(self, *names: str, default: bool | None = None) -> bool | None:
        value = self.get(*names)
        return value if isinstance(value, bool) else default

    def integer(self, *names: str, default: int | None = None) -> int | None:
        value = self.get(*names)
        if isinstance(value, bool) or value is None:
            return default
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            return int(value)
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                return default
        return default

    def string_list(self, *names: str, pattern: re.Pattern = _LIST_SEPARATORS) -> list[str] | None:
        """Array of strings, or a delimited string. None when nothing usable."""
        value = self.get(*names)
        if isinstance(value, str):
            items = split_list(value, pattern)
        elif isinstance(value, list):
            items = [str(item).strip() for item in value if item is not None and str(item).strip()]
        else:
            return None
        return items or None

    def mapping(self, *names: str) -> dict[str, Any] | None:
        value = self.get(*names)
        return value if isinstance(value, dict) else None

    def path(self, base: Path, *names: str) -> str | None:
        return resolve_path(base, self.string(*names))

    def require_string(self, message: str, *names: str) -> str:
        value = self.string(*names)
        if value is None:
            raise ConfigurationError(message)
        return value


def resolve_path(base: Path | str, value: str | None) -> str | None:
    """Join a relative path onto ``base``; absolute paths pass through."""
    if value is None or not value.strip():
        return None
    candidate = Path(value.strip())
    if candidate.is_absolute():
        return str(candidate)
    return os.path.normpath(os.path.join(str(base), str(candidate)))


def resolve_path_within_root(
    base: Path | str, value: str | None, default: str, root_name: str = "pipeline root"
) -> str:
    """Resolve ``value`` (or ``default``) and require it to stay under ``base``."""
    root = os.path.abspath(str(base))
    resolved = os.path.abspath(resolve_path(root, value or default) or root)
    if not is_within(root, resolved):
        raise ConfigurationError(f"Path must resolve under {root_name}: {value or default}")
    return resolved


def is_within(root: str, path: str) -> bool:
    root_norm = _norm(root)
    path_norm = _norm(path)
    if path_norm == root_norm:
        return True
    return path_norm.startswith(root_norm.rstrip(os.sep) + os.sep)


def same_path(left: str | None, right: str | None) -> bool:
    """Compare full paths; case-insensitive only on Windows."""
    if not left or not right:
        return False
    return _norm(left) == _norm(right)


def _norm(path: str) -> str:
    full = os.path.normpath(os.path.abspath(path)).rstrip("\\/") or os.sep
    return full.lower() if sys.platform == "win32" else full
