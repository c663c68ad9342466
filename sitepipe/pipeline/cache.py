"""Step cache: fingerprints, expected outputs and the on-disk cache state.

A step is a cache hit when its fingerprint matches the stored one, every
step it depends on was itself a hit, and the outputs it is expected to
produce still exist. Failing to read or write the cache file never fails a
run; it is logged and the run continues uncached.
"""

import hashlib
import json
import os
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

from sitepipe.utils.logging import logger

from .options import StepOptions, resolve_path

CACHE_VERSION = 1
MAX_CACHE_FILE_BYTES = 10 * 1024 * 1024

NON_CACHEABLE_TASKS = frozenset({
    "exec",
    "hook",
    "html-transform",
    "data-transform",
    "git-sync",
    "cloudflare",
    "indexnow",
})

FINGERPRINT_PATH_KEYS = frozenset(key.lower() for key in (
    "config", "siteRoot", "site-root", "project", "solution", "path",
    "out", "output", "source", "destination", "dest",
    "xml", "help", "helpPath", "assembly",
    "changelog", "changelogPath",
    "apiIndex", "apiSitemap", "criticalCss", "hashManifest", "reportPath", "report-path",
    "summaryPath", "sarifPath", "baselinePath", "navCanonicalPath", "navProfiles",
    "summary-path", "sarif-path", "baseline-path", "nav-canonical-path", "nav-profiles",
    "templateRoot", "templateIndex", "templateType",
    "templateDocsIndex", "templateDocsType",
    "docsScript", "searchScript",
    "headerHtml", "footerHtml", "quickstart", "extra",
    "htmlOutput", "htmlTemplate", "cachePath", "profilePath",
))


@dataclass
class CacheEntry:
    fingerprint: str
    message: str | None = None


@dataclass
class CacheState:
    """Entries keyed ``{index}:{task}``."""
    version: int = CACHE_VERSION
    entries: dict[str, CacheEntry] = field(default_factory=dict)
    dirty: bool = False

    def lookup(self, key: str) -> CacheEntry | None:
        return self.entries.get(key)

    def record(self, key: str, fingerprint: str, message: str) -> None:
        self.entries[key] = CacheEntry(fingerprint=fingerprint, message=message)
        self.dirty = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "entries": {
                key: {"fingerprint": entry.fingerprint, "message": entry.message}
                for key, entry in self.entries.items()
            },
        }


def cache_key(index: int, task: str) -> str:
    return f"{index}:{task}"


def is_cacheable(task: str) -> bool:
    return task not in NON_CACHEABLE_TASKS


def load_cache(path: str) -> CacheState:
    """Read the cache file, starting empty when it is missing or unreadable."""
    if not os.path.isfile(path):
        return CacheState()
    try:
        size = os.path.getsize(path)
        if size > MAX_CACHE_FILE_BYTES:
            logger.warning("Pipeline cache file too large ({size} bytes), ignoring cache.", size=size)
            return CacheState()
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Pipeline cache load failed: {err}", err=e)
        return CacheState()

    state = CacheState()
    entries = data.get("entries") if isinstance(data, dict) else None
    if isinstance(entries, dict):
        for key, value in entries.items():
            if isinstance(value, dict) and isinstance(value.get("fingerprint"), str):
                message = value.get("message")
                state.entries[key] = CacheEntry(
                    fingerprint=value["fingerprint"],
                    message=message if isinstance(message, str) else None,
                )
    return state


def save_cache(path: str, state: CacheState) -> None:
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, indent=2)
        state.dirty = False
    except OSError as e:
        logger.warning("Pipeline cache save failed: {err}", err=e)


def is_external_uri(value: str) -> bool:
    return urlsplit(value.strip()).scheme.lower() in ("http", "https")


def fingerprint_paths(base_dir: str, options: dict[str, Any]) -> list[str]:
    """Absolute paths named by path-like options, deduplicated and sorted."""
    found: dict[str, str] = {}
    for key, value in options.items():
        if key.lower() not in FINGERPRINT_PATH_KEYS:
            continue
        values = value if isinstance(value, list) else [value]
        for item in values:
            if not isinstance(item, str) or not item.strip() or is_external_uri(item):
                continue
            resolved = resolve_path(base_dir, item)
            if resolved:
                full = os.path.abspath(resolved)
                found.setdefault(full.lower(), full)
    return [found[key] for key in sorted(found)]


def path_stamp(path: str, max_files: int = 1000) -> str:
    """Size and mtime for a file; file count and newest mtime for a directory."""
    if os.path.isfile(path):
        stat = os.stat(path)
        return f"f|{path}|{stat.st_size}|{stat.st_mtime_ns}"
    if not os.path.isdir(path):
        return f"m|{path}"

    try:
        newest = os.stat(path).st_mtime_ns
        count = 0
        truncated = False
        for dirpath, _dirnames, filenames in os.walk(path):
            for name in filenames:
                if count >= max_files:
                    truncated = True
                    break
                count += 1
                newest = max(newest, os.stat(os.path.join(dirpath, name)).st_mtime_ns)
            if truncated:
                break
    except OSError:
        return f"d|{path}|unreadable"
    stamp = f"d|{path}|{count}|{newest}"
    return stamp + "|truncated" if truncated else stamp


def compute_fingerprint(base_dir: str, options: dict[str, Any], max_files: int = 1000) -> str:
    """SHA-256 over the step's canonical JSON and the stamps of its paths."""
    parts = [json.dumps(options, sort_keys=True, separators=(",", ":"), default=str)]
    parts.extend(path_stamp(path, max_files) for path in fingerprint_paths(base_dir, options))
    return hashlib.sha256("\n".join(parts).encode("utf-8")).hexdigest()


def _output(base: str, value: str | None) -> list[str]:
    if not value or not value.strip() or is_external_uri(value):
        return []
    resolved = resolve_path(base, value)
    return [os.path.abspath(resolved)] if resolved else []


def _report_outputs(options: StepOptions, base_dir: str, site_root: str | None) -> list[str]:
    outputs: list[str] = []
    for flag, keys, default in (
        ("summary", ("summaryPath",), "audit-summary.json"),
        ("sarif", ("sarifPath",), "audit.sarif.json"),
    ):
        path = options.string(*keys)
        if not (options.boolean(flag, default=False) or path):
            continue
        path = path or default
        if site_root and not os.path.isabs(path):
            path = os.path.join(site_root, path)
        outputs += _output(base_dir, path)
    return outputs


def expected_outputs(task: str, raw: dict[str, Any], base_dir: str) -> list[str]:
    """Files or directories a cached step must have left behind."""
    options = StepOptions(raw)
    site_root = options.path(base_dir, "siteRoot")

    if task in ("build", "apidocs", "dotnet-publish", "changelog"):
        outputs = _output(base_dir, options.string("out", "output"))
    elif task == "overlay":
        outputs = _output(base_dir, options.string("destination", "dest"))
    elif task == "llms":
        outputs = [os.path.join(site_root, name) for name in ("llms.txt", "llms.json", "llms-full.txt")] if site_root else []
    elif task == "sitemap":
        out = options.path(base_dir, "out", "output")
        if out is None and site_root:
            out = os.path.join(site_root, "sitemap.xml")
        outputs = _output(base_dir, out)
    elif task == "optimize":
        outputs = []
        if site_root:
            outputs += _output(site_root, options.string("reportPath"))
            outputs += _output(site_root, options.string("hashManifest"))
            if options.boolean("cacheHeaders", "headers", default=False):
                outputs += _output(site_root, options.string("cacheHeadersOut", "headersOut", default="_headers"))
    elif task == "audit":
        outputs = _report_outputs(options, base_dir, site_root)
    elif task == "doctor":
        config = options.path(base_dir, "config")
        out = options.path(base_dir, "out", "output")
        if out is None and config:
            out = os.path.join(os.path.dirname(config), "_site")
        effective_root = site_root or out
        build = options.boolean("build")
        audit = options.boolean("audit")
        outputs = []
        if (build if build is not None else not options.boolean("noBuild", default=False)) and out:
            outputs += _output(base_dir, out)
        if (audit if audit is not None else not options.boolean("noAudit", default=False)) and effective_root:
            outputs += _report_outputs(options, base_dir, effective_root)
    else:
        outputs = []

    unique: dict[str, str] = {}
    for path in outputs:
        unique.setdefault(path.lower(), path)
    return list(unique.values())


def outputs_present(outputs: list[str]) -> bool:
    return all(os.path.exists(path) for path in outputs)
