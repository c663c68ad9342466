"""In-repo file tasks: ``overlay`` and ``sitemap``."""

import os
import shutil
from datetime import datetime, timezone
from xml.sax.saxutils import escape

from sitepipe.exceptions import ConfigurationError, PreconditionError
from sitepipe.pipeline.globs import collect_files, relative_posix
from sitepipe.pipeline.options import StepOptions
from sitepipe.pipeline.structures import ExecutionContext, PipelineStep, StepResult, TaskRuntime
from sitepipe.utils.constants import HTML_EXTENSIONS
from sitepipe.utils.logging import logger

from .base import clean_directory, succeeded, write_text

SITEMAP_NAMESPACE = "http://www.sitemaps.org/schemas/sitemap/0.9"


def run_overlay(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    options = StepOptions(step.options)
    source = options.path(context.base_dir, "source")
    destination = options.path(context.base_dir, "destination", "dest")
    if source is None or destination is None:
        raise ConfigurationError("overlay requires source and destination.")
    if not os.path.isdir(source):
        raise PreconditionError(f"overlay source not found: {source}")

    if options.boolean("clean", default=False):
        clean_directory(destination)

    files = collect_files(
        source,
        include=options.string_list("include"),
        exclude=options.string_list("exclude"),
    )
    for path in files:
        target = os.path.join(destination, *relative_posix(source, path).split("/"))
        os.makedirs(os.path.dirname(target), exist_ok=True)
        shutil.copy2(path, target)

    logger.debug("{label}: copied {n} file(s) from {src}", label=step.label, n=len(files), src=source)
    return succeeded(step, f"overlay {len(files)} files")


def page_url(relative: str) -> str:
    """Site path for an HTML file; ``index.html`` maps to its directory."""
    path = relative.replace("\\", "/").strip().lstrip("/")
    if path.lower() == "index.html":
        return "/"
    if path.lower().endswith("/index.html"):
        return "/" + path[: -len("index.html")].rstrip("/") + "/"
    return "/" + path


def render_sitemap(base_url: str, entries: list[tuple[str, str]]) -> str:
    base = base_url.rstrip("/")
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<urlset xmlns="{SITEMAP_NAMESPACE}">',
    ]
    for path, lastmod in entries:
        lines.append("  <url>")
        lines.append(f"    <loc>{escape(base + path)}</loc>")
        lines.append(f"    <lastmod>{lastmod}</lastmod>")
        lines.append("  </url>")
    lines.append("</urlset>")
    return "\n".join(lines) + "\n"


def run_sitemap(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    options = StepOptions(step.options)
    site_root = options.path(context.base_dir, "siteRoot") or context.last_build_output_path
    base_url = options.string("baseUrl")
    if site_root is None or base_url is None:
        raise ConfigurationError("sitemap requires siteRoot and baseUrl.")
    if not os.path.isdir(site_root):
        raise PreconditionError(f"sitemap siteRoot not found: {site_root}")

    out = options.path(context.base_dir, "out", "output") or os.path.join(site_root, "sitemap.xml")
    pages = collect_files(
        site_root,
        include=options.string_list("include"),
        exclude=options.string_list("exclude"),
        extensions=set(HTML_EXTENSIONS),
    )

    entries: list[tuple[str, str]] = []
    seen: set[str] = set()
    for page in pages:
        url = page_url(relative_posix(site_root, page))
        if url in seen:
            continue
        seen.add(url)
        modified = datetime.fromtimestamp(os.path.getmtime(page), tz=timezone.utc)
        entries.append((url, modified.strftime("%Y-%m-%d")))

    write_text(out, render_sitemap(base_url, entries))
    return succeeded(step, f"Sitemap {len(entries)} urls -> {out}")
