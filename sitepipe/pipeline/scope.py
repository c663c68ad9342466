"""Incremental scoping of downstream steps to the last build's changes."""

from sitepipe.utils.constants import HTML_EXTENSIONS
from sitepipe.utils.logging import logger

from .options import StepOptions, same_path
from .structures import ExecutionContext


def updated_html_files(files: tuple[str, ...] | list[str]) -> list[str]:
    return [path for path in files if path.lower().endswith(HTML_EXTENSIONS)]


def build_html_scope(
    context: ExecutionContext,
    options: StepOptions,
    site_root: str,
    include: list[str] | None,
    label: str,
) -> list[str] | None:
    """Updated HTML pages from the last build, or None when scoping does not apply.

    Scoping applies when the step has no include of its own, opted in through
    ``scopeFromBuildUpdated`` (or runs in fast mode without opting out), and
    its root is the directory the last build wrote to.
    """
    from_build = options.boolean("scopeFromBuildUpdated")
    if from_build is False:
        return None
    if not (from_build or context.fast):
        return None
    if include:
        return None
    if not context.last_build_updated_files:
        return None
    if not same_path(site_root, context.last_build_output_path):
        return None

    pages = updated_html_files(context.last_build_updated_files)
    if not pages:
        return None

    mode_label = "fast incremental" if context.fast else "incremental"
    logger.info("{label}: {mode} html scope: {count} updated page(s)", label=label, mode=mode_label, count=len(pages))
    return pages
