"""Interfaces of the engines the pipeline delegates to.

The pipeline owns orchestration: option parsing, scoping, fast-mode policy,
gating and summaries. Page rendering, HTML auditing, asset optimization and
remote artifact retention live behind the Protocols below. A deployment
supplies them through a factory named ``module:callable`` that returns a
``Collaborators`` instance.
"""

import importlib
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Protocol

from sitepipe.exceptions import CollaboratorMissingError, ConfigurationError


# ---------------------------------------------------------------------------
# Site builder
# ---------------------------------------------------------------------------

@dataclass
class BuildRequest:
    config: str
    out: str
    clean: bool = False


@dataclass
class BuildReport:
    """``updated_files`` are absolute paths of files the build wrote or changed."""
    output_path: str
    updated_files: list[str] = field(default_factory=list)


@dataclass
class VerifyRequest:
    config: str


@dataclass
class VerifyReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class SiteBuilder(Protocol):
    def build(self, request: BuildRequest) -> BuildReport: ...

    def verify(self, request: VerifyRequest) -> VerifyReport: ...


# ---------------------------------------------------------------------------
# Auditor
# ---------------------------------------------------------------------------

@dataclass
class AuditIssue:
    severity: str = "warning"
    category: str = "general"
    path: str = ""
    message: str = ""


@dataclass
class AuditRequest:
    site_root: str
    include: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)
    max_html_files: int = 0
    rendered: bool = False
    checks: dict[str, bool] = field(default_factory=dict)
    summary_path: str | None = None
    summary_on_fail: bool = False
    sarif_path: str | None = None
    sarif_on_fail: bool = False
    baseline_path: str | None = None
    write_baseline: bool = False
    fail_on_warnings: bool = False
    fail_on_new_issues: bool = False
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class AuditReport:
    success: bool = True
    page_count: int = 0
    link_count: int = 0
    asset_count: int = 0
    broken_link_count: int = 0
    missing_asset_count: int = 0
    nav_checked_count: int = 0
    nav_ignored_count: int = 0
    nav_coverage_percent: float = 0.0
    nav_mismatch_count: int = 0
    required_route_count: int = 0
    missing_required_route_count: int = 0
    new_issue_count: int = 0
    html_file_count: int = 0
    html_selected_count: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    issues: list[AuditIssue] = field(default_factory=list)
    summary_path: str | None = None
    sarif_path: str | None = None
    baseline_path: str | None = None

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def warning_count(self) -> int:
        return len(self.warnings)


class SiteAuditor(Protocol):
    def audit(self, request: AuditRequest) -> AuditReport: ...


# ---------------------------------------------------------------------------
# Asset optimizer
# ---------------------------------------------------------------------------

@dataclass
class OptimizeRequest:
    site_root: str
    html_include: list[str] = field(default_factory=list)
    html_exclude: list[str] = field(default_factory=list)
    max_html_files: int = 0
    critical_css: str | None = None
    minify_html: bool = False
    minify_css: bool = False
    minify_js: bool = False
    optimize_images: bool = False
    hash_assets: bool = False
    cache_headers: bool = False
    report_path: str | None = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class OptimizedImage:
    path: str
    bytes_saved: int = 0


@dataclass
class ImageFailure:
    path: str
    error: str = ""


@dataclass
class OptimizeReport:
    updated_count: int = 0
    html_file_count: int = 0
    html_selected_count: int = 0
    critical_css_inlined_count: int = 0
    html_minified_count: int = 0
    css_minified_count: int = 0
    js_minified_count: int = 0
    html_bytes_saved: int = 0
    css_bytes_saved: int = 0
    js_bytes_saved: int = 0
    image_optimized_count: int = 0
    image_bytes_saved: int = 0
    image_variant_count: int = 0
    image_rewrite_count: int = 0
    image_hinted_count: int = 0
    optimized_images: list[OptimizedImage] = field(default_factory=list)
    image_failures: list[ImageFailure] = field(default_factory=list)
    image_budget_exceeded: bool = False
    image_budget_warnings: list[str] = field(default_factory=list)
    hashed_asset_count: int = 0
    cache_headers_written: bool = False
    report_path: str | None = None


class AssetOptimizer(Protocol):
    def optimize(self, request: OptimizeRequest) -> OptimizeReport: ...


# ---------------------------------------------------------------------------
# Remote artifact retention
# ---------------------------------------------------------------------------

@dataclass
class PruneRequest:
    repository: str
    token: str
    api_base_url: str | None = None
    include_names: list[str] = field(default_factory=list)
    exclude_names: list[str] = field(default_factory=list)
    keep_latest_per_name: int = 5
    max_age_days: int | None = 7
    max_delete: int = 200
    page_size: int = 100
    dry_run: bool = True
    fail_on_delete_error: bool = False


@dataclass
class ArtifactItem:
    id: int
    name: str
    size_in_bytes: int = 0
    created_at: str | None = None
    reason: str | None = None
    delete_error: str | None = None


@dataclass
class PruneReport:
    repository: str = ""
    dry_run: bool = True
    success: bool = True
    message: str | None = None
    scanned_artifacts: int = 0
    matched_artifacts: int = 0
    planned_deletes: int = 0
    planned_delete_bytes: int = 0
    deleted_artifacts: int = 0
    deleted_bytes: int = 0
    failed_deletes: int = 0
    keep_latest_per_name: int = 0
    max_age_days: int | None = None
    max_delete: int = 0
    planned: list[ArtifactItem] = field(default_factory=list)
    deleted: list[ArtifactItem] = field(default_factory=list)
    failed: list[ArtifactItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return camel_case_keys(asdict(self))


class ArtifactPruner(Protocol):
    def prune(self, request: PruneRequest) -> PruneReport: ...


# ---------------------------------------------------------------------------
# Content engine (generators, exporters, remote notifications)
# ---------------------------------------------------------------------------

@dataclass
class EngineRequest:
    """Normalized input for a content task.

    ``paths`` holds the task's path options resolved against the pipeline
    root; ``include`` is set when the task was scoped to a build's output.
    """
    task: str
    base_dir: str
    options: dict[str, Any]
    paths: dict[str, str] = field(default_factory=dict)
    include: list[str] | None = None
    urls: list[str] | None = None
    fast: bool = False
    mode: str = "default"


@dataclass
class EngineReport:
    success: bool = True
    summary: str = ""
    outputs: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    counters: dict[str, int] = field(default_factory=dict)


class ContentEngine(Protocol):
    def run(self, request: EngineRequest) -> EngineReport: ...


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

@dataclass
class Collaborators:
    builder: SiteBuilder | None = None
    auditor: SiteAuditor | None = None
    optimizer: AssetOptimizer | None = None
    pruner: ArtifactPruner | None = None
    content: ContentEngine | None = None

    def require(self, kind: str, task: str) -> Any:
        engine = getattr(self, kind)
        if engine is None:
            raise CollaboratorMissingError(
                f"{task} requires a {kind} engine; none is configured (see --engines).",
                {"task": task, "kind": kind},
            )
        return engine


def load_collaborators(spec: str | None) -> Collaborators:
    """Import ``module:callable`` and call it to obtain the engines.

    A blank spec yields an empty registry; in-repo tasks still run.
    """
    if not spec or not spec.strip():
        return Collaborators()

    module_name, sep, attr = spec.strip().partition(":")
    if not sep or not module_name or not attr:
        raise ConfigurationError(f"Engine factory must look like 'module:callable', got '{spec}'.")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Engine factory module '{module_name}' could not be imported: {e}") from e

    factory: Callable[[], Any] | None = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ConfigurationError(f"Engine factory '{spec}' is not callable.")

    engines = factory()
    if not isinstance(engines, Collaborators):
        raise ConfigurationError(f"Engine factory '{spec}' must return Collaborators, got {type(engines).__name__}.")
    return engines


def camel_case_keys(value: Any) -> Any:
    """Recursively convert snake_case dict keys to camelCase."""
    if isinstance(value, dict):
        return {_camel(key): camel_case_keys(item) for key, item in value.items()}
    if isinstance(value, list):
        return [camel_case_keys(item) for item in value]
    return value


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)
