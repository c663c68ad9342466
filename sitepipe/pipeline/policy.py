"""Fast-mode downgrades and the explicit-check contract."""

from dataclasses import dataclass
from typing import Any

from sitepipe.exceptions import ConfigurationError
from sitepipe.utils.logging import logger

from .options import StepOptions, kebab
from .structures import ExecutionContext, PipelineStep


@dataclass(frozen=True)
class FastOverride:
    """Value forced onto an option when fast mode is on.

    ``only_if_unset`` overrides apply to numeric limits left at zero or below;
    the others flip booleans that are currently true.
    """
    key: str
    value: Any
    aliases: tuple[str, ...] = ()
    only_if_unset: bool = False
    explicit_wins: bool = False


FAST_OVERRIDES: dict[str, tuple[FastOverride, ...]] = {
    "audit": (
        FastOverride("rendered", False),
        FastOverride("maxHtmlFiles", 200, only_if_unset=True),
    ),
    "optimize": (
        FastOverride("optimizeImages", False, aliases=("images",)),
        FastOverride("hashAssets", False),
        FastOverride("cacheHeaders", False, aliases=("headers",)),
        FastOverride("minifyCss", False, explicit_wins=True),
        FastOverride("minifyJs", False, explicit_wins=True),
        FastOverride("maxHtmlFiles", 50, only_if_unset=True),
    ),
}

EXPLICIT_CHECKS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("checkSeoMeta", ()),
    ("checkNetworkHints", ()),
    ("checkRenderBlockingResources", ("checkRenderBlocking",)),
    ("checkHeadingOrder", ()),
    ("checkLinkPurposeConsistency", ("checkLinkPurpose",)),
    ("checkMediaEmbeds", ()),
)


def apply_fast_overrides(
    task: str,
    raw: dict[str, Any],
    fast: bool,
    label: str,
    respect_explicit: bool = False,
) -> tuple[dict[str, Any], list[str]]:
    """Return a copy of ``raw`` with fast-mode downgrades applied.

    Only overrides that change a value are applied and reported; running the
    result through again yields no further overrides. With
    ``respect_explicit`` the minification toggles keep whatever the user set.
    """
    overrides = FAST_OVERRIDES.get(task)
    if not fast or not overrides:
        return dict(raw), []

    options = StepOptions(raw)
    updated = dict(raw)
    forced: list[str] = []
    for override in overrides:
        names = (override.key, *override.aliases)
        if override.explicit_wins and respect_explicit and options.has(*names):
            continue
        if override.only_if_unset:
            current = options.integer(*names, default=0)
            if current > 0:
                continue
        elif options.boolean(*names, default=False) is not True:
            continue
        for name in names:
            updated.pop(name, None)
            updated.pop(kebab(name), None)
        updated[override.key] = override.value
        forced.append(f"{override.key}={_render(override.value)}")

    if forced:
        logger.warning("{label}: fast mode overrides: {forced}", label=label, forced=", ".join(forced))
    return updated, forced


def fast_step_options(step: PipelineStep, context: ExecutionContext) -> StepOptions:
    """Step options with fast-mode downgrades applied for ``step.task``."""
    respect = StepOptions(step.options).boolean("respectExplicitSettings", "respectExplicit", default=False)
    updated, _forced = apply_fast_overrides(step.task, step.options, context.fast, step.label, respect_explicit=respect)
    return StepOptions(updated)


def ensure_explicit_checks(task: str, options: StepOptions) -> dict[str, bool]:
    """Enforce ``requireExplicitChecks`` and return the checks that were set.

    Raises ConfigurationError naming every missing canonical check.
    """
    checks: dict[str, bool] = {}
    missing: list[str] = []
    for canonical, aliases in EXPLICIT_CHECKS:
        value = options.boolean(canonical, *aliases)
        if value is None:
            missing.append(canonical)
        else:
            checks[canonical] = value

    if options.boolean("requireExplicitChecks") and missing:
        raise ConfigurationError(
            f"{task}: requireExplicitChecks is enabled but these checks are not set explicitly: "
            + ", ".join(missing),
            {"missing": missing},
        )
    return checks


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


CI_ENV_VARS = ("CI", "GITHUB_ACTIONS", "TF_BUILD", "GITLAB_CI", "BUILDKITE")


def is_ci(environ: dict[str, str]) -> bool:
    return any((environ.get(name) or "").strip().lower() in ("1", "true", "yes") for name in CI_ENV_VARS)


@dataclass(frozen=True)
class VerifyPolicy:
    """Which verify warnings fail a step.

    Navigation and theme-contract gates default to on in CI unless the run
    is a dev or fast run.
    """
    suppress: tuple[str, ...] = ()
    fail_on_warnings: bool = False
    fail_on_nav_lint: bool = False
    fail_on_theme_contract: bool = False

    @classmethod
    def from_options(cls, options: StepOptions, environ: dict[str, str], fast: bool, mode: str) -> "VerifyPolicy":
        strict = is_ci(environ) and not (fast or mode.lower() == "dev")
        return cls(
            suppress=tuple(options.string_list("suppressWarnings") or ()),
            fail_on_warnings=bool(options.boolean("failOnWarnings", default=False)),
            fail_on_nav_lint=bool(options.boolean("failOnNavLint", "failOnNavLintWarnings", default=strict)),
            fail_on_theme_contract=bool(options.boolean("failOnThemeContract", default=strict)),
        )

    def filter_warnings(self, warnings: list[str]) -> list[str]:
        """Drop warnings matched by a suppression code or substring."""
        if not self.suppress:
            return list(warnings)
        return [warning for warning in warnings if not any(_suppresses(item, warning) for item in self.suppress)]

    def evaluate(self, errors: list[str], warnings: list[str]) -> list[str]:
        """Return the policy failures; an empty list means the verify passed."""
        failures: list[str] = []
        if errors:
            failures.append(f"Web verify failed with {len(errors)} error(s): {errors[0]}")

        kept = self.filter_warnings(warnings)
        if self.fail_on_warnings and kept:
            failures.append(f"Verify warnings treated as errors ({len(kept)} warning(s)): {kept[0]}")
        if self.fail_on_nav_lint:
            nav = [w for w in kept if _has_code_prefix(w, "NAV")]
            if nav:
                failures.append(f"Navigation lint warnings treated as errors ({len(nav)} warning(s)): {nav[0]}")
        if self.fail_on_theme_contract:
            theme = [w for w in kept if _has_code_prefix(w, "THEME")]
            if theme:
                failures.append(f"Theme contract warnings treated as errors ({len(theme)} warning(s)): {theme[0]}")
        return failures


def _suppresses(item: str, warning: str) -> bool:
    needle = item.strip()
    if not needle:
        return False
    code = needle.strip("[]").upper()
    head = warning.lstrip().upper()
    if head.startswith(f"[{code}]") or head.startswith(f"[{code}."):
        return True
    return needle.lower() in warning.lower()


def _has_code_prefix(warning: str, prefix: str) -> bool:
    return warning.lstrip().upper().startswith(f"[{prefix}")
