"""``doctor``: build, verify and audit a site in one step.

Each phase is on unless turned off with ``build``/``verify``/``audit`` set to
false or the matching ``noBuild``/``noVerify``/``noAudit`` flag. The doctor's
own build does not update the pipeline's build carryover.
"""

import os

from sitepipe.engines import BuildRequest
from sitepipe.exceptions import ConfigurationError, PreconditionError, TaskFailedError
from sitepipe.pipeline.options import StepOptions
from sitepipe.pipeline.policy import ensure_explicit_checks
from sitepipe.pipeline.structures import ExecutionContext, PipelineStep, StepResult, TaskRuntime
from sitepipe.pipeline.summary import build_doctor_summary
from sitepipe.utils.logging import logger

from .audit import audit_failure, build_audit_request
from .base import succeeded
from .site import verify_site

DEFAULT_REQUIRED_ROUTES = ["/404.html"]
DEFAULT_NAV_REQUIRED_LINKS = ["/"]


def _phase(options: StepOptions, name: str, negated: str) -> bool:
    value = options.boolean(name)
    if value is not None:
        return value
    return not options.boolean(negated, default=False)


def run_doctor(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    options = StepOptions(step.options)
    config = options.path(context.base_dir, "config")
    if config is None:
        raise ConfigurationError("doctor requires config.")

    execute_build = _phase(options, "build", "noBuild")
    execute_verify = _phase(options, "verify", "noVerify")
    execute_audit = _phase(options, "audit", "noAudit")
    if execute_audit:
        ensure_explicit_checks("doctor", options)

    out = options.path(context.base_dir, "out", "output") or os.path.join(os.path.dirname(config), "_site")
    site_root = options.path(context.base_dir, "siteRoot") or out

    if execute_build:
        builder = runtime.collaborators.require("builder", "doctor")
        report = builder.build(BuildRequest(config=config, out=out))
        site_root = report.output_path or out
        logger.info("{label}: doctor build wrote {n} updated file(s)", label=step.label, n=len(report.updated_files))

    if execute_audit and not os.path.isdir(site_root):
        raise PreconditionError("doctor audit requires existing siteRoot. Provide siteRoot or enable build.")

    verify = None
    failures: list[str] = []
    if execute_verify:
        verify, _warnings, failures = verify_site(step, options, config, context, runtime)
        if failures:
            raise TaskFailedError(f"Doctor verify failed: {' | '.join(failures)}", {"failures": failures})

    audit = None
    if execute_audit:
        raw = dict(step.options)
        if not options.string_list("requiredRoutes", "requiredRoute"):
            raw["requiredRoutes"] = list(DEFAULT_REQUIRED_ROUTES)
        if not options.string_list("navRequiredLinks", "navRequiredLink"):
            raw["navRequiredLinks"] = list(DEFAULT_NAV_REQUIRED_LINKS)
        audit_options = StepOptions(raw)
        request = build_audit_request(step, audit_options, site_root, context, runtime, scope=False)
        audit = runtime.collaborators.require("auditor", "doctor").audit(request)
        if not audit.success:
            raise audit_failure(audit, audit_options, runtime)

    return succeeded(
        step,
        build_doctor_summary(verify, audit, execute_build, execute_verify, execute_audit, failures),
    )
