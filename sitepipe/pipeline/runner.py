"""Sequential pipeline execution.

The runner walks the loaded steps in order. For each step it:

1. applies mode and ``--only``/``--skip`` filters;
2. checks that every ``dependsOn`` step ran and succeeded;
3. serves the step from the cache when its fingerprint still matches;
4. dispatches the handler and folds any build output into the context.

A handler exception or a failed result aborts the run unless the step set
``continueOnError``. Timeouts always abort. Completed steps keep their
results either way.
"""

import json
import os
import time
from dataclasses import dataclass, field
from pathlib import Path

from sitepipe.events import PipelineObserver
from sitepipe.exceptions import DependencyError, PipelineError, StepTimeoutError
from sitepipe.utils.logging import logger

from .cache import (
    CacheState,
    cache_key,
    compute_fingerprint,
    expected_outputs,
    is_cacheable,
    load_cache,
    outputs_present,
    save_cache,
)
from .dispatch import dispatch
from .loader import PipelineDocument
from .options import StepOptions, resolve_path_within_root
from .structures import ExecutionContext, PipelineResult, PipelineStep, StepResult, TaskRuntime
from .summary import append_duration, format_duration

DEFAULT_MODE = "default"


@dataclass
class RunOptions:
    """Per-invocation switches coming from the CLI."""
    mode: str | None = None
    fast: bool = False
    dev: bool = False
    only: tuple[str, ...] = ()
    skip: tuple[str, ...] = ()
    profile: bool = False
    no_cache: bool = False

    @property
    def effective_mode(self) -> str:
        if self.mode and self.mode.strip():
            return self.mode.strip()
        return "dev" if self.dev else DEFAULT_MODE

    @property
    def effective_fast(self) -> bool:
        return self.fast or self.dev


def skip_reason(step: PipelineStep, mode: str, only: tuple[str, ...], skip: tuple[str, ...]) -> str | None:
    """Why ``step`` should not run, or None when it should."""
    wanted = {task.lower() for task in only}
    unwanted = {task.lower() for task in skip}
    if step.task in unwanted:
        return "skip"
    if wanted and step.task not in wanted:
        return "only"

    options = StepOptions(step.options)
    current = mode.lower()
    skip_modes = [value.lower() for value in options.string_list("skipModes") or []]
    if current in skip_modes:
        return f"mode={mode}"
    only_modes = [value.lower() for value in options.string_list("mode", "modes", "onlyModes") or []]
    if only_modes and current not in only_modes:
        return f"mode={mode}"
    return None


def tolerates_failure(step: PipelineStep) -> bool:
    return bool(StepOptions(step.options).boolean("continueOnError", default=False))


@dataclass
class _StepRecord:
    result: StepResult
    cached: bool = False


@dataclass
class PipelineRunner:
    """Runs one loaded document against an injected runtime."""
    document: PipelineDocument
    runtime: TaskRuntime
    options: RunOptions = field(default_factory=RunOptions)
    observer: PipelineObserver | None = None

    def __post_init__(self):
        self.base_dir = self.document.base_dir
        self.cache_enabled = self.document.cache_enabled and not self.options.no_cache
        self.profile_enabled = self.document.profile_enabled or self.options.profile
        raw = self.document.options
        self.cache_path = resolve_path_within_root(
            self.base_dir, raw.string("cachePath"), self.runtime.path("cache")
        )
        self.profile_path = resolve_path_within_root(
            self.base_dir, raw.string("profilePath"), self.runtime.path("profile")
        )
        self.cache: CacheState | None = load_cache(self.cache_path) if self.cache_enabled else None

    def run(self) -> PipelineResult:
        started = time.perf_counter()
        mode = self.options.effective_mode
        context = ExecutionContext(
            base_dir=Path(self.base_dir),
            fast=self.options.effective_fast,
            effective_mode=mode,
        )
        result = PipelineResult(cache_path=self.cache_path if self.cache_enabled else None)
        records: dict[int, _StepRecord] = {}
        steps = self.document.steps
        total = len(steps)

        if self.observer:
            self.observer.on_pipeline_start(self.document.path, total)
        logger.info(
            "Running pipeline {path}: {n} step(s), mode={mode}, fast={fast}",
            path=self.document.path,
            n=total,
            mode=mode,
            fast=context.fast,
        )

        for position, step in enumerate(steps, start=1):
            reason = skip_reason(step, mode, self.options.only, self.options.skip)
            if reason is not None:
                logger.info("Skipping {label} ({reason})", label=step.label, reason=reason)
                if self.observer:
                    self.observer.on_step_skipped(step.label, reason)
                continue

            logger.info("Starting {label}...", label=step.label)
            if self.observer:
                self.observer.on_step_start(step.label, step.index, total)
            step_started = time.perf_counter()

            try:
                self._check_dependencies(step, records)
                record = self._from_cache(step, records, step_started)
                if record is None:
                    record = self._execute(step, context, step_started)
            except PipelineError as e:
                record = self._failure(step, e, step_started)
                fatal = isinstance(e, (StepTimeoutError, DependencyError)) or not tolerates_failure(step)
            except Exception as e:
                logger.opt(exception=True).error("{label}: unexpected error", label=step.label)
                record = self._failure(step, e, step_started)
                fatal = not tolerates_failure(step)
            else:
                fatal = not record.result.success and not tolerates_failure(step)

            records[step.index] = record
            result.steps.append(record.result)
            self._notify(record, fatal)

            if record.result.build_output is not None:
                context = context.with_build(record.result.build_output)
                logger.debug(
                    "{label}: carryover now {path} ({n} updated file(s))",
                    label=step.label,
                    path=context.last_build_output_path,
                    n=len(context.last_build_updated_files),
                )

            if fatal:
                result.aborted = position < total
                return self._finish(result, started, failed=True)

        return self._finish(result, started, failed=False)

    def _check_dependencies(self, step: PipelineStep, records: dict[int, _StepRecord]) -> None:
        for index in step.depends_on:
            record = records.get(index)
            if record is None or not record.result.success:
                raise DependencyError(
                    f"Step '{step.step_id}' dependency #{index} failed or was not executed.",
                    {"step": step.step_id, "dependency": index},
                )

    def _from_cache(self, step: PipelineStep, records: dict[int, _StepRecord], started: float) -> _StepRecord | None:
        if self.cache is None or not is_cacheable(step.task):
            return None
        entry = self.cache.lookup(cache_key(step.index, step.task))
        if entry is None:
            return None
        if any(not records[index].cached for index in step.depends_on):
            return None
        fingerprint = compute_fingerprint(self.base_dir, step.options, self.runtime.limit("max_stamp_files"))
        if entry.fingerprint != fingerprint:
            return None
        if not outputs_present(expected_outputs(step.task, step.options, self.base_dir)):
            return None

        elapsed_ms = (time.perf_counter() - started) * 1000
        return _StepRecord(
            result=StepResult(
                label=step.label,
                task=step.task,
                success=True,
                message=append_duration(entry.message or "cache hit", elapsed_ms),
                duration_ms=elapsed_ms,
                cached=True,
                step_id=step.step_id,
            ),
            cached=True,
        )

    def _execute(self, step: PipelineStep, context: ExecutionContext, started: float) -> _StepRecord:
        outcome = dispatch(step, context, self.runtime)
        elapsed_ms = (time.perf_counter() - started) * 1000

        if outcome.success and self.cache is not None and is_cacheable(step.task):
            # fingerprint after the run so outputs written by the step are stamped
            fingerprint = compute_fingerprint(self.base_dir, step.options, self.runtime.limit("max_stamp_files"))
            self.cache.record(cache_key(step.index, step.task), fingerprint, outcome.message)

        return _StepRecord(
            result=StepResult(
                label=step.label,
                task=step.task,
                success=outcome.success,
                message=append_duration(outcome.message, elapsed_ms),
                duration_ms=elapsed_ms,
                step_id=step.step_id,
                build_output=outcome.build_output,
            )
        )

    def _failure(self, step: PipelineStep, error: Exception, started: float) -> _StepRecord:
        elapsed_ms = (time.perf_counter() - started) * 1000
        return _StepRecord(
            result=StepResult(
                label=step.label,
                task=step.task,
                success=False,
                message=append_duration(str(error), elapsed_ms),
                duration_ms=elapsed_ms,
                step_id=step.step_id,
            )
        )

    def _notify(self, record: _StepRecord, fatal: bool) -> None:
        step = record.result
        if step.success:
            logger.info(
                "Finished {label}{cached} in {duration}",
                label=step.label,
                cached=" (cache hit)" if record.cached else "",
                duration=format_duration(step.duration_ms),
            )
            if self.observer:
                self.observer.on_step_complete(step.label, step.message, step.duration_ms / 1000, cached=record.cached)
            return

        if fatal:
            logger.error("{label} failed: {message}", label=step.label, message=step.message)
        else:
            logger.warning("{label} failed (continuing): {message}", label=step.label, message=step.message)
        if self.observer:
            self.observer.on_step_failed(step.label, step.message, tolerated=not fatal)

    def _finish(self, result: PipelineResult, started: float, failed: bool) -> PipelineResult:
        result.step_count = len(result.steps)
        result.duration_ms = (time.perf_counter() - started) * 1000

        if self.cache is not None and self.cache.dirty:
            save_cache(self.cache_path, self.cache)

        if self.profile_enabled or (failed and self.document.profile_on_fail):
            if write_profile(self.profile_path, result):
                result.profile_path = self.profile_path
                if self.observer:
                    self.observer.on_log(f"Profile written to {self.profile_path}")
        return result


def write_profile(path: str, result: PipelineResult) -> bool:
    """Write the result JSON; a failed write is logged, not raised."""
    try:
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(result.to_dict(), f, indent=2)
    except OSError as e:
        logger.warning("Pipeline profile write failed: {err}", err=e)
        return False
    return True


def run_pipeline(
    document: PipelineDocument,
    runtime: TaskRuntime,
    options: RunOptions | None = None,
    observer: PipelineObserver | None = None,
) -> PipelineResult:
    """Run ``document`` once and return the folded result."""
    return PipelineRunner(document, runtime, options or RunOptions(), observer).run()
