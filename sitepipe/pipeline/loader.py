"""Pipeline document loading: JSON5/YAML parsing, ``extends`` and step definitions.

A document is ``{steps: [...], cache?, cachePath?, profile?, ...}``. JSON
documents may carry comments and trailing commas; ``.yml``/``.yaml`` files
are read as YAML. ``extends`` names one or more base documents, resolved
relative to the file that declares them and merged underneath it.
"""

import os
from dataclasses import dataclass, field
from typing import Any

import json5
import yaml

from sitepipe.exceptions import ConfigurationError
from sitepipe.utils.logging import logger

from .options import StepOptions, split_list
from .structures import PipelineStep

YAML_SUFFIXES = (".yml", ".yaml")
RESPECT_EXPLICIT_KEYS = ("respectExplicitSettings", "respectExplicit")


@dataclass
class PipelineDocument:
    """A loaded document with its parsed steps and run-level switches."""
    path: str
    base_dir: str
    raw: dict[str, Any]
    steps: list[PipelineStep] = field(default_factory=list)

    @property
    def options(self) -> StepOptions:
        return StepOptions(self.raw)

    @property
    def cache_enabled(self) -> bool:
        return bool(self.options.boolean("cache", default=False))

    @property
    def profile_enabled(self) -> bool:
        return bool(self.options.boolean("profile", default=False))

    @property
    def profile_on_fail(self) -> bool:
        return bool(self.options.boolean("profileOnFail", default=True))


def _parse(path: str) -> Any:
    with open(path, encoding="utf-8") as f:
        text = f.read()
    try:
        if path.lower().endswith(YAML_SUFFIXES):
            return yaml.safe_load(text)
        return json5.loads(text)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Pipeline config is not valid: {path}: {e}") from e


def _find_key(mapping: dict[str, Any], key: str) -> str | None:
    lowered = key.lower()
    for existing in mapping:
        if existing.lower() == lowered:
            return existing
    return None


def merge_documents(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto ``base`` with case-insensitive keys.

    Nested objects merge recursively and ``steps`` arrays concatenate base
    first. Any other overlay value replaces the base value.
    """
    merged = dict(base)
    for key, value in overlay.items():
        existing = _find_key(merged, key)
        if existing is None:
            merged[key] = value
            continue
        current = merged[existing]
        if isinstance(current, dict) and isinstance(value, dict):
            merged[existing] = merge_documents(current, value)
        elif key.lower() == "steps" and isinstance(current, list) and isinstance(value, list):
            merged[existing] = current + value
        else:
            del merged[existing]
            merged[key] = value
    return merged


def _extends(node: dict[str, Any]) -> list[str]:
    key = _find_key(node, "extends")
    if key is None:
        return []
    value = node.pop(key)
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, list):
        return [item.strip() for item in value if isinstance(item, str) and item.strip()]
    raise ConfigurationError("Pipeline 'extends' must be a string or an array of strings.")


def load_document(path: str, chain: set[str] | None = None) -> dict[str, Any]:
    """Read ``path`` and fold in every document it extends."""
    full = os.path.abspath(path)
    if not os.path.isfile(full):
        raise ConfigurationError(f"Pipeline config not found: {full}")

    chain = set() if chain is None else chain
    key = os.path.normcase(full)
    if key in chain:
        raise ConfigurationError(f"Pipeline config inheritance loop detected at {full}")
    chain.add(key)

    node = _parse(full)
    if not isinstance(node, dict):
        raise ConfigurationError(f"Pipeline config must be an object: {full}")

    merged: dict[str, Any] = {}
    for base in _extends(node):
        base_path = base if os.path.isabs(base) else os.path.join(os.path.dirname(full), base)
        merged = merge_documents(merged, load_document(base_path, chain))
    chain.discard(key)
    return merge_documents(merged, node)


def parse_depends_on(options: StepOptions) -> list[str]:
    value = options.get("dependsOn")
    if isinstance(value, list):
        return [str(item).strip() for item in value if item is not None and str(item).strip()]
    if isinstance(value, (str, int)) and not isinstance(value, bool):
        return split_list(str(value))
    return []


def build_steps(raw_steps: list[Any], respect_explicit: bool | None = None) -> list[PipelineStep]:
    """Number the steps, assign ids and resolve ``dependsOn`` references.

    Entries without a ``task`` are dropped before numbering. A document-level
    ``respect_explicit`` is copied into steps that do not set their own.
    """
    entries: list[tuple[str, dict[str, Any]]] = []
    for entry in raw_steps:
        if not isinstance(entry, dict):
            continue
        task = StepOptions(entry).string("task")
        if task is None:
            logger.debug("Ignoring pipeline step without a task: {entry}", entry=entry)
            continue
        options = dict(entry)
        if respect_explicit is not None and not StepOptions(options).has(*RESPECT_EXPLICIT_KEYS):
            options["respectExplicitSettings"] = respect_explicit
        entries.append((task.strip().lower(), options))

    total = len(entries)
    aliases: dict[str, int] = {}
    ids: list[str] = []
    seen: set[str] = set()
    for index, (task, options) in enumerate(entries, start=1):
        step_id = StepOptions(options).string("id") or f"{task}-{index}"
        if step_id.lower() in seen:
            raise ConfigurationError(f"Duplicate pipeline step id '{step_id}'.")
        seen.add(step_id.lower())
        ids.append(step_id)
        aliases[step_id.lower()] = index
        aliases[f"{task}#{index}"] = index
        aliases.setdefault(task, index)

    steps: list[PipelineStep] = []
    for index, ((task, options), step_id) in enumerate(zip(entries, ids), start=1):
        resolved: set[int] = set()
        for reference in parse_depends_on(StepOptions(options)):
            if reference.isdigit():
                number = int(reference)
                if number <= 0 or number > total:
                    raise ConfigurationError(f"Step '{step_id}' has invalid dependsOn reference '{reference}'.")
                resolved.add(number)
                continue
            target = aliases.get(reference.lower())
            if target is None:
                raise ConfigurationError(f"Step '{step_id}' has unknown dependsOn reference '{reference}'.")
            resolved.add(target)
        if any(value >= index for value in resolved):
            raise ConfigurationError(f"Step '{step_id}' has dependsOn reference to current/future step.")

        label = StepOptions(options).string("label") or f"[{index}/{total}] {task}"
        steps.append(PipelineStep(
            task=task,
            index=index,
            step_id=step_id,
            label=label,
            options=options,
            depends_on=tuple(sorted(resolved)),
        ))
    return steps


def load_pipeline(path: str) -> PipelineDocument:
    """Load a pipeline document and parse its steps."""
    full = os.path.abspath(path)
    raw = load_document(full)
    steps_key = _find_key(raw, "steps")
    raw_steps = raw.get(steps_key) if steps_key else None
    if not isinstance(raw_steps, list):
        raise ConfigurationError("Pipeline config must include a steps array.")

    document = PipelineDocument(
        path=full,
        base_dir=os.path.dirname(full),
        raw=raw,
        steps=build_steps(raw_steps, StepOptions(raw).boolean(*RESPECT_EXPLICIT_KEYS)),
    )
    logger.debug("Loaded pipeline {path} with {n} step(s)", path=full, n=len(document.steps))
    return document
