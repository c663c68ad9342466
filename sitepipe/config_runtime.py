"""Runtime configuration for sitepipe - defaults, state-dir overrides and env."""

import copy
import json
import os
from pathlib import Path
from typing import Any

from sitepipe.utils.constants import ENV_PREFIX
from sitepipe.utils.logging import logger

DEFAULTS = {
    "paths": {
        "state_dir": ".sitepipe",
        "cache": ".sitepipe/pipeline-cache.json",
        "profile": ".sitepipe/pipeline-profile.json",
        "audit_summary": ".sitepipe/audit-summary.json",
        "audit_sarif": ".sitepipe/audit.sarif.json",
        "optimize_report": ".sitepipe/optimize-report.json",
        "git_sync_manifest": ".sitepipe/git-sync-manifest.json",
        "git_sync_lock": ".sitepipe/git-sync-lock.json",
    },
    "timeouts": {
        "hook": 600,
        "exec": 600,
        "data_transform": 120,
        "html_transform": 120,
        "git": 600,
        "dotnet": 1800,
    },
    "limits": {
        "preview_chars": 200,
        "headline_chars": 180,
        "error_chars": 220,
        "error_preview_default": 5,
        "error_preview_max": 50,
        "issue_sample_max": 5,
        "max_stamp_files": 1000,
        "warning_buckets": 5,
        "transform_samples": 3,
        "transform_sample_chars": 140,
    },
    "engines": {
        "factory": "",
    },
}

_SECTIONS = tuple(DEFAULTS)


def load_runtime_config(root: str | Path = ".") -> dict[str, Any]:
    """
    Load runtime configuration from .sitepipe/config.json and the environment.

    Config priority (highest to lowest):
    1. Environment variables (SITEPIPE_<SECTION>_<KEY>)
    2. .sitepipe/config.json under ``root``
    3. Built-in defaults

    Values whose type does not match the default are ignored.
    """
    cfg = copy.deepcopy(DEFAULTS)

    path = Path(root) / ".sitepipe" / "config.json"
    try:
        if path.exists():
            with open(path, encoding="utf-8") as f:
                user = json.load(f)

            if isinstance(user, dict):
                for section in _SECTIONS:
                    if section in user and isinstance(user[section], dict):
                        for key, value in user[section].items():
                            if key in cfg[section] and isinstance(value, type(cfg[section][key])):
                                cfg[section][key] = value
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Could not load config file from {path}: {err}", path=path, err=e)
        logger.info("Continuing with default configuration")

    for section in cfg:
        for key in cfg[section]:
            env_var = f"{ENV_PREFIX}_{section.upper()}_{key.upper()}"
            if env_var in os.environ:
                value = os.environ[env_var]
                default_value = cfg[section][key]
                try:
                    if isinstance(default_value, int):
                        cfg[section][key] = int(value)
                    elif isinstance(default_value, float):
                        cfg[section][key] = float(value)
                    else:
                        cfg[section][key] = value
                except ValueError as e:
                    logger.warning(
                        "Invalid value for environment variable {var}: '{value}' - {err}",
                        var=env_var,
                        value=value,
                        err=e,
                    )

    return cfg
