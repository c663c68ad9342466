"""Logging setup for sitepipe, built on Loguru with optional NDJSON output.

Every engine module logs through the single ``logger`` exported here. The
human format goes to stderr. With ``SITEPIPE_LOG_JSON=1`` records become
Pino-style NDJSON on stdout, so CI log collectors can parse step events.

Usage:
    from sitepipe.utils.logging import logger
    logger.info("Starting {label}...", label=label)

Environment Variables:
    SITEPIPE_LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default: INFO)
    SITEPIPE_LOG_JSON: 0|1 (default: 0, human-readable)
    SITEPIPE_LOG_FILE: path to an NDJSON log file (optional)
    SITEPIPE_REQUEST_ID: correlation ID propagated to spawned processes
"""

import json
import os
import sys
import uuid
from pathlib import Path

from loguru import logger

from .constants import ENV_PREFIX

logger.remove()

PINO_LEVELS = {
    "TRACE": 10,
    "DEBUG": 20,
    "INFO": 30,
    "SUCCESS": 30,
    "WARNING": 40,
    "ERROR": 50,
    "CRITICAL": 60,
}

_log_level = os.environ.get("SITEPIPE_LOG_LEVEL", "INFO").upper()
_json_mode = os.environ.get("SITEPIPE_LOG_JSON", "0") == "1"
_log_file = os.environ.get("SITEPIPE_LOG_FILE")
_request_id = os.environ.get("SITEPIPE_REQUEST_ID") or str(uuid.uuid4())


def _to_pino(record) -> dict:
    """Map a loguru record onto Pino's field names."""
    payload = {
        "level": PINO_LEVELS.get(record["level"].name, 30),
        "time": int(record["time"].timestamp() * 1000),
        "msg": record["message"],
        "pid": record["process"].id,
        "request_id": record["extra"].get("request_id", _request_id),
    }
    for key, value in record["extra"].items():
        if key != "request_id":
            payload[key] = value
    if record["exception"]:
        exc = record["exception"]
        payload["err"] = {
            "type": exc.type.__name__ if exc.type else "Error",
            "message": str(exc.value) if exc.value else "",
        }
    return payload


def pino_compatible_sink(message):
    """Write one NDJSON line per record to stdout.

    Never log from inside a sink; loguru would recurse.
    """
    sys.stdout.write(json.dumps(_to_pino(message.record), default=str) + "\n")
    sys.stdout.flush()


_human_format = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}:{function}:{line}</cyan> - "
    "<level>{message}</level>"
)

logger.level("DEBUG", color="<blue>")
logger.level("INFO", color="<white>")
logger.level("WARNING", color="<yellow>")
logger.level("ERROR", color="<red>")
logger.level("CRITICAL", color="<red><bold>")

_human_handler_id: int | None = None

if _json_mode:
    logger.add(pino_compatible_sink, level=_log_level, colorize=False)
else:
    _human_handler_id = logger.add(
        sys.stderr,
        level=_log_level,
        format=_human_format,
        colorize=None,
    )

if _log_file:
    def _file_pino_sink(message):
        """Append Pino-format JSON to the configured log file."""
        with open(_log_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(_to_pino(message.record), default=str) + "\n")

    logger.add(_file_pino_sink, level="DEBUG")


def configure_file_logging(log_dir: Path, level: str = "DEBUG") -> Path:
    """Add a rotating human-readable log file under ``log_dir``.

    Returns the log file path so callers can report it.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "sitepipe.log"
    logger.add(
        log_file,
        rotation="10 MB",
        retention="7 days",
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    )
    return log_file


def swap_to_rich_sink(rich_sink_fn) -> int | None:
    """Route human log output through a Rich console while a Live table is up.

    Returns the new handler ID, or None in JSON mode where nothing is swapped.
    """
    global _human_handler_id

    if _json_mode or _human_handler_id is None:
        return None

    logger.remove(_human_handler_id)
    _human_handler_id = None

    return logger.add(
        rich_sink_fn,
        level=_log_level,
        format=_human_format,
        colorize=True,
    )


def restore_stderr_sink(rich_handler_id: int | None) -> None:
    """Put the stderr handler back after the Live display ends."""
    global _human_handler_id

    if _json_mode:
        return

    if rich_handler_id is not None:
        try:
            logger.remove(rich_handler_id)
        except ValueError:
            logger.debug("Rich log handler {id} was already removed", id=rich_handler_id)

    if _human_handler_id is None:
        _human_handler_id = logger.add(
            sys.stderr,
            level=_log_level,
            format=_human_format,
            colorize=None,
        )


def get_subprocess_env(base: dict[str, str] | None = None) -> dict[str, str]:
    """Environment for a spawned process, carrying the request ID.

    ``base`` is the environment snapshot taken by the orchestrator; the live
    process environment is used when it is omitted.
    """
    env = dict(os.environ if base is None else base)
    env[f"{ENV_PREFIX}_REQUEST_ID"] = _request_id
    return env


__all__ = [
    "logger",
    "configure_file_logging",
    "get_subprocess_env",
    "swap_to_rich_sink",
    "restore_stderr_sink",
]
