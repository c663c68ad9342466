"""External process supervision shared by every task that shells out.

Streams are drained concurrently through asyncio pipes while the process
runs. On timeout the whole process tree is killed with psutil before a
``StepTimeoutError`` is raised.
"""

import asyncio
import os
import re
import shlex
import time
from dataclasses import dataclass
from typing import Any

import psutil

from sitepipe.exceptions import PreconditionError, ProcessStartError, StepTimeoutError
from sitepipe.utils.logging import get_subprocess_env, logger

from .options import StepOptions


@dataclass
class ProcessResult:
    """Captured outcome of one supervised process."""
    exit_code: int
    stdout: str
    stderr: str
    elapsed: float

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def preview(self, max_length: int = 200) -> str:
        return truncate_for_log(first_non_empty_line(self.stderr, self.stdout), max_length)


def first_non_empty_line(*texts: str | None) -> str:
    """First non-blank line across ``texts``, searched in order."""
    for text in texts:
        if not text:
            continue
        for line in text.splitlines():
            if line.strip():
                return line.strip()
    return ""


def truncate_for_log(value: str | None, max_length: int = 200) -> str:
    if not value:
        return ""
    flat = value.replace("\r\n", " ").replace("\n", " ").replace("\r", " ").strip()
    if max_length <= 3 or len(flat) <= max_length:
        return flat[:max_length] if max_length > 0 else ""
    return flat[: max_length - 3] + "..."


def with_preview(message: str, preview: str) -> str:
    return f"{message} ({preview})" if preview else message


def replace_tokens(text: str, tokens: dict[str, str]) -> str:
    """Replace ``{name}`` placeholders case-insensitively."""
    for name, value in tokens.items():
        text = re.sub(re.escape("{" + name + "}"), lambda _m, v=value: v, text, flags=re.IGNORECASE)
    return text


def build_arguments(options: StepOptions, tokens: dict[str, str] | None = None) -> list[str]:
    """Arguments from ``argsList`` (preferred) or the shell-split ``args`` string."""
    listed = options.get("argsList", "arguments-list", "argumentsList")
    if isinstance(listed, list):
        args = [str(item) for item in listed if item is not None and str(item).strip()]
    else:
        raw = options.string("args", "arguments")
        args = shlex.split(raw, posix=os.name != "nt") if raw else []
    if tokens:
        args = [replace_tokens(arg, tokens) for arg in args]
    return args


def environment_values(mapping: dict[str, Any] | None, tokens: dict[str, str] | None = None) -> dict[str, str]:
    """Stringify a user ``env`` object. Nested values are ignored."""
    values: dict[str, str] = {}
    for key, value in (mapping or {}).items():
        if not key or value is None:
            continue
        if isinstance(value, bool):
            text = "true" if value else "false"
        elif isinstance(value, (str, int, float)):
            text = str(value)
        else:
            continue
        values[key] = replace_tokens(text, tokens) if tokens else text
    return values


def build_environment(base: dict[str, str], *layers: dict[str, str]) -> dict[str, str]:
    env = get_subprocess_env(base)
    for layer in layers:
        env.update(layer)
    return env


def format_command(command: str, args: list[str]) -> str:
    return " ".join([command, *args]) if args else command


def kill_process_tree(pid: int) -> None:
    """Kill ``pid`` and all of its descendants.

    Failures are logged; this never raises.
    """
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return
    except psutil.Error as e:
        logger.warning("Could not inspect process tree for pid {pid}: {err}", pid=pid, err=e)
        return

    victims = [*children, parent]
    for proc in victims:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
        except psutil.Error as e:
            logger.warning("Failed to kill pid {pid}: {err}", pid=proc.pid, err=e)

    _, alive = psutil.wait_procs(victims, timeout=5)
    for proc in alive:
        logger.warning("Process {pid} still alive after kill", pid=proc.pid)


def run_process(
    command: str,
    args: list[str],
    *,
    task: str,
    working_directory: str,
    env: dict[str, str] | None = None,
    stdin: str | None = None,
    timeout_seconds: int | None = None,
    default_timeout: int = 600,
    timeout_message: str | None = None,
) -> ProcessResult:
    """Run ``command`` to completion and capture its output.

    Raises:
        PreconditionError: the working directory does not exist.
        ProcessStartError: the program could not be spawned.
        StepTimeoutError: the timeout elapsed; the process tree is killed first.
    """
    if not os.path.isdir(working_directory):
        raise PreconditionError(f"{task} working directory not found: {working_directory}")

    timeout = timeout_seconds if timeout_seconds and timeout_seconds > 0 else default_timeout
    display = format_command(command, args)
    logger.debug("{task}: spawning {cmd} in {cwd} (timeout {t}s)", task=task, cmd=display, cwd=working_directory, t=timeout)

    return asyncio.run(
        _run_async(
            [command, *args],
            cwd=working_directory,
            env=env,
            stdin=stdin,
            timeout=timeout,
            task=task,
            display=command,
            timeout_message=timeout_message,
        )
    )


async def _run_async(
    argv: list[str],
    *,
    cwd: str,
    env: dict[str, str] | None,
    stdin: str | None,
    timeout: int,
    task: str,
    display: str,
    timeout_message: str | None,
) -> ProcessResult:
    start_time = time.time()
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
        )
    except OSError as e:
        raise ProcessStartError(f"{task} failed to start '{display}': {e}") from e

    payload = stdin.encode("utf-8") if stdin is not None else None
    try:
        stdout_data, stderr_data = await asyncio.wait_for(process.communicate(payload), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("{task}: timeout after {t}s, killing process tree of pid {pid}", task=task, t=timeout, pid=process.pid)
        kill_process_tree(process.pid)
        await process.wait()
        raise StepTimeoutError(
            timeout_message or f"{task} timed out after {timeout}s: {display}",
            timeout,
        ) from None

    return ProcessResult(
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=stdout_data.decode("utf-8", errors="replace"),
        stderr=stderr_data.decode("utf-8", errors="replace"),
        elapsed=time.time() - start_time,
    )
