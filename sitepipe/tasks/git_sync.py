"""``git-sync``: clone or update one or more git repositories.

Each request is read from a ``repos`` entry with the step's own options as
defaults, or from the step itself when no array is given. Commits can be
pinned through a lock file (``lockMode`` verify/update) and every sync can be
recorded in a manifest.
"""

import base64
import json
import os
import re
import shutil
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

from sitepipe.exceptions import ConfigurationError, PreconditionError, ProcessFailedError
from sitepipe.pipeline.options import StepOptions, resolve_path, resolve_path_within_root
from sitepipe.pipeline.process import build_environment, first_non_empty_line, run_process
from sitepipe.pipeline.structures import ExecutionContext, PipelineStep, StepResult, TaskRuntime
from sitepipe.utils.logging import logger

from .base import succeeded, utc_now, write_json

SECURITY_CODE = "[SITEPIPE.GITSYNC.SECURITY]"
DEFAULT_BASE_URL = "https://github.com"
DEFAULT_TOKEN_ENV = "GITHUB_TOKEN"
DEFAULT_USERNAME = "x-access-token"

AUTH_TYPES = {
    "auto": "auto",
    "default": "auto",
    "token": "token",
    "pat": "token",
    "basic": "token",
    "ssh": "ssh",
    "none": "none",
    "anonymous": "none",
    "off": "none",
    "disabled": "none",
}
LOCK_MODES = {
    "off": "off",
    "none": "off",
    "disabled": "off",
    "verify": "verify",
    "check": "verify",
    "update": "update",
    "write": "update",
}
_SPARSE_SEPARATORS = re.compile(r"[,;]")
_DRIVE_LETTER = re.compile(r"^[A-Za-z]:")


@dataclass
class GitSyncRequest:
    """One repository to synchronize, fully resolved."""
    repo_input: str
    repo: str
    repo_base_url: str | None
    destination: str
    ref: str | None
    clean: bool
    fetch_tags: bool
    depth: int
    timeout_seconds: int
    retry: int
    retry_delay_ms: int
    auth_type: str
    auth_header: str | None
    sparse_patterns: list[str] = field(default_factory=list)
    submodules: bool = False
    submodules_recursive: bool = False
    submodule_depth: int = 0


@dataclass
class GitSyncOutcome:
    request: GitSyncRequest
    resolved_ref: str
    commit: str


class _EntryOptions:
    """Lookups against a ``repos`` entry, falling back to step-level values."""

    def __init__(self, entry: StepOptions, defaults: StepOptions | None):
        self.entry = entry
        self.defaults = defaults

    def _sources(self):
        return (self.entry,) if self.defaults is None else (self.entry, self.defaults)

    def string(self, *names: str, default: str | None = None) -> str | None:
        for source in self._sources():
            value = source.string(*names)
            if value is not None:
                return value
        return default

    def boolean(self, *names: str, default: bool | None = None) -> bool | None:
        for source in self._sources():
            value = source.boolean(*names)
            if value is not None:
                return value
        return default

    def integer(self, *names: str, default: int | None = None) -> int | None:
        for source in self._sources():
            value = source.integer(*names)
            if value is not None:
                return value
        return default

    def string_list(self, *names: str, pattern: re.Pattern) -> list[str] | None:
        for source in self._sources():
            value = source.string_list(*names, pattern=pattern)
            if value:
                return value
        return None


def normalize_auth_type(value: str | None, prefix: str) -> str:
    if value is None:
        return "auto"
    auth = AUTH_TYPES.get(value.strip().lower())
    if auth is None:
        raise ConfigurationError(
            f"{prefix} has unsupported authType '{value}'. Supported values: auto, token, ssh, none."
        )
    return auth


def normalize_lock_mode(value: str | None) -> str:
    if value is None:
        return "off"
    mode = LOCK_MODES.get(value.strip().lower())
    if mode is None:
        raise ConfigurationError(
            f"git-sync has unsupported lockMode '{value}'. Supported values: off, verify, update."
        )
    return mode


def normalize_git_repo(repo: str, base_dir: str, repo_base_url: str | None, auth_type: str) -> str:
    """Expand ``owner/name`` shorthand into a clone URL.

    URLs, scp-style remotes and anything that looks like a local path are
    returned untouched. Shorthand with more than one slash is only expanded
    when a base URL was given explicitly.
    """
    value = repo.strip()
    if not value:
        return value
    if "://" in value or value.lower().startswith("git@") or "\\" in value:
        return value
    if os.path.isabs(value) or value.startswith(("./", "../", "/")) or _DRIVE_LETTER.match(value):
        return value
    resolved = resolve_path(base_dir, value)
    if resolved and os.path.exists(resolved):
        return value

    slashes = value.count("/")
    if slashes >= 1 and " " not in value:
        if (repo_base_url and repo_base_url.strip()) or slashes == 1:
            return _resolve_from_base(value, repo_base_url, base_dir, auth_type)
    return value


def _resolve_from_base(shorthand: str, repo_base_url: str | None, base_dir: str, auth_type: str) -> str:
    slug = shorthand if shorthand.lower().endswith(".git") else f"{shorthand}.git"
    base = repo_base_url.strip() if repo_base_url and repo_base_url.strip() else DEFAULT_BASE_URL
    use_ssh = auth_type == "ssh"

    parts = urlsplit(base)
    if (parts.scheme and parts.netloc) or parts.scheme == "file":
        if parts.scheme == "file":
            return _join_local(parts.path, slug, base_dir)
        if use_ssh:
            return _ssh_remote(parts.username, parts.hostname or "", parts.port, parts.path, slug)
        if parts.scheme in ("http", "https"):
            return f"{base.rstrip('/')}/{slug}"

    if _looks_like_host(base):
        if use_ssh:
            host_parts = urlsplit("https://" + base)
            return _ssh_remote(host_parts.username, host_parts.hostname or "", host_parts.port, host_parts.path, slug)
        return f"https://{base.rstrip('/')}/{slug}"

    return _join_local(base, slug, base_dir)


def _ssh_remote(user: str | None, host: str, port: int | None, path: str, slug: str) -> str:
    user = user or "git"
    prefix = (path or "").strip("/")
    suffix = f"{prefix}/{slug}" if prefix else slug
    if not port or port == 22:
        return f"{user}@{host}:{suffix}"
    return f"ssh://{user}@{host}:{port}/{suffix}"


def _join_local(base: str, slug: str, base_dir: str) -> str:
    root = resolve_path(base_dir, base) or base
    return os.path.abspath(os.path.join(root, *slug.split("/")))


def _looks_like_host(value: str) -> bool:
    trimmed = value.strip()
    if not trimmed or "://" in trimmed or "\\" in trimmed or " " in trimmed:
        return False
    if trimmed.startswith(("/", ".")):
        return False
    host = urlsplit("https://" + trimmed).hostname or ""
    return "." in host


def has_inline_token(options: StepOptions) -> bool:
    if options.string("token"):
        return True
    entries = options.get("repos", "repositories")
    if isinstance(entries, list):
        return any(isinstance(entry, dict) and StepOptions(entry).string("token") for entry in entries)
    return False


def parse_requests(options: StepOptions, base_dir: str, runtime: TaskRuntime) -> list[GitSyncRequest]:
    """Resolve every repository request, validating required fields."""
    entries = options.get("repos", "repositories")
    if isinstance(entries, list):
        sources = [
            (f"git-sync repos[{i}]", _EntryOptions(StepOptions(entry), options))
            for i, entry in enumerate(entries)
            if isinstance(entry, dict)
        ]
    else:
        sources = [("git-sync", _EntryOptions(options, None))]

    if not sources:
        raise ConfigurationError("git-sync has no repositories to sync.")
    return [_parse_request(prefix, source, base_dir, runtime) for prefix, source in sources]


def _parse_request(prefix: str, source: _EntryOptions, base_dir: str, runtime: TaskRuntime) -> GitSyncRequest:
    repo_input = source.string("repo", "repository", "url")
    if repo_input is None:
        raise ConfigurationError(f"{prefix} requires repo.")
    destination = source.string("destination", "dest", "path")
    if destination is None:
        raise ConfigurationError(f"{prefix} requires destination.")

    auth_type = normalize_auth_type(source.string("authType", "auth", "authentication"), prefix)
    token_env = source.string("tokenEnv", default=DEFAULT_TOKEN_ENV)
    token = source.string("token") or (runtime.environ.get(token_env) or "").strip() or None
    if auth_type == "token" and not token:
        raise ConfigurationError(f"{prefix} authType 'token' requires token/tokenEnv.")
    username = source.string("username", default=DEFAULT_USERNAME)
    auth_header = None
    if token and auth_type not in ("none", "ssh"):
        auth_header = base64.b64encode(f"{username}:{token}".encode("utf-8")).decode("ascii")

    repo_base_url = source.string("repoBaseUrl", "repositoryBaseUrl", "repoHost")
    timeout = source.integer("timeoutSeconds", default=0)
    submodules = bool(source.boolean("submodules", "submodule", default=False))

    return GitSyncRequest(
        repo_input=repo_input,
        repo=normalize_git_repo(repo_input, base_dir, repo_base_url, auth_type),
        repo_base_url=repo_base_url,
        destination=resolve_path(base_dir, destination),
        ref=source.string("ref", "branch", "tag", "commit"),
        clean=bool(source.boolean("clean", default=False)),
        fetch_tags=bool(source.boolean("fetchTags", default=False)),
        depth=max(0, source.integer("depth", default=0)),
        timeout_seconds=timeout if timeout > 0 else runtime.timeout("git"),
        retry=max(0, source.integer("retry", "retries", "retryCount", default=0)),
        retry_delay_ms=max(0, source.integer("retryDelayMs", "retryDelay", default=500)),
        auth_type=auth_type,
        auth_header=auth_header,
        sparse_patterns=source.string_list("sparseCheckout", "sparsePaths", pattern=_SPARSE_SEPARATORS) or [],
        submodules=submodules,
        submodules_recursive=bool(source.boolean("submodulesRecursive", default=submodules)),
        submodule_depth=max(0, source.integer("submoduleDepth", default=0)),
    )


def run_git(request: GitSyncRequest, cwd: str, args: list[str], runtime: TaskRuntime):
    """Run one git command with the request's auth header and retry policy."""
    full_args = list(args)
    if request.auth_header:
        full_args = ["-c", f"http.extraHeader=AUTHORIZATION: basic {request.auth_header}", *full_args]

    attempts = request.retry + 1
    result = None
    for attempt in range(1, attempts + 1):
        result = run_process(
            "git",
            full_args,
            task="git-sync",
            working_directory=cwd,
            env=build_environment(runtime.environ, {"GIT_TERMINAL_PROMPT": "0"}),
            timeout_seconds=request.timeout_seconds,
            default_timeout=runtime.timeout("git"),
            timeout_message=f"git-sync timed out after {request.timeout_seconds}s.",
        )
        if result.exit_code == 0 or attempt == attempts:
            break
        logger.warning(
            "git-sync: 'git {cmd}' failed (attempt {n}/{total}), retrying in {ms} ms",
            cmd=args[0] if args[0] != "-C" else args[2],
            n=attempt,
            total=attempts,
            ms=request.retry_delay_ms,
        )
        if request.retry_delay_ms > 0:
            time.sleep(request.retry_delay_ms / 1000)
    return result


def _error_preview(result) -> str:
    return first_non_empty_line(result.stderr, result.stdout) or "unknown error"


def sync_repository(request: GitSyncRequest, base_dir: str, runtime: TaskRuntime) -> GitSyncOutcome:
    dest = request.destination
    git_dir = os.path.join(dest, ".git")

    if request.clean and os.path.exists(dest):
        logger.info("git-sync: cleaning {dest}", dest=dest)
        shutil.rmtree(dest)

    cloned = False
    if not os.path.isdir(git_dir):
        os.makedirs(os.path.dirname(os.path.abspath(dest)) or ".", exist_ok=True)
        args = ["clone"]
        if not request.fetch_tags:
            args.append("--no-tags")
        if request.depth > 0:
            args += ["--depth", str(request.depth)]
        args += [request.repo, dest]
        result = run_git(request, base_dir, args, runtime)
        if result.exit_code != 0:
            raise ProcessFailedError(f"git-sync clone failed: {_error_preview(result)}", result.exit_code)
        cloned = True
    else:
        args = ["-C", dest, "fetch", "--prune", "origin"]
        if request.fetch_tags:
            args.append("--tags")
        result = run_git(request, base_dir, args, runtime)
        if result.exit_code != 0:
            raise ProcessFailedError(f"git-sync fetch failed: {_error_preview(result)}", result.exit_code)

    if request.sparse_patterns:
        _configure_sparse_checkout(request, runtime)

    if request.ref:
        checkout = run_git(request, dest, ["checkout", "--force", request.ref], runtime)
        if checkout.exit_code != 0:
            fetch = run_git(request, dest, ["fetch", "origin", request.ref], runtime)
            if fetch.exit_code != 0:
                raise ProcessFailedError(
                    f"git-sync checkout failed for ref '{request.ref}': {_error_preview(fetch)}",
                    fetch.exit_code,
                )
            fetched = run_git(request, dest, ["checkout", "--force", "FETCH_HEAD"], runtime)
            if fetched.exit_code != 0:
                raise ProcessFailedError(
                    f"git-sync checkout FETCH_HEAD failed for ref '{request.ref}': {_error_preview(fetched)}",
                    fetched.exit_code,
                )
    elif not cloned:
        run_git(request, dest, ["pull", "--ff-only"], runtime)

    if request.submodules:
        _update_submodules(request, runtime)

    display = run_git(request, dest, ["rev-parse", "--abbrev-ref", "HEAD"], runtime)
    resolved_ref = display.stdout.strip() if display.exit_code == 0 else ""
    if not resolved_ref or resolved_ref == "HEAD":
        short = run_git(request, dest, ["rev-parse", "--short", "HEAD"], runtime)
        resolved_ref = short.stdout.strip() if short.exit_code == 0 else ""

    head = run_git(request, dest, ["rev-parse", "HEAD"], runtime)
    commit = head.stdout.strip() if head.exit_code == 0 else ""
    return GitSyncOutcome(request=request, resolved_ref=resolved_ref, commit=commit)


def _configure_sparse_checkout(request: GitSyncRequest, runtime: TaskRuntime) -> None:
    dest = request.destination
    init = run_git(request, dest, ["sparse-checkout", "init", "--cone"], runtime)
    if init.exit_code != 0:
        init = run_git(request, dest, ["sparse-checkout", "init"], runtime)
        if init.exit_code != 0:
            raise ProcessFailedError(f"git-sync sparse-checkout init failed: {_error_preview(init)}", init.exit_code)

    applied = run_git(request, dest, ["sparse-checkout", "set", *request.sparse_patterns], runtime)
    if applied.exit_code != 0:
        raise ProcessFailedError(f"git-sync sparse-checkout set failed: {_error_preview(applied)}", applied.exit_code)


def _update_submodules(request: GitSyncRequest, runtime: TaskRuntime) -> None:
    args = ["submodule", "update", "--init"]
    if request.submodules_recursive:
        args.append("--recursive")
    if request.submodule_depth > 0:
        args += ["--depth", str(request.submodule_depth)]

    result = run_git(request, request.destination, args, runtime)
    if result.exit_code != 0:
        # local file:// submodules are blocked by default since git 2.38
        result = run_git(request, request.destination, ["-c", "protocol.file.allow=always", *args], runtime)
    if result.exit_code != 0:
        raise ProcessFailedError(f"git-sync submodule update failed: {_error_preview(result)}", result.exit_code)


def load_lock(path: str) -> dict[str, dict[str, Any]]:
    """Lock entries keyed by absolute destination path."""
    if not os.path.isfile(path):
        raise PreconditionError(f"git-sync verify mode requires lock file: {path}")
    try:
        with open(path, encoding="utf-8") as f:
            document = json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"git-sync lock file is invalid: {path}") from e

    entries = document.get("entries") if isinstance(document, dict) else None
    if not isinstance(entries, list):
        raise ConfigurationError(f"git-sync lock file is invalid: {path}")

    locked: dict[str, dict[str, Any]] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        destination = entry.get("destination")
        if isinstance(destination, str) and destination.strip():
            locked[os.path.abspath(destination)] = entry
    return locked


def apply_lock(requests: list[GitSyncRequest], locked: dict[str, dict[str, Any]]) -> None:
    """Pin each request to its locked commit, rejecting conflicting refs."""
    for i, request in enumerate(requests):
        entry = locked.get(os.path.abspath(request.destination))
        if entry is None:
            raise ConfigurationError(
                f"git-sync verify mode: repos[{i}] is missing lock entry for destination '{request.destination}'."
            )
        commit = str(entry.get("commit") or "").strip()
        if not commit:
            continue
        if request.ref is None:
            request.ref = commit
        elif request.ref != commit:
            raise ConfigurationError(
                f"git-sync verify mode: repos[{i}] requested ref '{request.ref}' does not match lock commit '{commit}'."
            )


def check_lock(outcomes: list[GitSyncOutcome], locked: dict[str, dict[str, Any]]) -> None:
    for i, outcome in enumerate(outcomes):
        entry = locked.get(os.path.abspath(outcome.request.destination)) or {}
        commit = str(entry.get("commit") or "").strip()
        if commit and outcome.commit.lower() != commit.lower():
            raise ProcessFailedError(
                f"git-sync verify mode: repos[{i}] resolved commit '{outcome.commit}' does not match lock commit '{commit}'.",
                0,
            )


def run_git_sync(step: PipelineStep, context: ExecutionContext, runtime: TaskRuntime) -> StepResult:
    options = StepOptions(step.options)
    base_dir = os.path.abspath(str(context.base_dir))

    warning = None
    if has_inline_token(options):
        warning = (
            f"{SECURITY_CODE} git-sync detected inline 'token' value in pipeline configuration. "
            "Prefer tokenEnv + CI secrets."
        )
        logger.warning(warning)

    requests = parse_requests(options, base_dir, runtime)

    lock_mode = normalize_lock_mode(options.string("lockMode"))
    lock_path = None
    locked: dict[str, dict[str, Any]] = {}
    if lock_mode != "off":
        lock_path = resolve_path(base_dir, options.string("lockPath", "lock") or runtime.path("git_sync_lock"))
    if lock_mode == "verify":
        locked = load_lock(lock_path)
        apply_lock(requests, locked)

    outcomes = []
    for request in requests:
        logger.info("git-sync: {repo} -> {dest}", repo=request.repo, dest=request.destination)
        outcomes.append(sync_repository(request, base_dir, runtime))

    if lock_mode == "verify":
        check_lock(outcomes, locked)

    generated = utc_now()
    if lock_mode == "update":
        write_json(lock_path, {
            "generatedAtUtc": generated,
            "entries": [
                {
                    "repoInput": o.request.repo_input,
                    "repo": o.request.repo,
                    "destination": os.path.abspath(o.request.destination),
                    "commit": o.commit,
                }
                for o in outcomes
            ],
        })

    manifest_value = options.string("manifestPath", "manifest")
    manifest_path = None
    if options.boolean("writeManifest", default=False) or manifest_value:
        manifest_path = resolve_path_within_root(base_dir, manifest_value, runtime.path("git_sync_manifest"))
        write_json(manifest_path, {
            "generatedAtUtc": generated,
            "entries": [
                {
                    "repoInput": o.request.repo_input,
                    "repoBaseUrl": o.request.repo_base_url,
                    "repo": o.request.repo,
                    "destination": os.path.abspath(o.request.destination),
                    "authType": o.request.auth_type,
                    "requestedRef": o.request.ref,
                    "resolvedRef": o.resolved_ref,
                    "resolvedCommit": o.commit,
                }
                for o in outcomes
            ],
        })

    if len(outcomes) == 1:
        only = outcomes[0]
        message = f"git-sync ok: {only.request.repo_input} -> {os.path.abspath(only.request.destination)}"
        if only.resolved_ref:
            message += f" ({only.resolved_ref})"
    else:
        message = f"git-sync ok: synchronized {len(outcomes)} repositories."
    if manifest_path:
        message += f" manifest={manifest_path}"
    if lock_path:
        message += f" lock={lock_path} mode={lock_mode}"
    if warning:
        message += f" warning={SECURITY_CODE}"
    return succeeded(step, message)
