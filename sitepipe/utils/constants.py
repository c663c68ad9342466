"""Shared paths and names for sitepipe.

Relative paths here are resolved against the pipeline root by callers.
"""

from pathlib import Path

# State directory for caches, reports and logs
STATE_DIR = Path("./.sitepipe")

ERROR_LOG_FILE = STATE_DIR / "error.log"

# Environment variable prefix for runtime config and injected process variables
ENV_PREFIX = "SITEPIPE"

# Default environment variables for GitHub credentials
ENV_GITHUB_TOKEN = "GITHUB_TOKEN"
ENV_GITHUB_REPOSITORY = "GITHUB_REPOSITORY"

HTML_EXTENSIONS = (".html", ".htm")
