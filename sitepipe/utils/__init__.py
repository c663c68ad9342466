"""sitepipe utilities package."""

from .constants import ENV_PREFIX, ERROR_LOG_FILE, HTML_EXTENSIONS, STATE_DIR
from .error_handler import handle_exceptions
from .exit_codes import ExitCodes
from .logging import logger

__all__ = [
    "STATE_DIR",
    "ERROR_LOG_FILE",
    "ENV_PREFIX",
    "HTML_EXTENSIONS",
    "handle_exceptions",
    "ExitCodes",
    "logger",
]
