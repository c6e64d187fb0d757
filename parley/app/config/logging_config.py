import logging
import os
import sys
from datetime import datetime
from typing import Any, List, Literal

from pydantic import BaseModel, Field

APP_CACHE_NAME = "parley_translator"
CACHE_DIR_ENV = "PARLEY_CACHE_DIR"
LOG_FILE_NAME = "app.log"
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that are too chatty below INFO
_NOISY_LOGGERS = ("websockets", "asyncio")


def get_cache_directory() -> str:
    """Per-user cache directory for run logs, created on first use.

    ``PARLEY_CACHE_DIR`` overrides the location. Otherwise %LOCALAPPDATA% is used
    on Windows and XDG_CACHE_HOME (or ~/.cache) elsewhere.
    """
    override = os.environ.get(CACHE_DIR_ENV)
    if override:
        cache_dir = os.path.abspath(os.path.expanduser(override))
    elif os.name == "nt":
        cache_dir = os.path.join(os.environ.get("LOCALAPPDATA", os.path.expanduser("~")), APP_CACHE_NAME, "cache")
    else:
        cache_dir = os.path.join(os.environ.get("XDG_CACHE_HOME", os.path.expanduser("~/.cache")), APP_CACHE_NAME)

    os.makedirs(cache_dir, exist_ok=True)
    return cache_dir


def get_log_dir_for_run() -> str:
    """Create a YYYYMMDD_HHMMSS log directory for this run under the cache logs folder."""
    run_dir = os.path.join(get_cache_directory(), "logs", datetime.now().strftime("%Y%m%d_%H%M%S"))
    os.makedirs(run_dir, exist_ok=True)
    return run_dir


class LoggingConfigModel(BaseModel):
    """Logging verbosity and output destinations.

    Attributes:
        level: Root log level.
        format: Log message format string in Python logging formatter syntax.
        enable_logs: Log to console and the cache directory. When false, logging is silenced.
    """

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO", description="Root log level")
    format: str = Field(default=DEFAULT_LOG_FORMAT, description="Log record format")
    enable_logs: bool = Field(
        default=True,
        description="When true logs go to console and a per-run file in the cache directory. When false nothing is logged.",
    )


def setup_logging(config: Any) -> None:
    """Configure root logging once per process start.

    Console output goes to stdout and every run also gets its own ``app.log``
    under the cache directory. Disabled logging installs a NullHandler above
    CRITICAL so library loggers stay quiet too.

    Args:
        config: LoggingConfigModel (or any object with the same attributes).
    """
    if not getattr(config, "enable_logs", False):
        logging.basicConfig(level=logging.CRITICAL + 1, handlers=[logging.NullHandler()], force=True)
        return

    level_name = str(getattr(config, "level", "INFO")).upper()
    level = logging.getLevelName(level_name)
    log_file_path = os.path.join(get_log_dir_for_run(), LOG_FILE_NAME)
    handlers: List[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(log_file_path, encoding="utf-8"),
    ]
    logging.basicConfig(
        level=level, format=getattr(config, "format", DEFAULT_LOG_FORMAT), handlers=handlers, force=True
    )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.INFO, level))

    logging.getLogger(__name__).debug(f"Logging configured: level={level_name}, file={log_file_path}")
