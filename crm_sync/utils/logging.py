"""
Logging setup for crm-sync runs.

Console output is short and optionally colored; the daily file under the
configured log directory keeps DEBUG detail and tags every line with the
sync job it belongs to, so one run can be grepped out of a busy day:

    2024-03-15 02:00:01 INFO [job=3f1c...] crm_sync.sync.engine: Page 4: ...

Environment overrides:
    CRM_SYNC_DEBUG=1            force DEBUG
    CRM_SYNC_LOG_LEVEL=WARNING  console level
    CRM_SYNC_LOG_FILE=path      explicit file, or 'none' to disable
"""

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Optional

PACKAGE_LOGGER = "crm_sync"

CONSOLE_FORMAT = "%(levelname)s: %(message)s"
VERBOSE_CONSOLE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
FILE_FORMAT = (
    "%(asctime)s %(levelname)s [job=%(job_id)s] %(name)s "
    "(%(filename)s:%(lineno)d): %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ENV_DEBUG = "CRM_SYNC_DEBUG"
ENV_LOG_LEVEL = "CRM_SYNC_LOG_LEVEL"
ENV_LOG_FILE = "CRM_SYNC_LOG_FILE"

# Daily files are crm_sync_YYYYMMDD.log
LOG_FILE_PREFIX = "crm_sync_"

NO_JOB = "-"

_current_job_id: ContextVar[str] = ContextVar("crm_sync_job_id", default=NO_JOB)


class JobIdFilter(logging.Filter):
    """Stamp each record with the id of the sync job being run."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.job_id = _current_job_id.get()
        return True


@contextmanager
def bind_job_id(job_id: str) -> Iterator[None]:
    """Tag every log line emitted inside the block with job_id."""
    token = _current_job_id.set(job_id)
    try:
        yield
    finally:
        _current_job_id.reset(token)


class ColoredFormatter(logging.Formatter):
    """Colors the level name on terminals that support ANSI escapes."""

    LEVEL_COLORS = {
        "DEBUG": "\033[2m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and _stderr_supports_color()

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname) if self.use_colors else None
        if not color:
            return super().format(record)

        # Other handlers must still see the plain level name
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(colored)


def _stderr_supports_color() -> bool:
    if not getattr(sys.stderr, "isatty", None) or not sys.stderr.isatty():
        return False
    # https://no-color.org/
    if os.environ.get("NO_COLOR"):
        return False
    return os.environ.get("TERM", "") != "dumb"


def resolve_log_level(verbose: bool = False) -> int:
    """
    Console level from the --verbose flag and the environment.

    Unknown CRM_SYNC_LOG_LEVEL values fall back to INFO.
    """
    if verbose or os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG

    name = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()
    if name == "WARN":
        name = "WARNING"
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def daily_log_path(log_dir: Path) -> Optional[Path]:
    """
    Today's log file in log_dir, the CRM_SYNC_LOG_FILE override, or None
    when that override disables file logging.
    """
    override = os.environ.get(ENV_LOG_FILE)
    if override is not None:
        if override.lower() in ("", "none", "disabled"):
            return None
        return Path(override).expanduser()

    return log_dir / f"{LOG_FILE_PREFIX}{datetime.now():%Y%m%d}.log"


def setup_logging(
    log_dir: Optional[Path] = None,
    verbose: bool = False,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure the crm_sync logger hierarchy for one CLI invocation.

    Replaces any handlers from an earlier call. Without a log_dir (or with
    file logging disabled through the environment) only the console handler
    is installed. A log file that cannot be opened is reported and skipped.

    Args:
        log_dir: Directory holding the daily log files
        verbose: DEBUG console output with timestamps and logger names
        use_colors: Color the console level names when the terminal allows

    Returns:
        The package logger
    """
    level = resolve_log_level(verbose)

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    logger.propagate = False

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(
        ColoredFormatter(
            VERBOSE_CONSOLE_FORMAT if verbose else CONSOLE_FORMAT,
            DATE_FORMAT,
            use_colors=use_colors,
        )
    )
    logger.addHandler(console)

    file_path = daily_log_path(log_dir) if log_dir is not None else None
    if file_path is None:
        return logger

    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(file_path, encoding="utf-8")
    except OSError as e:
        logger.warning(f"File logging disabled, cannot open {file_path}: {e}")
        return logger

    file_handler.setLevel(logging.DEBUG)
    file_handler.addFilter(JobIdFilter())
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, DATE_FORMAT))
    logger.addHandler(file_handler)
    logger.debug(f"Logging to {file_path}")

    return logger


def cleanup_old_logs(log_dir: Path, keep_count: int) -> int:
    """
    Delete all but the keep_count newest daily log files in log_dir.

    A keep_count of 0 keeps everything. Files without the crm_sync_ prefix
    are never touched.

    Returns:
        Number of files deleted
    """
    if keep_count <= 0 or not log_dir.is_dir():
        return 0

    daily_logs = sorted(
        log_dir.glob(f"{LOG_FILE_PREFIX}*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )

    deleted = 0
    for path in daily_logs[keep_count:]:
        try:
            path.unlink()
        except OSError as e:
            logging.getLogger(__name__).debug(f"Could not delete {path}: {e}")
            continue
        deleted += 1
    return deleted
