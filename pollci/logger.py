"""
Logging module for pollci.

Provides a simple interface to configure and retrieve loggers using Python's
built-in logging module.
"""

from __future__ import annotations

import contextvars
import logging
import os
import sys
from collections.abc import Iterable
from datetime import datetime
from logging.handlers import RotatingFileHandler

# Context variable for pull request tracking (task-local under asyncio)
_pr_context: contextvars.ContextVar[str] = contextvars.ContextVar(
    "pr_context", default="pollci-worker"
)


def set_pr_context(repo: str | None = None, pr_number: int | None = None) -> None:
    """Set the current pull request context for logging.

    Args:
        repo: Repository in 'owner/repo' format
        pr_number: Pull request number
    """
    if repo and pr_number is not None:
        _pr_context.set(f"{repo}#{pr_number}")
    else:
        _pr_context.set("pollci-worker")


def clear_pr_context() -> None:
    """Clear the pull request context, resetting to pollci-worker."""
    _pr_context.set("pollci-worker")


def get_pr_context() -> str:
    """Get the current pull request context string."""
    return _pr_context.get()


# ANSI color codes
class Colors:
    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    GRAY = "\033[90m"
    ORANGE = "\033[38;5;208m"


# Semantic color categories for INFO logs
# Keywords that indicate specific event types
SEMANTIC_COLORS = {
    # Starting/Initializing - Green
    "starting": ("green", ">>>"),
    "polling": ("green", ">>>"),
    "fetching": ("green", ">>>"),
    "creating": ("green", ">>>"),
    "running": ("green", ">>>"),
    # Completion/Success - Green
    "succeeded": ("green", "✓"),
    "success": ("green", "✓"),
    "stopped": ("green", "✓"),
    # Cleanup - Blue
    "cleanup": ("blue", "🧹"),
    "deleted": ("blue", "🧹"),
    # Restart - Magenta
    "restart": ("magenta", "↺"),
    # Status changes - Yellow
    "status ->": ("yellow", "→"),
    "superseded": ("yellow", "→"),
    # Skipping - Gray
    "skipping": ("gray", "⊘"),
    "looks active": ("gray", "⊘"),
    "aborted": ("gray", "⊘"),
    # Job phases - Orange
    "looks stuck": ("orange", "⚙"),
    "publishing": ("orange", "⚙"),
}


class DateRotatingFileHandler(RotatingFileHandler):
    """RotatingFileHandler that adds date (yyyy-mm-dd) to backup filenames."""

    def rotation_filename(self, default_name: str) -> str:
        """Generate backup filename with date."""
        # default_name is like "pollci.log.1"
        # We want "pollci.2024-01-15.log.1"
        base = self.baseFilename
        dirname = os.path.dirname(base)
        basename = os.path.basename(base)

        suffix = default_name[len(base) :]
        date_str = datetime.now().strftime("%Y-%m-%d")

        if "." in basename:
            name_part, ext = basename.rsplit(".", 1)
            new_name = f"{name_part}.{date_str}.{ext}{suffix}"
        else:
            new_name = f"{basename}.{date_str}{suffix}"

        return os.path.join(dirname, new_name)


class MaskingFilter(logging.Filter):
    """Filter that masks secrets in log records.

    Tokens end up in log lines more often than one would like: git errors
    echo the credentialed remote URL, and request exceptions echo headers.
    Every configured secret is replaced with ``***`` before any handler
    writes the record.
    """

    MASK = "***"

    def __init__(self, secrets: Iterable[str | None]) -> None:
        """Initialize MaskingFilter.

        Args:
            secrets: Secret values to mask. Empty and None values are ignored.
        """
        super().__init__()
        self.secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def filter(self, record: logging.LogRecord) -> bool:
        """Apply masking to the log record.

        Args:
            record: The log record to process.

        Returns:
            True to allow all records through (masking is applied in-place).
        """
        if not self.secrets:
            return True

        if hasattr(record, "pr_context"):
            record.pr_context = self.mask_value(str(record.pr_context))

        if record.msg:
            record.msg = self.mask_value(str(record.msg))

        if record.args:
            if isinstance(record.args, dict):
                record.args = {
                    k: self.mask_value(v) if isinstance(v, str) else v
                    for k, v in record.args.items()
                }
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    self.mask_value(arg) if isinstance(arg, str) else arg for arg in record.args
                )

        return True

    def mask_value(self, value: str) -> str:
        """Replace every configured secret in value with the mask."""
        for secret in self.secrets:
            value = value.replace(secret, self.MASK)
        return value


class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds colors based on log level and semantic content."""

    COLOR_MAP = {
        "green": Colors.GREEN,
        "blue": Colors.BLUE,
        "magenta": Colors.MAGENTA,
        "yellow": Colors.YELLOW,
        "gray": Colors.GRAY,
        "red": Colors.RED,
        "orange": Colors.ORANGE,
    }

    def _get_semantic_color(self, message: str) -> tuple[str, str] | None:
        """
        Determine semantic color based on message content.

        Returns tuple of (color_name, prefix_symbol) or None if no match.
        """
        message_lower = message.lower()
        for keyword, (color, prefix) in SEMANTIC_COLORS.items():
            if keyword in message_lower:
                return (color, prefix)
        return None

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)

        if record.levelno >= logging.ERROR:
            return f"{Colors.RED}{message}{Colors.RESET}"
        elif record.levelno >= logging.WARNING:
            return f"{Colors.YELLOW}{message}{Colors.RESET}"

        if record.levelno == logging.INFO:
            semantic = self._get_semantic_color(record.getMessage())
            if semantic:
                color_name, prefix = semantic
                color_code = self.COLOR_MAP.get(color_name, "")
                return f"{color_code}{prefix} {message}{Colors.RESET}"

        return message


class ContextAwareFormatter(ColoredFormatter):
    """Formatter that injects the pull request context from contextvars."""

    def __init__(self, fmt: str | None = None, masking_filter: MaskingFilter | None = None) -> None:
        super().__init__(fmt)
        self.masking_filter = masking_filter

    def format(self, record: logging.LogRecord) -> str:
        pr_context = get_pr_context()
        if self.masking_filter:
            pr_context = self.masking_filter.mask_value(pr_context)
        record.pr_context = pr_context
        return super().format(record)


class PlainContextAwareFormatter(logging.Formatter):
    """Plain formatter (no colors) that injects the pull request context."""

    def __init__(self, fmt: str | None = None, masking_filter: MaskingFilter | None = None) -> None:
        super().__init__(fmt)
        self.masking_filter = masking_filter

    def format(self, record: logging.LogRecord) -> str:
        pr_context = get_pr_context()
        if self.masking_filter:
            pr_context = self.masking_filter.mask_value(pr_context)
        record.pr_context = pr_context
        return super().format(record)


LOG_FORMAT = "[%(asctime)s] %(levelname)s %(pr_context)s %(name)s: %(message)s"


def setup_logging(
    log_file: str | None = None,
    log_size: int = 10 * 1024 * 1024,
    log_backups: int = 5,
    daemon_mode: bool = False,
    secrets: Iterable[str | None] = (),
) -> MaskingFilter:
    """
    Configure the root logger with a standard format and level.

    The log level can be configured via the LOG_LEVEL environment variable.
    Default level is INFO.

    Args:
        log_file: Path to log file. Required when daemon_mode=True.
        log_size: Max size in bytes before rotation. Default: 10MB
        log_backups: Number of backup files to keep. Default: 5
        daemon_mode: If True, log to file only (no stdout/stderr).
        secrets: Values to mask in every log record (tokens, keys).

    Returns:
        The MaskingFilter installed on every handler, so callers can mask
        text that leaves the process by other routes (status descriptions).
    """
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    masking_filter = MaskingFilter(secrets)
    formatter = ContextAwareFormatter(LOG_FORMAT, masking_filter=masking_filter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    if not daemon_mode:
        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(logging.DEBUG)
        stdout_handler.addFilter(lambda record: record.levelno < logging.WARNING)
        stdout_handler.setFormatter(formatter)
        stdout_handler.addFilter(masking_filter)

        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.WARNING)
        stderr_handler.setFormatter(formatter)
        stderr_handler.addFilter(masking_filter)

        root_logger.addHandler(stdout_handler)
        root_logger.addHandler(stderr_handler)

    if log_file:
        try:
            plain_formatter = PlainContextAwareFormatter(LOG_FORMAT, masking_filter=masking_filter)

            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)

            file_handler = DateRotatingFileHandler(
                log_file,
                maxBytes=log_size,
                backupCount=log_backups,
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(plain_formatter)
            file_handler.addFilter(masking_filter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            print(f"[logger] Failed to create file handler: {e}", file=sys.stderr)

    return masking_filter


def get_logger(name: str) -> logging.Logger:
    """
    Get a configured logger with the specified name.

    Args:
        name: The name for the logger, typically __name__ of the calling module

    Returns:
        A configured Logger instance
    """
    return logging.getLogger(name)


def is_debug_mode() -> bool:
    """Check if logging is set to DEBUG level."""
    return logging.getLogger().level <= logging.DEBUG


def log_message(logger: logging.Logger, label: str, content: str) -> None:
    """Log message content - full in debug mode, truncated otherwise.

    Args:
        logger: The logger instance to use
        label: A descriptive label for the log entry
        content: The content to log (will be truncated if not in debug mode)
    """
    if is_debug_mode():
        logger.debug(f"{label}:\n{content}")
    else:
        logger.debug(f"{label}: {content[:100]}...")
