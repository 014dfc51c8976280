"""
Logging configuration for library-sync.

This module sets up the logging system with multiple outputs:
    - Console: Real-time progress with tqdm-compatible formatting
    - log_full.log: Complete log of all events (DEBUG and above)
    - log_errors.log: Only ERROR and CRITICAL level messages
    - sync_events.log: Batch failures and rate-limit pauses, one entry each

The logging system follows the principle: everything to screen is also saved
to file, then filtered into specialized files.

Log File Locations:
    All log files are created in the logs/ subdirectory of the output
    directory specified in config.yaml. Each run gets its own timestamped
    set of files.

Usage:
    from library_sync.core.logger import setup_logging, get_logger

    setup_logging(output_dir)  # Call once at startup
    logger = get_logger(__name__)  # Get logger for each module

    logger.info("Starting sync")
    log_rate_limit_pause(logger, phase="tracks", offset=150, reset_at=reset_at)
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import TextIO

from tqdm import tqdm


# Log file name prefixes (created in output_dir/logs)
LOG_FULL_PREFIX = "log_full"
LOG_ERRORS_PREFIX = "log_errors"
SYNC_EVENTS_PREFIX = "sync_events"

# Log format for file output (detailed with timestamp)
FILE_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Log format for console output (compact, tqdm-friendly)
CONSOLE_LOG_FORMAT = "%(levelname)s: %(message)s"


# ANSI color codes
class Colors:
    """ANSI color codes for terminal output."""
    RESET = "\033[0m"
    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"
    BOLD = "\033[1m"


class ColoredConsoleFormatter(logging.Formatter):
    """
    Custom formatter that adds colors to console output.

    Colors:
        - DEBUG: Blue
        - INFO: Green
        - WARNING: Yellow
        - ERROR: Red
        - CRITICAL: Bold Red
    """

    LEVEL_COLORS = {
        logging.DEBUG: Colors.BLUE,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD + Colors.RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, Colors.WHITE)
        colored_levelname = f"{color}{record.levelname}{Colors.RESET}"
        return f"{colored_levelname}: {record.getMessage()}"


class TqdmLoggingHandler(logging.Handler):
    """
    Logging handler that writes to console without breaking progress bars.

    Uses tqdm.write(), which prints above any active bar instead of
    interleaving with its carriage-return updates.

    Thread Safety:
        tqdm.write() handles its own synchronization.
    """

    def __init__(self, stream: TextIO = sys.stderr) -> None:
        super().__init__()
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            tqdm.write(msg, file=self.stream)
        except Exception:
            self.handleError(record)


class SyncEventHandler(logging.Handler):
    """
    Custom handler that captures sync interruptions for the events file.

    This handler listens for log records carrying sync event information
    and writes them to sync_events.log in a simple, human-readable format:

        [2025-01-06 14:02:11] tracks @ offset 150
        RATE LIMITED until 2025-01-06 14:03:11 UTC

        [2025-01-06 15:40:52] albums @ offset 300
        FAILED: Failed to fetch albums batch: 404 Not Found

    The handler looks for specific extra fields in log records:
        - 'sync_event_kind': "rate_limited" or "failed"
        - 'sync_event_phase': Entity type of the phase
        - 'sync_event_offset': Checkpoint offset at the time of the event
        - 'sync_event_detail': Reset time or error message

    Only records containing these fields are written.

    Attributes:
        report_path: Path to the sync_events.log file.
        report_file: Open file handle (opened by open()).
    """

    def __init__(self, report_path: Path) -> None:
        super().__init__()
        self.report_path = report_path
        self.report_file: TextIO | None = None

    def open(self) -> None:
        """Open the report file for writing (overwrites existing content)."""
        self.report_file = open(self.report_path, "w", encoding="utf-8")

    def emit(self, record: logging.LogRecord) -> None:
        """
        Write sync event info to the report if present in the log record.

        Records without 'sync_event_kind' are ignored.
        """
        if not hasattr(record, "sync_event_kind"):
            return

        if self.report_file is None:
            return

        try:
            kind = getattr(record, "sync_event_kind", "unknown")
            phase = getattr(record, "sync_event_phase", "unknown")
            offset = getattr(record, "sync_event_offset", None)
            detail = getattr(record, "sync_event_detail", "")
            when = datetime.fromtimestamp(record.created).strftime(FILE_DATE_FORMAT)

            if kind == "rate_limited":
                line = f"RATE LIMITED until {detail}"
            else:
                line = f"FAILED: {detail}"

            self.report_file.write(f"[{when}] {phase} @ offset {offset}\n")
            self.report_file.write(f"{line}\n\n")
            self.report_file.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        """Close the report file handle. Safe to call multiple times."""
        if self.report_file is not None:
            try:
                self.report_file.close()
            except Exception:
                pass
            self.report_file = None
        super().close()


class ErrorOnlyFilter(logging.Filter):
    """Filter that only allows ERROR and CRITICAL level records."""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.ERROR


def setup_logging(output_dir: Path, console_level: int = logging.INFO) -> Path:
    """
    Configure the logging system for the application.

    This function should be called ONCE at application startup, after
    the configuration is loaded but before any other operations.

    Args:
        output_dir: Directory where log files will be created.
                    Logs are stored in a 'logs' subdirectory.
        console_level: Minimum level shown on the console.

    Returns:
        Path to the logs directory.

    Behavior:
        1. Create output_dir/logs if it doesn't exist
        2. Generate timestamp for this run's log files
        3. Configure root logger level to DEBUG
        4. Console handler (TqdmLoggingHandler), compact colored format
        5. log_full_{timestamp}.log at DEBUG
        6. log_errors_{timestamp}.log filtered to ERROR+ by ErrorOnlyFilter
        7. sync_events_{timestamp}.log via SyncEventHandler

    Thread Safety:
        This function is NOT thread-safe. Call it once from the main
        thread before starting the sync worker.
    """
    logs_dir = output_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Remove any existing handlers
    root_logger.handlers.clear()

    console_handler = TqdmLoggingHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(ColoredConsoleFormatter())
    root_logger.addHandler(console_handler)

    full_handler = logging.FileHandler(
        logs_dir / f"{LOG_FULL_PREFIX}_{timestamp}.log", mode="w", encoding="utf-8"
    )
    full_handler.setLevel(logging.DEBUG)
    full_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, FILE_DATE_FORMAT))
    root_logger.addHandler(full_handler)

    error_handler = logging.FileHandler(
        logs_dir / f"{LOG_ERRORS_PREFIX}_{timestamp}.log", mode="w", encoding="utf-8"
    )
    error_handler.setLevel(logging.DEBUG)  # Filter handles the level restriction
    error_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT, FILE_DATE_FORMAT))
    error_handler.addFilter(ErrorOnlyFilter())
    root_logger.addHandler(error_handler)

    events_handler = SyncEventHandler(logs_dir / f"{SYNC_EVENTS_PREFIX}_{timestamp}.log")
    events_handler.open()
    root_logger.addHandler(events_handler)

    # spotipy and urllib3 are chatty at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("spotipy").setLevel(logging.WARNING)

    return logs_dir


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: The logger name, typically __name__ of the calling module.

    Returns:
        logging.Logger: A logger instance configured by setup_logging().

    Note:
        Loggers obtained before setup_logging() is called will have no
        handlers and will not produce output.
    """
    return logging.getLogger(name)


def log_batch_failure(
    logger: logging.Logger,
    phase: str,
    offset: int,
    error_message: str
) -> None:
    """
    Log a batch that failed, with the extra fields SyncEventHandler uses.

    Example:
        log_batch_failure(logger, phase="albums", offset=300,
                          error_message="Failed to fetch albums batch: 404")
    """
    logger.error(
        f"{phase.capitalize()} batch failed at offset {offset}: {error_message}",
        extra={
            "sync_event_kind": "failed",
            "sync_event_phase": phase,
            "sync_event_offset": offset,
            "sync_event_detail": error_message,
        }
    )


def log_rate_limit_pause(
    logger: logging.Logger,
    phase: str,
    offset: int,
    reset_at: datetime
) -> None:
    """
    Log a phase pausing for a rate limit, with the extra fields
    SyncEventHandler uses.
    """
    reset_text = reset_at.strftime("%Y-%m-%d %H:%M:%S UTC")
    logger.warning(
        f"Rate limit hit during {phase} sync. Pausing until {reset_text}",
        extra={
            "sync_event_kind": "rate_limited",
            "sync_event_phase": phase,
            "sync_event_offset": offset,
            "sync_event_detail": reset_text,
        }
    )


def shutdown_logging() -> None:
    """
    Properly shut down the logging system.

    Flushes and closes every handler on the root logger, then removes it.
    Typically called in a finally block at application exit.
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        try:
            handler.flush()
            handler.close()
        except Exception:
            pass
        root_logger.removeHandler(handler)
