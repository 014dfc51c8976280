"""
Core module for library-sync.

This module provides the foundational components used throughout the application:
    - exceptions: Custom exception classes for error handling
    - config: Configuration loading and validation
    - database: Thread-safe SQLite store for the synchronized library
    - logger: Logging system with multiple outputs
    - progress: Rich progress bars (imported directly, not re-exported)

Usage:
    from library_sync.core import (
        Config, load_config,
        Database,
        setup_logging, get_logger,
        LibrarySyncError, ConfigError, DatabaseError
    )
"""

from library_sync.core.config import (
    Config,
    OutputConfig,
    SpotifyConfig,
    SyncConfig,
    load_config,
)
from library_sync.core.database import Database
from library_sync.core.exceptions import (
    ConfigError,
    DatabaseError,
    LibrarySyncError,
    SpotifyError,
    SyncCancelledError,
    SyncError,
)
from library_sync.core.logger import (
    get_logger,
    log_batch_failure,
    log_rate_limit_pause,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    # Config
    "Config",
    "SpotifyConfig",
    "OutputConfig",
    "SyncConfig",
    "load_config",
    # Database
    "Database",
    # Exceptions
    "LibrarySyncError",
    "ConfigError",
    "DatabaseError",
    "SpotifyError",
    "SyncError",
    "SyncCancelledError",
    # Logger
    "setup_logging",
    "get_logger",
    "log_batch_failure",
    "log_rate_limit_pause",
    "shutdown_logging",
]
