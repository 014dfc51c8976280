"""
Exception classes for library-sync.

This module defines all custom exceptions used throughout the application.
Each exception is designed to provide clear, actionable error messages
and to distinguish between the failure modes the sync engine reacts to
differently.

Exception Hierarchy:
    LibrarySyncError (base)
        ConfigError - Configuration file issues
        DatabaseError - Local SQLite store issues (persistence failure)
        SpotifyError - Spotify API issues (rate limit, transient, auth, other)
        SyncError - A sync phase failed and the run was stopped
        SyncCancelledError - The run was cancelled by the caller

Handling Policy:
    - Rate limits and transient Spotify failures are converted into
      BatchSyncResult fields by the fetchers and never reach the caller.
    - DatabaseError propagates immediately: there is no safe way to resume
      when the local store cannot be written.
    - SyncCancelledError is a clean stop, not a failure. The checkpoint
      of the interrupted phase stays at its last persisted offset.
"""


class LibrarySyncError(Exception):
    """
    Base exception for all library-sync errors.

    All custom exceptions in this project inherit from this class,
    allowing callers to catch all library-sync errors with a single
    except clause if desired.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context (e.g., run id, offset).

    Example:
        try:
            orchestrator.start_run(RunKind.FULL)
        except LibrarySyncError as e:
            logger.error(f"Sync failed: {e.message}")
            if e.details:
                logger.debug(f"Details: {e.details}")
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        """
        Initialize the base exception.

        Args:
            message: Human-readable error description that will be shown to the user.
            details: Optional dictionary containing additional context about the error.
                     Common keys include:
                     - 'run_id': Sync run involved in the error
                     - 'phase': Entity type being synced
                     - 'original_error': The underlying exception if wrapping another error
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return the error message for display."""
        return self.message


class ConfigError(LibrarySyncError):
    """
    Raised when there's an issue with the configuration file.

    This is a CRITICAL error that should stop program execution.

    Common causes:
        - config.yaml not found
        - config.yaml has invalid YAML syntax
        - Required fields missing (client_id, client_secret, output directory)
        - Invalid field values (e.g., negative batch size)

    Example:
        raise ConfigError(
            "Missing required field 'client_id' in config.yaml",
            details={'file_path': '/path/to/config.yaml', 'missing_field': 'client_id'}
        )
    """
    pass


class DatabaseError(LibrarySyncError):
    """
    Raised when the local SQLite store cannot be read or written.

    This is a CRITICAL error. The orchestrator does not attempt to resume
    after it: the batch being written is rolled back and its checkpoint is
    not advanced, so a later run re-fetches the same offset.

    Common causes:
        - Database file locked by another process
        - Permission denied or disk full
        - Schema version mismatch
        - A finished sync run being modified

    Example:
        raise DatabaseError(
            "Database version mismatch: expected 1, got 3",
            details={'expected': 1, 'actual': 3}
        )
    """
    pass


class SpotifyError(LibrarySyncError):
    """
    Raised when there's an issue with the Spotify API.

    The flags tell the sync engine how to react:

        is_rate_limit: HTTP 429. Resumable after a wait. retry_after carries
                       the server's Retry-After value in seconds, or None when
                       the header was absent (the engine then assumes up to
                       24 hours).
        is_transient:  Network errors, timeouts and HTTP 5xx. Retried with
                       exponential backoff a bounded number of times.
        is_auth_error: Invalid or expired credentials. CRITICAL.

    Any other SpotifyError (404, 400, parsing failures) fails the batch
    immediately.

    Example:
        raise SpotifyError(
            "Rate limited while fetching saved tracks",
            details={'http_status': 429, 'offset': 150},
            is_rate_limit=True,
            retry_after=30
        )
    """

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        is_auth_error: bool = False,
        is_rate_limit: bool = False,
        is_transient: bool = False,
        retry_after: int | None = None
    ) -> None:
        """
        Initialize Spotify error with additional flags.

        Args:
            message: Human-readable error description.
            details: Optional dictionary with additional context.
            is_auth_error: Set to True if this is an authentication failure.
            is_rate_limit: Set to True if the API answered HTTP 429.
            is_transient: Set to True for failures worth retrying (5xx, network).
            retry_after: Seconds the server asked us to wait, if it said so.
        """
        super().__init__(message, details)
        self.is_auth_error = is_auth_error
        self.is_rate_limit = is_rate_limit
        self.is_transient = is_transient
        self.retry_after = retry_after


class SyncError(LibrarySyncError):
    """
    Raised by the orchestrator when a phase ends in the failed state.

    The run is marked failed and the phase checkpoint keeps the offset of
    the last batch that was committed, so a resumed run continues there.

    Attributes:
        phase: Entity type of the failed phase ("tracks", "artists", ...).
        offset: Checkpoint offset at which the phase stopped.

    Example:
        raise SyncError(
            "Tracks sync failed: Failed to fetch saved tracks: 404",
            phase="tracks",
            offset=100
        )
    """

    def __init__(
        self,
        message: str,
        details: dict | None = None,
        phase: str | None = None,
        offset: int | None = None
    ) -> None:
        super().__init__(message, details)
        self.phase = phase
        self.offset = offset


class SyncCancelledError(LibrarySyncError):
    """
    Raised when a CancellationToken fires during a sync.

    Raised from any suspension point (rate limiter waits, phase-level
    rate-limit waits) and between batches. The orchestrator marks the run
    cancelled and re-raises so the caller can stop cleanly.
    """
    pass
