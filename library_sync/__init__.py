"""
library-sync: Replicate a Spotify library into a local SQLite database.

This package keeps a local copy of a user's Spotify library (saved tracks,
the artists and albums they reference, and playlists) and is built to
survive the Web API's limits: pagination, a request-rate ceiling, and
HTTP 429 responses that can last up to a day.

Architecture:
    A sync run goes through 4 phases, strictly in order:

    TRACKS (sync/fetchers.py): Page through saved tracks
        - Store each track
        - Insert a stub row for every artist and album not seen before

    ARTISTS (sync/fetchers.py): Enrich artists
        - Fetch full details for stubs and stale rows, 50 per request

    ALBUMS (sync/fetchers.py): Enrich albums
        - Fetch full details for stubs and stale rows, 20 per request

    PLAYLISTS (sync/fetchers.py): Sync playlists
        - Re-read members only when the snapshot_id changed

    Every batch ends with a checkpoint. Rate limits pause the phase until
    the reset time; failures and Ctrl-C stop the run, and the next run
    resumes from the last checkpoint.

Modules:
    core/       - Configuration, database, logging, exceptions, progress bars
    spotify/    - Spotify API client and payload models
    sync/       - Rate limiter, fetchers, checkpoints, orchestrator, status
    cli.py      - Command-line interface

Usage:
    Command Line:
        library-sync
        library-sync --full
        library-sync --status

    Python API:
        from library_sync.core import load_config, Database, setup_logging
        from library_sync.spotify import SpotifyClient
        from library_sync.sync import SyncOrchestrator, RunKind, CancellationToken

        config = load_config()
        setup_logging(config.output.directory)
        database = Database(config.output.database_path)

        SpotifyClient.init(config.spotify.client_id, config.spotify.client_secret)

        orchestrator = SyncOrchestrator(SpotifyClient(), database, config.sync)
        run_id = orchestrator.start_run(RunKind.FULL, cancel=CancellationToken())

Dependencies:
    - spotipy: Spotify API client
    - requests: HTTP session handed to spotipy
    - click: CLI framework
    - rich-click: CLI colors
    - rich: Progress bars
    - tqdm: Console logging that coexists with progress output
    - pyyaml: Configuration file parsing
    - python-dotenv: Credentials from .env
"""

__version__ = "0.1.0"
__author__ = "library-sync"
__license__ = "MIT"

# Convenience imports for common usage
from library_sync.core import (
    Config,
    ConfigError,
    Database,
    DatabaseError,
    LibrarySyncError,
    SpotifyError,
    SyncCancelledError,
    SyncError,
    get_logger,
    load_config,
    setup_logging,
)

__all__ = [
    # Version
    "__version__",
    # Core
    "Config",
    "load_config",
    "Database",
    "setup_logging",
    "get_logger",
    # Exceptions
    "LibrarySyncError",
    "ConfigError",
    "DatabaseError",
    "SpotifyError",
    "SyncError",
    "SyncCancelledError",
]
