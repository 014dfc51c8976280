"""
Command-line interface for library-sync.

This module implements the CLI using Click, providing the commands to
replicate a Spotify library into the local SQLite store, resume
interrupted runs and inspect their progress.
rich-click is used for the output colors.

Commands:
    library-sync                        Sync (resumes an unfinished run if any)
    library-sync --full                 Full sync of every saved track
    library-sync --incremental          Only the newest saved tracks
    library-sync --no-resume            Start a new run even if one can be resumed
    library-sync --status               Show progress of the current/last run
    library-sync --history              List recent runs

Options:
    --config <path>                     Use another config.yaml
    --no-progress                       Disable progress bars

Run Kind:
    Without --full/--incremental the kind is chosen automatically: full
    until one full run has succeeded, incremental afterwards.

Exit Codes:
    0    Success
    1    Configuration error (or unexpected error)
    2    Database error
    3    Spotify error (authentication, API)
    4    Other library-sync error
    5    A sync phase failed (resume later with the same command)
    130  Cancelled with Ctrl-C (resume later with the same command)
"""

import sys
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from pathlib import Path
from typing import Callable, Optional

import rich_click as click

# Configure rich-click for better help formatting
click.rich_click.USE_RICH_MARKUP = True
click.rich_click.SHOW_ARGUMENTS = True
click.rich_click.GROUP_ARGUMENTS_OPTIONS = True
click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
click.rich_click.ERRORS_SUGGESTION = ""
click.rich_click.MAX_WIDTH = 100
click.rich_click.OPTION_GROUPS = {
    "cli": [
        {
            "name": "Run Kind",
            "options": ["--full", "--incremental", "--resume"],
        },
        {
            "name": "Inspection",
            "options": ["--status", "--history"],
        },
        {
            "name": "Advanced Options",
            "options": ["--config", "--no-progress"],
        },
        {
            "name": "Info",
            "options": ["--version", "--help"],
        },
    ],
}

from library_sync import __version__
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
    shutdown_logging,
)
from library_sync.core.progress import RichProgressSink
from library_sync.spotify import SpotifyClient
from library_sync.sync import (
    CancellationToken,
    RunKind,
    RunStatus,
    RunStatusSummary,
    SyncOrchestrator,
    active_run_status,
    current_status,
)

logger = get_logger(__name__)

# Seconds between checks for Ctrl-C while the worker runs
_WORKER_POLL_SECONDS = 0.5


@click.group(invoke_without_command=True)
@click.option(
    "--full",
    is_flag=True,
    help="Full sync: page through every saved track"
)
@click.option(
    "--incremental",
    is_flag=True,
    help="Incremental sync: stop at the first page without new tracks"
)
@click.option(
    "--resume/--no-resume",
    default=True,
    show_default=True,
    help="Resume the newest unfinished run instead of starting a new one"
)
@click.option(
    "--status",
    is_flag=True,
    help="Show progress of the active (or most recent) run and exit"
)
@click.option(
    "--history",
    is_flag=True,
    help="List recent runs and exit"
)
@click.option(
    "--config", "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    metavar="<config.yaml>",
    help="Configuration file (default: ./config.yaml)"
)
@click.option(
    "--no-progress",
    is_flag=True,
    help="Disable progress bars (log lines only)"
)
@click.option(
    "--version",
    is_flag=True,
    help="Show version and exit."
)
@click.pass_context
def cli(
    ctx: click.Context,
    full: bool,
    incremental: bool,
    resume: bool,
    status: bool,
    history: bool,
    config_path: Optional[Path],
    no_progress: bool,
    version: bool
) -> None:
    """
    library-sync: Replicate your Spotify library into a local SQLite database.

    Syncs saved tracks, then fills in artist and album details, then
    playlists. Progress is checkpointed after every batch: if Spotify
    rate-limits the sync it waits and continues, and an interrupted run
    picks up where it stopped the next time you run the command.

    \b
    BASIC USAGE:
        library-sync                 # Sync (resume if interrupted)
        library-sync --full          # Force a full sync
        library-sync --status        # Where is the current run?
    """
    if version:
        click.echo(f"library-sync {__version__}")
        ctx.exit(0)

    if full and incremental:
        raise click.UsageError("Cannot use both --full and --incremental")

    if status and history:
        raise click.UsageError("Cannot use both --status and --history")

    if (status or history) and (full or incremental):
        raise click.UsageError("--status and --history cannot be combined with a run kind")

    kind = None
    if full:
        kind = RunKind.FULL
    elif incremental:
        kind = RunKind.INCREMENTAL

    ctx.ensure_object(dict)
    ctx.obj["kind"] = kind
    ctx.obj["resume"] = resume
    ctx.obj["status"] = status
    ctx.obj["history"] = history
    ctx.obj["config_path"] = config_path
    ctx.obj["progress"] = not no_progress

    _run(ctx.obj)


def _run(options: dict) -> None:
    """
    Execute the requested action based on CLI options.

    Args:
        options: Dictionary with CLI options from click context.

    Raises:
        SystemExit: On fatal errors (with appropriate exit code).
    """
    database: Database | None = None

    try:
        config = _load_configuration(options["config_path"])
        config.output.directory.mkdir(parents=True, exist_ok=True)

        if options["status"] or options["history"]:
            database = _initialize_database(config)
            if options["status"]:
                _print_status(database)
            else:
                _print_history(database)
            return

        setup_logging(config.output.directory)
        logger.info(f"library-sync {__version__} starting")

        database = _initialize_database(config)
        _initialize_spotify(config)

        run_id = _run_sync(
            database=database,
            config=config,
            kind=options["kind"],
            resume=options["resume"],
            show_progress=options["progress"]
        )

        _print_final_stats(database, run_id)
        logger.info("library-sync completed successfully")

    except ConfigError as e:
        click.echo(f"Configuration error: {e.message}", err=True)
        sys.exit(1)

    except DatabaseError as e:
        click.echo(f"Database error: {e.message}", err=True)
        logger.error(f"Database error: {e.message}", exc_info=True)
        sys.exit(2)

    except SpotifyError as e:
        click.echo(f"Spotify error: {e.message}", err=True)
        if e.is_auth_error:
            click.echo("Check your client_id and client_secret in config.yaml", err=True)
        logger.error(f"Spotify error: {e.message}", exc_info=True)
        sys.exit(3)

    except SyncCancelledError:
        click.echo("\nSync cancelled. Run the same command again to resume.", err=True)
        logger.info("Cancelled by user")
        sys.exit(130)

    except SyncError as e:
        click.echo(f"Sync failed: {e.message}", err=True)
        click.echo("Run the same command again to resume from the last checkpoint.", err=True)
        sys.exit(5)

    except LibrarySyncError as e:
        click.echo(f"Error: {e.message}", err=True)
        logger.error(f"Error: {e.message}", exc_info=True)
        sys.exit(4)

    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        logger.info("Interrupted by user")
        sys.exit(130)

    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        logger.exception("Unexpected error")
        sys.exit(1)

    finally:
        if database is not None:
            database.close()
        shutdown_logging()


def _load_configuration(config_path: Optional[Path]) -> Config:
    """
    Raises:
        ConfigError: If configuration is invalid or missing.
    """
    return load_config(config_path)


def _initialize_database(config: Config) -> Database:
    """
    Raises:
        DatabaseError: If database cannot be initialized.
    """
    return Database(config.output.database_path)


def _initialize_spotify(config: Config) -> None:
    """
    Initialize the Spotify client singleton.

    The first run opens the browser for the OAuth consent screen; the
    token is cached afterwards.

    Raises:
        SpotifyError: If authentication fails.
    """
    cache_path = config.spotify.cache_path or (config.output.directory / ".spotify_token")
    SpotifyClient.init(
        client_id=config.spotify.client_id,
        client_secret=config.spotify.client_secret,
        redirect_uri=config.spotify.redirect_uri,
        cache_path=cache_path
    )


def _run_sync(
    database: Database,
    config: Config,
    kind: Optional[RunKind],
    resume: bool,
    show_progress: bool
) -> int:
    """
    Start or resume a run on a worker thread.

    Returns:
        Id of the run that completed.

    Behavior:
        1. Pick the run to resume (newest unfinished run of the kind), if
           resuming is enabled
        2. Refuse to start a new run while another is in progress
        3. Choose the kind when not given: full until a full run succeeded
        4. Drive the orchestrator on a worker thread; Ctrl-C cancels it
           through the CancellationToken
    """
    orchestrator = SyncOrchestrator(SpotifyClient(), database, config.sync)
    token = CancellationToken()

    resumable = orchestrator.find_resumable_run(kind) if resume else None

    if resumable is None:
        in_progress = database.get_latest_run(statuses=[RunStatus.IN_PROGRESS.value])
        if in_progress is not None:
            message = f"Run {in_progress['id']} ({in_progress['kind']}) is still in progress."
            if not resume:
                message += " Use --resume to continue it."
            elif kind is not None and kind.value != in_progress["kind"]:
                message += f" Run library-sync without --{kind.value} to continue it."
            raise SyncError(
                message,
                details={"run_id": in_progress["id"], "kind": in_progress["kind"]}
            )

    if kind is None and resumable is None:
        last_full = database.get_latest_run(
            statuses=[RunStatus.SUCCESS.value], kind=RunKind.FULL.value
        )
        kind = RunKind.INCREMENTAL if last_full is not None else RunKind.FULL

    logger.info("=" * 60)
    if resumable is not None:
        logger.info(f"RESUMING {resumable['kind'].upper()} SYNC (run {resumable['id']})")
    else:
        logger.info(f"{kind.value.upper()} SYNC")
    logger.info("=" * 60)

    last_sync = orchestrator.last_sync_date()
    if last_sync is not None:
        logger.info(f"Last successful sync: {last_sync.strftime('%Y-%m-%d %H:%M:%S UTC')}")

    sink = RichProgressSink() if show_progress else None
    try:
        if resumable is not None:
            return _run_in_worker(
                lambda: orchestrator.resume_run(resumable["id"], cancel=token, progress=sink),
                token
            )
        return _run_in_worker(
            lambda: orchestrator.start_run(kind, cancel=token, progress=sink),
            token
        )
    finally:
        if sink is not None:
            sink.close()


def _run_in_worker(work: Callable[[], int], token: CancellationToken) -> int:
    """
    Run `work` on a single worker thread, turning Ctrl-C into a cancel.

    The main thread only waits, so KeyboardInterrupt lands here instead of
    in the middle of a database write. The worker then stops at its next
    cancellation point and the run is recorded as cancelled.
    """
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="sync") as executor:
        future = executor.submit(work)
        while True:
            try:
                return future.result(timeout=_WORKER_POLL_SECONDS)
            except FutureTimeoutError:
                continue
            except KeyboardInterrupt:
                if not token.is_cancelled:
                    click.echo("\nCancelling after the current batch...", err=True)
                    logger.info("Cancellation requested")
                    token.cancel()


def _print_status(database: Database) -> None:
    """Print the active run, or the most recent one when nothing is running."""
    summary = active_run_status(database)
    if summary is None:
        latest = database.get_latest_run()
        if latest is None:
            click.echo("No sync runs yet.")
            return
        summary = current_status(database, latest["id"])

    _echo_summary(summary)


def _echo_summary(summary: RunStatusSummary) -> None:
    click.echo(f"Run {summary.run_id} ({summary.kind}): {summary.status}")
    if summary.resumed_from is not None:
        click.echo(f"  Resumed from run {summary.resumed_from}")
    if summary.started_at is not None:
        click.echo(f"  Started:   {summary.started_at.strftime('%Y-%m-%d %H:%M:%S UTC')}")
    if summary.completed_at is not None:
        click.echo(f"  Finished:  {summary.completed_at.strftime('%Y-%m-%d %H:%M:%S UTC')}")
    if summary.error_message:
        click.echo(f"  Error:     {summary.error_message}")

    for phase in summary.phases:
        total = "?" if phase.total_items is None else phase.total_items
        line = (
            f"  {phase.entity_type:<10} {phase.status:<12} "
            f"{phase.current_offset}/{total} ({phase.percent_complete:.0f}%)"
        )
        if phase.seconds_until_reset is not None:
            line += f"  resumes in {int(phase.seconds_until_reset // 60)} min"
        elif phase.last_error and phase.status != "success":
            line += f"  {phase.last_error}"
        click.echo(line)


def _print_history(database: Database) -> None:
    runs = database.list_runs(limit=20)
    if not runs:
        click.echo("No sync runs yet.")
        return

    click.echo(f"{'ID':>5}  {'KIND':<12} {'STATUS':<12} {'STARTED':<20} {'TRACKS+':>7} {'PLAYLISTS':>9}")
    for run in runs:
        started = run["started_at"][:19].replace("T", " ")
        click.echo(
            f"{run['id']:>5}  {run['kind']:<12} {run['status']:<12} {started:<20} "
            f"{run['tracks_added']:>7} {run['playlists_synced']:>9}"
        )


def _print_final_stats(database: Database, run_id: int) -> None:
    """
    Print final sync statistics.

    Output:
        Run counters followed by the library totals, including how many
        artist and album stubs are still waiting for enrichment.
    """
    run = database.get_run(run_id)
    stats = database.get_library_stats()

    logger.info("=" * 60)
    logger.info("FINAL STATISTICS")
    logger.info("=" * 60)
    if run is not None:
        logger.info(f"Tracks added:      {run['tracks_added']}")
        logger.info(f"Tracks updated:    {run['tracks_updated']}")
        logger.info(f"Artists enriched:  {run['artists_enriched']}")
        logger.info(f"Albums enriched:   {run['albums_enriched']}")
        logger.info(f"Playlists synced:  {run['playlists_synced']}")
    logger.info("-" * 60)
    logger.info(f"Library tracks:    {stats['tracks']}")
    logger.info(f"Artists:           {stats['artists']} ({stats['artist_stubs']} pending)")
    logger.info(f"Albums:            {stats['albums']} ({stats['album_stubs']} pending)")
    logger.info(f"Playlists:         {stats['playlists']}")
    logger.info(f"Playlist links:    {stats['playlist_links']}")
    missing = database.get_missing_playlist_track_ids()
    if missing:
        logger.info(f"Playlist tracks not in library: {len(missing)}")
    logger.info("=" * 60)


def main() -> None:
    """
    Entry point for the CLI.

    This function is called when running `library-sync` from the command
    line. It invokes the Click CLI group.
    """
    cli()


if __name__ == "__main__":
    main()
