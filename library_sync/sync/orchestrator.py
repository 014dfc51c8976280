"""
Sync orchestrator: drives a run through its phases.

A run syncs tracks, then artists, then albums, then playlists. Each phase
is a loop over fetch_batch() calls that starts at the phase checkpoint's
offset and persists the checkpoint after every committed batch:

    rate limited  ->  checkpoint rate_limited, wait until the reset time,
                      back to in_progress, retry the same offset
    failed        ->  checkpoint failed, run failed, SyncError raised
    success       ->  offset advanced, counts added to the run, phase
                      done when the batch says nothing is left

Runs:
    start_run()   creates a run and drives it from the first phase. A
                  reset still pending on the newest run is waited out
                  before the first request.
    resume_run()  continues an unfinished run. A run that is still
                  in_progress (the process died) continues under the same
                  id; a cancelled or failed run stays as it is and a new
                  run, seeded with its checkpoints, picks up where it
                  stopped. A phase whose reset has not passed yet stays
                  rate_limited in the new run.

Usage:
    orchestrator = SyncOrchestrator(client, database, config.sync)
    token = CancellationToken()
    run_id = orchestrator.start_run(RunKind.FULL, cancel=token, progress=sink)
"""

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from library_sync.core.config import SyncConfig
from library_sync.core.database import Database, parse_timestamp
from library_sync.core.exceptions import DatabaseError, SyncCancelledError, SyncError
from library_sync.core.logger import get_logger, log_batch_failure, log_rate_limit_pause
from library_sync.sync.cancellation import CancellationToken, pause
from library_sync.sync.checkpoint import Checkpoint, CheckpointStore
from library_sync.sync.fetchers import FETCHER_CLASSES, BatchFetcher
from library_sync.sync.rate_limiter import RateLimiter
from library_sync.sync.results import (
    PHASE_ORDER,
    BatchSyncResult,
    CheckpointStatus,
    EntityType,
    ProgressEvent,
    ProgressSink,
    RunKind,
    RunStatus,
)


logger = get_logger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"

# Run counter that each enrichment or playlist phase adds to
_RUN_COUNTERS = {
    EntityType.ARTISTS: "artists_enriched",
    EntityType.ALBUMS: "albums_enriched",
    EntityType.PLAYLISTS: "playlists_synced",
}


class SyncOrchestrator:
    """
    Phase state machine for sync runs.

    Args:
        client: Remote API collaborator (SpotifyClient or a test double).
        database: Local store.
        config: Sync engine settings.
        fetchers: Optional fetcher per entity type. Missing ones are built
                  from FETCHER_CLASSES.
        rate_limiter: Optional limiter. Default: one per orchestrator,
                      sized from config.
        now: UTC clock, injectable for tests.
        sleep: Sleep function for waits, injectable for tests. Without it
               waits go through the run's CancellationToken.
    """

    def __init__(
        self,
        client: Any,
        database: Database,
        config: SyncConfig,
        fetchers: Optional[dict[EntityType, BatchFetcher]] = None,
        rate_limiter: Optional[RateLimiter] = None,
        now: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None
    ) -> None:
        self._database = database
        self._config = config
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._checkpoints = CheckpointStore(database, now=self._now)
        self._rate_limiter = rate_limiter or RateLimiter(
            max_requests=config.requests_per_window,
            window_seconds=config.window_seconds,
            sleep=sleep
        )

        fetchers = dict(fetchers or {})
        for entity_type, fetcher_class in FETCHER_CLASSES.items():
            if entity_type not in fetchers:
                fetchers[entity_type] = fetcher_class(
                    client,
                    database,
                    self._rate_limiter,
                    config,
                    now=self._now,
                    sleep=sleep
                )
        self._fetchers = fetchers

    @property
    def checkpoints(self) -> CheckpointStore:
        return self._checkpoints

    # =========================================================================
    # Runs
    # =========================================================================

    def start_run(
        self,
        kind: RunKind = RunKind.FULL,
        cancel: Optional[CancellationToken] = None,
        progress: Optional[ProgressSink] = None
    ) -> int:
        """
        Create a run and sync every phase.

        Returns:
            The run id.

        Raises:
            SyncCancelledError: The token fired. The run is cancelled.
            SyncError: A phase failed. The run is failed.
            DatabaseError: The local store failed. The run is failed if it
                           can still be written.
        """
        kind = RunKind(kind)
        pending = self._pending_rate_limit()
        run_id = self._database.create_run(kind.value)
        logger.info(f"Starting {kind.value} sync (run {run_id})")
        if pending is not None:
            # A reset applies to the account, not to one run
            first = self._checkpoints.get_or_create(run_id, PHASE_ORDER[0])
            self._checkpoints.mark_rate_limited(first, pending.rate_limit_reset_at)
            logger.info(
                f"Run {pending.run_id} is rate limited until "
                f"{pending.rate_limit_reset_at.isoformat()}, waiting before the first request"
            )
        self._execute(run_id, kind, cancel, progress)
        return run_id

    def resume_run(
        self,
        run_id: int,
        cancel: Optional[CancellationToken] = None,
        progress: Optional[ProgressSink] = None
    ) -> int:
        """
        Continue an unfinished run.

        Returns:
            The id of the run that was driven to completion: run_id itself
            when it was still in progress, otherwise the new run seeded
            from it.

        Raises:
            ValueError: If the run does not exist or already succeeded.
            SyncCancelledError / SyncError / DatabaseError: As start_run().
        """
        run = self._database.get_run(run_id)
        if run is None:
            raise ValueError(f"Sync run {run_id} does not exist")

        status = RunStatus(run["status"])
        kind = RunKind(run["kind"])

        if status == RunStatus.SUCCESS:
            raise ValueError(f"Sync run {run_id} already completed successfully")

        if status == RunStatus.IN_PROGRESS:
            failed = [
                cp for cp in self._checkpoints.list_for_run(run_id)
                if cp.status == CheckpointStatus.FAILED
            ]
            if not failed:
                logger.info(f"Resuming interrupted {kind.value} sync (run {run_id})")
                self._execute(run_id, kind, cancel, progress)
                return run_id

            # Died between failing a phase and failing the run
            self._database.finish_run(
                run_id, RunStatus.FAILED.value, failed[0].last_error
            )

        new_run_id = self._database.create_run(kind.value, resumed_from=run_id)
        for checkpoint in self._checkpoints.list_for_run(run_id):
            self._checkpoints.seed_from(new_run_id, checkpoint)

        logger.info(f"Resuming {kind.value} sync from run {run_id} as run {new_run_id}")
        self._execute(new_run_id, kind, cancel, progress)
        return new_run_id

    def find_resumable_run(self, kind: Optional[RunKind] = None) -> Optional[dict]:
        """
        Newest run that has not finished successfully, or None.

        Only the most recent run of the kind is considered: once a newer
        run succeeded, older failures have nothing left to resume.
        """
        latest = self._database.get_latest_run(kind=RunKind(kind).value if kind else None)
        if latest is None or latest["status"] == RunStatus.SUCCESS.value:
            return None
        return latest

    def _pending_rate_limit(self) -> Optional[Checkpoint]:
        """Latest unexpired rate-limit reset left by the newest run, if any."""
        latest = self._database.get_latest_run()
        if latest is None:
            return None
        now = self._now()
        waiting = [
            cp for cp in self._checkpoints.list_for_run(latest["id"])
            if cp.status == CheckpointStatus.RATE_LIMITED
            and cp.rate_limit_reset_at is not None
            and cp.rate_limit_reset_at > now
        ]
        return max(waiting, key=lambda cp: cp.rate_limit_reset_at, default=None)

    def last_sync_date(self) -> Optional[datetime]:
        """Completion time of the newest successful run."""
        run = self._database.get_latest_run(statuses=[RunStatus.SUCCESS.value])
        if run is None:
            return None
        return parse_timestamp(run["completed_at"])

    def _execute(
        self,
        run_id: int,
        kind: RunKind,
        cancel: Optional[CancellationToken],
        progress: Optional[ProgressSink]
    ) -> None:
        try:
            for entity_type in PHASE_ORDER:
                self._run_phase(run_id, kind, entity_type, cancel, progress)
        except SyncCancelledError:
            logger.warning(f"Sync run {run_id} cancelled")
            self._finish_quietly(run_id, RunStatus.CANCELLED, CANCELLED_MESSAGE)
            raise
        except SyncError as e:
            logger.error(f"Sync run {run_id} failed: {e.message}")
            self._finish_quietly(run_id, RunStatus.FAILED, e.message)
            raise
        except DatabaseError as e:
            logger.error(f"Sync run {run_id} failed: {e.message}")
            self._finish_quietly(run_id, RunStatus.FAILED, e.message)
            raise
        except Exception as e:
            logger.exception(f"Sync run {run_id} failed unexpectedly")
            self._finish_quietly(run_id, RunStatus.FAILED, str(e))
            raise

        self._database.finish_run(run_id, RunStatus.SUCCESS.value)
        logger.info(f"Sync run {run_id} completed")

    def _finish_quietly(self, run_id: int, status: RunStatus, message: str) -> None:
        try:
            self._database.finish_run(run_id, status.value, message)
        except DatabaseError as e:
            logger.error(f"Could not record final status of run {run_id}: {e.message}")

    # =========================================================================
    # Phases
    # =========================================================================

    def _run_phase(
        self,
        run_id: int,
        kind: RunKind,
        entity_type: EntityType,
        cancel: Optional[CancellationToken],
        progress: Optional[ProgressSink]
    ) -> None:
        checkpoint = self._checkpoints.get_or_create(run_id, entity_type)
        phase = entity_type.value

        if checkpoint.status == CheckpointStatus.SUCCESS:
            logger.info(f"{phase.capitalize()} already synced in this run, skipping")
            return

        if checkpoint.status == CheckpointStatus.FAILED:
            raise SyncError(
                f"{phase.capitalize()} sync failed: {checkpoint.last_error}",
                phase=phase,
                offset=checkpoint.current_offset
            )

        if checkpoint.status == CheckpointStatus.RATE_LIMITED:
            checkpoint = self._wait_out_rate_limit(checkpoint, cancel, progress)

        fetcher = self._fetchers[entity_type]
        batch_size = self._config.batch_size_for(phase)
        logger.info(f"Syncing {phase} from offset {checkpoint.current_offset}")

        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()

            offset = checkpoint.current_offset

            def on_batch_progress(done: int, message: str) -> None:
                self._emit(progress, ProgressEvent(
                    phase=phase,
                    current=offset + done,
                    total=checkpoint.total_items,
                    message=message
                ))

            result = fetcher.fetch_batch(
                offset,
                batch_size,
                progress_cb=on_batch_progress,
                cancel=cancel,
                window_start=checkpoint.window_start
            )

            if result.rate_limited:
                reset_at = result.rate_limit_reset_at or (
                    self._now() + self._config.default_rate_limit_wait
                )
                checkpoint = self._checkpoints.mark_rate_limited(checkpoint, reset_at)
                log_rate_limit_pause(logger, phase, offset, reset_at)
                checkpoint = self._wait_out_rate_limit(checkpoint, cancel, progress)
                continue

            if not result.success:
                self._checkpoints.mark_failed(checkpoint, result.error_message)
                log_batch_failure(logger, phase, offset, result.error_message)
                raise SyncError(
                    f"{phase.capitalize()} sync failed: {result.error_message}",
                    phase=phase,
                    offset=offset
                )

            stop_early = (
                kind == RunKind.INCREMENTAL
                and entity_type == EntityType.TRACKS
                and result.has_more
                and result.new_items_added == 0
            )
            if stop_early:
                logger.info("No new saved tracks in this page, incremental track sync done")
                result = replace(result, has_more=False)

            checkpoint = self._checkpoints.advance(checkpoint, result)
            self._add_counts(run_id, entity_type, result)

            self._emit(progress, ProgressEvent(
                phase=phase,
                current=checkpoint.current_offset,
                total=checkpoint.total_items,
                message=(
                    f"Processed {checkpoint.items_processed} {phase} "
                    f"({result.new_items_added} new in last batch)"
                )
            ))

            if checkpoint.status == CheckpointStatus.SUCCESS:
                logger.info(
                    f"{phase.capitalize()} sync complete: "
                    f"{checkpoint.items_processed} processed"
                )
                return

    def _wait_out_rate_limit(
        self,
        checkpoint: Checkpoint,
        cancel: Optional[CancellationToken],
        progress: Optional[ProgressSink]
    ) -> Checkpoint:
        reset_at = checkpoint.rate_limit_reset_at or (
            self._now() + self._config.default_rate_limit_wait
        )
        wait_seconds = (reset_at - self._now()).total_seconds()

        if wait_seconds > 0:
            self._emit(progress, ProgressEvent(
                phase=checkpoint.entity_type.value,
                current=checkpoint.current_offset,
                total=checkpoint.total_items,
                message=f"Rate limited. Will resume after {reset_at.strftime('%H:%M')}"
            ))
            pause(wait_seconds, cancel, self._sleep)

        return self._checkpoints.mark_in_progress(checkpoint)

    def _add_counts(self, run_id: int, entity_type: EntityType, result: BatchSyncResult) -> None:
        if entity_type == EntityType.TRACKS:
            self._database.add_run_counts(
                run_id,
                tracks_added=result.new_items_added,
                tracks_updated=result.items_updated
            )
        else:
            self._database.add_run_counts(
                run_id,
                **{_RUN_COUNTERS[entity_type]: result.new_items_added + result.items_updated}
            )

    def _emit(self, progress: Optional[ProgressSink], event: ProgressEvent) -> None:
        if progress is None:
            return
        try:
            progress(event)
        except Exception as e:
            logger.warning(f"Progress sink raised {type(e).__name__}: {e}")

