"""
Read-only status projection of a sync run.

current_status() combines the run row with its checkpoints into a
RunStatusSummary with one PhaseProgress per phase, in phase order. It never
writes, so it is safe to call from any thread while a run is active.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from library_sync.core.database import Database, parse_timestamp
from library_sync.sync.checkpoint import Checkpoint, CheckpointStore
from library_sync.sync.results import PHASE_ORDER, CheckpointStatus, RunStatus


PHASE_PENDING = "pending"


@dataclass(frozen=True)
class PhaseProgress:
    """
    Progress of one phase.

    status is a CheckpointStatus value, or "pending" when the phase has not
    started in this run.
    """
    entity_type: str
    status: str
    current_offset: int = 0
    total_items: Optional[int] = None
    items_processed: int = 0
    percent_complete: float = 0.0
    last_error: Optional[str] = None
    rate_limit_reset_at: Optional[datetime] = None
    seconds_until_reset: Optional[float] = None


@dataclass(frozen=True)
class RunStatusSummary:
    run_id: int
    kind: str
    status: str
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    error_message: Optional[str]
    phases: tuple[PhaseProgress, ...]
    resumed_from: Optional[int] = None

    @property
    def current_phase(self) -> Optional[PhaseProgress]:
        """First phase that is not finished, if any."""
        for phase in self.phases:
            if phase.status != CheckpointStatus.SUCCESS.value:
                return phase
        return None


def percent_complete(checkpoint: Checkpoint) -> float:
    """
    Offset as a percentage of the phase total.

    0 when the total is unknown or zero (unless the phase succeeded),
    never above 100, and exactly 100 for a successful phase.
    """
    if checkpoint.status == CheckpointStatus.SUCCESS:
        return 100.0
    if not checkpoint.total_items:
        return 0.0
    return min(100.0, checkpoint.current_offset / checkpoint.total_items * 100.0)


def current_status(
    database: Database,
    run_id: int,
    now: Optional[datetime] = None
) -> Optional[RunStatusSummary]:
    """
    Build the status summary of a run.

    Args:
        database: Local store.
        run_id: Run to describe.
        now: Reference time for seconds_until_reset. Defaults to UTC now.

    Returns:
        RunStatusSummary, or None if the run does not exist.
    """
    run = database.get_run(run_id)
    if run is None:
        return None

    now = now or datetime.now(timezone.utc)
    checkpoints = {cp.entity_type: cp for cp in CheckpointStore(database).list_for_run(run_id)}

    phases = []
    for entity_type in PHASE_ORDER:
        checkpoint = checkpoints.get(entity_type)
        if checkpoint is None:
            phases.append(PhaseProgress(entity_type=entity_type.value, status=PHASE_PENDING))
            continue

        seconds_until_reset = None
        if (
            checkpoint.status == CheckpointStatus.RATE_LIMITED
            and checkpoint.rate_limit_reset_at is not None
        ):
            seconds_until_reset = max(
                0.0, (checkpoint.rate_limit_reset_at - now).total_seconds()
            )

        phases.append(PhaseProgress(
            entity_type=entity_type.value,
            status=checkpoint.status.value,
            current_offset=checkpoint.current_offset,
            total_items=checkpoint.total_items,
            items_processed=checkpoint.items_processed,
            percent_complete=percent_complete(checkpoint),
            last_error=checkpoint.last_error,
            rate_limit_reset_at=checkpoint.rate_limit_reset_at,
            seconds_until_reset=seconds_until_reset,
        ))

    return RunStatusSummary(
        run_id=run["id"],
        kind=run["kind"],
        status=run["status"],
        started_at=parse_timestamp(run["started_at"]),
        completed_at=parse_timestamp(run["completed_at"]),
        error_message=run["error_message"],
        phases=tuple(phases),
        resumed_from=run["resumed_from"],
    )


def active_run_status(database: Database, now: Optional[datetime] = None) -> Optional[RunStatusSummary]:
    """Summary of the newest in-progress run, or None when nothing is running."""
    run = database.get_latest_run(statuses=[RunStatus.IN_PROGRESS.value])
    if run is None:
        return None
    return current_status(database, run["id"], now=now)
