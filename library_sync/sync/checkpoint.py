"""
Durable per-phase resume points.

Every (run, entity type) pair owns one checkpoint row keyed
"sync_{run_id}_{entity_type}". The orchestrator writes it after each
committed batch, so a crash or a cancel never loses more than the batch in
flight, and a later run can continue from current_offset.

Checkpoint status transitions:

    in_progress  -> in_progress | success | failed | rate_limited
    rate_limited -> in_progress
    success, failed: terminal

current_offset never decreases. Both rules raise ValueError when broken.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Optional

from library_sync.core.database import Database, format_timestamp, parse_timestamp
from library_sync.core.logger import get_logger
from library_sync.sync.results import BatchSyncResult, CheckpointStatus, EntityType


logger = get_logger(__name__)

RATE_LIMIT_ERROR = "Rate limit hit"

_TRANSITIONS: dict[CheckpointStatus, frozenset[CheckpointStatus]] = {
    CheckpointStatus.IN_PROGRESS: frozenset({
        CheckpointStatus.IN_PROGRESS,
        CheckpointStatus.SUCCESS,
        CheckpointStatus.FAILED,
        CheckpointStatus.RATE_LIMITED,
    }),
    CheckpointStatus.RATE_LIMITED: frozenset({CheckpointStatus.IN_PROGRESS}),
    CheckpointStatus.SUCCESS: frozenset(),
    CheckpointStatus.FAILED: frozenset(),
}


def state_key(run_id: int, entity_type: EntityType | str) -> str:
    return f"sync_{run_id}_{EntityType(entity_type).value}"


@dataclass(frozen=True)
class Checkpoint:
    """
    Resume point of one phase.

    Attributes:
        run_id: Owning sync run.
        entity_type: Phase entity type.
        current_offset: Offset of the next batch to fetch.
        total_items: Last known size of the phase's work set.
        items_processed: Items processed over all batches so far.
        status: CheckpointStatus.
        last_error: Last failure or rate-limit message.
        rate_limit_reset_at: When a rate-limited phase may continue.
        window_start: When the phase first started. Enrichment phases
                      anchor their candidate set on it.
        created_at / updated_at / completed_at: Bookkeeping timestamps.
    """
    run_id: int
    entity_type: EntityType
    current_offset: int
    total_items: Optional[int]
    items_processed: int
    status: CheckpointStatus
    last_error: Optional[str]
    rate_limit_reset_at: Optional[datetime]
    window_start: datetime
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def state_key(self) -> str:
        return state_key(self.run_id, self.entity_type)

    @classmethod
    def from_row(cls, row: dict) -> "Checkpoint":
        return cls(
            run_id=row["run_id"],
            entity_type=EntityType(row["entity_type"]),
            current_offset=row["current_offset"],
            total_items=row["total_items"],
            items_processed=row["items_processed"],
            status=CheckpointStatus(row["status"]),
            last_error=row["last_error"],
            rate_limit_reset_at=parse_timestamp(row["rate_limit_reset_at"]),
            window_start=parse_timestamp(row["window_start"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
        )

    def to_row(self) -> dict:
        return {
            "state_key": self.state_key,
            "run_id": self.run_id,
            "entity_type": self.entity_type.value,
            "current_offset": self.current_offset,
            "total_items": self.total_items,
            "items_processed": self.items_processed,
            "status": self.status.value,
            "last_error": self.last_error,
            "rate_limit_reset_at": _format_optional(self.rate_limit_reset_at),
            "window_start": format_timestamp(self.window_start),
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "completed_at": _format_optional(self.completed_at),
        }


class CheckpointStore:
    """Reads and writes checkpoints, enforcing offset and status rules."""

    def __init__(
        self,
        database: Database,
        now: Optional[Callable[[], datetime]] = None
    ) -> None:
        self._database = database
        self._now = now or (lambda: datetime.now(timezone.utc))

    def get(self, run_id: int, entity_type: EntityType) -> Optional[Checkpoint]:
        row = self._database.get_checkpoint(state_key(run_id, entity_type))
        return Checkpoint.from_row(row) if row else None

    def list_for_run(self, run_id: int) -> list[Checkpoint]:
        return [Checkpoint.from_row(row) for row in self._database.get_checkpoints_for_run(run_id)]

    def get_or_create(self, run_id: int, entity_type: EntityType) -> Checkpoint:
        """Load the phase checkpoint, creating it at offset 0 on first use."""
        existing = self.get(run_id, entity_type)
        if existing is not None:
            return existing

        now = self._now()
        checkpoint = Checkpoint(
            run_id=run_id,
            entity_type=EntityType(entity_type),
            current_offset=0,
            total_items=None,
            items_processed=0,
            status=CheckpointStatus.IN_PROGRESS,
            last_error=None,
            rate_limit_reset_at=None,
            window_start=now,
            created_at=now,
            updated_at=now,
        )
        self._database.put_checkpoint(checkpoint.to_row())
        logger.debug(f"Created checkpoint {checkpoint.state_key}")
        return checkpoint

    def advance(self, checkpoint: Checkpoint, result: BatchSyncResult) -> Checkpoint:
        """
        Record a committed batch.

        Moves the offset to result.next_offset, adds the batch's processed
        count and marks the phase successful when nothing is left.

        Raises:
            ValueError: If the offset would move backwards or the
                        checkpoint is not in progress.
        """
        if checkpoint.status != CheckpointStatus.IN_PROGRESS:
            raise ValueError(
                f"Cannot advance checkpoint {checkpoint.state_key} in status "
                f"{checkpoint.status.value}"
            )
        if result.next_offset < checkpoint.current_offset:
            raise ValueError(
                f"Checkpoint offset cannot decrease ({checkpoint.current_offset} -> "
                f"{result.next_offset}) for {checkpoint.state_key}"
            )

        status = CheckpointStatus.IN_PROGRESS if result.has_more else CheckpointStatus.SUCCESS
        now = self._now()
        updated = replace(
            checkpoint,
            current_offset=result.next_offset,
            items_processed=checkpoint.items_processed + result.items_processed,
            total_items=(
                result.total_estimated
                if result.total_estimated is not None
                else checkpoint.total_items
            ),
            status=status,
            last_error=None,
            rate_limit_reset_at=None,
            updated_at=now,
            completed_at=now if status == CheckpointStatus.SUCCESS else None,
        )
        return self._save(checkpoint, updated)

    def mark_rate_limited(
        self,
        checkpoint: Checkpoint,
        reset_at: datetime,
        message: str = RATE_LIMIT_ERROR
    ) -> Checkpoint:
        updated = replace(
            checkpoint,
            status=CheckpointStatus.RATE_LIMITED,
            rate_limit_reset_at=reset_at,
            last_error=message,
            updated_at=self._now(),
        )
        return self._save(checkpoint, updated)

    def mark_in_progress(self, checkpoint: Checkpoint) -> Checkpoint:
        """Leave the rate-limited state once the reset time has passed."""
        updated = replace(
            checkpoint,
            status=CheckpointStatus.IN_PROGRESS,
            rate_limit_reset_at=None,
            updated_at=self._now(),
        )
        return self._save(checkpoint, updated)

    def mark_failed(self, checkpoint: Checkpoint, error_message: str) -> Checkpoint:
        now = self._now()
        updated = replace(
            checkpoint,
            status=CheckpointStatus.FAILED,
            last_error=error_message,
            updated_at=now,
            completed_at=now,
        )
        return self._save(checkpoint, updated)

    def seed_from(self, run_id: int, previous: Checkpoint) -> Checkpoint:
        """
        Copy a checkpoint of an earlier run into a new run.

        Offsets, counts, totals and window_start carry over. Successful
        phases stay successful. A phase still waiting for its rate-limit
        reset stays rate_limited with the same reset time; anything else
        restarts as in_progress at the copied offset.
        """
        now = self._now()
        done = previous.status == CheckpointStatus.SUCCESS
        waiting = (
            previous.status == CheckpointStatus.RATE_LIMITED
            and previous.rate_limit_reset_at is not None
            and previous.rate_limit_reset_at > now
        )
        if done:
            status = CheckpointStatus.SUCCESS
        elif waiting:
            status = CheckpointStatus.RATE_LIMITED
        else:
            status = CheckpointStatus.IN_PROGRESS
        seeded = replace(
            previous,
            run_id=run_id,
            status=status,
            rate_limit_reset_at=previous.rate_limit_reset_at if waiting else None,
            last_error=None if done else previous.last_error,
            created_at=now,
            updated_at=now,
            completed_at=previous.completed_at if done else None,
        )
        self._database.put_checkpoint(seeded.to_row())
        return seeded

    def _save(self, current: Checkpoint, updated: Checkpoint) -> Checkpoint:
        if updated.status not in _TRANSITIONS[current.status]:
            raise ValueError(
                f"Invalid checkpoint transition {current.status.value} -> "
                f"{updated.status.value} for {current.state_key}"
            )
        if updated.current_offset < current.current_offset:
            raise ValueError(
                f"Checkpoint offset cannot decrease for {current.state_key}"
            )
        self._database.put_checkpoint(updated.to_row())
        return updated


def _format_optional(value: Optional[datetime]) -> Optional[str]:
    return format_timestamp(value) if value is not None else None
