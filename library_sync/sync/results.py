"""
Value types exchanged between the fetchers, the orchestrator and callers.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional


class EntityType(str, Enum):
    """Entity types synced by a run, in phase order."""
    TRACKS = "tracks"
    ARTISTS = "artists"
    ALBUMS = "albums"
    PLAYLISTS = "playlists"


PHASE_ORDER: tuple[EntityType, ...] = (
    EntityType.TRACKS,
    EntityType.ARTISTS,
    EntityType.ALBUMS,
    EntityType.PLAYLISTS,
)


class RunKind(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class RunStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CheckpointStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class BatchSyncResult:
    """
    Outcome of one fetch_batch() call.

    Attributes:
        items_processed: Items examined in this batch (valid or not). The
                         orchestrator adds it to the checkpoint.
        new_items_added: Rows created by this batch.
        items_updated: Existing rows refreshed by this batch.
        has_more: False when the phase has nothing left after this batch.
        next_offset: Offset the next batch starts at.
        rate_limited: The remote refused the batch with a rate limit.
        rate_limit_reset_at: When the remote is expected to accept requests
                             again (UTC). Set only when rate_limited.
        total_estimated: Size of the phase's work set, if known.
        error_message: Set when the batch failed for a non rate-limit reason.
    """
    items_processed: int = 0
    new_items_added: int = 0
    items_updated: int = 0
    has_more: bool = False
    next_offset: int = 0
    rate_limited: bool = False
    rate_limit_reset_at: Optional[datetime] = None
    total_estimated: Optional[int] = None
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error_message is None and not self.rate_limited

    @classmethod
    def rate_limited_at(cls, offset: int, reset_at: datetime) -> "BatchSyncResult":
        return cls(
            next_offset=offset,
            has_more=True,
            rate_limited=True,
            rate_limit_reset_at=reset_at,
        )

    @classmethod
    def failed_at(cls, offset: int, message: str) -> "BatchSyncResult":
        return cls(next_offset=offset, has_more=True, error_message=message)


@dataclass(frozen=True)
class ProgressEvent:
    """
    Progress notification sent to the caller's sink.

    Attributes:
        phase: Entity type of the reporting phase ("tracks", ...).
        current: Items processed in the phase so far.
        total: Phase total if known.
        message: Human-readable status line.
    """
    phase: str
    current: int
    total: Optional[int]
    message: str


ProgressSink = Callable[[ProgressEvent], None]

# Fetcher-level callback: (items processed in this batch so far, message)
BatchProgressCallback = Callable[[int, str], None]
