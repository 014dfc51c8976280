"""
Sync engine for library-sync.

    - rate_limiter: Sliding-window pacing and global backoff
    - fetchers: Batch fetchers for tracks, artists, albums and playlists
    - checkpoint: Durable per-phase resume points
    - orchestrator: Phase state machine driving a run
    - status: Read-only run progress
    - cancellation: Cooperative cancellation token
"""

from library_sync.sync.cancellation import CancellationToken
from library_sync.sync.checkpoint import Checkpoint, CheckpointStore
from library_sync.sync.fetchers import (
    AlbumBatchFetcher,
    ArtistBatchFetcher,
    BatchFetcher,
    PlaylistBatchFetcher,
    TrackBatchFetcher,
)
from library_sync.sync.orchestrator import SyncOrchestrator
from library_sync.sync.rate_limiter import RateLimiter
from library_sync.sync.results import (
    BatchSyncResult,
    CheckpointStatus,
    EntityType,
    ProgressEvent,
    RunKind,
    RunStatus,
)
from library_sync.sync.status import (
    PhaseProgress,
    RunStatusSummary,
    active_run_status,
    current_status,
)

__all__ = [
    "CancellationToken",
    "Checkpoint",
    "CheckpointStore",
    "BatchFetcher",
    "TrackBatchFetcher",
    "ArtistBatchFetcher",
    "AlbumBatchFetcher",
    "PlaylistBatchFetcher",
    "SyncOrchestrator",
    "RateLimiter",
    "BatchSyncResult",
    "CheckpointStatus",
    "EntityType",
    "ProgressEvent",
    "RunKind",
    "RunStatus",
    "PhaseProgress",
    "RunStatusSummary",
    "active_run_status",
    "current_status",
]
