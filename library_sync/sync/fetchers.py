"""
Batch fetchers for each entity type.

A fetcher turns "give me the batch at offset X" into remote calls and local
writes, and reports the outcome as a BatchSyncResult. It never raises for
rate limits or remote failures; the orchestrator decides what to do with
them. Cancellation and database errors do propagate.

Fetchers:
    TrackBatchFetcher:     Saved tracks. Pages the remote library directly
                           and inserts stub artists/albums for every
                           reference it has not seen.
    ArtistBatchFetcher:    Enriches artist stubs and stale artists.
    AlbumBatchFetcher:     Enriches album stubs and stale albums.
    PlaylistBatchFetcher:  Pages the user's playlists and re-reads the
                           members only when a playlist's snapshot_id moved.

Remote call policy (_call_remote):
    1. Wait for a RateLimiter slot before every request
    2. Success resets the limiter's backoff
    3. HTTP 429 triggers the limiter's backoff; short Retry-After values
       (or none at all) are retried a few times in place, anything longer
       ends the batch as rate_limited with a reset time
    4. Transient failures (5xx, network) retry with exponential delay
    5. Anything else ends the batch with error_message

Atomicity:
    Remote data for a batch is gathered completely before the first local
    write; the writes then run in one Database.transaction(). An
    interrupted batch leaves no partial rows and its offset is retried.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Sequence

from library_sync.core.config import SyncConfig
from library_sync.core.database import Database
from library_sync.core.exceptions import SpotifyError
from library_sync.core.logger import get_logger
from library_sync.spotify.client import (
    MAX_ALBUMS_PER_REQUEST,
    MAX_ARTISTS_PER_REQUEST,
    MAX_PAGE_SIZE,
    MAX_PLAYLIST_ITEMS_PAGE,
)
from library_sync.spotify.models import (
    Album,
    Artist,
    Playlist,
    PlaylistEntry,
    SavedTrack,
    is_valid_track_item,
)
from library_sync.sync.cancellation import CancellationToken, pause
from library_sync.sync.rate_limiter import BACKOFF_CAP_SECONDS, RateLimiter
from library_sync.sync.results import BatchProgressCallback, BatchSyncResult, EntityType


logger = get_logger(__name__)


class _RateLimited(Exception):
    """Unwinds a batch that has to wait for the remote rate limit."""

    def __init__(self, reset_at: datetime, message: str) -> None:
        super().__init__(message)
        self.reset_at = reset_at


class _RemoteFailed(Exception):
    """Unwinds a batch whose remote call failed for good."""


class BatchFetcher(ABC):
    """
    Base class for all fetchers.

    Args:
        client: Remote API collaborator (SpotifyClient or a test double).
        database: Local store.
        rate_limiter: Limiter shared by every fetcher of the run.
        config: Retry and staleness settings.
        now: UTC clock, injectable for tests.
        sleep: Sleep function for retry delays, injectable for tests.
    """

    entity_type: EntityType

    def __init__(
        self,
        client: Any,
        database: Database,
        rate_limiter: RateLimiter,
        config: SyncConfig,
        now: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None
    ) -> None:
        self._client = client
        self._database = database
        self._rate_limiter = rate_limiter
        self._config = config
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

    def fetch_batch(
        self,
        offset: int,
        batch_size: int,
        progress_cb: Optional[BatchProgressCallback] = None,
        cancel: Optional[CancellationToken] = None,
        window_start: Optional[datetime] = None
    ) -> BatchSyncResult:
        """
        Fetch and store the batch starting at `offset`.

        Args:
            offset: Position of the first item of the batch.
            batch_size: Maximum items in the batch.
            progress_cb: Called with (items done in this batch, message).
            cancel: Token checked before the batch and during every wait.
            window_start: Start of the phase. Enrichment fetchers anchor
                          their candidate set on it; defaults to now.

        Returns:
            BatchSyncResult. Rate limits and remote failures are reported
            through its fields.

        Raises:
            ValueError: If offset is negative or batch_size is below 1.
            SyncCancelledError: If the token fires.
            DatabaseError: If the local writes fail (nothing is committed).
        """
        if offset < 0:
            raise ValueError(f"offset must be >= 0, got {offset}")
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")

        if cancel is not None:
            cancel.raise_if_cancelled()

        try:
            return self._fetch(
                offset,
                batch_size,
                progress_cb,
                cancel,
                window_start or self._now()
            )
        except _RateLimited as e:
            logger.warning(
                f"{self.entity_type.value.capitalize()} batch at offset {offset} "
                f"rate limited until {e.reset_at.isoformat()}"
            )
            return BatchSyncResult.rate_limited_at(offset, e.reset_at)
        except _RemoteFailed as e:
            return BatchSyncResult.failed_at(offset, str(e))

    @abstractmethod
    def _fetch(
        self,
        offset: int,
        batch_size: int,
        progress_cb: Optional[BatchProgressCallback],
        cancel: Optional[CancellationToken],
        window_start: datetime
    ) -> BatchSyncResult:
        pass

    def _call_remote(
        self,
        description: str,
        method: Callable[..., Any],
        *args: Any,
        cancel: Optional[CancellationToken] = None,
        **kwargs: Any
    ) -> Any:
        """
        Issue one remote request under the run's retry policy.

        Raises:
            _RateLimited: The remote needs a long pause, or in-place retries
                          ran out.
            _RemoteFailed: Non-retryable failure, or transient retries ran out.
        """
        rate_limit_retries = 0
        attempt = 0

        while True:
            self._rate_limiter.await_slot(cancel)
            attempt += 1
            try:
                result = method(*args, **kwargs)
            except SpotifyError as e:
                if e.is_rate_limit:
                    backoff = self._rate_limiter.trigger_backoff()
                    retry_after = e.retry_after
                    short_wait = retry_after is None or retry_after <= BACKOFF_CAP_SECONDS
                    if short_wait and rate_limit_retries < self._config.rate_limit_retries:
                        rate_limit_retries += 1
                        attempt -= 1
                        logger.info(
                            f"Rate limited on {description}, retry "
                            f"{rate_limit_retries}/{self._config.rate_limit_retries}"
                        )
                        if retry_after is not None and retry_after > backoff:
                            pause(retry_after - backoff, cancel, self._sleep)
                        continue

                    wait = (
                        timedelta(seconds=retry_after)
                        if retry_after is not None
                        else self._config.default_rate_limit_wait
                    )
                    raise _RateLimited(self._now() + wait, e.message) from e

                if e.is_transient and attempt < self._config.max_attempts:
                    delay = self._config.retry_base_delay * 2 ** (attempt - 1)
                    logger.warning(
                        f"Transient error on {description} "
                        f"(attempt {attempt}/{self._config.max_attempts}): {e.message}. "
                        f"Retrying in {delay:.0f}s"
                    )
                    pause(delay, cancel, self._sleep)
                    continue

                if e.is_transient:
                    raise _RemoteFailed(
                        f"{e.message} (gave up after {attempt} attempts)"
                    ) from e
                raise _RemoteFailed(e.message) from e

            self._rate_limiter.reset_backoff()
            return result


# =============================================================================
# Tracks
# =============================================================================

class TrackBatchFetcher(BatchFetcher):
    """
    Fetches one page of saved tracks and stores it.

    Every referenced artist and album that is not stored yet becomes a stub;
    existing artist and album rows are never touched from here.
    """

    entity_type = EntityType.TRACKS

    def _fetch(self, offset, batch_size, progress_cb, cancel, window_start):
        limit = min(batch_size, MAX_PAGE_SIZE)
        page = self._call_remote(
            f"saved tracks at offset {offset}",
            self._client.list_primary,
            offset,
            limit,
            cancel=cancel
        )

        items = page.get("items") or []
        total = page.get("total")

        tracks = []
        skipped = 0
        for item in items:
            if not is_valid_track_item(item):
                skipped += 1
                continue
            tracks.append(SavedTrack.from_spotify_api(item))

        if skipped > 0:
            logger.debug(f"Skipped {skipped} invalid items (local files, unavailable, etc.)")

        added = 0
        updated = 0
        with self._database.transaction():
            for track in tracks:
                if self._database.upsert_track(track.to_database_dict()):
                    added += 1
                else:
                    updated += 1

                for position, artist in enumerate(track.artists):
                    self._database.insert_artist_stub(artist.spotify_id, artist.name)
                    self._database.link_track_artist(track.spotify_id, artist.spotify_id, position)

                if track.album is not None:
                    self._database.insert_album_stub(
                        track.album.spotify_id,
                        track.album.name,
                        album_type=track.album.album_type,
                        release_date=track.album.release_date,
                        total_tracks=track.album.total_tracks
                    )
                    self._database.link_track_album(
                        track.spotify_id,
                        track.album.spotify_id,
                        track.disc_number,
                        track.track_number
                    )

        next_offset = offset + len(items)
        if total is not None:
            has_more = bool(items) and next_offset < total
        else:
            has_more = len(items) >= limit

        if progress_cb is not None:
            progress_cb(len(items), f"Stored {len(tracks)} tracks ({added} new)")

        return BatchSyncResult(
            items_processed=len(items),
            new_items_added=added,
            items_updated=updated,
            has_more=has_more,
            next_offset=next_offset,
            total_estimated=total,
        )


# =============================================================================
# Artists and Albums
# =============================================================================

class EnrichmentBatchFetcher(BatchFetcher):
    """
    Replaces stubs (and stale rows) with full details from the remote.

    The work set is every row that is a stub, was last synced before
    window_start - staleness, or was synced at/after window_start. It is
    paged locally by offset in (first_seen_at, spotify_id) order. Rows
    enriched by this phase keep their place in the set, so positions never
    shift between batches and ids the remote cannot resolve are stepped
    over instead of being retried forever.
    """

    table: str
    remote_batch_size: int

    def _fetch(self, offset, batch_size, progress_cb, cancel, window_start):
        stale_before = window_start - self._config.staleness
        total = self._database.count_enrichment_candidates(self.table, stale_before, window_start)
        ids = self._database.get_enrichment_candidates(
            self.table, stale_before, window_start, offset, batch_size
        )

        if not ids:
            return BatchSyncResult(
                has_more=False,
                next_offset=offset,
                total_estimated=total,
            )

        payloads: list[dict[str, Any]] = []
        for start in range(0, len(ids), self.remote_batch_size):
            chunk = ids[start:start + self.remote_batch_size]
            results = self._call_remote(
                f"{len(chunk)} {self.table}",
                self._fetch_remote,
                chunk,
                cancel=cancel
            )
            payloads.extend(p for p in results if p and p.get("id"))
            if progress_cb is not None:
                progress_cb(start + len(chunk), f"Fetched {start + len(chunk)}/{len(ids)} {self.table}")

        unresolved = len(ids) - len(payloads)
        if unresolved > 0:
            logger.debug(f"{unresolved} {self.table} could not be resolved remotely, skipping")

        enriched = 0
        refreshed = 0
        with self._database.transaction():
            for payload in payloads:
                was_stub = self._database.is_stub(self.table, payload["id"])
                existed = self._store(payload)
                if was_stub or not existed:
                    enriched += 1
                else:
                    refreshed += 1

        next_offset = offset + len(ids)
        return BatchSyncResult(
            items_processed=len(ids),
            new_items_added=enriched,
            items_updated=refreshed,
            has_more=next_offset < total,
            next_offset=next_offset,
            total_estimated=total,
        )

    @abstractmethod
    def _fetch_remote(self, ids: Sequence[str]) -> list[Optional[dict[str, Any]]]:
        pass

    @abstractmethod
    def _store(self, payload: dict[str, Any]) -> bool:
        """Write one enriched row. Returns True if the row already existed."""
        pass


class ArtistBatchFetcher(EnrichmentBatchFetcher):
    entity_type = EntityType.ARTISTS
    table = "artists"
    remote_batch_size = MAX_ARTISTS_PER_REQUEST

    def _fetch_remote(self, ids):
        return self._client.get_several_artists(list(ids))

    def _store(self, payload):
        return self._database.enrich_artist(Artist.from_spotify_api(payload).to_database_dict())


class AlbumBatchFetcher(EnrichmentBatchFetcher):
    entity_type = EntityType.ALBUMS
    table = "albums"
    remote_batch_size = MAX_ALBUMS_PER_REQUEST

    def _fetch_remote(self, ids):
        return self._client.get_several_albums(list(ids))

    def _store(self, payload):
        return self._database.enrich_album(Album.from_spotify_api(payload).to_database_dict())


# =============================================================================
# Playlists
# =============================================================================

class PlaylistBatchFetcher(BatchFetcher):
    """
    Fetches one page of playlists.

    A playlist whose snapshot_id matches the stored one only gets its
    metadata refreshed; its member list is neither fetched nor written.
    """

    entity_type = EntityType.PLAYLISTS

    def _fetch(self, offset, batch_size, progress_cb, cancel, window_start):
        limit = min(batch_size, MAX_PAGE_SIZE)
        page = self._call_remote(
            f"playlists at offset {offset}",
            self._client.list_collections,
            offset,
            limit,
            cancel=cancel
        )

        items = page.get("items") or []
        total = page.get("total")
        playlists = [Playlist.from_spotify_api(p) for p in items if p and p.get("id")]

        members: dict[str, list[PlaylistEntry]] = {}
        for index, playlist in enumerate(playlists, start=1):
            stored_snapshot = self._database.get_playlist_snapshot(playlist.spotify_id)
            if playlist.snapshot_id is None or stored_snapshot != playlist.snapshot_id:
                members[playlist.spotify_id] = self._fetch_members(playlist, cancel)
            else:
                logger.debug(f"Playlist '{playlist.name}' unchanged, skipping members")
            if progress_cb is not None:
                progress_cb(index, f"Checked playlist '{playlist.name}'")

        added = 0
        updated = 0
        with self._database.transaction():
            for playlist in playlists:
                if self._database.upsert_playlist(playlist.to_database_dict()):
                    added += 1
                else:
                    updated += 1
                entries = members.get(playlist.spotify_id)
                if entries is not None:
                    self._database.replace_playlist_tracks(
                        playlist.spotify_id,
                        [entry.to_database_dict() for entry in entries]
                    )

        if members:
            logger.info(f"Refreshed members of {len(members)} changed playlists")

        next_offset = offset + len(items)
        if total is not None:
            has_more = bool(items) and next_offset < total
        else:
            has_more = len(items) >= limit

        return BatchSyncResult(
            items_processed=len(items),
            new_items_added=added,
            items_updated=updated,
            has_more=has_more,
            next_offset=next_offset,
            total_estimated=total,
        )

    def _fetch_members(
        self,
        playlist: Playlist,
        cancel: Optional[CancellationToken]
    ) -> list[PlaylistEntry]:
        """Page through all items of one playlist."""
        entries: list[PlaylistEntry] = []
        position = 0

        while True:
            page = self._call_remote(
                f"items of playlist '{playlist.name}' at offset {position}",
                self._client.collection_items,
                playlist.spotify_id,
                position,
                MAX_PLAYLIST_ITEMS_PAGE,
                cancel=cancel
            )
            items = page.get("items") or []
            for item in items:
                if is_valid_track_item(item):
                    entries.append(PlaylistEntry.from_spotify_api(item, position))
                position += 1

            total = page.get("total")
            if not items or (total is not None and position >= total):
                break
            if total is None and not page.get("next"):
                break

        return entries


FETCHER_CLASSES: dict[EntityType, type[BatchFetcher]] = {
    EntityType.TRACKS: TrackBatchFetcher,
    EntityType.ARTISTS: ArtistBatchFetcher,
    EntityType.ALBUMS: AlbumBatchFetcher,
    EntityType.PLAYLISTS: PlaylistBatchFetcher,
}
