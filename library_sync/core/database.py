"""
Thread-safe SQLite store for library-sync.

Every synchronized entity is stored once, keyed by its Spotify id, with two
timestamps that drive enrichment:

    first_seen_at   set when the row is inserted, never changed
    last_synced_at  bumped on every write from Spotify data

A row is a stub (inserted from a reference inside a saved track, never
fetched in full) exactly when the two timestamps are equal.

Schema:
    tracks:            Saved tracks (the user's library)
    artists:           Artists referenced by tracks (stubs until enriched)
    albums:            Albums referenced by tracks (stubs until enriched)
    track_artists:     Junction (track_id, artist_id, position)
    track_albums:      Junction (track_id, album_id, disc/track number)
    playlists:         User playlists with their snapshot_id
    playlist_tracks:   Playlist members (playlist_id, position, track_id)
    sync_runs:         One row per orchestrator run
    sync_checkpoints:  Resume point per (run, entity type)

Usage:
    db = Database(output_dir / "library.db")

    with db.transaction():
        created = db.upsert_track(track.to_database_dict())
        db.insert_artist_stub(artist_id, name)

    for artist_id in db.get_enrichment_candidates("artists", stale_before, window_start, 0, 100):
        ...
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Generator, Iterable

from library_sync.core.exceptions import DatabaseError


DATABASE_VERSION = 1

# Tables the enrichment queries may target
ENRICHABLE_TABLES = ("artists", "albums")

RUN_IN_PROGRESS = "in_progress"


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS tracks (
    spotify_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    duration_ms INTEGER,
    explicit INTEGER,
    popularity INTEGER,
    isrc TEXT,
    added_at TEXT,
    first_seen_at TEXT NOT NULL,
    last_synced_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS artists (
    spotify_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    genres TEXT,  -- JSON array
    popularity INTEGER,
    followers INTEGER,
    image_url TEXT,
    first_seen_at TEXT NOT NULL,
    last_synced_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS albums (
    spotify_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    album_type TEXT,
    release_date TEXT,
    total_tracks INTEGER,
    label TEXT,
    image_url TEXT,
    first_seen_at TEXT NOT NULL,
    last_synced_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS track_artists (
    track_id TEXT NOT NULL,
    artist_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    FOREIGN KEY (track_id) REFERENCES tracks(spotify_id) ON DELETE CASCADE,
    FOREIGN KEY (artist_id) REFERENCES artists(spotify_id) ON DELETE CASCADE,
    UNIQUE(track_id, artist_id)
);

CREATE TABLE IF NOT EXISTS track_albums (
    track_id TEXT NOT NULL,
    album_id TEXT NOT NULL,
    disc_number INTEGER,
    track_number INTEGER,
    FOREIGN KEY (track_id) REFERENCES tracks(spotify_id) ON DELETE CASCADE,
    FOREIGN KEY (album_id) REFERENCES albums(spotify_id) ON DELETE CASCADE,
    UNIQUE(track_id, album_id)
);

CREATE TABLE IF NOT EXISTS playlists (
    spotify_id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    owner_id TEXT,
    is_public INTEGER,
    snapshot_id TEXT,
    total_tracks INTEGER,
    first_seen_at TEXT NOT NULL,
    last_synced_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS playlist_tracks (
    playlist_id TEXT NOT NULL,
    track_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    added_at TEXT,
    added_by TEXT,
    FOREIGN KEY (playlist_id) REFERENCES playlists(spotify_id) ON DELETE CASCADE,
    UNIQUE(playlist_id, position)
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    kind TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    tracks_added INTEGER DEFAULT 0,
    tracks_updated INTEGER DEFAULT 0,
    artists_enriched INTEGER DEFAULT 0,
    albums_enriched INTEGER DEFAULT 0,
    playlists_synced INTEGER DEFAULT 0,
    error_message TEXT,
    resumed_from INTEGER
);

CREATE TABLE IF NOT EXISTS sync_checkpoints (
    state_key TEXT PRIMARY KEY,
    run_id INTEGER NOT NULL,
    entity_type TEXT NOT NULL,
    current_offset INTEGER NOT NULL DEFAULT 0,
    total_items INTEGER,
    items_processed INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    last_error TEXT,
    rate_limit_reset_at TEXT,
    window_start TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT,
    FOREIGN KEY (run_id) REFERENCES sync_runs(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_artists_sync ON artists(first_seen_at, spotify_id);
CREATE INDEX IF NOT EXISTS idx_albums_sync ON albums(first_seen_at, spotify_id);
CREATE INDEX IF NOT EXISTS idx_track_artists_artist ON track_artists(artist_id);
CREATE INDEX IF NOT EXISTS idx_track_albums_album ON track_albums(album_id);
CREATE INDEX IF NOT EXISTS idx_playlist_tracks_playlist ON playlist_tracks(playlist_id);
CREATE INDEX IF NOT EXISTS idx_checkpoints_run ON sync_checkpoints(run_id);
"""

_RUN_COUNT_FIELDS = (
    "tracks_added", "tracks_updated", "artists_enriched",
    "albums_enriched", "playlists_synced",
)

_CHECKPOINT_FIELDS = (
    "state_key", "run_id", "entity_type", "current_offset", "total_items",
    "items_processed", "status", "last_error", "rate_limit_reset_at",
    "window_start", "created_at", "updated_at", "completed_at",
)


def format_timestamp(value: datetime) -> str:
    """Serialize a datetime as fixed-precision UTC ISO-8601 (sortable as text)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Database:
    """
    Thread-safe SQLite store for the synchronized library.

    Uses a single persistent connection with thread locking for safety.
    All public methods acquire self._lock before executing. Writes commit
    immediately unless they run inside transaction(), in which case the
    whole block commits (or rolls back) together.
    """

    def __init__(self, db_path: Path, clock=None) -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None
        self._tx_depth = 0
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        if not db_path.parent.exists():
            raise DatabaseError(
                f"Parent directory does not exist: {db_path.parent}",
                details={"path": str(db_path.parent)}
            )

        try:
            self._init_database()
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Failed to initialize database: {e}",
                details={"path": str(db_path)}
            ) from e

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get the persistent database connection as a context manager.

        The connection is created once and reused for all operations.
        sqlite3 errors raised inside the block are re-raised as DatabaseError.
        """
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=30.0,
                check_same_thread=False  # We handle thread safety with _lock
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        try:
            yield self._conn
        except sqlite3.Error as e:
            raise DatabaseError(
                f"Database operation failed: {e}",
                details={"path": str(self.db_path), "original_error": str(e)}
            ) from e

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __del__(self) -> None:
        """Ensure connection is closed on garbage collection."""
        if hasattr(self, '_conn') and self._conn is not None:
            try:
                self._conn.close()
            except Exception:
                pass

    def _init_database(self) -> None:
        with self._get_connection() as conn:
            conn.executescript(_SCHEMA_SQL)

            cursor = conn.execute("SELECT version FROM schema_version LIMIT 1")
            row = cursor.fetchone()

            if row is None:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (DATABASE_VERSION,))
            elif row[0] != DATABASE_VERSION:
                raise DatabaseError(
                    f"Database version mismatch: expected {DATABASE_VERSION}, got {row[0]}",
                    details={"expected": DATABASE_VERSION, "actual": row[0]}
                )
            conn.commit()

    def _now(self) -> datetime:
        return self._clock()

    def _now_iso(self) -> str:
        return format_timestamp(self._now())

    def _commit(self, conn: sqlite3.Connection) -> None:
        if self._tx_depth == 0:
            conn.commit()

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """
        Group writes into one atomic unit.

        Nested calls join the outer transaction. On any exception the whole
        unit is rolled back and the exception propagates.
        """
        with self._lock:
            with self._get_connection() as conn:
                self._tx_depth += 1
                try:
                    yield
                except BaseException:
                    self._tx_depth -= 1
                    if self._tx_depth == 0:
                        conn.rollback()
                    raise
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    conn.commit()

    # =========================================================================
    # Tracks
    # =========================================================================

    def upsert_track(self, track_data: dict[str, Any]) -> bool:
        """
        Insert a saved track or refresh its mutable fields.

        Returns:
            True if the track was inserted, False if it already existed.
        """
        now = self._now_iso()
        with self._lock:
            with self._get_connection() as conn:
                exists = conn.execute(
                    "SELECT 1 FROM tracks WHERE spotify_id = ?", (track_data["spotify_id"],)
                ).fetchone() is not None

                conn.execute("""
                    INSERT INTO tracks (
                        spotify_id, name, duration_ms, explicit, popularity, isrc,
                        added_at, first_seen_at, last_synced_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(spotify_id) DO UPDATE SET
                        name = excluded.name,
                        duration_ms = excluded.duration_ms,
                        explicit = excluded.explicit,
                        popularity = excluded.popularity,
                        isrc = excluded.isrc,
                        added_at = COALESCE(excluded.added_at, tracks.added_at),
                        last_synced_at = excluded.last_synced_at
                """, (
                    track_data["spotify_id"], track_data.get("name") or "",
                    track_data.get("duration_ms"), _as_int_bool(track_data.get("explicit")),
                    track_data.get("popularity"), track_data.get("isrc"),
                    track_data.get("added_at"), now, now
                ))
                self._commit(conn)
                return not exists

    def get_track(self, spotify_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM tracks WHERE spotify_id = ?", (spotify_id,)
                ).fetchone()
                if row is None:
                    return None
                data = dict(row)
                data["explicit"] = bool(data["explicit"]) if data["explicit"] is not None else None
                return data

    def get_track_ids(self) -> set[str]:
        with self._lock:
            with self._get_connection() as conn:
                return {row[0] for row in conn.execute("SELECT spotify_id FROM tracks")}

    def link_track_artist(self, track_id: str, artist_id: str, position: int) -> None:
        with self._lock:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO track_artists (track_id, artist_id, position)
                    VALUES (?, ?, ?)
                    ON CONFLICT(track_id, artist_id) DO UPDATE SET position = excluded.position
                """, (track_id, artist_id, position))
                self._commit(conn)

    def link_track_album(
        self,
        track_id: str,
        album_id: str,
        disc_number: int | None,
        track_number: int | None
    ) -> None:
        with self._lock:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO track_albums (track_id, album_id, disc_number, track_number)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(track_id, album_id) DO UPDATE SET
                        disc_number = excluded.disc_number,
                        track_number = excluded.track_number
                """, (track_id, album_id, disc_number, track_number))
                self._commit(conn)

    def get_track_artist_ids(self, track_id: str) -> list[str]:
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "SELECT artist_id FROM track_artists WHERE track_id = ? ORDER BY position",
                    (track_id,)
                )
                return [row[0] for row in cursor.fetchall()]

    # =========================================================================
    # Stubs and Enrichment
    # =========================================================================

    def insert_artist_stub(self, spotify_id: str, name: str) -> bool:
        """
        Insert a placeholder artist if none exists. Existing rows are untouched.

        Returns:
            True if a stub was created.
        """
        now = self._now_iso()
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    INSERT INTO artists (spotify_id, name, genres, popularity, followers,
                                         first_seen_at, last_synced_at)
                    VALUES (?, ?, '[]', 0, 0, ?, ?)
                    ON CONFLICT(spotify_id) DO NOTHING
                """, (spotify_id, name or "", now, now))
                self._commit(conn)
                return cursor.rowcount > 0

    def insert_album_stub(
        self,
        spotify_id: str,
        name: str,
        album_type: str | None = None,
        release_date: str | None = None,
        total_tracks: int | None = None
    ) -> bool:
        """
        Insert a placeholder album if none exists. Existing rows are untouched.

        The partial fields that come embedded in a track payload are kept;
        label and image stay empty until enrichment.
        """
        now = self._now_iso()
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    INSERT INTO albums (spotify_id, name, album_type, release_date, total_tracks,
                                        first_seen_at, last_synced_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(spotify_id) DO NOTHING
                """, (spotify_id, name or "", album_type or "album", release_date,
                      total_tracks, now, now))
                self._commit(conn)
                return cursor.rowcount > 0

    def enrich_artist(self, artist_data: dict[str, Any]) -> bool:
        """
        Write full artist details and a fresh last_synced_at.

        Creates the row if it does not exist yet. Returns True if the row
        already existed.
        """
        genres = json.dumps(list(artist_data.get("genres") or []))
        with self._lock:
            with self._get_connection() as conn:
                first_seen = self._get_first_seen(conn, "artists", artist_data["spotify_id"])
                existed = first_seen is not None
                if first_seen is None:
                    first_seen = self._now_iso()
                synced = self._synced_after(first_seen)
                conn.execute("""
                    INSERT INTO artists (spotify_id, name, genres, popularity, followers, image_url,
                                         first_seen_at, last_synced_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(spotify_id) DO UPDATE SET
                        name = excluded.name,
                        genres = excluded.genres,
                        popularity = excluded.popularity,
                        followers = excluded.followers,
                        image_url = excluded.image_url,
                        last_synced_at = excluded.last_synced_at
                """, (
                    artist_data["spotify_id"], artist_data.get("name") or "", genres,
                    artist_data.get("popularity"), artist_data.get("followers"),
                    artist_data.get("image_url"), first_seen, synced
                ))
                self._commit(conn)
                return existed

    def enrich_album(self, album_data: dict[str, Any]) -> bool:
        """
        Write full album details and a fresh last_synced_at.

        Creates the row if it does not exist yet. Returns True if the row
        already existed.
        """
        with self._lock:
            with self._get_connection() as conn:
                first_seen = self._get_first_seen(conn, "albums", album_data["spotify_id"])
                existed = first_seen is not None
                if first_seen is None:
                    first_seen = self._now_iso()
                synced = self._synced_after(first_seen)
                conn.execute("""
                    INSERT INTO albums (spotify_id, name, album_type, release_date, total_tracks,
                                        label, image_url, first_seen_at, last_synced_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(spotify_id) DO UPDATE SET
                        name = excluded.name,
                        album_type = excluded.album_type,
                        release_date = excluded.release_date,
                        total_tracks = excluded.total_tracks,
                        label = excluded.label,
                        image_url = excluded.image_url,
                        last_synced_at = excluded.last_synced_at
                """, (
                    album_data["spotify_id"], album_data.get("name") or "",
                    album_data.get("album_type") or "album", album_data.get("release_date"),
                    album_data.get("total_tracks"), album_data.get("label"),
                    album_data.get("image_url"), first_seen, synced
                ))
                self._commit(conn)
                return existed

    def _get_first_seen(self, conn: sqlite3.Connection, table: str, spotify_id: str) -> str | None:
        row = conn.execute(
            f"SELECT first_seen_at FROM {table} WHERE spotify_id = ?", (spotify_id,)
        ).fetchone()
        return row[0] if row else None

    def _synced_after(self, first_seen: str) -> str:
        """Current timestamp, forced strictly past first_seen so the row stops being a stub."""
        now = self._now()
        floor = parse_timestamp(first_seen) + timedelta(microseconds=1)
        if now < floor:
            now = floor
        return format_timestamp(now)

    def get_enrichment_candidates(
        self,
        table: str,
        stale_before: datetime,
        window_start: datetime,
        offset: int,
        limit: int
    ) -> list[str]:
        """
        Page through the ids an enrichment phase has to visit.

        A row belongs to the phase window when it is a stub, when it was last
        synced before stale_before, or when it was synced at/after
        window_start (i.e. enriched by this same phase). Rows enriched during
        the phase therefore keep their position, and the ordering by
        (first_seen_at, spotify_id) never shifts under a moving offset.
        """
        _check_enrichable(table)
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(f"""
                    SELECT spotify_id FROM {table}
                    WHERE first_seen_at = last_synced_at
                       OR last_synced_at < ?
                       OR last_synced_at >= ?
                    ORDER BY first_seen_at, spotify_id
                    LIMIT ? OFFSET ?
                """, (format_timestamp(stale_before), format_timestamp(window_start), limit, offset))
                return [row[0] for row in cursor.fetchall()]

    def count_enrichment_candidates(
        self,
        table: str,
        stale_before: datetime,
        window_start: datetime
    ) -> int:
        _check_enrichable(table)
        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute(f"""
                    SELECT COUNT(*) FROM {table}
                    WHERE first_seen_at = last_synced_at
                       OR last_synced_at < ?
                       OR last_synced_at >= ?
                """, (format_timestamp(stale_before), format_timestamp(window_start))).fetchone()
                return row[0]

    def is_stub(self, table: str, spotify_id: str) -> bool:
        """True when the row exists and has never been enriched."""
        _check_enrichable(table)
        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute(
                    f"SELECT first_seen_at = last_synced_at FROM {table} WHERE spotify_id = ?",
                    (spotify_id,)
                ).fetchone()
                return bool(row[0]) if row else False

    def count_stubs(self, table: str) -> int:
        _check_enrichable(table)
        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE first_seen_at = last_synced_at"
                ).fetchone()
                return row[0]

    def get_artist(self, spotify_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM artists WHERE spotify_id = ?", (spotify_id,)
                ).fetchone()
                if row is None:
                    return None
                data = dict(row)
                data["genres"] = json.loads(data["genres"]) if data["genres"] else []
                return data

    def get_album(self, spotify_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM albums WHERE spotify_id = ?", (spotify_id,)
                ).fetchone()
                return dict(row) if row else None

    # =========================================================================
    # Playlists
    # =========================================================================

    def get_playlist_snapshot(self, spotify_id: str) -> str | None:
        """Stored snapshot_id for a playlist, or None if the playlist is unknown."""
        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT snapshot_id FROM playlists WHERE spotify_id = ?", (spotify_id,)
                ).fetchone()
                return row[0] if row else None

    def upsert_playlist(self, playlist_data: dict[str, Any]) -> bool:
        """Create or update a playlist row. Returns True if it was created."""
        now = self._now_iso()
        with self._lock:
            with self._get_connection() as conn:
                exists = conn.execute(
                    "SELECT 1 FROM playlists WHERE spotify_id = ?", (playlist_data["spotify_id"],)
                ).fetchone() is not None
                conn.execute("""
                    INSERT INTO playlists (spotify_id, name, description, owner_id, is_public,
                                           snapshot_id, total_tracks, first_seen_at, last_synced_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(spotify_id) DO UPDATE SET
                        name = excluded.name,
                        description = excluded.description,
                        owner_id = excluded.owner_id,
                        is_public = excluded.is_public,
                        snapshot_id = excluded.snapshot_id,
                        total_tracks = excluded.total_tracks,
                        last_synced_at = excluded.last_synced_at
                """, (
                    playlist_data["spotify_id"], playlist_data.get("name") or "",
                    playlist_data.get("description"), playlist_data.get("owner_id"),
                    _as_int_bool(playlist_data.get("is_public")), playlist_data.get("snapshot_id"),
                    playlist_data.get("total_tracks"), now, now
                ))
                self._commit(conn)
                return not exists

    def replace_playlist_tracks(self, playlist_id: str, entries: Iterable[dict[str, Any]]) -> int:
        """
        Replace the member list of a playlist.

        Returns:
            Number of member rows written.
        """
        with self._lock:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM playlist_tracks WHERE playlist_id = ?", (playlist_id,))
                rows = [
                    (playlist_id, entry["track_id"], entry["position"],
                     entry.get("added_at"), entry.get("added_by"))
                    for entry in entries
                ]
                conn.executemany("""
                    INSERT INTO playlist_tracks (playlist_id, track_id, position, added_at, added_by)
                    VALUES (?, ?, ?, ?, ?)
                """, rows)
                self._commit(conn)
                return len(rows)

    def get_playlist(self, spotify_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM playlists WHERE spotify_id = ?", (spotify_id,)
                ).fetchone()
                if row is None:
                    return None
                data = dict(row)
                data["is_public"] = bool(data["is_public"]) if data["is_public"] is not None else None
                return data

    def get_playlist_track_ids(self, playlist_id: str) -> list[str]:
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "SELECT track_id FROM playlist_tracks WHERE playlist_id = ? ORDER BY position",
                    (playlist_id,)
                )
                return [row[0] for row in cursor.fetchall()]

    def get_missing_playlist_track_ids(self) -> list[str]:
        """Track ids that appear in playlists but not in the saved library."""
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    SELECT DISTINCT pt.track_id FROM playlist_tracks pt
                    LEFT JOIN tracks t ON t.spotify_id = pt.track_id
                    WHERE t.spotify_id IS NULL
                    ORDER BY pt.track_id
                """)
                return [row[0] for row in cursor.fetchall()]

    # =========================================================================
    # Sync Runs
    # =========================================================================

    def create_run(self, kind: str, resumed_from: int | None = None) -> int:
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    INSERT INTO sync_runs (kind, status, started_at, resumed_from)
                    VALUES (?, ?, ?, ?)
                """, (kind, RUN_IN_PROGRESS, self._now_iso(), resumed_from))
                self._commit(conn)
                return cursor.lastrowid

    def get_run(self, run_id: int) -> dict[str, Any] | None:
        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute("SELECT * FROM sync_runs WHERE id = ?", (run_id,)).fetchone()
                return dict(row) if row else None

    def list_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)
                )
                return [dict(row) for row in cursor.fetchall()]

    def get_latest_run(
        self,
        statuses: Iterable[str] | None = None,
        kind: str | None = None
    ) -> dict[str, Any] | None:
        """Newest run, optionally filtered by status and kind."""
        query = "SELECT * FROM sync_runs WHERE 1 = 1"
        params: list[Any] = []
        if statuses is not None:
            statuses = list(statuses)
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind)
        query += " ORDER BY id DESC LIMIT 1"

        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute(query, params).fetchone()
                return dict(row) if row else None

    def finish_run(self, run_id: int, status: str, error_message: str | None = None) -> None:
        """
        Move a run out of in_progress.

        Raises:
            DatabaseError: If the run does not exist or already finished.
        """
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute("""
                    UPDATE sync_runs SET status = ?, completed_at = ?, error_message = ?
                    WHERE id = ? AND status = ?
                """, (status, self._now_iso(), error_message, run_id, RUN_IN_PROGRESS))
                if cursor.rowcount == 0:
                    raise DatabaseError(
                        f"Sync run {run_id} is not in progress",
                        details={"run_id": run_id, "status": status}
                    )
                self._commit(conn)

    def add_run_counts(self, run_id: int, **counts: int) -> None:
        """Add to the summary counters of an in-progress run."""
        unknown = set(counts) - set(_RUN_COUNT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown run counters: {sorted(unknown)}")
        if not counts:
            return

        assignments = ", ".join(f"{name} = {name} + ?" for name in counts)
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    f"UPDATE sync_runs SET {assignments} WHERE id = ? AND status = ?",
                    (*counts.values(), run_id, RUN_IN_PROGRESS)
                )
                if cursor.rowcount == 0:
                    raise DatabaseError(
                        f"Sync run {run_id} is not in progress",
                        details={"run_id": run_id}
                    )
                self._commit(conn)

    # =========================================================================
    # Checkpoints
    # =========================================================================

    def get_checkpoint(self, state_key: str) -> dict[str, Any] | None:
        with self._lock:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM sync_checkpoints WHERE state_key = ?", (state_key,)
                ).fetchone()
                return dict(row) if row else None

    def put_checkpoint(self, checkpoint: dict[str, Any]) -> None:
        """Insert or overwrite a checkpoint row keyed by state_key."""
        values = tuple(checkpoint.get(name) for name in _CHECKPOINT_FIELDS)
        placeholders = ", ".join("?" for _ in _CHECKPOINT_FIELDS)
        updates = ", ".join(
            f"{name} = excluded.{name}" for name in _CHECKPOINT_FIELDS if name != "state_key"
        )
        with self._lock:
            with self._get_connection() as conn:
                conn.execute(f"""
                    INSERT INTO sync_checkpoints ({', '.join(_CHECKPOINT_FIELDS)})
                    VALUES ({placeholders})
                    ON CONFLICT(state_key) DO UPDATE SET {updates}
                """, values)
                self._commit(conn)

    def get_checkpoints_for_run(self, run_id: int) -> list[dict[str, Any]]:
        with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "SELECT * FROM sync_checkpoints WHERE run_id = ? ORDER BY created_at, rowid",
                    (run_id,)
                )
                return [dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_library_stats(self) -> dict[str, int]:
        """Entity counts for the final report."""
        with self._lock:
            with self._get_connection() as conn:
                def count(sql: str) -> int:
                    return conn.execute(sql).fetchone()[0]

                return {
                    "tracks": count("SELECT COUNT(*) FROM tracks"),
                    "artists": count("SELECT COUNT(*) FROM artists"),
                    "artist_stubs": count(
                        "SELECT COUNT(*) FROM artists WHERE first_seen_at = last_synced_at"
                    ),
                    "albums": count("SELECT COUNT(*) FROM albums"),
                    "album_stubs": count(
                        "SELECT COUNT(*) FROM albums WHERE first_seen_at = last_synced_at"
                    ),
                    "playlists": count("SELECT COUNT(*) FROM playlists"),
                    "playlist_links": count("SELECT COUNT(*) FROM playlist_tracks"),
                }


def _check_enrichable(table: str) -> None:
    if table not in ENRICHABLE_TABLES:
        raise ValueError(f"Not an enrichable table: {table}")


def _as_int_bool(value: Any) -> int | None:
    if value is None:
        return None
    return 1 if value else 0
