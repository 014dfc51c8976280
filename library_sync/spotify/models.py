"""
Data models for Spotify entities.

This module defines immutable dataclasses representing the Spotify objects
the sync engine stores: saved tracks, artists, albums, playlists and
playlist members. Each model is parsed from a Web API payload with
from_spotify_api() and handed to the Database with to_database_dict().

Design Decisions:
    - All dataclasses are frozen (immutable) to prevent accidental modification
    - Fields match Spotify API response structure where possible
    - Optional fields stay None when Spotify does not provide them, so an
      empty genre list or label is never mistaken for "not enriched yet"
      (stub detection is timestamp based, see core/database.py)
    - Models are independent of database storage format

Usage:
    from library_sync.spotify.models import SavedTrack, Artist

    track = SavedTrack.from_spotify_api(item)   # item from current_user_saved_tracks
    artist = Artist.from_spotify_api(payload)   # payload from artists()
"""

import re
from dataclasses import dataclass, field
from typing import Any


_RELEASE_DATE_PATTERN = re.compile(r"^(\d{4})(?:-(\d{2}))?(?:-(\d{2}))?$")


def is_valid_track_item(track_item: dict[str, Any] | None) -> bool:
    """
    Check if a saved-track or playlist item is valid and processable.

    Invalid items:
        - None (removed from Spotify)
        - Missing track object
        - Local files (is_local = True)
        - Podcast episodes (type != 'track')
        - No id or empty name
    """
    if track_item is None or not isinstance(track_item, dict):
        return False

    track = track_item.get("track")
    if not isinstance(track, dict):
        return False

    if track_item.get("is_local", False) or track.get("is_local", False):
        return False

    if track.get("type", "track") != "track":
        return False

    if not track.get("id"):
        return False

    if not track.get("name"):
        return False

    return True


def normalize_release_date(value: str | None) -> str | None:
    """
    Normalize a Spotify release date to YYYY-MM-DD.

    Spotify reports dates at year, month or day precision ("1975",
    "1975-11", "1975-11-21"). Missing parts default to 01. Anything else
    returns None.
    """
    if not value:
        return None
    match = _RELEASE_DATE_PATTERN.match(value.strip())
    if match is None:
        return None
    year, month, day = match.groups()
    return f"{year}-{month or '01'}-{day or '01'}"


def _largest_image_url(images: list[dict[str, Any]] | None) -> str | None:
    if not images:
        return None
    try:
        best_image = max(
            images,
            key=lambda img: (img.get("width") or 0) * (img.get("height") or 0)
        )
        return best_image.get("url")
    except (ValueError, TypeError):
        return images[0].get("url")


@dataclass(frozen=True)
class ArtistRef:
    """Artist as embedded in a track payload (id and name only)."""
    spotify_id: str
    name: str


@dataclass(frozen=True)
class AlbumRef:
    """
    Album as embedded in a track payload.

    Carries the simplified album fields Spotify includes with every track.
    Label and images are only available from the full album object.
    """
    spotify_id: str
    name: str
    album_type: str | None = None
    release_date: str | None = None
    total_tracks: int | None = None


@dataclass(frozen=True)
class SavedTrack:
    """
    Immutable representation of a track in the user's library.

    Attributes:
        spotify_id: Unique Spotify track ID (22-character base62 string).
                    Example: "4cOdK2wGLETKBW3PvgPWqT"

        name: Track title as it appears on Spotify.
              Example: "Bohemian Rhapsody"

        duration_ms: Track duration in milliseconds.
                     Example: 354320 (about 5:54)

        explicit: Whether the track is marked explicit on Spotify.

        popularity: Spotify popularity score (0-100), None if absent.

        isrc: International Standard Recording Code, if available.
              Example: "GBUM71029604"

        added_at: ISO timestamp of when the user saved the track.
                  Example: "2024-01-15T10:30:00Z"

        artists: Artist references in credit order. Each one becomes a
                 stub row if the artist is not stored yet.

        album: Album reference, or None for the rare payload without one.

        track_number: Position of track within the album.

        disc_number: Disc number for multi-disc albums.

    Class Methods:
        from_spotify_api: Create SavedTrack from a saved-track item.
        to_database_dict: Convert to dict for Database.upsert_track().
    """

    spotify_id: str
    name: str
    duration_ms: int | None = None
    explicit: bool = False
    popularity: int | None = None
    isrc: str | None = None
    added_at: str | None = None
    artists: tuple[ArtistRef, ...] = field(default_factory=tuple)
    album: AlbumRef | None = None
    track_number: int | None = None
    disc_number: int | None = None

    @classmethod
    def from_spotify_api(cls, item: dict[str, Any]) -> "SavedTrack":
        """
        Create a SavedTrack from a current_user_saved_tracks item.

        Args:
            item: Wrapper object {"added_at": ..., "track": {...}}. Callers
                  should filter with is_valid_track_item() first.

        Returns:
            SavedTrack: A new instance populated from the payload.

        Behavior:
            1. Extract basic track info (id, name, duration, explicit)
            2. Collect artist references that carry an id
            3. Collect the embedded album reference, normalizing its
               release date
            4. Return frozen SavedTrack instance
        """
        track_data = item["track"]

        artists = tuple(
            ArtistRef(spotify_id=a["id"], name=a.get("name") or "")
            for a in track_data.get("artists") or []
            if a and a.get("id")
        )

        album = None
        album_info = track_data.get("album") or {}
        if album_info.get("id"):
            album = AlbumRef(
                spotify_id=album_info["id"],
                name=album_info.get("name") or "",
                album_type=album_info.get("album_type"),
                release_date=normalize_release_date(album_info.get("release_date")),
                total_tracks=album_info.get("total_tracks"),
            )

        return cls(
            spotify_id=track_data["id"],
            name=track_data.get("name") or "",
            duration_ms=track_data.get("duration_ms"),
            explicit=bool(track_data.get("explicit", False)),
            popularity=track_data.get("popularity"),
            isrc=(track_data.get("external_ids") or {}).get("isrc"),
            added_at=item.get("added_at"),
            artists=artists,
            album=album,
            track_number=track_data.get("track_number"),
            disc_number=track_data.get("disc_number"),
        )

    def to_database_dict(self) -> dict[str, Any]:
        """Convert to the column dict expected by Database.upsert_track()."""
        return {
            "spotify_id": self.spotify_id,
            "name": self.name,
            "duration_ms": self.duration_ms,
            "explicit": self.explicit,
            "popularity": self.popularity,
            "isrc": self.isrc,
            "added_at": self.added_at,
        }


@dataclass(frozen=True)
class Artist:
    """
    Full artist details, as returned by the several-artists endpoint.

    Attributes:
        spotify_id: Spotify artist ID.
        name: Artist name.
        genres: Genres from the artist's profile. May legitimately be empty.
        popularity: Popularity score (0-100).
        followers: Follower count.
        image_url: Largest profile image, if any.
    """

    spotify_id: str
    name: str
    genres: tuple[str, ...] = field(default_factory=tuple)
    popularity: int | None = None
    followers: int | None = None
    image_url: str | None = None

    @classmethod
    def from_spotify_api(cls, artist_data: dict[str, Any]) -> "Artist":
        return cls(
            spotify_id=artist_data["id"],
            name=artist_data.get("name") or "",
            genres=tuple(artist_data.get("genres") or ()),
            popularity=artist_data.get("popularity"),
            followers=(artist_data.get("followers") or {}).get("total"),
            image_url=_largest_image_url(artist_data.get("images")),
        )

    def to_database_dict(self) -> dict[str, Any]:
        return {
            "spotify_id": self.spotify_id,
            "name": self.name,
            "genres": list(self.genres),
            "popularity": self.popularity,
            "followers": self.followers,
            "image_url": self.image_url,
        }


@dataclass(frozen=True)
class Album:
    """
    Full album details, as returned by the several-albums endpoint.

    Attributes:
        spotify_id: Spotify album ID.
        name: Album title.
        album_type: "album", "single" or "compilation".
        release_date: Release date normalized to YYYY-MM-DD.
        total_tracks: Number of tracks on the album.
        label: Record label. May legitimately be empty.
        image_url: Largest cover image, if any.
    """

    spotify_id: str
    name: str
    album_type: str | None = None
    release_date: str | None = None
    total_tracks: int | None = None
    label: str | None = None
    image_url: str | None = None

    @classmethod
    def from_spotify_api(cls, album_data: dict[str, Any]) -> "Album":
        return cls(
            spotify_id=album_data["id"],
            name=album_data.get("name") or "",
            album_type=album_data.get("album_type"),
            release_date=normalize_release_date(album_data.get("release_date")),
            total_tracks=album_data.get("total_tracks"),
            label=album_data.get("label"),
            image_url=_largest_image_url(album_data.get("images")),
        )

    def to_database_dict(self) -> dict[str, Any]:
        return {
            "spotify_id": self.spotify_id,
            "name": self.name,
            "album_type": self.album_type,
            "release_date": self.release_date,
            "total_tracks": self.total_tracks,
            "label": self.label,
            "image_url": self.image_url,
        }


@dataclass(frozen=True)
class Playlist:
    """
    Playlist metadata from current_user_playlists.

    Attributes:
        spotify_id: Spotify playlist ID.
        name: Playlist name.
        description: Playlist description (may contain HTML entities).
        owner_id: Spotify user id of the owner.
        is_public: Public flag, None when Spotify does not report it.
        snapshot_id: Version token. Changes whenever the member list changes.
        total_tracks: Member count reported by Spotify.
    """

    spotify_id: str
    name: str
    description: str | None = None
    owner_id: str | None = None
    is_public: bool | None = None
    snapshot_id: str | None = None
    total_tracks: int | None = None

    @classmethod
    def from_spotify_api(cls, playlist_data: dict[str, Any]) -> "Playlist":
        # Newer payloads report the member count under "items"
        tracks_info = playlist_data.get("tracks") or playlist_data.get("items") or {}
        return cls(
            spotify_id=playlist_data["id"],
            name=playlist_data.get("name") or "",
            description=playlist_data.get("description") or None,
            owner_id=(playlist_data.get("owner") or {}).get("id"),
            is_public=playlist_data.get("public"),
            snapshot_id=playlist_data.get("snapshot_id"),
            total_tracks=tracks_info.get("total") if isinstance(tracks_info, dict) else None,
        )

    def to_database_dict(self) -> dict[str, Any]:
        return {
            "spotify_id": self.spotify_id,
            "name": self.name,
            "description": self.description,
            "owner_id": self.owner_id,
            "is_public": self.is_public,
            "snapshot_id": self.snapshot_id,
            "total_tracks": self.total_tracks,
        }


@dataclass(frozen=True)
class PlaylistEntry:
    """One member of a playlist at a given position."""

    track_id: str
    position: int
    added_at: str | None = None
    added_by: str | None = None

    @classmethod
    def from_spotify_api(cls, item: dict[str, Any], position: int) -> "PlaylistEntry":
        """
        Create a PlaylistEntry from a playlist_items item.

        Args:
            item: Wrapper object {"added_at", "added_by", "track"}. Callers
                  should filter with is_valid_track_item() first.
            position: Zero-based index of the item in the playlist.
        """
        return cls(
            track_id=item["track"]["id"],
            position=position,
            added_at=item.get("added_at"),
            added_by=(item.get("added_by") or {}).get("id"),
        )

    def to_database_dict(self) -> dict[str, Any]:
        return {
            "track_id": self.track_id,
            "position": self.position,
            "added_at": self.added_at,
            "added_by": self.added_by,
        }
