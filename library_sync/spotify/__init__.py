"""
Spotify module for library-sync.

Provides the Spotify Web API client and the models parsed from its payloads.
"""

from library_sync.spotify.client import SpotifyClient
from library_sync.spotify.models import (
    Album,
    AlbumRef,
    Artist,
    ArtistRef,
    Playlist,
    PlaylistEntry,
    SavedTrack,
)

__all__ = [
    "SpotifyClient",
    "SavedTrack",
    "Artist",
    "ArtistRef",
    "Album",
    "AlbumRef",
    "Playlist",
    "PlaylistEntry",
]
