"""Test configuration and fixtures"""

import pytest
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

from library_sync.core.config import SyncConfig
from library_sync.core.database import Database
from library_sync.core.exceptions import SpotifyError
from library_sync.sync.rate_limiter import RateLimiter


START_TIME = datetime(2025, 1, 6, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """UTC clock that only moves when told to (or when something sleeps)"""

    def __init__(self, start: datetime = START_TIME):
        self.current = start
        self.sleeps = []

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)


class FakeSpotifyClient:
    """
    In-memory stand-in for SpotifyClient.

    Saved tracks are kept newest first, like the Web API returns them.
    fail_next() queues exceptions that the named method raises on its next
    calls before answering normally again.
    """

    def __init__(self):
        self.saved_items = []
        self.artists = {}
        self.albums = {}
        self.playlists = []
        self.playlist_items = {}
        self.calls = []
        self._failures = {}
        self._failures_at = {}

    def fail_next(self, method: str, *errors: Exception) -> None:
        self._failures.setdefault(method, []).extend(errors)

    def fail_at(self, method: str, call_number: int, error: Exception) -> None:
        """Raise `error` on the call_number-th call (1-based) of `method`"""
        self._failures_at[(method, call_number)] = error

    def calls_to(self, method: str) -> list:
        return [args for name, args in self.calls if name == method]

    def _record(self, method: str, *args) -> None:
        self.calls.append((method, args))
        error = self._failures_at.pop((method, len(self.calls_to(method))), None)
        if error is not None:
            raise error
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    def list_primary(self, offset, limit=50):
        self._record('list_primary', offset, limit)
        return {
            'items': self.saved_items[offset:offset + limit],
            'total': len(self.saved_items),
        }

    def get_several_artists(self, artist_ids):
        self._record('get_several_artists', tuple(artist_ids))
        return [self.artists.get(artist_id) for artist_id in artist_ids]

    def get_several_albums(self, album_ids):
        self._record('get_several_albums', tuple(album_ids))
        return [self.albums.get(album_id) for album_id in album_ids]

    def list_collections(self, offset, limit=50):
        self._record('list_collections', offset, limit)
        return {
            'items': self.playlists[offset:offset + limit],
            'total': len(self.playlists),
        }

    def collection_items(self, playlist_id, offset, limit=100):
        self._record('collection_items', playlist_id, offset, limit)
        items = self.playlist_items.get(playlist_id, [])
        return {
            'items': items[offset:offset + limit],
            'total': len(items),
        }


# =============================================================================
# Payload builders
# =============================================================================

def make_saved_item(track_id, artist_ids=('artist_1',), album_id='album_1', added_at=None):
    """Saved-track item as returned by current_user_saved_tracks"""
    return {
        'added_at': added_at or '2024-01-15T10:30:00Z',
        'track': {
            'id': track_id,
            'name': f'Song {track_id}',
            'type': 'track',
            'is_local': False,
            'duration_ms': 210000,
            'explicit': False,
            'popularity': 50,
            'track_number': 3,
            'disc_number': 1,
            'external_ids': {'isrc': f'ISRC{track_id}'},
            'artists': [{'id': a, 'name': f'Artist {a}'} for a in artist_ids],
            'album': {
                'id': album_id,
                'name': f'Album {album_id}',
                'album_type': 'album',
                'total_tracks': 12,
                'release_date': '2023',
            },
        },
    }


def make_artist_payload(artist_id, genres=('rock',)):
    return {
        'id': artist_id,
        'name': f'Artist {artist_id}',
        'genres': list(genres),
        'popularity': 70,
        'followers': {'total': 1234},
        'images': [
            {'url': f'https://img/{artist_id}/small', 'width': 64, 'height': 64},
            {'url': f'https://img/{artist_id}/large', 'width': 640, 'height': 640},
        ],
    }


def make_album_payload(album_id, label='Test Label'):
    return {
        'id': album_id,
        'name': f'Album {album_id}',
        'album_type': 'album',
        'release_date': '2023-05',
        'total_tracks': 12,
        'label': label,
        'images': [{'url': f'https://img/{album_id}', 'width': 300, 'height': 300}],
    }


def make_playlist(playlist_id, snapshot_id='snap_1', total=0):
    return {
        'id': playlist_id,
        'name': f'Playlist {playlist_id}',
        'description': '',
        'owner': {'id': 'user_1'},
        'public': True,
        'snapshot_id': snapshot_id,
        'tracks': {'total': total},
    }


def make_playlist_item(track_id):
    return {
        'added_at': '2024-02-01T08:00:00Z',
        'added_by': {'id': 'user_1'},
        'track': {'id': track_id, 'name': f'Song {track_id}', 'type': 'track'},
    }


def rate_limit_error(retry_after=None):
    return SpotifyError('Rate limited', is_rate_limit=True, retry_after=retry_after)


def transient_error():
    return SpotifyError('Spotify server error: 503', is_transient=True)


def library(client, track_count, artist_count=5, album_count=3):
    """Fill a fake client with a consistent library and return it"""
    client.saved_items = [
        make_saved_item(
            f'track_{i:03d}',
            artist_ids=(f'artist_{i % artist_count}',),
            album_id=f'album_{i % album_count}',
        )
        for i in range(track_count)
    ]
    client.artists = {
        f'artist_{i}': make_artist_payload(f'artist_{i}') for i in range(artist_count)
    }
    client.albums = {
        f'album_{i}': make_album_payload(f'album_{i}') for i in range(album_count)
    }
    return client


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def temp_dir():
    """Create temporary directory for tests"""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database(temp_dir, clock):
    """Database on a temporary file, driven by the fake clock"""
    db = Database(temp_dir / 'library.db', clock=clock)
    yield db
    db.close()


@pytest.fixture
def fake_client():
    return FakeSpotifyClient()


@pytest.fixture
def sync_config():
    """Sync settings with no real pacing and short retry delays"""
    return SyncConfig(
        requests_per_window=10000,
        window_seconds=60.0,
        batch_sizes={'tracks': 50, 'artists': 100, 'albums': 100, 'playlists': 50},
        max_attempts=3,
        retry_base_delay=1.0,
        rate_limit_retries=3,
    )


@pytest.fixture
def rate_limiter(clock):
    return RateLimiter(max_requests=10000, window_seconds=60.0, sleep=clock.sleep)


@pytest.fixture
def sample_track_data():
    """Sample saved-track item for testing"""
    return {
        'added_at': '2024-01-15T10:30:00Z',
        'track': {
            'id': 'test_track_123',
            'name': 'Test Song',
            'artists': [{'id': 'artist_123', 'name': 'Test Artist'}],
            'album': {
                'id': 'album_123',
                'name': 'Test Album',
                'album_type': 'album',
                'total_tracks': 12,
                'release_date': '2023-01-01',
                'release_date_precision': 'day',
                'artists': [{'id': 'artist_123', 'name': 'Test Artist'}]
            },
            'duration_ms': 210000,  # 3:30
            'explicit': False,
            'popularity': 75,
            'track_number': 3
        }
    }
