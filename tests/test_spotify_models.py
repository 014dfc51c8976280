"""Test Spotify data models"""

import pytest

from conftest import make_album_payload, make_artist_payload, make_playlist, make_saved_item
from library_sync.spotify.models import (
    Album,
    Artist,
    Playlist,
    PlaylistEntry,
    SavedTrack,
    is_valid_track_item,
    normalize_release_date,
)


class TestSpotifyModels:
    """Test Spotify data models"""

    def test_saved_track_from_api(self, sample_track_data):
        """Test SavedTrack creation from a saved-track item"""
        track = SavedTrack.from_spotify_api(sample_track_data)

        assert track.spotify_id == 'test_track_123'
        assert track.name == 'Test Song'
        assert track.duration_ms == 210000
        assert track.added_at == '2024-01-15T10:30:00Z'
        assert [a.spotify_id for a in track.artists] == ['artist_123']
        assert track.album.spotify_id == 'album_123'
        assert track.album.release_date == '2023-01-01'
        assert track.track_number == 3

    def test_saved_track_database_dict(self):
        track = SavedTrack.from_spotify_api(make_saved_item('t1'))

        data = track.to_database_dict()

        assert data['spotify_id'] == 't1'
        assert data['isrc'] == 'ISRCt1'
        assert 'artists' not in data

    def test_artist_without_id_is_dropped(self):
        item = make_saved_item('t1', artist_ids=('a1',))
        item['track']['artists'].append({'id': None, 'name': 'Unknown'})

        track = SavedTrack.from_spotify_api(item)

        assert [a.spotify_id for a in track.artists] == ['a1']

    def test_artist_from_api(self):
        artist = Artist.from_spotify_api(make_artist_payload('a1', genres=('jazz', 'soul')))

        assert artist.genres == ('jazz', 'soul')
        assert artist.followers == 1234
        assert artist.image_url == 'https://img/a1/large'
        assert artist.to_database_dict()['genres'] == ['jazz', 'soul']

    def test_artist_with_empty_profile(self):
        artist = Artist.from_spotify_api({'id': 'a1', 'name': 'Quiet'})

        assert artist.genres == ()
        assert artist.followers is None
        assert artist.image_url is None

    def test_album_from_api(self):
        album = Album.from_spotify_api(make_album_payload('al1', label=''))

        assert album.release_date == '2023-05-01'
        assert album.label == ''
        assert album.image_url == 'https://img/al1'

    def test_playlist_total(self):
        assert Playlist.from_spotify_api(make_playlist('p1', total=12)).total_tracks == 12

        payload = make_playlist('p2')
        del payload['tracks']
        payload['items'] = {'total': 4}
        assert Playlist.from_spotify_api(payload).total_tracks == 4

    def test_playlist_entry(self):
        item = {'added_at': '2024-02-01T08:00:00Z', 'added_by': None,
                'track': {'id': 't1', 'name': 'Song'}}

        entry = PlaylistEntry.from_spotify_api(item, 7)

        assert entry.position == 7
        assert entry.added_by is None
        assert entry.to_database_dict()['track_id'] == 't1'


class TestTrackValidation:
    """Test is_valid_track_item"""

    def test_valid_item(self, sample_track_data):
        assert is_valid_track_item(sample_track_data)

    @pytest.mark.parametrize('item', [
        None,
        {},
        {'track': None},
        {'is_local': True, 'track': {'id': 't1', 'name': 'Local'}},
        {'track': {'id': 't1', 'name': 'Local', 'is_local': True}},
        {'track': {'id': 'e1', 'name': 'Episode', 'type': 'episode'}},
        {'track': {'id': None, 'name': 'Gone'}},
        {'track': {'id': 't1', 'name': ''}},
    ])
    def test_invalid_items(self, item):
        assert not is_valid_track_item(item)


class TestReleaseDate:
    """Test normalize_release_date"""

    @pytest.mark.parametrize('value, expected', [
        ('1975', '1975-01-01'),
        ('1975-11', '1975-11-01'),
        ('1975-11-21', '1975-11-21'),
        ('', None),
        (None, None),
        ('0000', '0000-01-01'),
        ('November 1975', None),
    ])
    def test_precisions(self, value, expected):
        assert normalize_release_date(value) == expected
