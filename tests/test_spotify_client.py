"""Test the Spotify client wrapper"""

import pytest
import requests
import spotipy
from unittest.mock import patch

from library_sync.core.exceptions import SpotifyError
from library_sync.spotify.client import (
    MAX_ALBUMS_PER_REQUEST,
    MAX_ARTISTS_PER_REQUEST,
    SpotifyClient,
    _parse_retry_after,
)


@pytest.fixture
def spotify():
    """SpotifyClient singleton built on a mocked spotipy.Spotify"""
    SpotifyClient.reset()
    with patch('library_sync.spotify.client.SpotifyOAuth'), \
            patch('library_sync.spotify.client.spotipy.Spotify') as mock_spotify:
        SpotifyClient.init(client_id='id', client_secret='secret', open_browser=False)
        yield mock_spotify.return_value
    SpotifyClient.reset()


class TestSingleton:
    """Test SpotifyClient initialization"""

    def test_not_initialized(self):
        SpotifyClient.reset()

        with pytest.raises(SpotifyError):
            SpotifyClient()

    def test_init_once(self, spotify):
        assert SpotifyClient.is_initialized()
        assert SpotifyClient() is SpotifyClient()
        spotify.current_user.assert_called_once()

        with pytest.raises(SpotifyError):
            SpotifyClient.init(client_id='id', client_secret='secret')

    def test_uses_plain_requests_session(self):
        SpotifyClient.reset()
        with patch('library_sync.spotify.client.SpotifyOAuth'), \
                patch('library_sync.spotify.client.spotipy.Spotify') as mock_spotify:
            SpotifyClient.init(client_id='id', client_secret='secret', open_browser=False)

        session = mock_spotify.call_args.kwargs['requests_session']
        assert isinstance(session, requests.Session)
        SpotifyClient.reset()

    def test_failed_authentication(self):
        SpotifyClient.reset()
        with patch('library_sync.spotify.client.SpotifyOAuth'), \
                patch('library_sync.spotify.client.spotipy.Spotify') as mock_spotify:
            mock_spotify.return_value.current_user.side_effect = spotipy.SpotifyException(
                401, -1, 'invalid client'
            )

            with pytest.raises(SpotifyError) as exc_info:
                SpotifyClient.init(client_id='id', client_secret='bad', open_browser=False)

        assert exc_info.value.is_auth_error
        assert not SpotifyClient.is_initialized()


class TestCalls:
    """Test the calls the sync engine makes"""

    def test_list_primary(self, spotify):
        spotify.current_user_saved_tracks.return_value = {'items': [], 'total': 0}

        page = SpotifyClient().list_primary(100, 80)

        spotify.current_user_saved_tracks.assert_called_once_with(limit=50, offset=100)
        assert page == {'items': [], 'total': 0}

    def test_several_artists(self, spotify):
        spotify.artists.return_value = {'artists': [{'id': 'a1'}, None]}

        result = SpotifyClient().get_several_artists(['a1', 'gone'])

        spotify.artists.assert_called_once_with(['a1', 'gone'])
        assert result == [{'id': 'a1'}, None]

    def test_batch_limits(self, spotify):
        client = SpotifyClient()

        with pytest.raises(ValueError):
            client.get_several_artists(['a'] * (MAX_ARTISTS_PER_REQUEST + 1))
        with pytest.raises(ValueError):
            client.get_several_albums(['a'] * (MAX_ALBUMS_PER_REQUEST + 1))
        assert client.get_several_albums([]) == []
        spotify.albums.assert_not_called()

    def test_collection_items_excludes_episodes(self, spotify):
        spotify.playlist_items.return_value = {'items': [], 'total': 0}

        SpotifyClient().collection_items('pl_1', 200)

        spotify.playlist_items.assert_called_once_with(
            'pl_1', limit=100, offset=200, additional_types=('track',)
        )

    def test_empty_response(self, spotify):
        spotify.current_user_playlists.return_value = None

        with pytest.raises(SpotifyError):
            SpotifyClient().list_collections(0)


class TestErrorTranslation:
    """Test how remote failures are classified"""

    def test_rate_limit_with_retry_after(self, spotify):
        spotify.current_user_saved_tracks.side_effect = spotipy.SpotifyException(
            429, -1, 'too many requests', headers={'Retry-After': '30'}
        )

        with pytest.raises(SpotifyError) as exc_info:
            SpotifyClient().list_primary(0)

        assert exc_info.value.is_rate_limit
        assert exc_info.value.retry_after == 30
        assert not exc_info.value.is_transient

    def test_rate_limit_without_header(self, spotify):
        spotify.artists.side_effect = spotipy.SpotifyException(429, -1, 'too many requests')

        with pytest.raises(SpotifyError) as exc_info:
            SpotifyClient().get_several_artists(['a1'])

        assert exc_info.value.is_rate_limit
        assert exc_info.value.retry_after is None

    def test_server_error_is_transient(self, spotify):
        spotify.albums.side_effect = spotipy.SpotifyException(502, -1, 'bad gateway')

        with pytest.raises(SpotifyError) as exc_info:
            SpotifyClient().get_several_albums(['al1'])

        assert exc_info.value.is_transient

    def test_network_error_is_transient(self, spotify):
        spotify.current_user_playlists.side_effect = requests.exceptions.ConnectionError('reset')

        with pytest.raises(SpotifyError) as exc_info:
            SpotifyClient().list_collections(0)

        assert exc_info.value.is_transient

    def test_unauthorized(self, spotify):
        spotify.current_user_saved_tracks.side_effect = spotipy.SpotifyException(
            401, -1, 'token expired'
        )

        with pytest.raises(SpotifyError) as exc_info:
            SpotifyClient().list_primary(0)

        assert exc_info.value.is_auth_error

    def test_not_found_is_permanent(self, spotify):
        spotify.playlist_items.side_effect = spotipy.SpotifyException(404, -1, 'not found')

        with pytest.raises(SpotifyError) as exc_info:
            SpotifyClient().collection_items('pl_1', 0)

        error = exc_info.value
        assert not (error.is_rate_limit or error.is_transient or error.is_auth_error)
        assert error.details['http_status'] == 404

    @pytest.mark.parametrize('headers, expected', [
        (None, None),
        ({}, None),
        ({'Retry-After': '12'}, 12),
        ({'retry-after': '7'}, 7),
        ({'Retry-After': 'soon'}, None),
        ({'Retry-After': '-3'}, 0),
    ])
    def test_parse_retry_after(self, headers, expected):
        assert _parse_retry_after(headers) == expected
