"""Test batch fetchers"""

import pytest
from datetime import timedelta
from unittest.mock import patch

from conftest import (
    library,
    make_artist_payload,
    make_playlist,
    make_playlist_item,
    make_saved_item,
    rate_limit_error,
    transient_error,
)
from library_sync.core.exceptions import SpotifyError, SyncCancelledError
from library_sync.sync.cancellation import CancellationToken
from library_sync.sync.fetchers import (
    AlbumBatchFetcher,
    ArtistBatchFetcher,
    PlaylistBatchFetcher,
    TrackBatchFetcher,
)


def build(fetcher_class, fake_client, database, rate_limiter, sync_config, clock):
    return fetcher_class(
        fake_client, database, rate_limiter, sync_config, now=clock, sleep=clock.sleep
    )


class TestTrackBatchFetcher:
    """Test saved-track batches"""

    @pytest.fixture
    def fetcher(self, fake_client, database, rate_limiter, sync_config, clock):
        return build(TrackBatchFetcher, fake_client, database, rate_limiter, sync_config, clock)

    def test_pages_through_library(self, fetcher, fake_client, database):
        """130 tracks in batches of 50 take three batches"""
        library(fake_client, 130)

        results = []
        offset = 0
        while True:
            result = fetcher.fetch_batch(offset, 50)
            results.append(result)
            offset = result.next_offset
            if not result.has_more:
                break

        assert [r.next_offset for r in results] == [50, 100, 130]
        assert [r.new_items_added for r in results] == [50, 50, 30]
        assert all(r.total_estimated == 130 for r in results)
        assert len(database.get_track_ids()) == 130

    def test_references_become_stubs(self, fetcher, fake_client, database):
        library(fake_client, 10, artist_count=5, album_count=3)

        fetcher.fetch_batch(0, 50)

        assert database.count_stubs('artists') == 5
        assert database.count_stubs('albums') == 3
        assert database.get_track_artist_ids('track_001') == ['artist_1']
        album = database.get_album('album_1')
        assert album['release_date'] == '2023-01-01'
        assert album['total_tracks'] == 12

    def test_refetch_is_idempotent(self, fetcher, fake_client, database):
        library(fake_client, 20)

        first = fetcher.fetch_batch(0, 50)
        second = fetcher.fetch_batch(0, 50)

        assert first.new_items_added == 20
        assert second.new_items_added == 0
        assert second.items_updated == 20
        assert len(database.get_track_ids()) == 20
        assert database.get_library_stats()['artists'] == 5

    def test_existing_artist_not_reset_to_stub(self, fetcher, fake_client, database):
        library(fake_client, 5, artist_count=1)
        database.enrich_artist({'spotify_id': 'artist_0', 'name': 'Real Name', 'genres': ['jazz']})

        fetcher.fetch_batch(0, 50)

        artist = database.get_artist('artist_0')
        assert artist['name'] == 'Real Name'
        assert artist['genres'] == ['jazz']
        assert not database.is_stub('artists', 'artist_0')

    def test_invalid_items_are_skipped_but_counted(self, fetcher, fake_client, database):
        local_file = make_saved_item('local_1')
        local_file['track']['is_local'] = True
        fake_client.saved_items = [make_saved_item('track_a'), None, local_file]

        result = fetcher.fetch_batch(0, 50)

        assert result.items_processed == 3
        assert result.new_items_added == 1
        assert result.next_offset == 3
        assert database.get_track_ids() == {'track_a'}

    def test_empty_library(self, fetcher, fake_client):
        result = fetcher.fetch_batch(0, 50)

        assert result.success
        assert result.has_more is False
        assert result.items_processed == 0
        assert result.total_estimated == 0

    def test_progress_callback(self, fetcher, fake_client):
        library(fake_client, 7)
        reports = []

        fetcher.fetch_batch(0, 50, progress_cb=lambda done, message: reports.append(done))

        assert reports == [7]

    def test_rejects_bad_arguments(self, fetcher):
        with pytest.raises(ValueError):
            fetcher.fetch_batch(-1, 50)
        with pytest.raises(ValueError):
            fetcher.fetch_batch(0, 0)

    def test_cancelled_token(self, fetcher, fake_client):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(SyncCancelledError):
            fetcher.fetch_batch(0, 50, cancel=token)

        assert fake_client.calls == []


class TestRemoteCallPolicy:
    """Test rate limit and retry handling of remote calls"""

    @pytest.fixture
    def fetcher(self, fake_client, database, rate_limiter, sync_config, clock):
        library(fake_client, 60)
        return build(TrackBatchFetcher, fake_client, database, rate_limiter, sync_config, clock)

    def test_long_retry_after_reports_rate_limited(self, fetcher, fake_client, database, clock):
        fake_client.fail_next('list_primary', rate_limit_error(retry_after=3600))

        result = fetcher.fetch_batch(50, 50)

        assert result.rate_limited
        assert not result.success
        assert result.next_offset == 50
        assert result.has_more
        assert result.rate_limit_reset_at == clock.current + timedelta(seconds=3600)
        assert database.get_track_ids() == set()
        assert len(fake_client.calls_to('list_primary')) == 1

    def test_short_retry_after_retries_in_place(self, fetcher, fake_client, clock):
        fake_client.fail_next('list_primary', rate_limit_error(retry_after=30))

        result = fetcher.fetch_batch(0, 50)

        assert result.success
        assert result.new_items_added == 50
        assert len(fake_client.calls_to('list_primary')) == 2
        # Only the limiter backoff is waited, it already covers the 30s
        assert len(clock.sleeps) == 1
        assert clock.sleeps[0] == pytest.approx(60, abs=1)

    def test_missing_retry_after_escalates_then_gives_up(self, fetcher, fake_client, clock):
        fake_client.fail_next('list_primary', *[rate_limit_error() for _ in range(4)])

        result = fetcher.fetch_batch(0, 50)

        assert result.rate_limited
        assert result.rate_limit_reset_at == clock.current + timedelta(hours=24)
        assert len(fake_client.calls_to('list_primary')) == 4
        assert clock.sleeps == [
            pytest.approx(60, abs=1),
            pytest.approx(120, abs=1),
            pytest.approx(180, abs=1),
        ]

    def test_success_resets_backoff(self, fetcher, fake_client, rate_limiter):
        fake_client.fail_next('list_primary', rate_limit_error(retry_after=5))

        fetcher.fetch_batch(0, 50)

        assert rate_limiter.backoff.consecutive_hits == 0
        assert rate_limiter.backoff_remaining() == 0

    def test_transient_errors_retry_with_exponential_delay(self, fetcher, fake_client, clock):
        fake_client.fail_next('list_primary', transient_error(), transient_error())

        result = fetcher.fetch_batch(0, 50)

        assert result.success
        assert clock.sleeps == [1.0, 2.0]
        assert len(fake_client.calls_to('list_primary')) == 3

    def test_transient_errors_exhausted(self, fetcher, fake_client):
        fake_client.fail_next('list_primary', *[transient_error() for _ in range(3)])

        result = fetcher.fetch_batch(0, 50)

        assert not result.success
        assert not result.rate_limited
        assert 'gave up after 3 attempts' in result.error_message
        assert result.next_offset == 0

    def test_other_errors_fail_immediately(self, fetcher, fake_client, clock):
        fake_client.fail_next('list_primary', SpotifyError('Failed to fetch saved tracks: 404'))

        result = fetcher.fetch_batch(0, 50)

        assert result.error_message == 'Failed to fetch saved tracks: 404'
        assert len(fake_client.calls_to('list_primary')) == 1
        assert clock.sleeps == []

    def test_cancel_during_retry_wait(self, fake_client, database, rate_limiter, sync_config, clock):
        token = CancellationToken()

        def sleep_and_cancel(seconds):
            token.cancel()

        fetcher = TrackBatchFetcher(
            fake_client, database, rate_limiter, sync_config, now=clock, sleep=sleep_and_cancel
        )
        fake_client.fail_next('list_primary', transient_error())

        with pytest.raises(SyncCancelledError):
            fetcher.fetch_batch(0, 50, cancel=token)


class TestEnrichmentFetchers:
    """Test artist and album enrichment batches"""

    @pytest.fixture
    def artist_fetcher(self, fake_client, database, rate_limiter, sync_config, clock):
        return build(ArtistBatchFetcher, fake_client, database, rate_limiter, sync_config, clock)

    @pytest.fixture
    def album_fetcher(self, fake_client, database, rate_limiter, sync_config, clock):
        return build(AlbumBatchFetcher, fake_client, database, rate_limiter, sync_config, clock)

    def test_enriches_all_stubs(self, artist_fetcher, fake_client, database, clock):
        for i in range(120):
            artist_id = f'artist_{i:03d}'
            database.insert_artist_stub(artist_id, artist_id)
            fake_client.artists[artist_id] = make_artist_payload(artist_id)

        window_start = clock()
        first = artist_fetcher.fetch_batch(0, 100, window_start=window_start)
        second = artist_fetcher.fetch_batch(first.next_offset, 100, window_start=window_start)

        assert (first.next_offset, first.has_more, first.total_estimated) == (100, True, 120)
        assert (second.next_offset, second.has_more, second.total_estimated) == (120, False, 120)
        assert first.new_items_added + second.new_items_added == 120
        assert [len(args[0]) for args in fake_client.calls_to('get_several_artists')] == [50, 50, 20]
        assert database.count_stubs('artists') == 0

        artist = database.get_artist('artist_000')
        assert artist['genres'] == ['rock']
        assert artist['followers'] == 1234
        assert artist['image_url'] == 'https://img/artist_000/large'

    def test_unresolved_ids_are_stepped_over(self, artist_fetcher, fake_client, database, clock):
        database.insert_artist_stub('artist_a', 'A')
        database.insert_artist_stub('artist_gone', 'Gone')
        fake_client.artists['artist_a'] = make_artist_payload('artist_a')

        result = artist_fetcher.fetch_batch(0, 100, window_start=clock())

        assert result.items_processed == 2
        assert result.new_items_added == 1
        assert result.next_offset == 2
        assert not result.has_more
        assert database.is_stub('artists', 'artist_gone')

    def test_fresh_rows_are_not_candidates(self, artist_fetcher, fake_client, database, clock):
        database.enrich_artist({'spotify_id': 'artist_a', 'name': 'A'})
        clock.advance(days=1)

        result = artist_fetcher.fetch_batch(0, 100, window_start=clock())

        assert result.total_estimated == 0
        assert not result.has_more
        assert fake_client.calls_to('get_several_artists') == []

    def test_stale_rows_are_refreshed(self, artist_fetcher, fake_client, database, clock):
        database.enrich_artist({'spotify_id': 'artist_a', 'name': 'Old'})
        fake_client.artists['artist_a'] = make_artist_payload('artist_a')
        clock.advance(days=30)

        result = artist_fetcher.fetch_batch(0, 100, window_start=clock())

        assert result.items_updated == 1
        assert result.new_items_added == 0
        assert database.get_artist('artist_a')['name'] == 'Artist artist_a'

    def test_albums_requested_twenty_at_a_time(self, album_fetcher, fake_client, database, clock):
        library(fake_client, 0, album_count=45)
        for album_id in fake_client.albums:
            database.insert_album_stub(album_id, album_id)

        result = album_fetcher.fetch_batch(0, 100, window_start=clock())

        assert [len(args[0]) for args in fake_client.calls_to('get_several_albums')] == [20, 20, 5]
        assert result.new_items_added == 45
        assert database.count_stubs('albums') == 0
        assert database.get_album('album_0')['label'] == 'Test Label'
        assert database.get_album('album_0')['release_date'] == '2023-05-01'

    def test_rate_limit_leaves_stubs_untouched(self, artist_fetcher, fake_client, database, clock):
        database.insert_artist_stub('artist_a', 'A')
        fake_client.artists['artist_a'] = make_artist_payload('artist_a')
        fake_client.fail_next('get_several_artists', rate_limit_error(retry_after=7200))

        result = artist_fetcher.fetch_batch(0, 100, window_start=clock())

        assert result.rate_limited
        assert result.next_offset == 0
        assert database.is_stub('artists', 'artist_a')


class TestPlaylistBatchFetcher:
    """Test playlist batches and snapshot short-circuit"""

    @pytest.fixture
    def fetcher(self, fake_client, database, rate_limiter, sync_config, clock):
        return build(PlaylistBatchFetcher, fake_client, database, rate_limiter, sync_config, clock)

    def test_new_playlist_members_stored(self, fetcher, fake_client, database):
        fake_client.playlists = [make_playlist('pl_1', total=3)]
        fake_client.playlist_items['pl_1'] = [make_playlist_item(f't{i}') for i in range(3)]

        result = fetcher.fetch_batch(0, 50)

        assert result.new_items_added == 1
        assert not result.has_more
        assert database.get_playlist_track_ids('pl_1') == ['t0', 't1', 't2']
        assert database.get_playlist_snapshot('pl_1') == 'snap_1'

    def test_unchanged_snapshot_skips_members(self, fetcher, fake_client, database):
        fake_client.playlists = [make_playlist('pl_1', total=2)]
        fake_client.playlist_items['pl_1'] = [make_playlist_item('t0'), make_playlist_item('t1')]
        fetcher.fetch_batch(0, 50)
        calls_before = len(fake_client.calls_to('collection_items'))

        with patch.object(
            database, 'replace_playlist_tracks', wraps=database.replace_playlist_tracks
        ) as replace:
            result = fetcher.fetch_batch(0, 50)

        replace.assert_not_called()
        assert len(fake_client.calls_to('collection_items')) == calls_before
        assert result.items_updated == 1
        assert database.get_playlist_track_ids('pl_1') == ['t0', 't1']

    def test_changed_snapshot_refreshes_members(self, fetcher, fake_client, database):
        fake_client.playlists = [make_playlist('pl_1', snapshot_id='snap_1')]
        fake_client.playlist_items['pl_1'] = [make_playlist_item('t0'), make_playlist_item('t1')]
        fetcher.fetch_batch(0, 50)

        fake_client.playlists = [make_playlist('pl_1', snapshot_id='snap_2')]
        fake_client.playlist_items['pl_1'] = [make_playlist_item('t9')]
        fetcher.fetch_batch(0, 50)

        assert database.get_playlist_track_ids('pl_1') == ['t9']
        assert database.get_playlist_snapshot('pl_1') == 'snap_2'

    def test_members_paged_with_absolute_positions(self, fetcher, fake_client, database):
        items = [make_playlist_item(f't{i:03d}') for i in range(230)]
        items[5] = None
        fake_client.playlists = [make_playlist('pl_big', total=230)]
        fake_client.playlist_items['pl_big'] = items

        fetcher.fetch_batch(0, 50)

        offsets = [args[1] for args in fake_client.calls_to('collection_items')]
        assert offsets == [0, 100, 200]
        stored = database.get_playlist_track_ids('pl_big')
        assert len(stored) == 229
        assert stored[5] == 't006'

    def test_members_rate_limited_writes_nothing(self, fetcher, fake_client, database):
        fake_client.playlists = [make_playlist('pl_1')]
        fake_client.playlist_items['pl_1'] = [make_playlist_item('t0')]
        fake_client.fail_next('collection_items', rate_limit_error(retry_after=600))

        result = fetcher.fetch_batch(0, 50)

        assert result.rate_limited
        assert database.get_playlist('pl_1') is None
