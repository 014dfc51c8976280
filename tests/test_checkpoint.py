"""Test checkpoint persistence and transitions"""

import pytest
from datetime import timedelta

from library_sync.sync.checkpoint import RATE_LIMIT_ERROR, CheckpointStore, state_key
from library_sync.sync.results import BatchSyncResult, CheckpointStatus, EntityType


@pytest.fixture
def store(database, clock):
    return CheckpointStore(database, now=clock)


@pytest.fixture
def run_id(database):
    return database.create_run('full')


class TestCheckpointStore:
    """Test CheckpointStore"""

    def test_state_key_format(self):
        assert state_key(7, EntityType.ALBUMS) == 'sync_7_albums'
        assert state_key(7, 'tracks') == 'sync_7_tracks'

    def test_get_or_create_is_idempotent(self, store, run_id, clock):
        first = store.get_or_create(run_id, EntityType.TRACKS)
        clock.advance(minutes=5)
        second = store.get_or_create(run_id, EntityType.TRACKS)

        assert first == second
        assert first.current_offset == 0
        assert first.status == CheckpointStatus.IN_PROGRESS
        assert first.window_start == clock.current - timedelta(minutes=5)

    def test_advance_moves_offset(self, store, run_id):
        checkpoint = store.get_or_create(run_id, EntityType.TRACKS)

        checkpoint = store.advance(checkpoint, BatchSyncResult(
            items_processed=50, new_items_added=50, has_more=True,
            next_offset=50, total_estimated=130
        ))

        assert checkpoint.current_offset == 50
        assert checkpoint.items_processed == 50
        assert checkpoint.total_items == 130
        assert checkpoint.status == CheckpointStatus.IN_PROGRESS
        assert store.get(run_id, EntityType.TRACKS) == checkpoint

    def test_last_batch_marks_success(self, store, run_id, clock):
        checkpoint = store.get_or_create(run_id, EntityType.TRACKS)

        checkpoint = store.advance(checkpoint, BatchSyncResult(
            items_processed=30, has_more=False, next_offset=30, total_estimated=30
        ))

        assert checkpoint.status == CheckpointStatus.SUCCESS
        assert checkpoint.completed_at == clock.current

    def test_total_kept_when_batch_has_none(self, store, run_id):
        checkpoint = store.get_or_create(run_id, EntityType.TRACKS)
        checkpoint = store.advance(checkpoint, BatchSyncResult(
            items_processed=10, has_more=True, next_offset=10, total_estimated=40
        ))

        checkpoint = store.advance(checkpoint, BatchSyncResult(
            items_processed=10, has_more=True, next_offset=20
        ))

        assert checkpoint.total_items == 40

    def test_offset_never_decreases(self, store, run_id):
        checkpoint = store.get_or_create(run_id, EntityType.TRACKS)
        checkpoint = store.advance(checkpoint, BatchSyncResult(has_more=True, next_offset=100))

        with pytest.raises(ValueError):
            store.advance(checkpoint, BatchSyncResult(has_more=True, next_offset=50))

        assert store.get(run_id, EntityType.TRACKS).current_offset == 100

    def test_rate_limited_round_trip(self, store, run_id, clock):
        checkpoint = store.get_or_create(run_id, EntityType.ARTISTS)
        reset_at = clock() + timedelta(hours=1)

        limited = store.mark_rate_limited(checkpoint, reset_at)

        assert limited.status == CheckpointStatus.RATE_LIMITED
        assert limited.rate_limit_reset_at == reset_at
        assert limited.last_error == RATE_LIMIT_ERROR
        assert store.get(run_id, EntityType.ARTISTS).rate_limit_reset_at == reset_at

        resumed = store.mark_in_progress(limited)

        assert resumed.status == CheckpointStatus.IN_PROGRESS
        assert resumed.rate_limit_reset_at is None

    def test_rate_limited_cannot_advance(self, store, run_id, clock):
        checkpoint = store.get_or_create(run_id, EntityType.TRACKS)
        limited = store.mark_rate_limited(checkpoint, clock())

        with pytest.raises(ValueError):
            store.advance(limited, BatchSyncResult(next_offset=50))

    def test_terminal_states(self, store, run_id, clock):
        checkpoint = store.get_or_create(run_id, EntityType.TRACKS)
        failed = store.mark_failed(checkpoint, 'boom')

        assert failed.status == CheckpointStatus.FAILED
        assert failed.last_error == 'boom'
        with pytest.raises(ValueError):
            store.mark_in_progress(failed)
        with pytest.raises(ValueError):
            store.mark_rate_limited(failed, clock())

    def test_seed_from_previous_run(self, store, run_id, database, clock):
        done = store.get_or_create(run_id, EntityType.TRACKS)
        done = store.advance(done, BatchSyncResult(
            items_processed=30, has_more=False, next_offset=30, total_estimated=30
        ))
        partial = store.get_or_create(run_id, EntityType.ARTISTS)
        partial = store.advance(partial, BatchSyncResult(
            items_processed=100, has_more=True, next_offset=100, total_estimated=250
        ))
        partial = store.mark_rate_limited(partial, clock() + timedelta(hours=2))

        new_run = database.create_run('full', resumed_from=run_id)
        seeded_done = store.seed_from(new_run, done)
        seeded_partial = store.seed_from(new_run, partial)

        assert seeded_done.status == CheckpointStatus.SUCCESS
        assert seeded_done.current_offset == 30
        assert seeded_partial.status == CheckpointStatus.RATE_LIMITED
        assert seeded_partial.rate_limit_reset_at == partial.rate_limit_reset_at
        assert seeded_partial.last_error == partial.last_error
        assert seeded_partial.current_offset == 100
        assert seeded_partial.total_items == 250
        assert seeded_partial.window_start == partial.window_start
        assert [cp.entity_type for cp in store.list_for_run(new_run)] == [
            EntityType.TRACKS, EntityType.ARTISTS
        ]
        # The old run keeps its own rows
        assert store.get(run_id, EntityType.ARTISTS).status == CheckpointStatus.RATE_LIMITED

    def test_seed_from_expired_rate_limit(self, store, run_id, database, clock):
        checkpoint = store.get_or_create(run_id, EntityType.TRACKS)
        checkpoint = store.mark_rate_limited(checkpoint, clock() + timedelta(minutes=5))
        clock.advance(minutes=10)

        new_run = database.create_run('full', resumed_from=run_id)
        seeded = store.seed_from(new_run, checkpoint)

        assert seeded.status == CheckpointStatus.IN_PROGRESS
        assert seeded.rate_limit_reset_at is None
        assert store.get(new_run, EntityType.TRACKS).status == CheckpointStatus.IN_PROGRESS
