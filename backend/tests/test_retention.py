"""
Retention Tests

Tests for completed-item cleanup, stale device removal, failed-item purge
and retry, counter reconciliation and stale claim release.
"""
from datetime import timedelta

import pytest

from offline_sync.extensions import db
from offline_sync.models import ChangeQueueItem, ConflictRecord, DeviceSyncState, EntitySyncCursor, QueueStatus
from offline_sync.services.sync import DeviceStateManager, RetentionService
from offline_sync.utils.timestamps import utcnow

USER = 'user-1'
DEVICE = 'ios-device-1'


@pytest.fixture
def retention(app):
    return RetentionService.from_config()


def _set(item, **values):
    ChangeQueueItem.query.filter_by(id=item.id).update(values, synchronize_session=False)
    db.session.commit()


def _age_device(state, days):
    old = utcnow() - timedelta(days=days)
    DeviceSyncState.query.filter_by(id=state.id).update(
        {'is_online': False, 'last_online': old, 'updated_at': old}, synchronize_session=False
    )
    db.session.commit()


def _submit(queue, entity_id, device_id=DEVICE):
    return queue.submit(USER, device_id, 'appointment', entity_id, 'create', {'patient_name': entity_id})


class TestCleanupCompleted:
    """Tests for cleanup_completed."""

    def test_removes_only_old_completed_items(self, app, device, queue, retention):
        old = utcnow() - timedelta(days=10)
        old_completed = _submit(queue, 'A1')
        recent_completed = _submit(queue, 'A2')
        old_pending = _submit(queue, 'A3')
        old_failed = _submit(queue, 'A4')
        old_conflict = _submit(queue, 'A5')
        _set(old_completed, status=QueueStatus.COMPLETED, completed_at=old)
        _set(recent_completed, status=QueueStatus.COMPLETED, completed_at=utcnow() - timedelta(days=1))
        _set(old_pending, created_at=old)
        _set(old_failed, status=QueueStatus.FAILED, attempts=1, created_at=old)
        _set(old_conflict, status=QueueStatus.CONFLICT, created_at=old)

        assert retention.cleanup_completed(7) == 1

        remaining = {item.entity_id: item.status for item in ChangeQueueItem.query.all()}
        assert remaining == {
            'A2': QueueStatus.COMPLETED,
            'A3': QueueStatus.PENDING,
            'A4': QueueStatus.FAILED,
            'A5': QueueStatus.CONFLICT,
        }

    def test_resolved_conflict_removed_with_item(self, app, device, queue, retention):
        item = _submit(queue, 'A1')
        db.session.add(ConflictRecord(
            queue_item_id=item.id, user_id=USER, device_id=DEVICE,
            entity_type='appointment', entity_id='A1', resolution='server_wins', resolved_at=utcnow(),
        ))
        db.session.commit()
        _set(item, status=QueueStatus.COMPLETED, completed_at=utcnow() - timedelta(days=30))

        assert retention.cleanup_completed() == 1
        assert ConflictRecord.query.count() == 0

    def test_nothing_to_do(self, app, retention):
        assert retention.cleanup_completed(7) == 0


class TestCleanupStaleDevices:
    """Tests for cleanup_stale_devices."""

    def test_removes_long_offline_device_and_cursors(self, app, device, retention):
        _age_device(device, 60)

        assert retention.cleanup_stale_devices(30) == 1
        assert DeviceSyncState.query.count() == 0
        assert EntitySyncCursor.query.count() == 0

    def test_keeps_recent_and_online_devices(self, app, device, retention):
        recent, _ = DeviceStateManager.initialize(USER, 'web-2', 'web')
        _age_device(recent, 3)
        online, _ = DeviceStateManager.initialize(USER, 'android-3', 'android')
        old = utcnow() - timedelta(days=90)
        DeviceSyncState.query.filter_by(id=online.id).update(
            {'last_online': old, 'updated_at': old}, synchronize_session=False
        )
        db.session.commit()

        assert retention.cleanup_stale_devices(30) == 0
        assert DeviceSyncState.query.count() == 3

    def test_keeps_device_with_unfinished_changes(self, app, device, queue, retention):
        _submit(queue, 'A1')
        _age_device(device, 60)

        assert retention.cleanup_stale_devices(30) == 0
        assert DeviceSyncState.query.count() == 1

    def test_removes_device_whose_changes_are_all_terminal(self, app, device, queue, retention):
        done = _submit(queue, 'A1')
        dead = _submit(queue, 'A2')
        _set(done, status=QueueStatus.COMPLETED, completed_at=utcnow())
        _set(dead, status=QueueStatus.FAILED, attempts=1, retryable=False)
        _age_device(device, 60)

        assert retention.cleanup_stale_devices(30) == 1
        assert ChangeQueueItem.query.count() == 0


class TestFailedItems:
    """Tests for purge_failed and retry_failed."""

    def test_purge_only_permanent_failures(self, app, device, queue, retention):
        exhausted = _submit(queue, 'A1')
        rejected = _submit(queue, 'A2')
        retrying = _submit(queue, 'A3')
        _set(exhausted, status=QueueStatus.FAILED, attempts=3)
        _set(rejected, status=QueueStatus.FAILED, attempts=1, retryable=False)
        _set(retrying, status=QueueStatus.FAILED, attempts=1)

        assert retention.purge_failed(USER, DEVICE) == 2
        assert [item.entity_id for item in ChangeQueueItem.query.all()] == ['A3']

    def test_purge_scoped_to_device(self, app, device, queue, retention):
        DeviceStateManager.initialize(USER, 'web-2', 'web')
        mine = _submit(queue, 'A1')
        other = _submit(queue, 'A2', device_id='web-2')
        for item in (mine, other):
            _set(item, status=QueueStatus.FAILED, attempts=1, retryable=False)

        assert retention.purge_failed(USER, 'web-2') == 1
        assert [item.entity_id for item in ChangeQueueItem.query.all()] == ['A1']

    def test_purge_with_attempt_override(self, app, device, queue, retention):
        item = _submit(queue, 'A1')
        _set(item, status=QueueStatus.FAILED, attempts=2)

        assert retention.purge_failed(max_attempts=5) == 0
        assert retention.purge_failed(max_attempts=2) == 1

    def test_retry_restores_pending_and_counters(self, app, device, queue, coordinator, retention):
        missing = queue.submit(USER, DEVICE, 'appointment', 'A404', 'update', {'status': 'x'})
        coordinator.process_pending(USER, DEVICE)
        assert device.total_pending == 0

        assert retention.retry_failed(USER, DEVICE) == 1

        item = db.session.get(ChangeQueueItem, missing.id)
        assert item.status == QueueStatus.PENDING
        assert item.attempts == 0
        assert item.retryable is True
        assert item.last_error is None
        assert device.total_pending == 1

    def test_retry_of_retryable_failure_keeps_count(self, app, device, queue, retention):
        item = _submit(queue, 'A1')
        _set(item, status=QueueStatus.FAILED, attempts=1)

        assert retention.retry_failed(USER, DEVICE) == 1
        assert device.total_pending == 1


class TestReconcile:
    """Tests for reconcile_pending_counts."""

    def test_corrects_drifted_counters(self, app, device, queue, retention):
        _submit(queue, 'A1')
        queue.submit(USER, DEVICE, 'document', 'D1', 'delete', None)
        done = _submit(queue, 'A2')
        _set(done, status=QueueStatus.COMPLETED, completed_at=utcnow())
        DeviceSyncState.query.filter_by(id=device.id).update({'total_pending': 42}, synchronize_session=False)
        EntitySyncCursor.query.filter_by(device_state_id=device.id).update(
            {'pending_count': 9}, synchronize_session=False
        )
        db.session.commit()

        assert retention.reconcile_pending_counts() == 1

        assert device.total_pending == 2
        counts = {c.entity_type: c.pending_count for c in EntitySyncCursor.query.filter_by(device_state_id=device.id)}
        assert counts['appointment'] == 1
        assert counts['document'] == 1
        assert counts['patient'] == 0
        assert retention.reconcile_pending_counts() == 0


class TestReleaseStaleClaims:
    """Tests for release_stale_claims."""

    def test_stuck_items_become_retryable_failures(self, app, device, queue, retention):
        stuck = _submit(queue, 'A1')
        fresh = _submit(queue, 'A2')
        _set(stuck, status=QueueStatus.SYNCING, attempts=1, last_attempt_at=utcnow() - timedelta(hours=1))
        _set(fresh, status=QueueStatus.SYNCING, attempts=1, last_attempt_at=utcnow())

        result = retention.release_stale_claims()

        assert result['items'] == 1
        stuck = db.session.get(ChangeQueueItem, stuck.id)
        assert stuck.status == QueueStatus.FAILED
        assert stuck.retryable is True
        assert stuck.error_kind == 'transient'
        assert db.session.get(ChangeQueueItem, fresh.id).status == QueueStatus.SYNCING
        assert [item.entity_id for item in queue.get_pending(USER, DEVICE)] == ['A1']

    def test_exhausted_stuck_item_leaves_pending_count(self, app, device, queue, retention):
        stuck = _submit(queue, 'A1')
        _set(stuck, status=QueueStatus.SYNCING, attempts=3, last_attempt_at=utcnow() - timedelta(hours=1))

        retention.release_stale_claims()

        assert device.total_pending == 0

    def test_expired_device_claims_cleared(self, app, device, retention):
        DeviceSyncState.query.filter_by(id=device.id).update(
            {'claimed_by': 'dead-worker', 'claimed_at': utcnow() - timedelta(hours=1)},
            synchronize_session=False,
        )
        db.session.commit()

        assert retention.release_stale_claims()['devices'] == 1
        assert device.claimed_by is None

    def test_explicit_timeout(self, app, device, queue, retention):
        stuck = _submit(queue, 'A1')
        _set(stuck, status=QueueStatus.SYNCING, attempts=1, last_attempt_at=utcnow() - timedelta(minutes=2))

        assert retention.release_stale_claims()['items'] == 0
        assert retention.release_stale_claims(timeout_seconds=60)['items'] == 1


class TestCleanup:
    """Tests for the combined sweep."""

    def test_runs_every_sweep(self, app, device, queue, retention):
        done = _submit(queue, 'A1')
        _set(done, status=QueueStatus.COMPLETED, completed_at=utcnow() - timedelta(days=30))

        result = retention.cleanup()

        assert set(result) == {
            'stale_claims', 'completed_items', 'failed_items', 'stale_devices', 'reconciled_devices',
        }
        assert result['completed_items'] == 1
        assert result['stale_devices'] == 0
