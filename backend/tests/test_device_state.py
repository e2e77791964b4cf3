"""
Device State Tests

Tests for DeviceStateManager: registration, connectivity, settings, cursors
and pending counters.
"""
from datetime import timedelta

import pytest

from offline_sync.extensions import db
from offline_sync.models import DeviceSyncState, EntitySyncCursor
from offline_sync.services.sync import DeviceNotFoundError, DeviceStateManager, ValidationError
from offline_sync.utils.timestamps import EPOCH, utcnow


class TestInitialize:
    """Tests for find-or-create registration."""

    def test_new_device(self, app):
        state, is_new = DeviceStateManager.initialize(
            'user-1', 'android-1', 'android', {'pushNotifications': True}
        )

        assert is_new is True
        assert state.device_type == 'android'
        assert state.is_online is True
        capabilities = state.get_capabilities()
        assert capabilities['pushNotifications'] is True
        assert capabilities['offlineStorage'] is True

    def test_creates_cursor_per_registered_type(self, app):
        state, _ = DeviceStateManager.initialize('user-1', 'android-1', 'android')

        types = {c.entity_type for c in EntitySyncCursor.query.filter_by(device_state_id=state.id)}
        assert types == {'appointment', 'patient', 'clinical_note', 'document'}

    def test_idempotent(self, app):
        first, _ = DeviceStateManager.initialize('user-1', 'android-1', 'android')
        second, is_new = DeviceStateManager.initialize(
            'user-1', 'android-1', 'android', {'biometricAuth': True}
        )

        assert is_new is False
        assert first.id == second.id
        assert DeviceSyncState.query.count() == 1
        assert second.get_capabilities()['biometricAuth'] is True
        assert EntitySyncCursor.query.filter_by(device_state_id=first.id).count() == 4

    def test_reinitialize_marks_online(self, app, device):
        DeviceStateManager.update_connectivity(device, False)
        DeviceStateManager.initialize('user-1', 'ios-device-1', 'ios')

        assert device.is_online is True

    @pytest.mark.parametrize('device_id, device_type', [
        ('', 'ios'),
        ('has spaces', 'ios'),
        ('ios-1', 'blackberry'),
        ('ios-1', None),
    ])
    def test_invalid_input(self, app, device_id, device_type):
        with pytest.raises(ValidationError):
            DeviceStateManager.initialize('user-1', device_id, device_type)

    def test_capabilities_must_be_object(self, app):
        with pytest.raises(ValidationError):
            DeviceStateManager.initialize('user-1', 'ios-1', 'ios', ['camera'])

    def test_get_device_not_found(self, app):
        with pytest.raises(DeviceNotFoundError):
            DeviceStateManager.get_device('user-1', 'missing')
        assert DeviceStateManager.get_device('user-1', 'missing', required=False) is None


class TestConnectivity:
    """Tests for connectivity pings."""

    def test_last_online_moves_only_on_transition(self, app, device):
        DeviceStateManager.update_connectivity(device, False)
        assert device.connection_quality == 'offline'

        went_offline_at = device.last_online
        DeviceStateManager.update_connectivity(device, False, 'poor')
        assert device.last_online == went_offline_at

        DeviceStateManager.update_connectivity(device, True, 'good')
        assert device.is_online is True
        assert device.connection_quality == 'good'
        assert device.last_online >= went_offline_at

        back_online_at = device.last_online
        DeviceStateManager.update_connectivity(device, True)
        assert device.last_online == back_online_at

    def test_rejects_non_boolean(self, app, device):
        with pytest.raises(ValidationError):
            DeviceStateManager.update_connectivity(device, 'yes')

    def test_rejects_unknown_quality(self, app, device):
        with pytest.raises(ValidationError):
            DeviceStateManager.update_connectivity(device, True, 'superb')


class TestSettings:
    """Tests for sync settings."""

    def test_update(self, app, device):
        DeviceStateManager.update_settings(device, {
            'auto_sync': False,
            'max_offline_days': 30,
            'conflict_resolution_policy': 'client_wins',
        })

        assert device.settings_dict() == {
            'auto_sync': False,
            'sync_on_wifi_only': False,
            'max_offline_days': 30,
            'conflict_resolution_policy': 'client_wins',
        }

    @pytest.mark.parametrize('settings', [
        {},
        {'auto_sync': 'no'},
        {'max_offline_days': 0},
        {'max_offline_days': True},
        {'conflict_resolution_policy': 'coin_flip'},
    ])
    def test_invalid(self, app, device, settings):
        with pytest.raises(ValidationError):
            DeviceStateManager.update_settings(device, settings)


class TestCursorsAndCounters:
    """Tests for record_entity_sync, get_cursor and reset_cursors."""

    def test_never_synced_type_starts_at_epoch(self, app, device):
        assert DeviceStateManager.get_cursor(device, 'invoice') == {'since': EPOCH, 'version': 0}

    def test_record_entity_sync_merges(self, app, device):
        moment = utcnow()
        DeviceStateManager.record_entity_sync(
            device, 'patient', last_sync_at=moment, version_delta=1, cursor_at=moment, pending_delta=2
        )
        DeviceStateManager.record_entity_sync(device, 'patient', version_delta=1, pending_delta=-1)

        cursor = EntitySyncCursor.query.filter_by(device_state_id=device.id, entity_type='patient').one()
        assert cursor.version == 2
        assert cursor.pending_count == 1
        assert cursor.cursor_at == moment
        assert cursor.last_sync_at == moment
        assert device.total_pending == 1
        assert device.last_sync_at == moment
        assert DeviceStateManager.get_cursor(device, 'patient') == {'since': moment, 'version': 2}

    def test_pending_counters_clamped_at_zero(self, app, device):
        DeviceStateManager.record_entity_sync(device, 'patient', pending_delta=-5)

        cursor = EntitySyncCursor.query.filter_by(device_state_id=device.id, entity_type='patient').one()
        assert cursor.pending_count == 0
        assert device.total_pending == 0

    def test_record_for_new_type_creates_cursor(self, app, device):
        DeviceStateManager.record_entity_sync(device, 'invoice', pending_delta=1)

        assert EntitySyncCursor.query.filter_by(device_state_id=device.id, entity_type='invoice').count() == 1

    def test_reset_cursors(self, app, device):
        moment = utcnow() - timedelta(minutes=5)
        for entity_type in ('patient', 'appointment'):
            DeviceStateManager.record_entity_sync(device, entity_type, cursor_at=moment)

        assert DeviceStateManager.reset_cursors(device, ['patient']) == 1
        db.session.expire_all()

        assert DeviceStateManager.get_cursor(device, 'patient')['since'] == EPOCH
        assert DeviceStateManager.get_cursor(device, 'appointment')['since'] == moment
        assert DeviceStateManager.reset_cursors(device, []) == 0
