"""
Device State Manager - per (user, device) sync bookkeeping

Counters (pending counts, versions, sequence) are always changed with
in-database increments so concurrent requests for the same device never lose
updates.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from ...extensions import db
from ...models import DeviceSyncState, EntitySyncCursor
from ...models.device_state import DEFAULT_CAPABILITIES
from ...utils.logger import get_logger
from ...utils.timestamps import EPOCH, utcnow
from ...utils.validators import (
    CONNECTION_QUALITIES,
    DEVICE_TYPES,
    RESOLUTIONS,
    validate_choice,
    validate_device_id,
)
from .errors import DeviceNotFoundError, ValidationError
from .registry import adapter_registry

logger = get_logger('device_state')


def clamped_increment(column, delta: int):
    """SQL expression for column + delta, floored at zero."""
    return db.case((column + delta < 0, 0), else_=column + delta)


class DeviceStateManager:
    """Find-or-create, connectivity, cursors and counters of a device."""

    @staticmethod
    def get_device(user_id: str, device_id: str, required: bool = True) -> Optional[DeviceSyncState]:
        state = DeviceSyncState.query.filter_by(user_id=user_id, device_id=device_id).first()
        if state is None and required:
            raise DeviceNotFoundError(
                'Device not found or not initialized',
                details={'device_id': device_id},
            )
        return state

    @staticmethod
    def initialize(
        user_id: str,
        device_id: str,
        device_type: str,
        capabilities: Optional[Dict[str, Any]] = None,
    ) -> Tuple[DeviceSyncState, bool]:
        """Idempotent find-or-create.

        Returns:
            (state, is_new)
        """
        is_valid, error_msg = validate_device_id(device_id)
        if not is_valid:
            raise ValidationError(error_msg)
        is_valid, error_msg, device_type = validate_choice(device_type, DEVICE_TYPES, 'deviceType')
        if not is_valid:
            raise ValidationError(error_msg)
        if capabilities is not None and not isinstance(capabilities, dict):
            raise ValidationError('capabilities must be an object')

        state = DeviceStateManager.get_device(user_id, device_id, required=False)
        is_new = False

        if state is None:
            state = DeviceSyncState(
                user_id=user_id,
                device_id=device_id,
                device_type=device_type,
                is_online=True,
                last_online=utcnow(),
            )
            state.set_capabilities({**DEFAULT_CAPABILITIES, **(capabilities or {})})
            db.session.add(state)
            try:
                db.session.commit()
                is_new = True
            except IntegrityError:
                # Another request registered the same device first
                db.session.rollback()
                state = DeviceStateManager.get_device(user_id, device_id)

        if not is_new:
            state.device_type = device_type
            if capabilities:
                state.set_capabilities({**state.get_capabilities(), **capabilities})
            DeviceStateManager.update_connectivity(state, True, commit=False)
            db.session.commit()

        for entity_type in adapter_registry.entity_types():
            DeviceStateManager.ensure_cursor(state, entity_type)

        logger.info(
            f"Device {'registered' if is_new else 're-initialized'}: "
            f"user={user_id}, device={device_id}, type={device_type}"
        )
        return state, is_new

    @staticmethod
    def ensure_cursor(state: DeviceSyncState, entity_type: str) -> EntitySyncCursor:
        """Cursor row for an entity type, created (and committed) on first use."""
        cursor = EntitySyncCursor.query.filter_by(
            device_state_id=state.id, entity_type=entity_type
        ).first()
        if cursor is not None:
            return cursor

        cursor = EntitySyncCursor(device_state_id=state.id, entity_type=entity_type)
        db.session.add(cursor)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            cursor = EntitySyncCursor.query.filter_by(
                device_state_id=state.id, entity_type=entity_type
            ).one()
        return cursor

    @staticmethod
    def update_connectivity(
        state: DeviceSyncState,
        is_online: bool,
        quality: Optional[str] = None,
        commit: bool = True,
    ) -> DeviceSyncState:
        """Record a connectivity ping; last_online moves only on a transition to online."""
        if not isinstance(is_online, bool):
            raise ValidationError('isOnline must be a boolean')
        default_quality = 'excellent' if is_online else 'offline'
        is_valid, error_msg, quality = validate_choice(
            quality, CONNECTION_QUALITIES, 'quality', default=default_quality
        )
        if not is_valid:
            raise ValidationError(error_msg)

        was_online = state.is_online
        state.is_online = is_online
        state.connection_quality = quality
        if is_online and not was_online:
            state.last_online = utcnow()
        state.updated_at = utcnow()

        if commit:
            db.session.commit()
        return state

    @staticmethod
    def update_settings(state: DeviceSyncState, settings: Dict[str, Any]) -> DeviceSyncState:
        if not isinstance(settings, dict) or not settings:
            raise ValidationError('settings must be a non-empty object')

        for key in ('auto_sync', 'sync_on_wifi_only'):
            if key in settings:
                if not isinstance(settings[key], bool):
                    raise ValidationError(f'{key} must be a boolean')
                setattr(state, key, settings[key])

        if 'max_offline_days' in settings:
            value = settings['max_offline_days']
            if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 365:
                raise ValidationError('max_offline_days must be an integer between 1 and 365')
            state.max_offline_days = value

        if 'conflict_resolution_policy' in settings:
            is_valid, error_msg, policy = validate_choice(
                settings['conflict_resolution_policy'], RESOLUTIONS, 'conflict_resolution_policy'
            )
            if not is_valid:
                raise ValidationError(error_msg)
            state.conflict_resolution_policy = policy

        db.session.commit()
        return state

    @staticmethod
    def record_entity_sync(
        state: DeviceSyncState,
        entity_type: str,
        last_sync_at: Optional[datetime] = None,
        version: Optional[int] = None,
        version_delta: int = 0,
        cursor_at: Optional[datetime] = None,
        pending_delta: int = 0,
        commit: bool = True,
    ) -> None:
        """Merge progress for one entity type.

        Pending deltas are applied to the cursor row and to the device total
        in the same statement batch, so the total never needs a queue scan.
        """
        cursor = DeviceStateManager.ensure_cursor(state, entity_type)

        values = {}
        if last_sync_at is not None:
            values[EntitySyncCursor.last_sync_at] = last_sync_at
        if version is not None:
            values[EntitySyncCursor.version] = version
        elif version_delta:
            values[EntitySyncCursor.version] = EntitySyncCursor.version + version_delta
        if cursor_at is not None:
            values[EntitySyncCursor.cursor_at] = cursor_at
        if pending_delta:
            values[EntitySyncCursor.pending_count] = clamped_increment(
                EntitySyncCursor.pending_count, pending_delta
            )

        if values:
            values[EntitySyncCursor.updated_at] = utcnow()
            EntitySyncCursor.query.filter_by(id=cursor.id).update(values, synchronize_session=False)

        device_values = {}
        if pending_delta:
            device_values[DeviceSyncState.total_pending] = clamped_increment(
                DeviceSyncState.total_pending, pending_delta
            )
        if last_sync_at is not None:
            device_values[DeviceSyncState.last_sync_at] = last_sync_at
        if device_values:
            device_values[DeviceSyncState.updated_at] = utcnow()
            DeviceSyncState.query.filter_by(id=state.id).update(
                device_values, synchronize_session=False
            )

        if commit:
            db.session.commit()

    @staticmethod
    def get_cursor(state: DeviceSyncState, entity_type: str) -> Dict[str, Any]:
        """{since, version}; a type that was never synced starts at the epoch."""
        cursor = EntitySyncCursor.query.filter_by(
            device_state_id=state.id, entity_type=entity_type
        ).first()
        if cursor is None:
            return {'since': EPOCH, 'version': 0}
        return {'since': cursor.since, 'version': cursor.version}

    @staticmethod
    def reset_cursors(state: DeviceSyncState, entity_types: Iterable[str]) -> int:
        """Move delta cursors back to the epoch."""
        entity_types = list(entity_types)
        if not entity_types:
            return 0
        count = EntitySyncCursor.query.filter(
            EntitySyncCursor.device_state_id == state.id,
            EntitySyncCursor.entity_type.in_(entity_types),
        ).update(
            {EntitySyncCursor.cursor_at: None, EntitySyncCursor.updated_at: utcnow()},
            synchronize_session=False,
        )
        db.session.commit()
        logger.info(f"Cursors reset to epoch: device={state.device_id}, types={entity_types}")
        return count
