"""
Sync Service - facade over the offline sync engine

The HTTP layer and the CLI talk to this module only. Each method builds the
engine components from the current app config, so settings changes apply
without restarting workers.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import current_app

from ..models import ChangeQueueItem, ConflictRecord, QueueStatus
from ..utils.logger import get_logger
from ..utils.timestamps import to_iso
from .sync import (
    ChangeQueue,
    ConflictNotFoundError,
    DeviceStateManager,
    RetentionService,
    SyncCoordinator,
    SyncError,
    ValidationError,
    adapter_registry,
)

logger = get_logger('sync_service')

# Accepted spellings of change fields in request bodies (first match wins)
CHANGE_FIELD_ALIASES = {
    'entity_type': ('entityType', 'entity_type', 'dataType'),
    'entity_id': ('entityId', 'entity_id', 'recordId'),
    'operation': ('operation',),
    'payload': ('payload', 'changeData'),
    'baseline': ('baseline', 'originalData'),
    'client_timestamp': ('clientTimestamp', 'client_timestamp'),
    'payload_version': ('payloadVersion', 'payload_version'),
}

BATCH_OPERATION_TYPES = ('queue_change', 'update_status')


def change_from_dict(data: Any) -> Dict[str, Any]:
    """Normalize a change description from a request body into submit() kwargs."""
    if not isinstance(data, dict):
        raise ValidationError('change must be an object')
    change = {'entity_type': None, 'entity_id': None, 'operation': None, 'payload': None}
    for field, aliases in CHANGE_FIELD_ALIASES.items():
        for alias in aliases:
            if alias in data:
                change[field] = data[alias]
                break
    return change


class SyncService:
    """Offline sync operations for one (user, device).

    Provides:
    - Device registration, connectivity and settings
    - Change queueing (single and batch)
    - Queue processing with conflict detection
    - Incremental and full delta retrieval
    - Conflict listing and resolution
    - Maintenance sweeps
    """

    @staticmethod
    def _queue() -> ChangeQueue:
        return ChangeQueue(max_attempts=current_app.config.get('SYNC_MAX_ATTEMPTS', 5))

    @staticmethod
    def _coordinator() -> SyncCoordinator:
        return SyncCoordinator.from_config()

    @staticmethod
    def _retention() -> RetentionService:
        return RetentionService.from_config()

    # ==================== Device ====================

    @staticmethod
    def initialize_device(
        user_id: str,
        device_id: str,
        device_type: str,
        capabilities: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        state, is_new = DeviceStateManager.initialize(user_id, device_id, device_type, capabilities)
        return {
            'is_new': is_new,
            'sync_state': state.to_dict(),
            'entity_types': adapter_registry.entity_types(),
            'message': 'Device initialized for offline sync' if is_new else 'Device re-initialized',
        }

    @staticmethod
    def get_sync_status(user_id: str, device_id: str) -> Dict[str, Any]:
        state = DeviceStateManager.get_device(user_id, device_id)
        queue = SyncService._queue()
        counts = queue.count_by_status(user_id, device_id)
        permanently_failed = queue.count_permanently_failed(user_id, device_id)

        return {
            'sync_state': state.to_dict(),
            'pending_changes': counts[QueueStatus.PENDING] + counts[QueueStatus.FAILED] - permanently_failed,
            'in_flight': counts[QueueStatus.SYNCING],
            'conflicts': counts[QueueStatus.CONFLICT],
            'failed': permanently_failed,
            'total_pending_changes': state.total_pending,
            'last_sync': to_iso(state.last_sync_at),
            'is_online': state.is_online,
        }

    @staticmethod
    def update_connection_status(
        user_id: str,
        device_id: str,
        is_online: bool,
        quality: Optional[str] = None,
    ) -> Dict[str, Any]:
        state = DeviceStateManager.get_device(user_id, device_id)
        DeviceStateManager.update_connectivity(state, is_online, quality)
        logger.debug(f"Connectivity: device={device_id} online={state.is_online} quality={state.connection_quality}")
        return {
            'is_online': state.is_online,
            'connection_quality': state.connection_quality,
            'last_online': to_iso(state.last_online),
        }

    @staticmethod
    def update_settings(user_id: str, device_id: str, settings: Dict[str, Any]) -> Dict[str, Any]:
        state = DeviceStateManager.get_device(user_id, device_id)
        DeviceStateManager.update_settings(state, settings)
        logger.info(f"Sync settings updated: device={device_id}, keys={sorted(settings)}")
        return state.settings_dict()

    # ==================== Queue ====================

    @staticmethod
    def queue_change(user_id: str, device_id: str, **change) -> Dict[str, Any]:
        item = SyncService._queue().submit(user_id, device_id, **change)
        return {
            'change': item.to_dict(),
            'message': 'Change queued for sync',
        }

    @staticmethod
    def list_changes(
        user_id: str,
        device_id: str,
        status: Optional[str] = None,
        entity_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        DeviceStateManager.get_device(user_id, device_id)
        items = SyncService._queue().list_items(user_id, device_id, status, entity_type, limit)
        return [item.to_dict() for item in items]

    @staticmethod
    def batch_sync(user_id: str, device_id: str, operations: Any) -> Dict[str, Any]:
        """Apply a list of queue_change / update_status operations.

        Each operation succeeds or fails on its own; the batch never raises for
        a single bad operation.
        """
        if not isinstance(operations, list):
            raise ValidationError('operations must be an array')
        max_ops = current_app.config.get('SYNC_MAX_BATCH_LIMIT', 100)
        if len(operations) > max_ops:
            raise ValidationError(f'At most {max_ops} operations per batch')

        DeviceStateManager.get_device(user_id, device_id)

        results = []
        for index, operation in enumerate(operations):
            op_type = operation.get('type') if isinstance(operation, dict) else None
            data = (operation.get('data') if isinstance(operation, dict) else None) or {}
            entry = {'index': index, 'type': op_type}
            try:
                if not isinstance(data, dict):
                    raise ValidationError('operation data must be an object')
                if op_type == 'queue_change':
                    result = SyncService.queue_change(user_id, device_id, **change_from_dict(data))
                elif op_type == 'update_status':
                    result = SyncService.update_connection_status(
                        user_id, device_id, data.get('isOnline'), data.get('quality')
                    )
                else:
                    raise ValidationError(
                        f'Unknown operation type: {op_type}',
                        details={'supported': list(BATCH_OPERATION_TYPES)},
                    )
                entry.update(success=True, data=result)
            except SyncError as e:
                entry.update(success=False, error=e.to_dict())
            results.append(entry)

        successful = sum(1 for r in results if r['success'])
        logger.info(f"Batch sync: device={device_id}, {successful}/{len(results)} operations succeeded")
        return {
            'results': results,
            'processed': len(results),
            'successful': successful,
            'failed': len(results) - successful,
        }

    # ==================== Processing ====================

    @staticmethod
    def process_pending_sync(
        user_id: str,
        device_id: str,
        limit: Optional[int] = None,
        entity_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        if entity_type:
            adapter_registry.require(entity_type)
        limit = limit or current_app.config.get('SYNC_BATCH_LIMIT', 50)
        return SyncService._coordinator().process_pending(
            user_id, device_id, limit=limit, entity_type=entity_type
        )

    @staticmethod
    def get_incremental_sync(
        user_id: str,
        device_id: str,
        entity_type: str,
        since: Optional[datetime] = None,
        page_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        return SyncService._coordinator().get_incremental_since(
            user_id, device_id, entity_type, since=since, page_size=page_size
        )

    @staticmethod
    def force_full_sync(
        user_id: str,
        device_id: str,
        entity_types: Optional[List[str]] = None,
        include_data: bool = True,
    ) -> Dict[str, Any]:
        result = SyncService._coordinator().force_full_sync(
            user_id, device_id, entity_types, include_data=include_data
        )
        result['message'] = 'Full sync initiated'
        return result

    # ==================== Conflicts ====================

    @staticmethod
    def get_conflicts(
        user_id: str,
        device_id: Optional[str] = None,
        include_resolved: bool = False,
        limit: int = 100,
    ) -> Dict[str, Any]:
        query = ConflictRecord.query.filter(ConflictRecord.user_id == user_id)
        if device_id:
            query = query.filter(ConflictRecord.device_id == device_id)
        if not include_resolved:
            query = query.filter(ConflictRecord.resolved_at.is_(None))

        conflicts = query.order_by(ConflictRecord.detected_at.desc()).limit(limit).all()
        return {
            'conflicts': [conflict.to_dict() for conflict in conflicts],
            'count': len(conflicts),
        }

    @staticmethod
    def resolve_conflict(
        conflict_id: int,
        resolution: Optional[str] = None,
        resolved_data: Optional[Dict[str, Any]] = None,
        resolved_by: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Resolve a conflict; with user_id set, conflicts of other users are not visible."""
        if user_id is not None:
            owned = ConflictRecord.query.filter_by(id=conflict_id, user_id=user_id).count()
            if not owned:
                raise ConflictNotFoundError('Conflict not found', details={'conflict_id': conflict_id})
        return SyncService._coordinator().resolve_conflict(
            conflict_id, resolution, resolved_data, resolved_by
        )

    # ==================== Stats & maintenance ====================

    @staticmethod
    def get_sync_stats(user_id: str, device_id: str) -> Dict[str, Any]:
        state = DeviceStateManager.get_device(user_id, device_id)
        queue = SyncService._queue()
        counts = queue.count_by_status(user_id, device_id)

        by_entity = {}
        for cursor in state.cursors:
            by_entity[cursor.entity_type] = cursor.to_dict()

        oldest_pending = (
            ChangeQueueItem.query
            .filter_by(user_id=user_id, device_id=device_id, status=QueueStatus.PENDING)
            .order_by(ChangeQueueItem.created_at.asc())
            .first()
        )
        return {
            'device_id': device_id,
            'user_id': user_id,
            'status_counts': counts,
            'total_changes': sum(counts.values()),
            'permanently_failed': queue.count_permanently_failed(user_id, device_id),
            'total_pending': state.total_pending,
            'entities': by_entity,
            'oldest_pending_at': to_iso(oldest_pending.created_at) if oldest_pending else None,
            'last_sync': to_iso(state.last_sync_at),
        }

    @staticmethod
    def retry_failed(user_id: str, device_id: str) -> Dict[str, Any]:
        count = SyncService._retention().retry_failed(user_id, device_id)
        return {'requeued': count}

    @staticmethod
    def purge_failed(user_id: str, device_id: str) -> Dict[str, Any]:
        DeviceStateManager.get_device(user_id, device_id)
        count = SyncService._retention().purge_failed(user_id, device_id)
        return {'purged': count}

    @staticmethod
    def cleanup(
        completed_retention_days: Optional[int] = None,
        stale_device_days: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> Dict[str, Any]:
        return SyncService._retention().cleanup(
            completed_retention_days=completed_retention_days,
            stale_device_days=stale_device_days,
            max_attempts=max_attempts,
        )

    @staticmethod
    def release_stale_claims(timeout_seconds: Optional[int] = None) -> Dict[str, int]:
        return SyncService._retention().release_stale_claims(timeout_seconds)
