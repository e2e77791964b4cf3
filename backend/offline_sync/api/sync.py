"""
Offline sync API

Every route except /sync/health needs an authenticated caller (see
middleware.auth.require_auth); the user id comes from g.user_id. SyncError
subclasses raised below are turned into the response envelope by the app's
error handler.
"""
from flask import Blueprint, current_app, g, request

from ..middleware.auth import require_admin, require_auth
from ..services.sync_service import SyncService, change_from_dict
from ..services.sync import ValidationError, adapter_registry
from ..utils.responses import ApiResponse, success_response
from ..utils.timestamps import to_iso, utcnow
from ..utils.validators import (
    sanitize_string,
    validate_device_id,
    validate_entity_type,
    validate_entity_types_list,
    validate_limit,
    validate_timestamp,
)
from ..utils.logger import get_logger

sync_bp = Blueprint('sync', __name__)
logger = get_logger('api.sync')


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def _check_device_id(device_id: str) -> None:
    is_valid, error_msg = validate_device_id(device_id)
    if not is_valid:
        raise ValidationError(error_msg)


# ==================== Devices ====================

@sync_bp.route('/sync/devices/initialize', methods=['POST'])
@require_auth
def initialize_device():
    """
    Register a device (idempotent)

    Request Body:
        - deviceId: device identifier (required)
        - deviceType: ios / android / web (required)
        - capabilities: object (optional)
    """
    data = _json_body()
    result = SyncService.initialize_device(
        g.user_id,
        data.get('deviceId'),
        data.get('deviceType'),
        data.get('capabilities'),
    )
    if result['is_new']:
        return ApiResponse.created(result, result['message'])
    return success_response(result, result['message'])


@sync_bp.route('/sync/devices/<device_id>/status', methods=['GET'])
@require_auth
def get_sync_status(device_id):
    """Queue counters and device state"""
    _check_device_id(device_id)
    return success_response(SyncService.get_sync_status(g.user_id, device_id))


@sync_bp.route('/sync/devices/<device_id>/connection', methods=['POST'])
@require_auth
def update_connection(device_id):
    """
    Connectivity ping

    Request Body:
        - isOnline: boolean (required)
        - quality: excellent / good / poor / offline
    """
    _check_device_id(device_id)
    data = _json_body()
    result = SyncService.update_connection_status(
        g.user_id, device_id, data.get('isOnline'), data.get('quality')
    )
    return success_response(result, 'Connection status updated')


@sync_bp.route('/sync/devices/<device_id>/settings', methods=['PUT'])
@require_auth
def update_settings(device_id):
    """
    Update sync settings

    Request Body (any of):
        - autoSync, syncOnWifiOnly: boolean
        - maxOfflineDays: 1-365
        - conflictResolution: server_wins / client_wins / manual_resolve
    """
    _check_device_id(device_id)
    data = _json_body()
    names = {
        'autoSync': 'auto_sync',
        'syncOnWifiOnly': 'sync_on_wifi_only',
        'maxOfflineDays': 'max_offline_days',
        'conflictResolution': 'conflict_resolution_policy',
    }
    settings = {
        names.get(key, key): value for key, value in data.items()
        if key in names or key in names.values()
    }
    result = SyncService.update_settings(g.user_id, device_id, settings)
    return success_response(result, 'Sync settings updated')


@sync_bp.route('/sync/devices/<device_id>/stats', methods=['GET'])
@require_auth
def get_sync_stats(device_id):
    _check_device_id(device_id)
    return success_response(SyncService.get_sync_stats(g.user_id, device_id))


# ==================== Queue ====================

@sync_bp.route('/sync/devices/<device_id>/queue', methods=['POST'])
@require_auth
def queue_change(device_id):
    """
    Queue one change

    Request Body:
        - entityType: registered entity type (required)
        - entityId: target record id (required)
        - operation: create / update / delete (required)
        - payload: object (required for create/update)
        - baseline: snapshot or timestamp the client edited from
        - clientTimestamp: ISO 8601
        - payloadVersion: integer, default 1
    """
    _check_device_id(device_id)
    result = SyncService.queue_change(g.user_id, device_id, **change_from_dict(_json_body()))
    return ApiResponse.created(result, result['message'])


@sync_bp.route('/sync/devices/<device_id>/queue', methods=['GET'])
@require_auth
def list_changes(device_id):
    """
    List queued changes

    Query:
        - status, entityType: filters
        - limit: 1-100
    """
    _check_device_id(device_id)
    is_valid, error_msg, limit = validate_limit(
        request.args.get('limit'), 100, current_app.config.get('SYNC_MAX_BATCH_LIMIT', 100)
    )
    if not is_valid:
        return ApiResponse.validation_error(error_msg)

    items = SyncService.list_changes(
        g.user_id, device_id,
        status=sanitize_string(request.args.get('status'), 16) or None,
        entity_type=sanitize_string(request.args.get('entityType'), 32) or None,
        limit=limit,
    )
    return success_response(items, f'{len(items)} changes')


@sync_bp.route('/sync/devices/<device_id>/batch', methods=['POST'])
@require_auth
def batch_sync(device_id):
    """
    Several queue_change / update_status operations in one request

    Request Body:
        - operations: [{type, data}, ...]
    """
    _check_device_id(device_id)
    data = _json_body()
    result = SyncService.batch_sync(g.user_id, device_id, data.get('operations'))
    return success_response(
        result,
        f"{result['successful']} of {result['processed']} operations succeeded",
    )


@sync_bp.route('/sync/devices/<device_id>/process', methods=['POST'])
@require_auth
def process_pending(device_id):
    """
    Apply pending changes

    Query:
        - limit: 1-100 (default SYNC_BATCH_LIMIT)
        - entityType: only this type
    """
    _check_device_id(device_id)
    is_valid, error_msg, limit = validate_limit(
        request.args.get('limit'),
        current_app.config.get('SYNC_BATCH_LIMIT', 50),
        current_app.config.get('SYNC_MAX_BATCH_LIMIT', 100),
    )
    if not is_valid:
        return ApiResponse.validation_error(error_msg)

    entity_type = request.args.get('entityType') or None
    if entity_type is not None:
        is_valid, error_msg = validate_entity_type(entity_type)
        if not is_valid:
            return ApiResponse.validation_error(error_msg)

    summary = SyncService.process_pending_sync(g.user_id, device_id, limit, entity_type)
    if summary['locked']:
        return ApiResponse.device_locked(summary)
    return success_response(
        summary,
        f"Processed {summary['processed']} changes: {summary['completed']} completed, "
        f"{summary['conflicts']} conflicts, {summary['failed']} failed",
    )


@sync_bp.route('/sync/devices/<device_id>/failed/retry', methods=['POST'])
@require_auth
def retry_failed(device_id):
    """Move failed changes back to pending"""
    _check_device_id(device_id)
    result = SyncService.retry_failed(g.user_id, device_id)
    return success_response(result, f"{result['requeued']} changes re-queued")


@sync_bp.route('/sync/devices/<device_id>/failed', methods=['DELETE'])
@require_auth
def purge_failed(device_id):
    """Delete permanently failed changes"""
    _check_device_id(device_id)
    result = SyncService.purge_failed(g.user_id, device_id)
    return success_response(result, f"{result['purged']} failed changes removed")


# ==================== Deltas ====================

@sync_bp.route('/sync/devices/<device_id>/incremental/<entity_type>', methods=['GET'])
@require_auth
def get_incremental(device_id, entity_type):
    """
    Records changed on the server since a timestamp

    Query:
        - since (or lastSyncTime): ISO 8601; the stored cursor when omitted
        - pageSize: 1-SYNC_PAGE_SIZE
    """
    _check_device_id(device_id)
    is_valid, error_msg = validate_entity_type(entity_type)
    if not is_valid:
        return ApiResponse.validation_error(error_msg)

    since_raw = request.args.get('since', request.args.get('lastSyncTime'))
    is_valid, error_msg, since = validate_timestamp(since_raw, 'since')
    if not is_valid:
        return ApiResponse.validation_error(error_msg)

    page_limit = current_app.config.get('SYNC_PAGE_SIZE', 100)
    is_valid, error_msg, page_size = validate_limit(
        request.args.get('pageSize'), page_limit, page_limit, 'pageSize'
    )
    if not is_valid:
        return ApiResponse.validation_error(error_msg)

    result = SyncService.get_incremental_sync(
        g.user_id, device_id, entity_type, since=since, page_size=page_size
    )
    return success_response(result)


@sync_bp.route('/sync/devices/<device_id>/full-sync', methods=['POST'])
@require_auth
def force_full_sync(device_id):
    """
    Reset delta cursors to the beginning

    Request Body:
        - entityTypes: list (default: every registered type)
        - includeData: return the first page per type (default true)
    """
    _check_device_id(device_id)
    data = _json_body()

    entity_types = None
    if data.get('entityTypes') is not None:
        is_valid, error_msg, entity_types = validate_entity_types_list(
            data.get('entityTypes'), field_name='entityTypes'
        )
        if not is_valid:
            return ApiResponse.validation_error(error_msg)

    include_data = data.get('includeData', True)
    if not isinstance(include_data, bool):
        return ApiResponse.validation_error('includeData must be a boolean')

    result = SyncService.force_full_sync(g.user_id, device_id, entity_types, include_data)
    return success_response(result, result['message'])


# ==================== Conflicts ====================

@sync_bp.route('/sync/conflicts', methods=['GET'])
@require_auth
def get_conflicts():
    """
    Unresolved conflicts of the caller

    Query:
        - deviceId: only this device
        - includeResolved: true to list resolved ones as well
    """
    device_id = request.args.get('deviceId') or None
    if device_id is not None:
        _check_device_id(device_id)
    include_resolved = request.args.get('includeResolved', '').lower() in ('1', 'true', 'yes')

    result = SyncService.get_conflicts(g.user_id, device_id, include_resolved)
    return success_response(result, f"{result['count']} conflicts")


@sync_bp.route('/sync/conflicts/<int:conflict_id>/resolve', methods=['POST'])
@require_auth
def resolve_conflict(conflict_id):
    """
    Resolve a conflict

    Request Body:
        - resolution: server_wins / client_wins / manual_resolve
          (default: the device's conflict policy)
        - resolvedData: object, required for manual_resolve
    """
    data = _json_body()
    result = SyncService.resolve_conflict(
        conflict_id,
        data.get('resolution'),
        data.get('resolvedData'),
        resolved_by=g.user_id,
        user_id=g.user_id,
    )
    if not result['resolved']:
        return ApiResponse.conflict(result['message'], result['conflict'])
    return success_response(result, result['message'])


# ==================== Maintenance ====================

@sync_bp.route('/sync/maintenance/cleanup', methods=['POST'])
@require_admin
def cleanup():
    """
    Run the retention sweeps

    Request Body:
        - completedRetentionDays, staleDeviceDays, maxAttempts: optional integers
    """
    data = _json_body()
    options = {}
    for key, name in (
        ('completedRetentionDays', 'completed_retention_days'),
        ('staleDeviceDays', 'stale_device_days'),
        ('maxAttempts', 'max_attempts'),
    ):
        if data.get(key) is not None:
            is_valid, error_msg, value = validate_limit(data.get(key), 1, 3650, key)
            if not is_valid:
                return ApiResponse.validation_error(error_msg)
            options[name] = value

    result = SyncService.cleanup(**options)
    return success_response(result, 'Cleanup completed')


@sync_bp.route('/sync/health', methods=['GET'])
def health():
    return success_response({
        'status': 'healthy',
        'service': 'offline-sync',
        'entity_types': adapter_registry.entity_types(),
        'timestamp': to_iso(utcnow()),
    })
