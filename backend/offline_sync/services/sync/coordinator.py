"""
Sync Coordinator - applies queued changes and serves incremental deltas

Processing is pull-based: a caller (client request or an external periodic
job) invokes process_pending, which claims the device, walks eligible items in
(priority, sequence) order and moves each one to completed, conflict or
failed. The domain write (adapter commit) and the queue update are separate
commits; replays after a crash are absorbed by the adapter's replay check.
"""
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from flask import current_app

from ...extensions import db
from ...models import ChangeQueueItem, ConflictRecord, DeviceSyncState, QueueStatus
from ...utils.logger import get_logger, log_sync_event
from ...utils.timestamps import EPOCH, to_iso, utcnow
from ...utils.validators import RESOLUTIONS, validate_choice
from .adapters import AdapterResult
from .batch_summary import BatchSummary, ItemRef
from .change_queue import ChangeQueue
from .device_state import DeviceStateManager
from .errors import (
    ConcurrencyViolation,
    ConflictNotFoundError,
    NotFoundError,
    SyncError,
    TransientError,
    ValidationError,
)
from .registry import adapter_registry

logger = get_logger('coordinator')

MAX_ERROR_LENGTH = 1000


def _dumps(value) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, default=str)


class SyncCoordinator:
    """Orchestrates claim, apply, conflict handling and delta retrieval.

    Example:
        >>> coordinator = SyncCoordinator.from_config()
        >>> summary = coordinator.process_pending('user-1', 'ios-abc', limit=20)
        >>> summary['completed'], summary['conflicts'], summary['errors']
    """

    def __init__(
        self,
        max_attempts: int = 5,
        page_size: int = 100,
        claim_timeout: int = 300,
        queue: Optional[ChangeQueue] = None,
    ):
        self.max_attempts = max_attempts
        self.page_size = page_size
        self.claim_timeout = claim_timeout
        self.queue = queue or ChangeQueue(max_attempts=max_attempts)

    @classmethod
    def from_config(cls, config=None) -> 'SyncCoordinator':
        config = config if config is not None else current_app.config
        return cls(
            max_attempts=config.get('SYNC_MAX_ATTEMPTS', 5),
            page_size=config.get('SYNC_PAGE_SIZE', 100),
            claim_timeout=config.get('SYNC_CLAIM_TIMEOUT', 300),
        )

    # ==================== Device claim ====================

    def _acquire_device(self, state: DeviceSyncState) -> Optional[str]:
        """Compare-and-set the device claim. Returns the claim token or None."""
        token = uuid.uuid4().hex
        now = utcnow()
        expiry = now - timedelta(seconds=self.claim_timeout)
        claimed = DeviceSyncState.query.filter(
            DeviceSyncState.id == state.id,
            db.or_(
                DeviceSyncState.claimed_by.is_(None),
                DeviceSyncState.claimed_at < expiry,
            ),
        ).update(
            {DeviceSyncState.claimed_by: token, DeviceSyncState.claimed_at: now},
            synchronize_session=False,
        )
        db.session.commit()
        return token if claimed == 1 else None

    def _release_device(self, state_id: int, token: str) -> None:
        try:
            DeviceSyncState.query.filter_by(id=state_id, claimed_by=token).update(
                {DeviceSyncState.claimed_by: None, DeviceSyncState.claimed_at: None},
                synchronize_session=False,
            )
            db.session.commit()
        except Exception as e:
            # An unreleased claim expires after claim_timeout
            db.session.rollback()
            logger.warning(f"Failed to release device claim (state_id={state_id}): {e}")

    def _claim_item(self, item_id: int) -> bool:
        claimed = ChangeQueueItem.query.filter(
            ChangeQueueItem.id == item_id,
            ChangeQueueItem.status.in_(QueueStatus.CLAIMABLE),
        ).update(
            {
                ChangeQueueItem.status: QueueStatus.SYNCING,
                ChangeQueueItem.attempts: ChangeQueueItem.attempts + 1,
                ChangeQueueItem.last_attempt_at: utcnow(),
            },
            synchronize_session=False,
        )
        db.session.commit()
        return claimed == 1

    # ==================== Processing ====================

    def process_pending(
        self,
        user_id: str,
        device_id: str,
        limit: int = 50,
        entity_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Claim and apply up to `limit` eligible items.

        Returns:
            Summary dict: processed, completed, failed, conflicts, skipped,
            errors[], locked. Per-item failures never raise.
        """
        state = DeviceStateManager.get_device(user_id, device_id)
        summary = BatchSummary(device_id, entity_type)

        token = self._acquire_device(state)
        if token is None:
            logger.warning(f"Device {device_id} is already being processed, skipping batch")
            summary.mark_locked(ConcurrencyViolation(
                'Device queue is being processed by another worker'
            ))
            return summary.finalize()

        try:
            items = self.queue.get_pending(user_id, device_id, limit=limit, entity_type=entity_type)
            for item in items:
                ref = ItemRef.of(item)
                try:
                    self._process_item(state, item, summary)
                except Exception as e:
                    # Store error in the queue bookkeeping; a claimed row stays in
                    # syncing until release_stale_claims returns it to the queue
                    db.session.rollback()
                    logger.exception(f"Bookkeeping failed for change {ref.id} on device {device_id}: {e}")
                    summary.record_failure(ref, TransientError(str(e) or type(e).__name__), permanent=False)
        finally:
            self._release_device(state.id, token)

        result = summary.finalize()
        if result['processed'] or result['skipped']:
            log_sync_event(device_id, 'batch_processed', {
                'processed': result['processed'],
                'completed': result['completed'],
                'failed': result['failed'],
                'conflicts': result['conflicts'],
                'skipped': result['skipped'],
            })
        return result

    def _apply(self, item: ChangeQueueItem) -> AdapterResult:
        adapter = adapter_registry.get(item.entity_type)
        if adapter is None:
            return AdapterResult.failed(
                ValidationError(f'No adapter registered for {item.entity_type}')
            )
        try:
            return adapter.apply(
                item.operation,
                item.entity_id,
                item.get_payload(),
                baseline_at=item.baseline_at,
            )
        except SyncError as e:
            db.session.rollback()
            return AdapterResult.failed(e)
        except Exception as e:
            db.session.rollback()
            logger.exception(f"Adapter error on change {item.id} ({item.entity_type}:{item.entity_id}): {e}")
            return AdapterResult.failed(TransientError(str(e) or type(e).__name__))

    def _process_item(self, state: DeviceSyncState, item: ChangeQueueItem, summary: BatchSummary) -> None:
        if not self._claim_item(item.id):
            summary.record_skipped(item, ConcurrencyViolation(
                f'Change {item.id} was claimed by another worker'
            ))
            return

        result = self._apply(item)

        if result.success:
            self._mark_completed(state, item)
            summary.record_completed(item)
        elif result.conflict:
            self._mark_conflict(item, result)
            summary.record_conflict(item)
        else:
            # Discard anything the adapter left half-written in the session
            db.session.rollback()
            if isinstance(result.error, ConcurrencyViolation):
                self._return_to_pending(item, result.error)
                summary.record_skipped(item, result.error)
            else:
                permanent = self._mark_failed(state, item, result.error)
                summary.record_failure(item, result.error, permanent)

    def _mark_completed(self, state: DeviceSyncState, item: ChangeQueueItem) -> None:
        now = utcnow()
        item.status = QueueStatus.COMPLETED
        item.completed_at = now
        item.last_error = None
        item.error_kind = None
        DeviceStateManager.record_entity_sync(
            state, item.entity_type,
            last_sync_at=now,
            version_delta=1,
            pending_delta=-1,
            commit=False,
        )
        db.session.commit()

    def _mark_conflict(self, item: ChangeQueueItem, result: AdapterResult) -> ConflictRecord:
        item.status = QueueStatus.CONFLICT
        item.error_kind = 'conflict'
        item.last_error = str(result.error)[:MAX_ERROR_LENGTH] if result.error else 'conflict'

        conflict = ConflictRecord.query.filter_by(queue_item_id=item.id).first()
        if conflict is None:
            conflict = ConflictRecord(
                queue_item_id=item.id,
                user_id=item.user_id,
                device_id=item.device_id,
                entity_type=item.entity_type,
                entity_id=item.entity_id,
            )
            db.session.add(conflict)
        conflict.server_version = _dumps(result.server_version)
        conflict.server_modified_at = result.server_modified_at
        conflict.client_version = _dumps(result.client_version)
        conflict.detected_at = utcnow()
        db.session.commit()

        logger.info(
            f"Conflict detected: change={item.id} {item.entity_type}:{item.entity_id} "
            f"server_modified_at={to_iso(result.server_modified_at)} baseline_at={to_iso(item.baseline_at)}"
        )
        return conflict

    def _mark_failed(self, state: DeviceSyncState, item: ChangeQueueItem, error: SyncError) -> bool:
        """Returns True when the item is now permanently failed."""
        permanent = (not error.retryable) or item.attempts >= self.max_attempts
        item.status = QueueStatus.FAILED
        item.retryable = bool(error.retryable)
        item.error_kind = error.kind
        item.last_error = str(error)[:MAX_ERROR_LENGTH]
        if permanent:
            DeviceStateManager.record_entity_sync(
                state, item.entity_type, pending_delta=-1, commit=False
            )
        db.session.commit()

        log = logger.warning if permanent else logger.info
        log(
            f"Change {item.id} failed ({error.kind}, attempt {item.attempts}/{self.max_attempts}"
            f"{', permanent' if permanent else ''}): {error}"
        )
        return permanent

    def _return_to_pending(self, item: ChangeQueueItem, error: SyncError) -> None:
        item.status = QueueStatus.PENDING
        item.attempts = max(0, item.attempts - 1)
        item.error_kind = error.kind
        item.last_error = str(error)[:MAX_ERROR_LENGTH]
        db.session.commit()

    # ==================== Conflict resolution ====================

    def resolve_conflict(
        self,
        conflict_id: int,
        resolution: Optional[str] = None,
        resolved_data: Optional[Dict[str, Any]] = None,
        resolved_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Resolve a conflict with server_wins, client_wins or manual_resolve.

        Without an explicit resolution the device's conflict_resolution_policy
        is used.

        Raises:
            ValidationError: bad resolution, missing resolved_data, already resolved
            ConflictNotFoundError: unknown conflict id
        """
        conflict = db.session.get(ConflictRecord, conflict_id)
        if conflict is None:
            raise ConflictNotFoundError('Conflict not found', details={'conflict_id': conflict_id})
        if conflict.is_resolved:
            raise ValidationError('Conflict is already resolved')

        item = conflict.queue_item
        if item is None or item.status != QueueStatus.CONFLICT:
            raise ValidationError('Change is not awaiting conflict resolution')

        state = DeviceStateManager.get_device(item.user_id, item.device_id, required=False)

        if not resolution and state is not None:
            resolution = state.conflict_resolution_policy
        is_valid, error_msg, resolution = validate_choice(resolution, RESOLUTIONS, 'resolution')
        if not is_valid:
            raise ValidationError(error_msg)

        if resolution == 'manual_resolve':
            if not isinstance(resolved_data, dict) or not resolved_data:
                raise ValidationError('manual_resolve requires resolvedData')

        adapter = adapter_registry.require(item.entity_type)

        if resolution == 'server_wins':
            data = conflict.get_server_version() or {}
            result = self._safe_apply(
                adapter, 'update', item.entity_id, data, baseline_at=conflict.server_modified_at
            )
            # The server copy stands whatever happened to it since detection
            if result.conflict or isinstance(result.error, NotFoundError):
                result = AdapterResult.ok(applied=False)
        elif resolution == 'client_wins':
            data = conflict.get_client_version() or {}
            # A create that met an existing record overwrites it as an update
            operation = 'update' if item.operation == 'create' else item.operation
            result = self._safe_apply(
                adapter, operation, item.entity_id, data, baseline_at=conflict.server_modified_at
            )
        else:
            # create + force upserts: the caller asserts authority over the record
            data = resolved_data
            result = self._safe_apply(adapter, 'create', item.entity_id, data, force=True)

        if result.conflict:
            # Server moved again after detection; refresh the snapshot and keep waiting
            conflict.server_version = _dumps(result.server_version)
            conflict.server_modified_at = result.server_modified_at
            conflict.detected_at = utcnow()
            db.session.commit()
            logger.info(f"Conflict {conflict.id} re-detected during {resolution}")
            return {
                'resolved': False,
                'status': QueueStatus.CONFLICT,
                'message': 'Server record changed again; conflict refreshed',
                'conflict': conflict.to_dict(),
            }

        if not result.success:
            db.session.rollback()
            logger.warning(f"Conflict {conflict.id} resolution {resolution} failed: {result.error}")
            return {
                'resolved': False,
                'status': item.status,
                'message': str(result.error),
                'error': result.error.to_dict() if result.error else None,
                'conflict': conflict.to_dict(),
            }

        now = utcnow()
        conflict.resolution = resolution
        conflict.resolved_data = _dumps(data)
        conflict.resolved_by = resolved_by
        conflict.resolved_at = now
        item.status = QueueStatus.COMPLETED
        item.completed_at = now
        item.last_error = None
        item.error_kind = None
        if state is not None:
            DeviceStateManager.record_entity_sync(
                state, item.entity_type,
                last_sync_at=now,
                version_delta=1,
                pending_delta=-1,
                commit=False,
            )
        db.session.commit()

        logger.info(f"Conflict {conflict.id} resolved with {resolution} by {resolved_by or 'system'}")
        return {
            'resolved': True,
            'status': QueueStatus.COMPLETED,
            'message': 'Conflict resolved',
            'applied': result.applied,
            'conflict': conflict.to_dict(),
        }

    @staticmethod
    def _safe_apply(adapter, operation, entity_id, payload, baseline_at=None, force=False) -> AdapterResult:
        try:
            return adapter.apply(operation, entity_id, payload, baseline_at=baseline_at, force=force)
        except SyncError as e:
            db.session.rollback()
            return AdapterResult.failed(e)
        except Exception as e:
            db.session.rollback()
            logger.exception(f"Adapter error while resolving {adapter.entity_type}:{entity_id}: {e}")
            return AdapterResult.failed(TransientError(str(e) or type(e).__name__))

    # ==================== Incremental delta ====================

    def _fetch_page(self, adapter, since: datetime, page_size: int):
        """One delta page that never ends inside a group of equal timestamps.

        A trailing group sharing the page's last timestamp is held back so the
        next call (with a strict `>` on the returned max) delivers it whole. A
        page made of a single group is widened until the group fits.
        """
        limit = page_size
        while True:
            records, has_more = adapter.find_modified_since(since, limit)
            if not has_more or not records:
                return records, has_more

            last_modified = adapter.modified_at_of(records[-1])
            cut = len(records)
            while cut > 0 and adapter.modified_at_of(records[cut - 1]) == last_modified:
                cut -= 1
            if cut > 0:
                return records[:cut], True
            limit *= 2

    def get_incremental_since(
        self,
        user_id: str,
        device_id: str,
        entity_type: str,
        since: Optional[datetime] = None,
        page_size: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Records of one entity type modified strictly after `since`.

        With since=None the device's stored cursor is used. The stored cursor
        only moves forward, to the newest timestamp actually returned.

        has_more is the only end-of-data signal. A page can hold fewer than
        page_size records and still report has_more=True when its trailing
        group of equal timestamps was held back for the next call; keep
        paging from sync_timestamp until has_more is False.
        """
        state = DeviceStateManager.get_device(user_id, device_id)
        adapter = adapter_registry.require(entity_type)

        stored = DeviceStateManager.get_cursor(state, entity_type)
        if since is None:
            since = stored['since']

        records, has_more = self._fetch_page(adapter, since, page_size or self.page_size)
        data = [adapter.serialize(record) for record in records]

        cursor = since
        if records:
            cursor = max(adapter.modified_at_of(record) for record in records)
            if cursor > stored['since']:
                DeviceStateManager.record_entity_sync(state, entity_type, cursor_at=cursor)

        logger.debug(
            f"Delta {entity_type} for device={device_id}: since={to_iso(since)} "
            f"count={len(data)} has_more={has_more}"
        )
        return {
            'entity_type': entity_type,
            'data': data,
            'count': len(data),
            'has_more': has_more,
            'since': to_iso(since),
            'sync_timestamp': to_iso(cursor),
        }

    def force_full_sync(
        self,
        user_id: str,
        device_id: str,
        entity_types: Optional[List[str]] = None,
        include_data: bool = True,
    ) -> Dict[str, Any]:
        """Reset delta cursors to the epoch for the named types.

        With include_data the first page of each type is returned as well.
        """
        state = DeviceStateManager.get_device(user_id, device_id)
        entity_types = list(entity_types or adapter_registry.entity_types())
        for entity_type in entity_types:
            adapter_registry.require(entity_type)

        DeviceStateManager.reset_cursors(state, entity_types)
        log_sync_event(device_id, 'full_sync_requested', {'entity_types': entity_types})

        response = {'entity_types': entity_types, 'reset_to': to_iso(EPOCH)}
        if include_data:
            response['results'] = {
                entity_type: self.get_incremental_since(user_id, device_id, entity_type, since=EPOCH)
                for entity_type in entity_types
            }
        return response
