"""
Retention - cleanup of terminal queue items, stale devices and stuck claims

All sweeps are idempotent and safe to run from several instances: each one
selects ids first and deletes or updates by id.
"""
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from flask import current_app

from ...extensions import db
from ...models import ChangeQueueItem, ConflictRecord, DeviceSyncState, EntitySyncCursor, QueueStatus
from ...utils.logger import get_logger
from ...utils.timestamps import utcnow
from .device_state import DeviceStateManager

logger = get_logger('retention')

# Keeps IN (...) lists under SQLite's bound-parameter limit
CHUNK_SIZE = 500


def _chunks(ids: List[int]) -> Iterable[List[int]]:
    for start in range(0, len(ids), CHUNK_SIZE):
        yield ids[start:start + CHUNK_SIZE]


class RetentionService:
    """Periodic maintenance of the sync tables.

    Example:
        >>> retention = RetentionService.from_config()
        >>> retention.cleanup()
        {'completed_items': 12, 'stale_devices': 1, 'stale_claims': {...}}
    """

    def __init__(
        self,
        max_attempts: int = 5,
        completed_retention_days: int = 7,
        stale_device_days: int = 30,
        claim_timeout: int = 300,
    ):
        self.max_attempts = max_attempts
        self.completed_retention_days = completed_retention_days
        self.stale_device_days = stale_device_days
        self.claim_timeout = claim_timeout

    @classmethod
    def from_config(cls, config=None) -> 'RetentionService':
        config = config if config is not None else current_app.config
        return cls(
            max_attempts=config.get('SYNC_MAX_ATTEMPTS', 5),
            completed_retention_days=config.get('SYNC_COMPLETED_RETENTION_DAYS', 7),
            stale_device_days=config.get('SYNC_STALE_DEVICE_DAYS', 30),
            claim_timeout=config.get('SYNC_CLAIM_TIMEOUT', 300),
        )

    def _permanently_failed_filter(self, max_attempts: Optional[int] = None):
        return db.and_(
            ChangeQueueItem.status == QueueStatus.FAILED,
            db.or_(
                ChangeQueueItem.retryable.is_(False),
                ChangeQueueItem.attempts >= (max_attempts or self.max_attempts),
            ),
        )

    @staticmethod
    def _delete_items(item_ids: List[int]) -> int:
        deleted = 0
        for chunk in _chunks(item_ids):
            ConflictRecord.query.filter(ConflictRecord.queue_item_id.in_(chunk)).delete(
                synchronize_session=False
            )
            deleted += ChangeQueueItem.query.filter(ChangeQueueItem.id.in_(chunk)).delete(
                synchronize_session=False
            )
        return deleted

    def cleanup_completed(self, older_than_days: Optional[int] = None) -> int:
        """Delete completed items (and their resolved conflicts) past retention."""
        days = older_than_days if older_than_days is not None else self.completed_retention_days
        cutoff = utcnow() - timedelta(days=days)

        item_ids = [
            row.id for row in db.session.query(ChangeQueueItem.id).filter(
                ChangeQueueItem.status == QueueStatus.COMPLETED,
                ChangeQueueItem.completed_at < cutoff,
            )
        ]
        try:
            deleted = self._delete_items(item_ids)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        if deleted:
            logger.info(f"[Retention] Removed {deleted} completed changes older than {days} days")
        return deleted

    def cleanup_stale_devices(self, days: Optional[int] = None) -> int:
        """Delete offline devices unseen for `days`, with their cursors.

        Devices that still own unfinished changes are kept.
        """
        days = days if days is not None else self.stale_device_days
        cutoff = utcnow() - timedelta(days=days)

        candidates = DeviceSyncState.query.filter(
            DeviceSyncState.is_online.is_(False),
            db.or_(DeviceSyncState.last_online.is_(None), DeviceSyncState.last_online < cutoff),
            DeviceSyncState.updated_at < cutoff,
        ).all()

        removed = 0
        try:
            for state in candidates:
                unfinished = ChangeQueueItem.query.filter(
                    ChangeQueueItem.user_id == state.user_id,
                    ChangeQueueItem.device_id == state.device_id,
                    ChangeQueueItem.status != QueueStatus.COMPLETED,
                    db.not_(self._permanently_failed_filter()),
                ).count()
                if unfinished:
                    logger.info(
                        f"[Retention] Keeping stale device {state.device_id}: "
                        f"{unfinished} unfinished changes"
                    )
                    continue

                item_ids = [
                    row.id for row in db.session.query(ChangeQueueItem.id).filter_by(
                        user_id=state.user_id, device_id=state.device_id
                    )
                ]
                self._delete_items(item_ids)
                EntitySyncCursor.query.filter_by(device_state_id=state.id).delete(
                    synchronize_session=False
                )
                db.session.delete(state)
                removed += 1
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        if removed:
            logger.info(f"[Retention] Removed {removed} devices inactive for {days} days")
        return removed

    def purge_failed(
        self,
        user_id: Optional[str] = None,
        device_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> int:
        """Delete permanently failed items, optionally for one device only."""
        query = db.session.query(ChangeQueueItem.id).filter(
            self._permanently_failed_filter(max_attempts)
        )
        if user_id:
            query = query.filter(ChangeQueueItem.user_id == user_id)
        if device_id:
            query = query.filter(ChangeQueueItem.device_id == device_id)

        item_ids = [row.id for row in query]
        try:
            deleted = self._delete_items(item_ids)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        if deleted:
            logger.info(f"[Retention] Purged {deleted} permanently failed changes")
        return deleted

    def retry_failed(self, user_id: str, device_id: str) -> int:
        """Move every failed item of a device back to pending with attempts reset."""
        state = DeviceStateManager.get_device(user_id, device_id)
        items = ChangeQueueItem.query.filter(
            ChangeQueueItem.user_id == user_id,
            ChangeQueueItem.device_id == device_id,
            ChangeQueueItem.status == QueueStatus.FAILED,
        ).all()

        try:
            for item in items:
                was_permanent = (not item.retryable) or item.attempts >= self.max_attempts
                item.status = QueueStatus.PENDING
                item.attempts = 0
                item.retryable = True
                item.last_error = None
                item.error_kind = None
                # Permanent failures were taken out of the pending counters
                if was_permanent:
                    DeviceStateManager.record_entity_sync(
                        state, item.entity_type, pending_delta=1, commit=False
                    )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        if items:
            logger.info(f"[Retention] Re-queued {len(items)} failed changes for device {device_id}")
        return len(items)

    def reconcile_pending_counts(self, user_id: Optional[str] = None, device_id: Optional[str] = None) -> int:
        """Recompute pending counters from the queue. Returns devices corrected."""
        query = DeviceSyncState.query
        if user_id:
            query = query.filter_by(user_id=user_id)
        if device_id:
            query = query.filter_by(device_id=device_id)

        corrected = 0
        try:
            for state in query.all():
                rows = (
                    db.session.query(ChangeQueueItem.entity_type, db.func.count(ChangeQueueItem.id))
                    .filter(
                        ChangeQueueItem.user_id == state.user_id,
                        ChangeQueueItem.device_id == state.device_id,
                        ChangeQueueItem.status != QueueStatus.COMPLETED,
                        db.not_(self._permanently_failed_filter()),
                    )
                    .group_by(ChangeQueueItem.entity_type)
                    .all()
                )
                actual = dict(rows)
                for entity_type in actual:
                    DeviceStateManager.ensure_cursor(state, entity_type)

                changed = False
                for cursor in EntitySyncCursor.query.filter_by(device_state_id=state.id).all():
                    expected = actual.get(cursor.entity_type, 0)
                    if cursor.pending_count != expected:
                        cursor.pending_count = expected
                        changed = True
                total = sum(actual.values())
                if state.total_pending != total:
                    state.total_pending = total
                    changed = True

                if changed:
                    state.updated_at = utcnow()
                    corrected += 1
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        if corrected:
            logger.warning(f"[Retention] Corrected pending counters on {corrected} devices")
        return corrected

    def release_stale_claims(self, timeout_seconds: Optional[int] = None) -> Dict[str, int]:
        """Recover work stranded by a crashed worker.

        Items stuck in syncing past the timeout become failed (retryable while
        attempts remain) and expired device claims are cleared.
        """
        timeout_seconds = timeout_seconds if timeout_seconds is not None else self.claim_timeout
        cutoff = utcnow() - timedelta(seconds=timeout_seconds)

        stale_items = ChangeQueueItem.query.filter(
            ChangeQueueItem.status == QueueStatus.SYNCING,
            db.or_(
                ChangeQueueItem.last_attempt_at.is_(None),
                ChangeQueueItem.last_attempt_at < cutoff,
            ),
        ).all()

        try:
            for item in stale_items:
                permanent = item.attempts >= self.max_attempts
                logger.warning(
                    f"[StaleClaimCleanup] Change {item.id} ({item.entity_type}:{item.entity_id}) "
                    f"stuck in syncing, marking as failed"
                )
                item.status = QueueStatus.FAILED
                item.retryable = True
                item.error_kind = 'transient'
                item.last_error = 'Processing terminated abnormally (claim timeout)'
                if permanent:
                    state = DeviceStateManager.get_device(item.user_id, item.device_id, required=False)
                    if state is not None:
                        DeviceStateManager.record_entity_sync(
                            state, item.entity_type, pending_delta=-1, commit=False
                        )

            devices = DeviceSyncState.query.filter(
                DeviceSyncState.claimed_by.isnot(None),
                DeviceSyncState.claimed_at < cutoff,
            ).update(
                {DeviceSyncState.claimed_by: None, DeviceSyncState.claimed_at: None},
                synchronize_session=False,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        if stale_items or devices:
            logger.info(
                f"[StaleClaimCleanup] Released {len(stale_items)} changes and {devices} device claims"
            )
        return {'items': len(stale_items), 'devices': devices}

    def cleanup(
        self,
        completed_retention_days: Optional[int] = None,
        stale_device_days: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> Dict[str, object]:
        """Run every sweep once, then repair pending counters."""
        results = {
            'stale_claims': self.release_stale_claims(),
            'completed_items': self.cleanup_completed(completed_retention_days),
            'failed_items': self.purge_failed(max_attempts=max_attempts),
            'stale_devices': self.cleanup_stale_devices(stale_device_days),
        }
        results['reconciled_devices'] = self.reconcile_pending_counts()
        logger.info(f"[Retention] Cleanup finished: {results}")
        return results
