"""
Change Queue - durable, append-only queue of client mutations

Items for one device are ordered by (priority, sequence). The sequence is a
store-backed per-device counter bumped in the database, so any number of
service instances can enqueue for the same device without collisions.
"""
from typing import Any, Dict, List, Optional

from ...extensions import db
from ...models import ChangeQueueItem, DeviceSyncState, QueueStatus
from ...utils.logger import get_logger
from .device_state import DeviceStateManager
from .envelope import build_envelope
from .errors import ValidationError
from .registry import adapter_registry

logger = get_logger('change_queue')

# Lower number = processed first. Scheduling-critical types lead.
ENTITY_PRIORITIES = {
    'appointment': 1,
    'clinical_note': 2,
    'patient': 3,
    'message': 4,
    'payment': 4,
    'document': 5,
}
DEFAULT_PRIORITY = 5


def priority_for(entity_type: str) -> int:
    return ENTITY_PRIORITIES.get(entity_type, DEFAULT_PRIORITY)


class ChangeQueue:
    """Enqueue and select client mutations."""

    def __init__(self, max_attempts: int = 5):
        self.max_attempts = max_attempts

    @staticmethod
    def _next_sequence(state: DeviceSyncState) -> int:
        # The UPDATE takes the row (SQLite: database) write lock first, so the
        # read below sees this transaction's own increment.
        DeviceSyncState.query.filter_by(id=state.id).update(
            {DeviceSyncState.next_sequence: DeviceSyncState.next_sequence + 1},
            synchronize_session=False,
        )
        return db.session.execute(
            db.select(DeviceSyncState.next_sequence).where(DeviceSyncState.id == state.id)
        ).scalar_one()

    def submit(
        self,
        user_id: str,
        device_id: str,
        entity_type: Any,
        entity_id: Any,
        operation: Any,
        payload: Any,
        baseline: Any = None,
        client_timestamp: Any = None,
        payload_version: Any = 1,
    ) -> ChangeQueueItem:
        """Queue one mutation.

        Raises:
            ValidationError: malformed envelope or payload, unknown entity type
            DeviceNotFoundError: the device was never initialized
        """
        envelope = build_envelope(
            entity_type, entity_id, operation, payload,
            baseline=baseline,
            client_timestamp=client_timestamp,
            payload_version=payload_version,
        )
        adapter = adapter_registry.require(envelope.entity_type)
        adapter.validate_payload(envelope.operation, envelope.payload, envelope.payload_version)

        state = DeviceStateManager.get_device(user_id, device_id)
        DeviceStateManager.ensure_cursor(state, envelope.entity_type)

        try:
            sequence = self._next_sequence(state)
            item = ChangeQueueItem(
                user_id=user_id,
                device_id=device_id,
                entity_type=envelope.entity_type,
                entity_id=envelope.entity_id,
                operation=envelope.operation,
                client_timestamp=envelope.client_timestamp,
                payload_version=envelope.payload_version,
                payload=envelope.payload_json(),
                baseline=envelope.baseline_json(),
                baseline_at=envelope.baseline_at,
                sequence=sequence,
                priority=priority_for(envelope.entity_type),
                status=QueueStatus.PENDING,
            )
            db.session.add(item)
            db.session.flush()
            DeviceStateManager.record_entity_sync(
                state, envelope.entity_type, pending_delta=1, commit=False
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.debug(
            f"Queued {item.operation} {item.entity_type}:{item.entity_id} "
            f"device={device_id} seq={item.sequence} priority={item.priority}"
        )
        return item

    def _eligible_filter(self):
        return db.or_(
            ChangeQueueItem.status == QueueStatus.PENDING,
            db.and_(
                ChangeQueueItem.status == QueueStatus.FAILED,
                ChangeQueueItem.retryable.is_(True),
                ChangeQueueItem.attempts < self.max_attempts,
            ),
        )

    def get_pending(
        self,
        user_id: str,
        device_id: str,
        limit: int = 50,
        entity_type: Optional[str] = None,
    ) -> List[ChangeQueueItem]:
        """Items eligible for processing, ordered by (priority, sequence).

        Terminal, in-flight and conflicted items are never returned.
        """
        query = ChangeQueueItem.query.filter(
            ChangeQueueItem.user_id == user_id,
            ChangeQueueItem.device_id == device_id,
            self._eligible_filter(),
        )
        if entity_type:
            query = query.filter(ChangeQueueItem.entity_type == entity_type)

        return (
            query.order_by(ChangeQueueItem.priority.asc(), ChangeQueueItem.sequence.asc())
            .limit(limit)
            .all()
        )

    def list_items(
        self,
        user_id: str,
        device_id: str,
        status: Optional[str] = None,
        entity_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[ChangeQueueItem]:
        query = ChangeQueueItem.query.filter_by(user_id=user_id, device_id=device_id)
        if status:
            if status not in QueueStatus.ALL:
                raise ValidationError(f'status must be one of {list(QueueStatus.ALL)}')
            query = query.filter(ChangeQueueItem.status == status)
        if entity_type:
            query = query.filter(ChangeQueueItem.entity_type == entity_type)
        return query.order_by(ChangeQueueItem.sequence.desc()).limit(limit).all()

    def count_by_status(self, user_id: str, device_id: str) -> Dict[str, int]:
        rows = (
            db.session.query(ChangeQueueItem.status, db.func.count(ChangeQueueItem.id))
            .filter(ChangeQueueItem.user_id == user_id, ChangeQueueItem.device_id == device_id)
            .group_by(ChangeQueueItem.status)
            .all()
        )
        counts = {status: 0 for status in QueueStatus.ALL}
        counts.update({status: count for status, count in rows})
        return counts

    def count_permanently_failed(self, user_id: str, device_id: str) -> int:
        return ChangeQueueItem.query.filter(
            ChangeQueueItem.user_id == user_id,
            ChangeQueueItem.device_id == device_id,
            ChangeQueueItem.status == QueueStatus.FAILED,
            db.or_(
                ChangeQueueItem.retryable.is_(False),
                ChangeQueueItem.attempts >= self.max_attempts,
            ),
        ).count()
