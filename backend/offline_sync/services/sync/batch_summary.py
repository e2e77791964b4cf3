"""
Batch Summary - per-item outcome collection for one processing call

Partial failure is a normal result: every item outcome is counted here and
the caller inspects the summary to decide what to resubmit.
"""
from collections import namedtuple
from datetime import datetime
from typing import Any, Dict, List, Optional

from ...utils.timestamps import to_iso, utcnow


class ItemRef(namedtuple('ItemRef', ['id', 'entity_type', 'entity_id'])):
    """Identity of a queue item that stays readable after a rollback."""

    @classmethod
    def of(cls, item):
        return cls(item.id, item.entity_type, item.entity_id)


class BatchSummary:
    """Aggregate of one process_pending call.

    Example:
        >>> summary = BatchSummary(device_id='ios-1')
        >>> summary.record_completed(item)
        >>> summary.record_failure(item, error)
        >>> summary.finalize()['failed']
        1
    """

    # Maximum error entries kept in a summary
    MAX_ERRORS = 200

    # Maximum message length
    MAX_MESSAGE_LENGTH = 500

    def __init__(self, device_id: str, entity_type: Optional[str] = None):
        self.device_id = device_id
        self.entity_type = entity_type
        self.start_time: datetime = utcnow()
        self.end_time: Optional[datetime] = None
        self.locked = False
        self.counts = {
            'processed': 0,
            'completed': 0,
            'failed': 0,
            'conflicts': 0,
            'skipped': 0,
        }
        self.errors: List[Dict[str, Any]] = []
        self.item_ids: Dict[str, List[int]] = {
            'completed': [],
            'failed': [],
            'conflicts': [],
        }

    def _add_error(self, item, error, permanent: Optional[bool] = None) -> None:
        if len(self.errors) >= self.MAX_ERRORS:
            return
        entry = {
            'change_id': getattr(item, 'id', None),
            'entity_type': getattr(item, 'entity_type', None),
            'entity_id': getattr(item, 'entity_id', None),
            'kind': getattr(error, 'kind', 'error'),
            'error': str(error)[:self.MAX_MESSAGE_LENGTH],
        }
        if permanent is not None:
            entry['permanent'] = permanent
        self.errors.append(entry)

    def record_completed(self, item) -> None:
        self.counts['processed'] += 1
        self.counts['completed'] += 1
        self.item_ids['completed'].append(item.id)

    def record_conflict(self, item) -> None:
        self.counts['processed'] += 1
        self.counts['conflicts'] += 1
        self.item_ids['conflicts'].append(item.id)

    def record_failure(self, item, error, permanent: bool = False) -> None:
        self.counts['processed'] += 1
        self.counts['failed'] += 1
        self.item_ids['failed'].append(item.id)
        self._add_error(item, error, permanent)

    def record_skipped(self, item, error) -> None:
        """Item not processed in this batch (lost claim, coordination problem)."""
        self.counts['skipped'] += 1
        self._add_error(item, error)

    def mark_locked(self, error) -> None:
        self.locked = True
        self._add_error(None, error)

    def finalize(self) -> Dict[str, Any]:
        self.end_time = utcnow()
        duration_ms = (self.end_time - self.start_time).total_seconds() * 1000
        return {
            **self.counts,
            'errors': list(self.errors),
            'locked': self.locked,
            'completed_ids': list(self.item_ids['completed']),
            'failed_ids': list(self.item_ids['failed']),
            'conflict_ids': list(self.item_ids['conflicts']),
            'entity_type': self.entity_type,
            'started_at': to_iso(self.start_time),
            'finished_at': to_iso(self.end_time),
            'duration_ms': round(duration_ms, 2),
        }

    def has_problems(self) -> bool:
        return self.counts['failed'] > 0 or self.counts['conflicts'] > 0 or self.locked
