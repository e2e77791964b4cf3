"""
Change queue model
"""
import json
from ..extensions import db
from ..utils.timestamps import to_iso, utcnow


class QueueStatus:
    """Queue item states: pending -> syncing -> completed | failed | conflict"""
    PENDING = 'pending'
    SYNCING = 'syncing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CONFLICT = 'conflict'

    ALL = (PENDING, SYNCING, COMPLETED, FAILED, CONFLICT)
    # States a coordinator may claim from
    CLAIMABLE = (PENDING, FAILED)


class ChangeQueueItem(db.Model):
    """A client mutation waiting to be applied to the authoritative store"""
    __tablename__ = 'change_queue_items'

    __table_args__ = (
        db.UniqueConstraint('user_id', 'device_id', 'sequence', name='uq_change_queue_items_device_sequence'),
        db.Index('ix_change_queue_items_owner_status', 'user_id', 'device_id', 'status'),
        db.Index('ix_change_queue_items_status_attempt', 'status', 'last_attempt_at'),
        db.Index('ix_change_queue_items_priority_sequence', 'priority', 'sequence'),
        db.Index('ix_change_queue_items_entity', 'entity_type', 'entity_id'),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)

    # Owner
    user_id = db.Column(db.String(64), nullable=False)
    device_id = db.Column(db.String(128), nullable=False)

    # Envelope header
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)
    operation = db.Column(db.String(16), nullable=False)  # create / update / delete
    client_timestamp = db.Column(db.DateTime, nullable=False)
    payload_version = db.Column(db.Integer, default=1, nullable=False)

    # Envelope body (opaque to the queue, interpreted by the entity adapter)
    payload = db.Column(db.Text, nullable=False)
    # What the client believed was current: snapshot or timestamp, as submitted
    baseline = db.Column(db.Text)
    # Baseline read time used for the conflict test
    baseline_at = db.Column(db.DateTime)

    # Ordering
    sequence = db.Column(db.Integer, nullable=False)
    priority = db.Column(db.Integer, default=5, nullable=False)  # 1 = most urgent

    # Processing state
    status = db.Column(db.String(16), default=QueueStatus.PENDING, nullable=False)
    attempts = db.Column(db.Integer, default=0, nullable=False)
    last_attempt_at = db.Column(db.DateTime)
    last_error = db.Column(db.Text)
    error_kind = db.Column(db.String(32))
    retryable = db.Column(db.Boolean, default=True, nullable=False)
    completed_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    conflict = db.relationship(
        'ConflictRecord',
        backref='queue_item',
        uselist=False,
        cascade='all, delete-orphan',
    )

    def get_payload(self):
        if self.payload:
            try:
                return json.loads(self.payload)
            except (json.JSONDecodeError, TypeError):
                return {}
        return {}

    def get_baseline(self):
        if self.baseline:
            try:
                return json.loads(self.baseline)
            except (json.JSONDecodeError, TypeError):
                return None
        return None

    def is_permanently_failed(self, max_attempts):
        return self.status == QueueStatus.FAILED and (
            not self.retryable or self.attempts >= max_attempts
        )

    def to_dict(self, include_payload=True):
        data = {
            'id': self.id,
            'user_id': self.user_id,
            'device_id': self.device_id,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'operation': self.operation,
            'client_timestamp': to_iso(self.client_timestamp),
            'payload_version': self.payload_version,
            'baseline_at': to_iso(self.baseline_at),
            'sequence': self.sequence,
            'priority': self.priority,
            'status': self.status,
            'attempts': self.attempts,
            'last_attempt_at': to_iso(self.last_attempt_at),
            'last_error': self.last_error,
            'error_kind': self.error_kind,
            'retryable': self.retryable,
            'completed_at': to_iso(self.completed_at),
            'created_at': to_iso(self.created_at),
        }
        if include_payload:
            data['payload'] = self.get_payload()
            data['baseline'] = self.get_baseline()
        return data

    def __repr__(self):
        return f'<ChangeQueueItem {self.id} {self.entity_type}:{self.entity_id} {self.status}>'
