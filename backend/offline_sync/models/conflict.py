"""
Conflict record model
"""
import json
from ..extensions import db
from ..utils.timestamps import to_iso, utcnow


def _loads(value):
    if value:
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return None
    return None


class ConflictRecord(db.Model):
    """Divergent server and client versions of one queued change"""
    __tablename__ = 'sync_conflicts'

    __table_args__ = (
        db.Index('ix_sync_conflicts_owner', 'user_id', 'device_id'),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    queue_item_id = db.Column(
        db.Integer,
        db.ForeignKey('change_queue_items.id', ondelete='CASCADE'),
        unique=True,
        nullable=False,
    )

    user_id = db.Column(db.String(64), nullable=False)
    device_id = db.Column(db.String(128), nullable=False)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.String(64), nullable=False)

    server_version = db.Column(db.Text)  # JSON snapshot
    server_modified_at = db.Column(db.DateTime)
    client_version = db.Column(db.Text)  # JSON payload
    detected_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    # Resolution (terminal once set)
    resolution = db.Column(db.String(32))  # server_wins / client_wins / manual_resolve
    resolved_data = db.Column(db.Text)
    resolved_by = db.Column(db.String(64))
    resolved_at = db.Column(db.DateTime)

    @property
    def is_resolved(self):
        return self.resolved_at is not None

    def get_server_version(self):
        return _loads(self.server_version)

    def get_client_version(self):
        return _loads(self.client_version)

    def get_resolved_data(self):
        return _loads(self.resolved_data)

    def to_dict(self):
        data = {
            'id': self.id,
            'queue_item_id': self.queue_item_id,
            'user_id': self.user_id,
            'device_id': self.device_id,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'server_version': self.get_server_version(),
            'server_modified_at': to_iso(self.server_modified_at),
            'client_version': self.get_client_version(),
            'detected_at': to_iso(self.detected_at),
            'resolution': self.resolution,
            'resolved_data': self.get_resolved_data(),
            'resolved_by': self.resolved_by,
            'resolved_at': to_iso(self.resolved_at),
        }
        if self.queue_item is not None:
            data['operation'] = self.queue_item.operation
            data['status'] = self.queue_item.status
        return data

    def __repr__(self):
        return f'<ConflictRecord {self.id} {self.entity_type}:{self.entity_id}>'
