"""
Device sync state models
"""
import json
from ..extensions import db
from ..utils.timestamps import EPOCH, to_iso, utcnow


DEFAULT_CAPABILITIES = {
    'offlineStorage': True,
    'backgroundSync': False,
    'biometricAuth': False,
    'pushNotifications': False,
}


class DeviceSyncState(db.Model):
    """Sync state of one client installation (user, device)"""
    __tablename__ = 'device_sync_states'

    __table_args__ = (
        db.UniqueConstraint('user_id', 'device_id', name='uq_device_sync_states_user_device'),
        db.Index('ix_device_sync_states_online', 'is_online', 'last_online'),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    device_id = db.Column(db.String(128), nullable=False)
    device_type = db.Column(db.String(16), nullable=False)  # ios / android / web
    capabilities = db.Column(db.Text)  # JSON

    # Connectivity
    is_online = db.Column(db.Boolean, default=True, nullable=False)
    last_online = db.Column(db.DateTime, default=utcnow)
    connection_quality = db.Column(db.String(16), default='excellent')

    # Settings
    auto_sync = db.Column(db.Boolean, default=True, nullable=False)
    sync_on_wifi_only = db.Column(db.Boolean, default=False, nullable=False)
    max_offline_days = db.Column(db.Integer, default=7, nullable=False)
    conflict_resolution_policy = db.Column(db.String(32), default='server_wins', nullable=False)

    # Progress
    last_sync_at = db.Column(db.DateTime)
    sync_version = db.Column(db.Integer, default=1, nullable=False)
    # Last sequence handed out; only ever changed by an in-database increment
    next_sequence = db.Column(db.Integer, default=0, nullable=False)
    # Sum of the per-type pending counters, maintained incrementally
    total_pending = db.Column(db.Integer, default=0, nullable=False)

    # Processing claim (one coordinator per device at a time)
    claimed_by = db.Column(db.String(64))
    claimed_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    cursors = db.relationship(
        'EntitySyncCursor',
        backref='device',
        lazy='select',
        cascade='all, delete-orphan',
    )

    def get_capabilities(self):
        if self.capabilities:
            try:
                return json.loads(self.capabilities)
            except (json.JSONDecodeError, TypeError):
                return dict(DEFAULT_CAPABILITIES)
        return dict(DEFAULT_CAPABILITIES)

    def set_capabilities(self, capabilities):
        self.capabilities = json.dumps(capabilities, ensure_ascii=False)

    def cursor_for(self, entity_type):
        for cursor in self.cursors:
            if cursor.entity_type == entity_type:
                return cursor
        return None

    def settings_dict(self):
        return {
            'auto_sync': self.auto_sync,
            'sync_on_wifi_only': self.sync_on_wifi_only,
            'max_offline_days': self.max_offline_days,
            'conflict_resolution_policy': self.conflict_resolution_policy,
        }

    def to_dict(self, include_cursors=True):
        data = {
            'id': self.id,
            'user_id': self.user_id,
            'device_id': self.device_id,
            'device_type': self.device_type,
            'capabilities': self.get_capabilities(),
            'connectivity': {
                'is_online': self.is_online,
                'last_online': to_iso(self.last_online),
                'quality': self.connection_quality,
            },
            'settings': self.settings_dict(),
            'last_sync': to_iso(self.last_sync_at),
            'sync_version': self.sync_version,
            'total_pending': self.total_pending,
            'created_at': to_iso(self.created_at),
        }
        if include_cursors:
            data['entity_states'] = {c.entity_type: c.to_dict() for c in self.cursors}
        return data

    def __repr__(self):
        return f'<DeviceSyncState {self.user_id}/{self.device_id}>'


class EntitySyncCursor(db.Model):
    """Per entity type progress of one device"""
    __tablename__ = 'entity_sync_cursors'

    __table_args__ = (
        db.UniqueConstraint('device_state_id', 'entity_type', name='uq_entity_sync_cursors_device_type'),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    device_state_id = db.Column(
        db.Integer,
        db.ForeignKey('device_sync_states.id', ondelete='CASCADE'),
        nullable=False,
        index=True,
    )
    entity_type = db.Column(db.String(32), nullable=False)

    # Highest server modified_at delivered to the device; NULL means epoch
    cursor_at = db.Column(db.DateTime)
    # Last time a queued change of this type was applied
    last_sync_at = db.Column(db.DateTime)
    version = db.Column(db.Integer, default=0, nullable=False)
    pending_count = db.Column(db.Integer, default=0, nullable=False)

    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def since(self):
        return self.cursor_at or EPOCH

    def to_dict(self):
        return {
            'cursor': to_iso(self.since),
            'last_sync_at': to_iso(self.last_sync_at),
            'version': self.version,
            'pending_count': self.pending_count,
        }

    def __repr__(self):
        return f'<EntitySyncCursor {self.device_state_id}:{self.entity_type}>'
