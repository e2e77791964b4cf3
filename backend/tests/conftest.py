"""
Pytest Configuration and Fixtures

This module provides shared fixtures for all tests: an app on in-memory
SQLite, two small domain models with SQLAlchemy adapters, and an in-memory
adapter whose failures can be scripted.
"""
import os
import sys
import pytest

# Add backend to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from offline_sync import create_app
from offline_sync.extensions import db
from offline_sync.config import TestingConfig
from offline_sync.services.sync import (
    EntityAdapter,
    SQLAlchemyEntityAdapter,
    adapter_registry,
)
from offline_sync.utils.timestamps import to_iso, utcnow


# ==================== Domain models used by the tests ====================

class Appointment(db.Model):
    """String ids, soft delete."""
    __tablename__ = 'test_appointments'

    id = db.Column(db.String(64), primary_key=True)
    patient_name = db.Column(db.String(128))
    status = db.Column(db.String(32), default='scheduled')
    notes = db.Column(db.Text)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    deleted = db.Column(db.Boolean, default=False, nullable=False)


class Patient(db.Model):
    """Integer ids, hard delete."""
    __tablename__ = 'test_patients'

    id = db.Column(db.Integer, primary_key=True, autoincrement=False)
    name = db.Column(db.String(128))
    phone = db.Column(db.String(32))
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)


class AppointmentAdapter(SQLAlchemyEntityAdapter):
    entity_type = 'appointment'
    model = Appointment
    deleted_column = 'deleted'


class PatientAdapter(SQLAlchemyEntityAdapter):
    entity_type = 'patient'
    model = Patient
    writable_fields = ('name', 'phone')


class MemoryAdapter(EntityAdapter):
    """Dict-backed adapter.

    Exceptions appended to `fail_next` are raised by the next writes, in
    order, which lets tests simulate store outages and coordination bugs.
    """

    def __init__(self, entity_type):
        self.entity_type = entity_type
        self.records = {}
        self.fail_next = []
        self.writes = 0

    def _maybe_fail(self):
        if self.fail_next:
            raise self.fail_next.pop(0)

    def put(self, entity_id, data, modified_at=None):
        self.records[str(entity_id)] = {
            'data': dict(data),
            'modified_at': modified_at or utcnow(),
            'id': str(entity_id),
        }
        return self.records[str(entity_id)]

    def fetch(self, entity_id):
        return self.records.get(str(entity_id))

    def create(self, entity_id, payload):
        self._maybe_fail()
        self.writes += 1
        return self.put(entity_id, payload)

    def update(self, record, payload):
        self._maybe_fail()
        self.writes += 1
        record['data'].update(payload)
        record['modified_at'] = utcnow()
        return record

    def delete(self, record):
        self._maybe_fail()
        self.writes += 1
        self.records.pop(record['id'], None)

    def modified_at_of(self, record):
        return record['modified_at']

    def serialize(self, record):
        return {**record['data'], 'id': record['id'], 'modified_at': to_iso(record['modified_at'])}

    def find_modified_since(self, since, limit):
        records = sorted(
            (r for r in self.records.values() if r['modified_at'] > since),
            key=lambda r: (r['modified_at'], r['id']),
        )[:limit]
        return records, len(records) == limit


# ==================== App fixtures ====================

@pytest.fixture(scope='function')
def app():
    """Create application for testing."""
    app = create_app(TestingConfig)

    with app.app_context():
        db.create_all()
        adapter_registry.register('appointment', AppointmentAdapter())
        adapter_registry.register('patient', PatientAdapter())
        adapter_registry.register('clinical_note', MemoryAdapter('clinical_note'))
        adapter_registry.register('document', MemoryAdapter('document'))
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def admin_headers():
    return {'X-User-Id': 'user-1', 'X-API-Key': TestingConfig.ADMIN_API_KEY}


@pytest.fixture
def user_headers():
    return {'X-User-Id': 'user-1'}


@pytest.fixture
def notes_adapter(app):
    return adapter_registry.get('clinical_note')


@pytest.fixture
def documents_adapter(app):
    return adapter_registry.get('document')


@pytest.fixture
def device(app):
    """An initialized iOS device of user-1."""
    from offline_sync.services.sync import DeviceStateManager
    state, _ = DeviceStateManager.initialize('user-1', 'ios-device-1', 'ios')
    return state


@pytest.fixture
def queue(app):
    from offline_sync.services.sync import ChangeQueue
    return ChangeQueue(max_attempts=TestingConfig.SYNC_MAX_ATTEMPTS)


@pytest.fixture
def coordinator(app):
    from offline_sync.services.sync import SyncCoordinator
    return SyncCoordinator.from_config()


@pytest.fixture
def make_appointment(app):
    """Insert an appointment directly into the domain store."""
    def _make(appointment_id, modified_at=None, **fields):
        appointment = Appointment(
            id=appointment_id,
            patient_name=fields.pop('patient_name', 'Jane Roe'),
            updated_at=modified_at or utcnow(),
            **fields,
        )
        db.session.add(appointment)
        db.session.commit()
        return appointment
    return _make


@pytest.fixture
def sample_change():
    """Keyword arguments of a valid appointment create."""
    return {
        'entity_type': 'appointment',
        'entity_id': 'A100',
        'operation': 'create',
        'payload': {'patient_name': 'John Doe', 'status': 'scheduled'},
    }
