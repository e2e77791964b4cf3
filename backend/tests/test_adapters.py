"""
Adapter Tests

Tests for the EntityAdapter apply semantics (conflict test, replay
detection), the generic SQLAlchemy adapter, the adapter registry and the
change envelope.
"""
from datetime import datetime, timedelta

import pytest

from offline_sync.extensions import db
from offline_sync.services.sync import (
    AdapterRegistry,
    ValidationError,
    adapter_registry,
    build_envelope,
)
from offline_sync.services.sync.envelope import extract_baseline_time
from offline_sync.utils.timestamps import utcnow

from conftest import Appointment, AppointmentAdapter, MemoryAdapter, Patient, PatientAdapter


class TestApplySemantics:
    """Tests for EntityAdapter.apply against the in-memory adapter."""

    def test_create(self, app):
        adapter = MemoryAdapter('clinical_note')
        result = adapter.apply('create', 'N1', {'text': 'hello'})

        assert result.success
        assert result.applied is True
        assert adapter.records['N1']['data'] == {'text': 'hello'}

    def test_create_replay_is_noop(self, app):
        adapter = MemoryAdapter('clinical_note')
        adapter.apply('create', 'N1', {'text': 'hello'})

        result = adapter.apply('create', 'N1', {'text': 'hello'})

        assert result.success
        assert result.applied is False
        assert adapter.writes == 1

    def test_create_over_different_record_conflicts(self, app):
        adapter = MemoryAdapter('clinical_note')
        adapter.put('N1', {'text': 'server'})

        result = adapter.apply('create', 'N1', {'text': 'client'})

        assert result.conflict
        assert result.server_version['text'] == 'server'
        assert result.client_version == {'text': 'client'}

    def test_forced_create_overwrites(self, app):
        adapter = MemoryAdapter('clinical_note')
        adapter.put('N1', {'text': 'server'})

        result = adapter.apply('create', 'N1', {'text': 'client'}, force=True)

        assert result.success
        assert adapter.records['N1']['data']['text'] == 'client'

    def test_update_newer_server_conflicts(self, app):
        adapter = MemoryAdapter('clinical_note')
        adapter.put('N1', {'text': 'server'}, modified_at=datetime(2024, 1, 10, 11, 0))

        result = adapter.apply('update', 'N1', {'text': 'client'}, baseline_at=datetime(2024, 1, 10, 10, 0))

        assert result.conflict
        assert result.server_modified_at == datetime(2024, 1, 10, 11, 0)
        assert adapter.records['N1']['data']['text'] == 'server'

    def test_update_equal_timestamp_applies(self, app):
        adapter = MemoryAdapter('clinical_note')
        moment = datetime(2024, 1, 10, 10, 0)
        adapter.put('N1', {'text': 'server'}, modified_at=moment)

        result = adapter.apply('update', 'N1', {'text': 'client'}, baseline_at=moment)

        assert result.success
        assert adapter.records['N1']['data']['text'] == 'client'

    def test_update_without_baseline_applies(self, app):
        adapter = MemoryAdapter('clinical_note')
        adapter.put('N1', {'text': 'server'})

        assert adapter.apply('update', 'N1', {'text': 'client'}).success

    def test_update_replay_is_noop_even_after_server_moved(self, app):
        adapter = MemoryAdapter('clinical_note')
        adapter.put('N1', {'text': 'client'}, modified_at=datetime(2024, 1, 10, 11, 0))

        result = adapter.apply('update', 'N1', {'text': 'client'}, baseline_at=datetime(2024, 1, 10, 10, 0))

        assert result.success
        assert result.applied is False
        assert adapter.writes == 0

    def test_update_missing_record(self, app):
        result = MemoryAdapter('clinical_note').apply('update', 'N404', {'text': 'x'})

        assert not result.success and not result.conflict
        assert result.error.kind == 'not_found'

    def test_delete_missing_is_success(self, app):
        result = MemoryAdapter('clinical_note').apply('delete', 'N404', None)

        assert result.success
        assert result.applied is False

    def test_delete_newer_server_conflicts(self, app):
        adapter = MemoryAdapter('clinical_note')
        adapter.put('N1', {'text': 'server'}, modified_at=datetime(2024, 1, 10, 11, 0))

        result = adapter.apply('delete', 'N1', None, baseline_at=datetime(2024, 1, 10, 10, 0))

        assert result.conflict
        assert 'N1' in adapter.records

    def test_store_errors_become_results(self, app):
        from offline_sync.services.sync import TransientError
        adapter = MemoryAdapter('clinical_note')
        adapter.fail_next.append(TransientError('store timeout'))

        result = adapter.apply('create', 'N1', {'text': 'hello'})

        assert result.error.retryable is True

    def test_validate_payload(self, app):
        adapter = MemoryAdapter('clinical_note')
        adapter.validate_payload('create', {'text': 'x'})
        adapter.validate_payload('delete', None)

        with pytest.raises(ValidationError):
            adapter.validate_payload('update', {})
        with pytest.raises(ValidationError):
            adapter.validate_payload('delete', 'x')
        with pytest.raises(ValidationError):
            adapter.validate_payload('create', {'text': 'x'}, payload_version=3)


class TestSQLAlchemyEntityAdapter:
    """Tests for the generic model adapter."""

    def test_create_update_serialize(self, app):
        adapter = AppointmentAdapter()
        created = adapter.apply('create', 'A1', {'patient_name': 'Ann', 'status': 'scheduled'})

        assert created.success
        record = db.session.get(Appointment, 'A1')
        assert record.patient_name == 'Ann'
        assert created.snapshot['_deleted'] is False
        assert created.snapshot['updated_at'].endswith('Z')

        updated = adapter.apply('update', 'A1', {'status': 'confirmed'})
        assert updated.success
        assert db.session.get(Appointment, 'A1').status == 'confirmed'

    def test_unknown_fields_rejected_and_not_written(self, app):
        result = AppointmentAdapter().apply('create', 'A1', {'patient_name': 'Ann', 'color': 'red'})

        assert result.error.kind == 'validation'
        db.session.rollback()
        assert db.session.get(Appointment, 'A1') is None

    def test_bookkeeping_columns_not_writable(self, app):
        result = AppointmentAdapter().apply('create', 'A1', {'updated_at': '2020-01-01'})
        assert result.error.kind == 'validation'

    def test_soft_delete_and_revive(self, app):
        adapter = AppointmentAdapter()
        adapter.apply('create', 'A1', {'patient_name': 'Ann'})

        assert adapter.apply('delete', 'A1', None).success
        tombstone = db.session.get(Appointment, 'A1')
        assert tombstone.deleted is True
        assert adapter.fetch('A1') is None

        # Deleting again is a no-op
        assert adapter.apply('delete', 'A1', None).applied is False

        revived = adapter.apply('create', 'A1', {'patient_name': 'Bob'})
        assert revived.success
        assert Appointment.query.count() == 1
        assert db.session.get(Appointment, 'A1').deleted is False

    def test_hard_delete_and_integer_ids(self, app):
        adapter = PatientAdapter()
        assert adapter.apply('create', '42', {'name': 'Ann'}).success
        assert db.session.get(Patient, 42).name == 'Ann'

        assert adapter.apply('delete', 42, None).success
        assert db.session.get(Patient, 42) is None

    def test_non_numeric_id_for_integer_column(self, app):
        result = PatientAdapter().apply('update', 'abc', {'name': 'Ann'})
        assert result.error.kind == 'validation'

    def test_find_modified_since(self, app, make_appointment):
        base = datetime(2024, 1, 1)
        for i in range(4):
            make_appointment(f'A{i}', modified_at=base + timedelta(hours=i))

        records, has_more = AppointmentAdapter().find_modified_since(base, 2)
        assert [r.id for r in records] == ['A1', 'A2']
        assert has_more is True

        records, has_more = AppointmentAdapter().find_modified_since(base + timedelta(hours=2), 5)
        assert [r.id for r in records] == ['A3']
        assert has_more is False

    def test_tombstones_are_delivered(self, app, make_appointment):
        make_appointment('A1', modified_at=datetime(2024, 1, 1), deleted=True)

        records, _ = AppointmentAdapter().find_modified_since(datetime(2023, 1, 1), 10)
        assert AppointmentAdapter().serialize(records[0])['_deleted'] is True

    def test_requires_model(self):
        from offline_sync.services.sync import SQLAlchemyEntityAdapter
        with pytest.raises(ValueError):
            SQLAlchemyEntityAdapter()


class TestAdapterRegistry:
    """Tests for the per-app adapter registry."""

    def test_registered_types(self, app):
        assert adapter_registry.entity_types() == ['appointment', 'clinical_note', 'document', 'patient']

    def test_require_unknown(self, app):
        with pytest.raises(ValidationError) as exc_info:
            adapter_registry.require('invoice')
        assert 'appointment' in exc_info.value.details['supported']

    def test_register_sets_entity_type(self, app):
        adapter = MemoryAdapter(None)
        adapter_registry.register('message', adapter)

        assert adapter.entity_type == 'message'
        assert adapter_registry.get('message') is adapter

        adapter_registry.unregister('message')
        assert adapter_registry.get('message') is None

    def test_loads_adapters_from_config(self):
        from flask import Flask
        flask_app = Flask(__name__)
        flask_app.config['SYNC_ADAPTERS'] = {'patient': 'conftest:PatientAdapter'}

        registry = AdapterRegistry(flask_app)

        assert isinstance(registry.get('patient', flask_app), PatientAdapter)


class TestEnvelope:
    """Tests for envelope building and baseline parsing."""

    def test_build(self, app):
        envelope = build_envelope(
            'appointment', 12, 'UPDATE', {'status': 'x'},
            baseline={'modified_at': 1704880800000},
            client_timestamp='2024-01-10T10:05:00Z',
        )

        assert envelope.entity_id == '12'
        assert envelope.operation == 'update'
        assert envelope.baseline_at == datetime(2024, 1, 10, 10, 0)
        assert envelope.client_timestamp == datetime(2024, 1, 10, 10, 5)

    def test_defaults(self, app):
        before = utcnow()
        envelope = build_envelope('appointment', 'A1', 'delete', None)

        assert envelope.payload == {}
        assert envelope.baseline_at is None
        assert envelope.payload_version == 1
        assert envelope.client_timestamp >= before

    @pytest.mark.parametrize('baseline, expected', [
        (None, None),
        ('2024-01-10T10:00:00Z', datetime(2024, 1, 10, 10, 0)),
        (1704880800, datetime(2024, 1, 10, 10, 0)),
        ({'updatedAt': '2024-01-10T10:00:00Z', 'status': 'x'}, datetime(2024, 1, 10, 10, 0)),
        ({'lastModified': '2024-01-10T11:00:00+01:00'}, datetime(2024, 1, 10, 10, 0)),
    ])
    def test_extract_baseline_time(self, baseline, expected):
        assert extract_baseline_time(baseline) == expected

    @pytest.mark.parametrize('baseline', [
        {'status': 'x'},
        {'updatedAt': 'soon'},
        'soon',
        True,
    ])
    def test_extract_baseline_time_invalid(self, baseline):
        with pytest.raises(ValidationError):
            extract_baseline_time(baseline)
