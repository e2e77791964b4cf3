"""
Entity Adapters - the narrow seam between the sync engine and domain stores

An adapter applies one queued mutation to the authoritative store and reports
success, conflict or error. The conflict test and replay detection live in
EntityAdapter.apply so every adapter gets the same semantics; subclasses only
provide storage primitives.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ...extensions import db
from ...utils.logger import get_logger
from ...utils.timestamps import to_iso, utcnow
from .errors import ConflictError, NotFoundError, SyncError, ValidationError

logger = get_logger('adapters')


@dataclass
class AdapterResult:
    """Outcome of EntityAdapter.apply"""

    status: str  # success / conflict / error
    # Whether the store was written (False for replays and no-op deletes)
    applied: bool = False
    snapshot: Optional[Dict[str, Any]] = None
    server_version: Optional[Dict[str, Any]] = None
    server_modified_at: Optional[datetime] = None
    client_version: Optional[Dict[str, Any]] = None
    error: Optional[SyncError] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    SUCCESS = 'success'
    CONFLICT = 'conflict'
    ERROR = 'error'

    @property
    def success(self) -> bool:
        return self.status == self.SUCCESS

    @property
    def conflict(self) -> bool:
        return self.status == self.CONFLICT

    @classmethod
    def ok(cls, snapshot=None, applied=True) -> 'AdapterResult':
        return cls(status=cls.SUCCESS, applied=applied, snapshot=snapshot)

    @classmethod
    def conflicted(cls, error: ConflictError) -> 'AdapterResult':
        return cls(
            status=cls.CONFLICT,
            server_version=error.server_version,
            server_modified_at=error.server_modified_at,
            client_version=error.client_version,
            error=error,
        )

    @classmethod
    def failed(cls, error: SyncError) -> 'AdapterResult':
        return cls(status=cls.ERROR, error=error)


class EntityAdapter:
    """Base class for per entity type adapters.

    Subclasses implement fetch/create/update/delete/modified_at_of/serialize
    and find_modified_since. Storage primitives may raise SyncError
    subclasses (TransientError for retryable store failures); anything else
    propagates to the coordinator, which treats it as transient.
    """

    entity_type: Optional[str] = None
    # Envelope payload versions this adapter understands
    payload_versions: Tuple[int, ...] = (1,)

    # ---- storage primitives -------------------------------------------------

    def fetch(self, entity_id: str):
        """Return the live record or None."""
        raise NotImplementedError

    def create(self, entity_id: str, payload: Dict[str, Any]):
        raise NotImplementedError

    def update(self, record, payload: Dict[str, Any]):
        raise NotImplementedError

    def delete(self, record) -> None:
        raise NotImplementedError

    def modified_at_of(self, record) -> Optional[datetime]:
        """Server-side last-modified timestamp (naive UTC)."""
        raise NotImplementedError

    def serialize(self, record) -> Dict[str, Any]:
        raise NotImplementedError

    def find_modified_since(self, since: datetime, limit: int) -> Tuple[List[Any], bool]:
        """Records with modified_at > since, oldest first, at most `limit`.

        Returns (records, has_more) where has_more is True iff the page is full.
        """
        raise NotImplementedError

    # ---- envelope validation ----------------------------------------------

    def validate_payload(self, operation: str, payload: Any, payload_version: int = 1) -> None:
        """Reject malformed payloads before they are queued."""
        if payload_version not in self.payload_versions:
            raise ValidationError(
                f"Unsupported payload version {payload_version} for '{self.entity_type}'",
                details={'supported': list(self.payload_versions)},
            )
        if operation in ('create', 'update'):
            if not isinstance(payload, dict) or not payload:
                raise ValidationError(f'{operation} requires a non-empty object payload')
        elif payload is not None and not isinstance(payload, dict):
            raise ValidationError('delete payload must be an object when provided')

    # ---- apply --------------------------------------------------------------

    def matches(self, record, payload: Dict[str, Any]) -> bool:
        """True when the record already carries every field of the payload."""
        if not payload:
            return False
        snapshot = self.serialize(record)
        return all(snapshot.get(key) == value for key, value in payload.items())

    def is_newer_than_baseline(self, record, baseline_at: Optional[datetime]) -> bool:
        if baseline_at is None:
            return False
        modified_at = self.modified_at_of(record)
        return modified_at is not None and modified_at > baseline_at

    def _conflict(self, record, payload, message) -> ConflictError:
        return ConflictError(
            message,
            server_version=self.serialize(record),
            server_modified_at=self.modified_at_of(record),
            client_version=payload,
        )

    def apply(
        self,
        operation: str,
        entity_id: str,
        payload: Optional[Dict[str, Any]],
        baseline_at: Optional[datetime] = None,
        force: bool = False,
    ) -> AdapterResult:
        """Apply one mutation.

        Args:
            operation: create / update / delete
            entity_id: target record id
            payload: field values to write
            baseline_at: when the client read the version it edited
            force: skip the conflict test (manual resolution)
        """
        payload = payload or {}
        try:
            current = self.fetch(entity_id)

            if operation == 'create':
                if current is None:
                    created = self.create(entity_id, payload)
                    return AdapterResult.ok(self.serialize(created))
                # Replay of a create that already landed
                if self.matches(current, payload):
                    return AdapterResult.ok(self.serialize(current), applied=False)
                if force:
                    updated = self.update(current, payload)
                    return AdapterResult.ok(self.serialize(updated))
                raise self._conflict(current, payload, f'{self.entity_type} {entity_id} already exists')

            if operation == 'update':
                if current is None:
                    raise NotFoundError(f'{self.entity_type} {entity_id} not found')
                if self.matches(current, payload):
                    return AdapterResult.ok(self.serialize(current), applied=False)
                if not force and self.is_newer_than_baseline(current, baseline_at):
                    raise self._conflict(
                        current, payload,
                        f'{self.entity_type} {entity_id} modified on server after client baseline',
                    )
                updated = self.update(current, payload)
                return AdapterResult.ok(self.serialize(updated))

            if operation == 'delete':
                if current is None:
                    return AdapterResult.ok(applied=False)
                if not force and self.is_newer_than_baseline(current, baseline_at):
                    raise self._conflict(
                        current, payload,
                        f'{self.entity_type} {entity_id} modified on server after client baseline',
                    )
                self.delete(current)
                return AdapterResult.ok()

            raise ValidationError(f'Unsupported operation: {operation}')

        except ConflictError as e:
            logger.info(f"Conflict on {self.entity_type}:{entity_id} ({operation}): {e}")
            return AdapterResult.conflicted(e)
        except SyncError as e:
            return AdapterResult.failed(e)


class SQLAlchemyEntityAdapter(EntityAdapter):
    """Adapter over a Flask-SQLAlchemy model.

    Example:
        >>> class AppointmentAdapter(SQLAlchemyEntityAdapter):
        ...     entity_type = 'appointment'
        ...     model = Appointment
        ...     deleted_column = 'deleted'
    """

    model = None
    id_column = 'id'
    modified_column = 'updated_at'
    # Optional boolean soft-delete flag; tombstones are then delivered in deltas
    deleted_column: Optional[str] = None
    # Fields clients may write; None means every column except the bookkeeping ones
    writable_fields: Optional[Tuple[str, ...]] = None

    def __init__(self, model=None):
        if model is not None:
            self.model = model
        if self.model is None:
            raise ValueError(f'{type(self).__name__} requires a model')

    def _column(self, name):
        return getattr(self.model, name)

    def _coerce_id(self, entity_id):
        column = self.model.__table__.columns[self.id_column]
        try:
            python_type = column.type.python_type
        except NotImplementedError:
            return entity_id
        if python_type is int:
            try:
                return int(entity_id)
            except (TypeError, ValueError):
                raise ValidationError(f'Invalid id for {self.entity_type}: {entity_id}')
        return entity_id

    def _is_deleted(self, record) -> bool:
        return bool(self.deleted_column and getattr(record, self.deleted_column, False))

    def _writable(self) -> Tuple[str, ...]:
        if self.writable_fields is not None:
            return self.writable_fields
        excluded = {self.id_column, self.modified_column, self.deleted_column}
        return tuple(c.name for c in self.model.__table__.columns if c.name not in excluded)

    def _assign(self, record, payload):
        allowed = self._writable()
        unknown = [key for key in payload if key not in allowed]
        if unknown:
            raise ValidationError(
                f'Unknown fields for {self.entity_type}: {", ".join(sorted(unknown))}'
            )
        for key, value in payload.items():
            setattr(record, key, value)
        setattr(record, self.modified_column, utcnow())

    def _lookup(self, entity_id):
        return self.model.query.filter(
            self._column(self.id_column) == self._coerce_id(entity_id)
        ).first()

    def fetch(self, entity_id):
        record = self._lookup(entity_id)
        if record is None or self._is_deleted(record):
            return None
        return record

    def create(self, entity_id, payload):
        # A tombstone with the same id is revived rather than duplicated
        record = self._lookup(entity_id) if self.deleted_column else None
        if record is None:
            record = self.model(**{self.id_column: self._coerce_id(entity_id)})
            self._assign(record, payload)
            db.session.add(record)
        else:
            self._assign(record, payload)
            setattr(record, self.deleted_column, False)
        db.session.commit()
        return record

    def update(self, record, payload):
        self._assign(record, payload)
        db.session.commit()
        return record

    def delete(self, record):
        if self.deleted_column:
            setattr(record, self.deleted_column, True)
            setattr(record, self.modified_column, utcnow())
        else:
            db.session.delete(record)
        db.session.commit()

    def modified_at_of(self, record):
        return getattr(record, self.modified_column)

    def serialize(self, record):
        if hasattr(record, 'to_dict'):
            data = record.to_dict()
        else:
            data = {}
            for column in self.model.__table__.columns:
                value = getattr(record, column.name)
                data[column.name] = to_iso(value) if isinstance(value, datetime) else value
        if self.deleted_column:
            data['_deleted'] = self._is_deleted(record)
        return data

    def find_modified_since(self, since, limit):
        modified = self._column(self.modified_column)
        records = (
            self.model.query
            .filter(modified > since)
            .order_by(modified.asc(), self._column(self.id_column).asc())
            .limit(limit)
            .all()
        )
        return records, len(records) == limit
