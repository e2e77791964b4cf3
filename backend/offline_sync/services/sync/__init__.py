"""
Sync Engine Module

This package contains the offline sync engine components:
- device_state: Per-device cursors, counters and settings
- change_queue: Durable queue of client mutations
- coordinator: Claim, apply, conflict handling and incremental deltas
- adapters / registry: Pluggable per entity type domain stores
- retention: Cleanup and stale claim recovery
"""
from .adapters import AdapterResult, EntityAdapter, SQLAlchemyEntityAdapter
from .batch_summary import BatchSummary
from .change_queue import ChangeQueue, priority_for
from .coordinator import SyncCoordinator
from .device_state import DeviceStateManager
from .envelope import ChangeEnvelope, build_envelope
from .errors import (
    ConcurrencyViolation,
    ConflictError,
    ConflictNotFoundError,
    DeviceNotFoundError,
    NotFoundError,
    SyncError,
    TransientError,
    ValidationError,
)
from .registry import AdapterRegistry, adapter_registry
from .retention import RetentionService

__all__ = [
    'AdapterResult',
    'EntityAdapter',
    'SQLAlchemyEntityAdapter',
    'BatchSummary',
    'ChangeQueue',
    'priority_for',
    'SyncCoordinator',
    'DeviceStateManager',
    'ChangeEnvelope',
    'build_envelope',
    'ConcurrencyViolation',
    'ConflictError',
    'ConflictNotFoundError',
    'DeviceNotFoundError',
    'NotFoundError',
    'SyncError',
    'TransientError',
    'ValidationError',
    'AdapterRegistry',
    'adapter_registry',
    'RetentionService',
]
