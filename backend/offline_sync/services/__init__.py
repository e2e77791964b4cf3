"""
Service Layer

This module exports the sync facade and engine components.
"""
from .sync_service import SyncService
from .sync import (
    EntityAdapter,
    SQLAlchemyEntityAdapter,
    SyncCoordinator,
    adapter_registry,
)

__all__ = [
    'SyncService',
    'EntityAdapter',
    'SQLAlchemyEntityAdapter',
    'SyncCoordinator',
    'adapter_registry',
]
