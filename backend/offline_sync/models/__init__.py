"""
Database models
"""
from .device_state import DeviceSyncState, EntitySyncCursor
from .change_queue import ChangeQueueItem, QueueStatus
from .conflict import ConflictRecord

__all__ = ['DeviceSyncState', 'EntitySyncCursor', 'ChangeQueueItem', 'QueueStatus', 'ConflictRecord']
