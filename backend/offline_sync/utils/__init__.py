"""
Utilities
"""
from .responses import success_response, ApiResponse
from .validators import validate_device_id, validate_entity_type, validate_timestamp
from .timestamps import EPOCH, utcnow, to_iso, parse_timestamp
from .logger import setup_logger, get_logger

__all__ = [
    'success_response',
    'ApiResponse',
    'validate_device_id',
    'validate_entity_type',
    'validate_timestamp',
    'EPOCH',
    'utcnow',
    'to_iso',
    'parse_timestamp',
    'setup_logger',
    'get_logger',
]
