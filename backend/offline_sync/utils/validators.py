"""
Input validation helpers

Each validator returns a tuple whose first two items are (is_valid, error_message).
"""
import re
from datetime import datetime, timedelta
from typing import Any, List, Optional, Tuple

from .timestamps import parse_timestamp, utcnow

DEVICE_TYPES = ('ios', 'android', 'web')
OPERATIONS = ('create', 'update', 'delete')
RESOLUTIONS = ('server_wins', 'client_wins', 'manual_resolve')
CONNECTION_QUALITIES = ('excellent', 'good', 'poor', 'offline')

_IDENTIFIER_RE = re.compile(r'^[A-Za-z0-9_.:-]+$')
_ENTITY_TYPE_RE = re.compile(r'^[a-z][a-z0-9_]*$')


def validate_device_id(device_id: Any) -> Tuple[bool, Optional[str]]:
    """
    Validate a client device identifier

    Args:
        device_id: stable identifier reported by the client installation

    Returns:
        (is_valid, error_message)
    """
    if not device_id:
        return False, 'Device ID is required'

    if not isinstance(device_id, str):
        return False, 'Device ID must be a string'

    device_id = device_id.strip()

    if len(device_id) > 128:
        return False, 'Device ID must be at most 128 characters'

    if not _IDENTIFIER_RE.match(device_id):
        return False, 'Device ID may only contain letters, digits and _ . : -'

    return True, None


def validate_entity_id(entity_id: Any) -> Tuple[bool, Optional[str]]:
    if entity_id is None or entity_id == '':
        return False, 'Entity ID is required'

    if isinstance(entity_id, bool) or not isinstance(entity_id, (str, int)):
        return False, 'Entity ID must be a string or an integer'

    if len(str(entity_id)) > 64:
        return False, 'Entity ID must be at most 64 characters'

    return True, None


def validate_entity_type(entity_type: Any) -> Tuple[bool, Optional[str]]:
    if not entity_type or not isinstance(entity_type, str):
        return False, 'Entity type is required'

    if not _ENTITY_TYPE_RE.match(entity_type) or len(entity_type) > 32:
        return False, f"Invalid entity type '{entity_type}'"

    return True, None


def validate_choice(
    value: Any,
    choices: Tuple[str, ...],
    field_name: str,
    default: Optional[str] = None
) -> Tuple[bool, Optional[str], Optional[str]]:
    """
    Validate a value against a fixed set of choices

    Returns:
        (is_valid, error_message, cleaned_value)
    """
    if value is None or value == '':
        if default is not None:
            return True, None, default
        return False, f'{field_name} is required', None

    if not isinstance(value, str):
        return False, f'{field_name} must be a string', None

    value = value.strip().lower()
    if value not in choices:
        return False, f"{field_name} must be one of {list(choices)}", None

    return True, None, value


def validate_limit(
    limit: Any,
    default: int,
    max_value: int,
    field_name: str = 'limit'
) -> Tuple[bool, Optional[str], int]:
    """
    Validate a positive page/batch size

    Returns:
        (is_valid, error_message, cleaned_limit)
    """
    if limit is None or limit == '':
        return True, None, default

    try:
        value = int(limit)
    except (TypeError, ValueError):
        return False, f'{field_name} must be an integer', default

    if value < 1 or value > max_value:
        return False, f'{field_name} must be between 1 and {max_value}', default

    return True, None, value


def validate_timestamp(
    value: Any,
    field_name: str = 'timestamp',
    required: bool = False,
    future_tolerance_seconds: int = 300
) -> Tuple[bool, Optional[str], Optional[datetime]]:
    """
    Validate an ISO 8601 string or unix timestamp (seconds or milliseconds)

    Returns:
        (is_valid, error_message, parsed_naive_utc)
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            return False, f'{field_name} is required', None
        return True, None, None

    parsed = parse_timestamp(value)
    if parsed is None:
        return False, f'{field_name} is not a valid ISO 8601 timestamp', None

    # Reject clocks that are clearly ahead of the server
    if parsed - utcnow() > timedelta(seconds=future_tolerance_seconds):
        return False, f'{field_name} cannot be in the future', None

    return True, None, parsed


def validate_entity_types_list(
    entity_types: Any,
    max_count: int = 20,
    field_name: str = 'entity types'
) -> Tuple[bool, Optional[str], List[str]]:
    """
    Validate a list of entity type names

    Returns:
        (is_valid, error_message, cleaned_list)
    """
    if not entity_types:
        return False, f'{field_name} cannot be empty', []

    if not isinstance(entity_types, list):
        return False, f'{field_name} must be an array', []

    if len(entity_types) > max_count:
        return False, f'at most {max_count} {field_name} are allowed', []

    cleaned = []
    for i, value in enumerate(entity_types):
        is_valid, error_msg = validate_entity_type(value)
        if not is_valid:
            return False, f'{field_name}[{i}]: {error_msg}', []
        if value not in cleaned:
            cleaned.append(value)

    return True, None, cleaned


def sanitize_string(value: Any, max_length: int = 255, default: str = '') -> str:
    """
    Trim and truncate a free-form string input

    Args:
        value: raw input
        max_length: maximum kept length
        default: returned for empty input
    """
    if not value:
        return default

    if not isinstance(value, str):
        value = str(value)

    value = value.strip()

    if len(value) > max_length:
        value = value[:max_length]

    return value
