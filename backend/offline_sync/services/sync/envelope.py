"""
Change envelope

A queued mutation is a small common header (entity type/id, operation,
client timestamp, payload version) plus an opaque payload whose shape belongs
to the entity adapter.
"""
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ...utils.timestamps import parse_timestamp, utcnow
from ...utils.validators import (
    OPERATIONS,
    validate_choice,
    validate_entity_id,
    validate_entity_type,
    validate_timestamp,
)
from .errors import ValidationError

# Snapshot keys that carry the version time the client read
BASELINE_TIME_KEYS = ('modifiedAt', 'modified_at', 'updatedAt', 'updated_at', 'lastModified')

MAX_PAYLOAD_BYTES = 256 * 1024


@dataclass
class ChangeEnvelope:
    entity_type: str
    entity_id: str
    operation: str
    payload: Dict[str, Any]
    client_timestamp: datetime
    payload_version: int = 1
    baseline: Any = None
    baseline_at: Optional[datetime] = None

    def payload_json(self) -> str:
        return json.dumps(self.payload, ensure_ascii=False, default=str)

    def baseline_json(self) -> Optional[str]:
        if self.baseline is None:
            return None
        return json.dumps(self.baseline, ensure_ascii=False, default=str)


def extract_baseline_time(baseline: Any) -> Optional[datetime]:
    """Baseline read time from a timestamp or an entity snapshot.

    Raises:
        ValidationError: the baseline is present but carries no usable time
    """
    if baseline is None:
        return None

    if isinstance(baseline, dict):
        for key in BASELINE_TIME_KEYS:
            if baseline.get(key) is not None:
                parsed = parse_timestamp(baseline[key])
                if parsed is None:
                    raise ValidationError(f'baseline.{key} is not a valid timestamp')
                return parsed
        raise ValidationError(
            'baseline snapshot must include one of: ' + ', '.join(BASELINE_TIME_KEYS)
        )

    parsed = parse_timestamp(baseline)
    if parsed is None:
        raise ValidationError('baseline must be a timestamp or an entity snapshot')
    return parsed


def build_envelope(
    entity_type: Any,
    entity_id: Any,
    operation: Any,
    payload: Any,
    baseline: Any = None,
    client_timestamp: Any = None,
    payload_version: Any = 1,
) -> ChangeEnvelope:
    """Validate the header fields and wrap them in an envelope.

    Payload shape is checked separately by the adapter.
    """
    is_valid, error_msg = validate_entity_type(entity_type)
    if not is_valid:
        raise ValidationError(error_msg)

    is_valid, error_msg = validate_entity_id(entity_id)
    if not is_valid:
        raise ValidationError(error_msg)

    is_valid, error_msg, operation = validate_choice(operation, OPERATIONS, 'operation')
    if not is_valid:
        raise ValidationError(error_msg)

    is_valid, error_msg, parsed_client_ts = validate_timestamp(client_timestamp, 'clientTimestamp')
    if not is_valid:
        raise ValidationError(error_msg)

    try:
        payload_version = int(payload_version if payload_version is not None else 1)
    except (TypeError, ValueError):
        raise ValidationError('payloadVersion must be an integer')

    if payload is None:
        payload = {}

    envelope = ChangeEnvelope(
        entity_type=entity_type,
        entity_id=str(entity_id),
        operation=operation,
        payload=payload,
        client_timestamp=parsed_client_ts or utcnow(),
        payload_version=payload_version,
        baseline=baseline,
        baseline_at=extract_baseline_time(baseline),
    )

    if isinstance(payload, dict) and len(envelope.payload_json().encode('utf-8')) > MAX_PAYLOAD_BYTES:
        raise ValidationError(f'payload exceeds {MAX_PAYLOAD_BYTES} bytes')

    return envelope
