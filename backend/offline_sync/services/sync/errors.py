"""
Sync error taxonomy

Only request-shape problems (ValidationError, NotFoundError on lookups) are
raised to callers of submit/resolve. Everything that happens while a batch is
processed is captured per item in the batch summary instead.
"""
from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for sync engine errors."""

    code = 'SYNC_ERROR'
    kind = 'error'
    http_status = 500
    # Whether an item failing with this error may be processed again
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        data = {'kind': self.kind, 'code': self.code, 'message': self.message}
        if self.details:
            data['details'] = self.details
        return data


class ValidationError(SyncError):
    """Malformed submit/resolve request. Rejected before enqueue, never retried."""

    code = 'VALIDATION_ERROR'
    kind = 'validation'
    http_status = 400


class NotFoundError(SyncError):
    """Target record (or device/conflict) does not exist."""

    code = 'NOT_FOUND'
    kind = 'not_found'
    http_status = 404


class DeviceNotFoundError(NotFoundError):
    code = 'DEVICE_NOT_FOUND'


class ConflictNotFoundError(NotFoundError):
    code = 'CONFLICT_NOT_FOUND'


class ConflictError(SyncError):
    """Server copy changed after the client's baseline. Routed to a ConflictRecord."""

    code = 'CONFLICT'
    kind = 'conflict'
    http_status = 409

    def __init__(
        self,
        message: str,
        server_version: Optional[Dict[str, Any]] = None,
        server_modified_at=None,
        client_version: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.server_version = server_version
        self.server_modified_at = server_modified_at
        self.client_version = client_version


class TransientError(SyncError):
    """Store or network hiccup. Retried until the attempt budget is spent."""

    code = 'TRANSIENT_ERROR'
    kind = 'transient'
    http_status = 503
    retryable = True


class ConcurrencyViolation(SyncError):
    """Item or device claimed by another worker. Not charged as an attempt."""

    code = 'CONCURRENCY_VIOLATION'
    kind = 'concurrency_violation'
    http_status = 409
    retryable = True
