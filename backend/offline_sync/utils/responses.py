"""
Uniform API response envelope

    {"success": true, "message": "...", "data": {...}}
    {"success": false, "error": {"code": "...", "message": "...", "details": {...}}}
"""
from flask import jsonify
from typing import Any, Optional, Dict


def _envelope(message: str, data: Any, status: int) -> tuple:
    body = {'success': True, 'message': message}
    if data is not None:
        body['data'] = data
    return jsonify(body), status


class ApiResponse:
    """API response builder"""

    @staticmethod
    def success(data: Any = None, message: str = 'OK') -> tuple:
        return _envelope(message, data, 200)

    @staticmethod
    def created(data: Any = None, message: str = 'Created') -> tuple:
        """201, used when a device is registered for the first time"""
        return _envelope(message, data, 201)

    @staticmethod
    def error(
        message: str,
        code: int = 400,
        error_code: str = 'BAD_REQUEST',
        details: Optional[Dict] = None
    ) -> tuple:
        """
        Error response

        Args:
            message: error message
            code: HTTP status code
            error_code: machine readable code, matches SyncError.code where one applies
            details: extra context, e.g. the batch summary or the refreshed conflict

        Returns:
            (Flask Response, status code)
        """
        error = {'code': error_code, 'message': message}
        if details:
            error['details'] = details
        return jsonify({'success': False, 'error': error}), code

    @staticmethod
    def not_found(message: str = 'Resource not found') -> tuple:
        return ApiResponse.error(message, 404, 'NOT_FOUND')

    @staticmethod
    def unauthorized(message: str = 'Unauthorized request') -> tuple:
        return ApiResponse.error(message, 401, 'UNAUTHORIZED')

    @staticmethod
    def forbidden(message: str = 'Forbidden') -> tuple:
        return ApiResponse.error(message, 403, 'FORBIDDEN')

    @staticmethod
    def validation_error(message: str, details: Optional[Dict] = None) -> tuple:
        return ApiResponse.error(message, 400, 'VALIDATION_ERROR', details)

    @staticmethod
    def device_locked(summary: Dict) -> tuple:
        """409 when another worker holds the device's processing claim"""
        return ApiResponse.error(
            'Device queue is being processed by another worker', 409, 'CONCURRENCY_VIOLATION',
            details={'summary': summary},
        )

    @staticmethod
    def conflict(message: str, conflict: Dict) -> tuple:
        """409 carrying the conflict as it now stands"""
        return ApiResponse.error(message, 409, 'CONFLICT', details={'conflict': conflict})

    @staticmethod
    def server_error(message: str = 'Internal server error') -> tuple:
        return ApiResponse.error(message, 500, 'INTERNAL_ERROR')

    @staticmethod
    def from_sync_error(error) -> tuple:
        """Map a SyncError onto the envelope using its code and status"""
        return ApiResponse.error(
            str(error),
            getattr(error, 'http_status', 500),
            getattr(error, 'code', 'SYNC_ERROR'),
            getattr(error, 'details', None),
        )


def success_response(data: Any = None, message: str = 'OK') -> tuple:
    """Shortcut for ApiResponse.success"""
    return ApiResponse.success(data, message)
