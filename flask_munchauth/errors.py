"""
Error taxonomy and the JSON response envelope used by every endpoint.

Every response is either ``{"success": true, "data": ...}`` or
``{"success": false, "error": {"message": ..., "code": ...}}``.
"""

from flask import jsonify


INVALID_REQUEST = 'INVALID_REQUEST'
UNAUTHORIZED = 'UNAUTHORIZED'
NO_CHALLENGE = 'NO_CHALLENGE'
NO_PASSKEYS = 'NO_PASSKEYS'
VERIFY_FAILED = 'VERIFY_FAILED'
INVALID_TOKEN = 'INVALID_TOKEN'
TOKEN_EXPIRED = 'TOKEN_EXPIRED'
NOT_FOUND = 'NOT_FOUND'
RESEND_COOLDOWN = 'RESEND_COOLDOWN'
EMAIL_EXISTS = 'EMAIL_EXISTS'
EMAIL_DELIVERY_FAILED = 'EMAIL_DELIVERY_FAILED'
RATE_LIMIT = 'RATE_LIMIT'
INTERNAL_ERROR = 'INTERNAL_ERROR'


class AuthError(Exception):
    """An error that is safe to show to the client.

    ``details`` are merged into the error object, e.g. ``remainingSeconds``
    for a resend cooldown.
    """

    def __init__(self, status_code, message, code=INTERNAL_ERROR, **details):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.details = details

    def to_dict(self):
        error = {'message': self.message, 'code': self.code}
        error.update(self.details)
        return error


def success_response(data, status_code=200):
    return jsonify({'success': True, 'data': data}), status_code


def error_response(error):
    if isinstance(error, AuthError):
        return jsonify({'success': False, 'error': error.to_dict()}), error.status_code

    return jsonify({
        'success': False,
        'error': {'message': 'An unexpected error occurred', 'code': INTERNAL_ERROR},
    }), 500
