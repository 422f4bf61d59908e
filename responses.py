"""JSON response envelope and the API error taxonomy."""

import logging
from datetime import datetime
from functools import wraps

from flask import jsonify
from werkzeug.exceptions import HTTPException


class ApiError(Exception):
    status_code = 400
    default_message = 'Bad request'

    def __init__(self, message=None, errors=None, data=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.errors = errors
        self.data = data


class BadRequest(ApiError):
    status_code = 400
    default_message = 'Bad request'


class Unauthorized(ApiError):
    status_code = 401
    default_message = 'Authentication required'


class Forbidden(ApiError):
    status_code = 403
    default_message = 'Access denied'


class NotFound(ApiError):
    status_code = 404
    default_message = 'Resource not found'


class Conflict(ApiError):
    status_code = 409
    default_message = 'Conflict'


class ValidationFailed(ApiError):
    status_code = 422
    default_message = 'Validation failed'


class ServerError(ApiError):
    status_code = 500
    default_message = 'Internal server error'


def envelope(success, message, data=None, errors=None):
    body = {
        'success': success,
        'message': message,
        'timestamp': datetime.now().isoformat(),
    }
    if data is not None:
        body['data'] = data
    if errors is not None:
        body['errors'] = errors
    return body


def ok(data=None, message='Success', status=200):
    return jsonify(envelope(True, message, data)), status


def created(data=None, message='Created successfully'):
    return ok(data, message, 201)


def error_response(message, status=400, errors=None, data=None):
    return jsonify(envelope(False, message, data, errors)), status


def failure_message(message):
    """Turn unexpected exceptions in a route into a generic ServerError.

    ApiErrors pass through untouched. Anything else is logged with its
    traceback; the client only sees ``message``.
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except (ApiError, HTTPException):
                raise
            except Exception:
                logging.exception("%s (%s)", message, fn.__name__)
                raise ServerError(message)
        return wrapper
    return decorator
