"""
Exception types shared by the MovePost backend.

Provider clients raise these so route handlers can turn them into JSON
responses with a sensible status code.
"""

from typing import Optional


class AppError(Exception):
    """Base error carrying an HTTP status for the API layer."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        return {'error': self.message}


class ValidationError(AppError):
    status_code = 400


class UnauthorizedError(AppError):
    status_code = 401


class ForbiddenError(AppError):
    status_code = 403


class NotFoundError(AppError):
    status_code = 404


class SupabaseError(AppError):
    """Raised when a PostgREST or Auth request fails.

    status_code stays 502 for the API response; the PostgREST status is
    kept in upstream_status.
    """

    status_code = 502

    def __init__(self, message: str, status_code: Optional[int] = None, details: str = ''):
        super().__init__(message)
        self.upstream_status = status_code
        self.details = details


class MelissaError(AppError):
    status_code = 502


class PostGridError(AppError):
    status_code = 502


class EmailError(AppError):
    status_code = 502
