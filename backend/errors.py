# backend/errors.py
"""Status-bearing errors raised by the session manager and the note store.

Calendar sync never raises these; its outcomes are values
(see services.calendar_service.SyncOutcome).
"""

from typing import Optional


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AppError):
    """Malformed or missing input the caller can correct."""
    status_code = 400


class AuthError(AppError):
    """Bad credentials, or a refresh token that is expired, forged or superseded."""
    status_code = 401


class NotFoundError(AppError):
    """Resource is absent or not owned by the caller."""
    status_code = 404


class InternalError(AppError):
    status_code = 500
