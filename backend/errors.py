"""
Error taxonomy shared by the managers and the HTTP layer.

Every error carries the HTTP status it maps to; main.py turns them into the
``{success, message, error}`` envelope.
"""
from typing import Optional


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, error: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error = error

    def to_envelope(self) -> dict:
        body = {"success": False, "message": self.message}
        if self.error:
            body["error"] = self.error
        return body


class ValidationError(AppError):
    status_code = 400


class NotFoundError(AppError):
    status_code = 404


class ConflictError(AppError):
    status_code = 400


class StoreError(AppError):
    """Underlying store failure; the raw driver message is passed through."""

    status_code = 500
