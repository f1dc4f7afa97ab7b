"""
Error taxonomy shared by the access layer, the business rules and the API.

Each error knows its HTTP status; the FastAPI app renders every `AppError`
as `{"message": ..., "field": ...}`.
"""

from __future__ import annotations


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict:
        out: dict = {"message": self.message}
        if self.field:
            out["field"] = self.field
        return out


class ValidationError(AppError):
    status_code = 400


class Unauthorized(AppError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class Forbidden(AppError):
    status_code = 403

    def __init__(self, message: str = "Forbidden") -> None:
        super().__init__(message)


class NotFound(AppError):
    status_code = 404

    def __init__(self, message: str = "Not Found") -> None:
        super().__init__(message)


class Conflict(AppError):
    status_code = 409


class TooManyRequests(AppError):
    status_code = 429

    def __init__(self, message: str = "Too many requests") -> None:
        super().__init__(message)
