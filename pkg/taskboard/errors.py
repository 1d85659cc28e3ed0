"""
Error taxonomy for the task board.

Every failure crossing the gateway boundary is one of these. Each carries the
HTTP status the server answers with, so the server and the HTTP gateway share
one mapping in both directions.
"""
from typing import Optional


class BoardError(Exception):
    """Base class for all task board errors."""
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.__class__.__name__}


class Unauthorized(BoardError):
    """Caller lacks project membership or valid credentials."""
    status_code = 403


class NotFound(BoardError):
    """Project, task or user no longer exists."""
    status_code = 404


class ValidationFailed(BoardError):
    """Malformed input. Nothing was mutated."""
    status_code = 400


class NetworkFailure(BoardError):
    """Transient transport failure (connection, timeout, server error)."""
    status_code = 503


class RateLimited(BoardError):
    """Too many requests; the caller should wait before retrying."""
    status_code = 429

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message or "Too many requests")
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.retry_after is not None:
            data["retry_after"] = round(self.retry_after, 1)
        return data


class ConfigError(Exception):
    """Raised when configuration is invalid or incomplete."""
    pass


def error_for_status(status_code: int, message: str = "") -> BoardError:
    """Map an HTTP status code back to the matching BoardError."""
    if status_code in (401, 403):
        return Unauthorized(message)
    if status_code == 404:
        return NotFound(message)
    if status_code in (400, 422):
        return ValidationFailed(message)
    if status_code == 429:
        return RateLimited(message)
    return NetworkFailure(message or f"HTTP {status_code}")
