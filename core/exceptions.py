"""Shared exception types for the lifecycle engine."""

from typing import Optional


class SourceUnavailable(RuntimeError):
    """Raised when the opportunity listing cannot be fetched within its time limit."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        message = source if original is None else f"{source}: {original}"
        super().__init__(message)
        self.source = source
        self.original = original


class PersistenceError(RuntimeError):
    """Raised when engine state cannot be decoded from or written to the store."""

    def __init__(self, location: str, original: Optional[Exception] = None):
        message = location if original is None else f"{location}: {original}"
        super().__init__(message)
        self.location = location
        self.original = original


class PolicyViolation(ValueError):
    """Raised when a manual entry request fails a mandatory entry check."""

    def __init__(self, reason: str, detail: str):
        super().__init__(detail)
        self.reason = reason
        self.detail = detail
