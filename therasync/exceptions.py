"""
therasync — Custom Exceptions.

Typed error hierarchy shared by reads, mutations and the HTTP transport.
Only ``NetworkError`` is retryable; the rest need caller intervention.
"""

from __future__ import annotations

import asyncio

import httpx


class TherasyncError(Exception):
    """Base exception for all therasync errors."""

    retryable: bool = False

    def __init__(self, message: str = "", status_code: int = 0):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NetworkError(TherasyncError):
    """Transient transport or server failure. Safe to retry."""

    retryable = True


class NotFoundError(TherasyncError):
    """The entity no longer exists on the server."""


class ValidationError(TherasyncError):
    """The server rejected the caller's input."""


class ConflictError(TherasyncError):
    """The local optimistic assumption was wrong (stale version, duplicate, ...)."""


def error_for_status(status_code: int, detail: str = "") -> TherasyncError:
    """Map an HTTP status code to the matching typed error."""
    message = detail or f"HTTP {status_code}"
    if status_code == 404:
        return NotFoundError(message, status_code)
    if status_code in (409, 412):
        return ConflictError(message, status_code)
    if 400 <= status_code < 500:
        return ValidationError(message, status_code)
    return NetworkError(message, status_code)


def classify_error(exc: BaseException) -> TherasyncError:
    """Normalize any collaborator failure into the typed hierarchy.

    The fetch and mutate collaborators are opaque, so anything that is not
    already typed and not an HTTP status error is treated as transient.
    """
    if isinstance(exc, TherasyncError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return error_for_status(exc.response.status_code, exc.response.text)
    if isinstance(exc, (httpx.TransportError, OSError, asyncio.TimeoutError)):
        return NetworkError(f"Connection error: {exc}")
    return NetworkError(f"{type(exc).__name__}: {exc}")
