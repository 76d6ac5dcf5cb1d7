"""HTTP facing error types shared by the blueprints.

Each route raises one of these and the handler registered in ``app.py``
renders it as ``{"error": message, "details": ...}`` with the matching
status code.
"""

from __future__ import annotations

from typing import Any, Optional


class ApiError(Exception):
    status_code = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        details: Any = None,
        **extra: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        self.extra = extra

    def to_dict(self) -> dict:
        body: dict = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        body.update(self.extra)
        return body


class BadRequest(ApiError):
    status_code = 400


class Unauthorized(ApiError):
    status_code = 401


class Forbidden(ApiError):
    status_code = 403


class NotFound(ApiError):
    status_code = 404


class UpstreamError(ApiError):
    """A broker or payment API answered with a non-2xx status."""

    status_code = 502


__all__ = [
    "ApiError",
    "BadRequest",
    "Unauthorized",
    "Forbidden",
    "NotFound",
    "UpstreamError",
]
