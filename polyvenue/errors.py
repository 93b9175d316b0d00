"""Error taxonomy for editorial operations.

Services raise these; the operation boundary (REST handlers or run_operation)
turns them into an OperationResult instead of letting them escape.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, TypeVar

import aiosqlite
from pydantic import BaseModel, Field

logger = logging.getLogger("polyvenue.errors")

T = TypeVar("T")


class PolyvenueError(Exception):
    """Base class for every failure scoped to a single operation."""

    code = "error"
    http_status = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class AuthorizationError(PolyvenueError):
    """Actor lacks scope over the target venue or manuscript."""

    code = "forbidden"
    http_status = 403


class ValidationFailure(PolyvenueError):
    """Input rejected; field_errors maps field name to messages for redisplay."""

    code = "validation_failed"
    http_status = 422

    def __init__(
        self,
        message: str,
        field_errors: dict[str, list[str]] | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.field_errors = field_errors or {}

    @classmethod
    def for_field(cls, field: str, message: str) -> ValidationFailure:
        return cls(message, {field: [message]})


class NotFoundError(PolyvenueError):
    """Target does not exist or was removed concurrently."""

    code = "not_found"
    http_status = 404


class ConflictError(PolyvenueError):
    """Request clashes with current state; caller may retry with corrected input."""

    code = "conflict"
    http_status = 409


class UpstreamError(PolyvenueError):
    """Storage or datastore failure; the operation was rolled back."""

    code = "upstream_failure"
    http_status = 502


class PayloadTooLarge(PolyvenueError):
    """Request body exceeds the configured ceiling."""

    code = "payload_too_large"
    http_status = 413


class RateLimited(PolyvenueError):
    """Caller exhausted its request allowance for the current window."""

    code = "rate_limited"
    http_status = 429


class OperationResult(BaseModel):
    """Structured outcome of a mutating operation."""

    ok: bool
    code: str = "ok"
    message: str = ""
    field_errors: dict[str, list[str]] = Field(default_factory=dict)
    details: dict[str, Any] = Field(default_factory=dict)
    data: Any = None

    @classmethod
    def from_error(cls, exc: PolyvenueError) -> OperationResult:
        return cls(
            ok=False,
            code=exc.code,
            message=exc.message,
            field_errors=getattr(exc, "field_errors", {}),
            details=exc.details,
        )


async def run_operation(operation: Awaitable[T]) -> OperationResult:
    """Await an operation and convert any scoped failure into an OperationResult."""
    try:
        value = await operation
    except PolyvenueError as exc:
        logger.info("Operation failed: %s (%s)", exc.message, exc.code)
        return OperationResult.from_error(exc)
    except aiosqlite.Error:
        logger.exception("Datastore failure during operation")
        return OperationResult.from_error(UpstreamError("Datastore unavailable"))
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json")
    return OperationResult(ok=True, data=value)
