from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    TRANSIENT = "transient"
    AUTH = "auth"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    EXPECTED_EMPTY = "expected_empty"


class AppError(Exception):
    """Base application error."""

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail)


class ChatError(AppError):
    """A classified failure of a core operation."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(
        self,
        detail: str = "",
        *,
        operation: str = "",
        correlation_id: str | None = None,
        status: int | None = None,
        cause: BaseException | None = None,
        field_errors: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(detail)
        self.operation = operation
        self.correlation_id = correlation_id
        self.status = status
        self.cause = cause
        self.field_errors = field_errors or {}

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.TRANSIENT

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind}, status={self.status}, "
            f"operation={self.operation!r}, detail={self.detail!r})"
        )


class TransientError(ChatError):
    kind = ErrorKind.TRANSIENT


class AuthExpiredError(ChatError):
    kind = ErrorKind.AUTH


class ForbiddenError(ChatError):
    kind = ErrorKind.PERMISSION


class NotFoundError(ChatError):
    kind = ErrorKind.NOT_FOUND


class ValidationError(ChatError):
    kind = ErrorKind.VALIDATION


class QueueFullError(AppError):
    pass
