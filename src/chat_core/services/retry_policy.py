"""Failure classification and backoff.

Every request failure is turned into a ``ChatError`` subclass here; callers
ask the policy what to do with it rather than inspecting status codes.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Awaitable, Callable, TypeVar

from chat_core.application.dto.notice import Notice, NoticeAction, NoticeLevel
from chat_core.application.exceptions import (
    AuthExpiredError,
    ChatError,
    ErrorKind,
    ForbiddenError,
    NotFoundError,
    TransientError,
    ValidationError,
)
from chat_core.application.ports.clock import Sleeper

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_STATUSES = frozenset({408, 429})
_GONE_STATUSES = frozenset({404, 410})


class ErrorAction(StrEnum):
    RETRY = "retry"
    SURFACE = "surface"
    SUPPRESS = "suppress"
    SESSION_ENDED = "session_ended"


def _body_detail(body: Any) -> str:
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    if isinstance(body, str):
        return body[:200]
    return ""


def _field_errors(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        return {}
    for key in ("errors", "fields", "details"):
        value = body.get(key)
        if isinstance(value, dict):
            return value
        if isinstance(value, list):
            out: dict[str, Any] = {}
            for item in value:
                if isinstance(item, dict) and "field" in item:
                    out[str(item["field"])] = item.get("message") or item.get("msg")
            if out:
                return out
    return {}


def classify_status(
    status: int,
    body: Any = None,
    *,
    operation: str = "",
    correlation_id: str | None = None,
) -> ChatError:
    """Map an HTTP failure status (and optional body) onto the error taxonomy."""
    detail = _body_detail(body) or f"HTTP {status}"
    kwargs: dict[str, Any] = {
        "operation": operation,
        "correlation_id": correlation_id,
        "status": status,
    }
    if status in _TRANSIENT_STATUSES or status >= 500:
        return TransientError(detail, **kwargs)
    if status == 401:
        return AuthExpiredError(detail, **kwargs)
    if status == 403:
        return ForbiddenError(detail, **kwargs)
    if status in _GONE_STATUSES:
        return NotFoundError(detail, **kwargs)
    return ValidationError(detail, field_errors=_field_errors(body), **kwargs)


def classify_exception(
    exc: BaseException,
    *,
    operation: str = "",
    correlation_id: str | None = None,
) -> ChatError:
    """Wrap a low-level I/O failure (network, timeout) as a transient error."""
    if isinstance(exc, ChatError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        detail = "request timed out"
    else:
        detail = str(exc) or type(exc).__name__
    return TransientError(
        detail, operation=operation, correlation_id=correlation_id, cause=exc,
    )


_FRIENDLY: dict[ErrorKind, str] = {
    ErrorKind.TRANSIENT: "Unable to reach the server. Please check your connection and try again.",
    ErrorKind.AUTH: "Your session has expired. Please log in again.",
    ErrorKind.PERMISSION: "You don't have permission to perform this action.",
    ErrorKind.NOT_FOUND: "The requested item no longer exists.",
    ErrorKind.VALIDATION: "The request was rejected. Please check your input.",
}


def user_message(error: ChatError) -> str:
    if error.kind == ErrorKind.TRANSIENT and error.status == 429:
        return "Too many requests. Please wait a moment and try again."
    if error.kind == ErrorKind.VALIDATION and error.field_errors:
        fields = ", ".join(f"{k}: {v}" for k, v in error.field_errors.items())
        return f"The request was rejected ({fields})."
    return _FRIENDLY.get(error.kind, error.detail or "Something went wrong.")


@dataclass(slots=True)
class RetryPolicy:
    base_delay: float = 0.5
    factor: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.2
    max_attempts: int = 5
    rand: Callable[[], float] = field(default=random.random, repr=False)

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based), capped then jittered."""
        delay = min(self.base_delay * (self.factor ** attempt), self.max_delay)
        spread = delay * self.jitter
        return max(0.0, delay + (self.rand() * 2 - 1) * spread)

    def decide(self, error: ChatError, attempts: int) -> ErrorAction:
        """``attempts`` is the number of attempts already made, including the failed one."""
        if error.kind == ErrorKind.EXPECTED_EMPTY:
            return ErrorAction.SUPPRESS
        if error.kind == ErrorKind.AUTH:
            return ErrorAction.SESSION_ENDED
        if error.retryable and attempts < self.max_attempts:
            return ErrorAction.RETRY
        return ErrorAction.SURFACE

    async def call(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        *,
        sleep: Sleeper = asyncio.sleep,
    ) -> T:
        """Run ``fn`` retrying transient failures; other failures propagate at once."""
        attempts = 0
        while True:
            try:
                return await fn()
            except ChatError as exc:
                attempts += 1
                if not exc.operation:
                    exc.operation = operation
                if self.decide(exc, attempts) != ErrorAction.RETRY:
                    raise
                delay = self.backoff(attempts - 1)
                logger.debug(
                    "%s failed (%s), retry %d in %.2fs", operation, exc.kind, attempts, delay,
                )
                await sleep(delay)


def notice_for(
    error: ChatError,
    *,
    action: NoticeAction | None = None,
    conversation_id: str | None = None,
    message_id: str | None = None,
) -> Notice:
    if error.kind == ErrorKind.AUTH:
        action = NoticeAction.LOGIN
    return Notice(
        level=NoticeLevel.ERROR,
        message=user_message(error),
        error_kind=error.kind,
        action=action,
        conversation_id=conversation_id,
        message_id=message_id,
    )
