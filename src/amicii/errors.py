"""Structured error type raised by the coordination engines."""

from __future__ import annotations

from typing import Any, Optional

PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"
AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
MESSAGE_NOT_FOUND = "MESSAGE_NOT_FOUND"
INVALID_INPUT = "INVALID_INPUT"
NOT_RECIPIENT = "NOT_RECIPIENT"
NO_RECIPIENTS = "NO_RECIPIENTS"
DATABASE_BUSY = "DATABASE_BUSY"

PROJECT_CREATE_FAILED = "PROJECT_CREATE_FAILED"
PROJECT_DELETE_FAILED = "PROJECT_DELETE_FAILED"
AGENT_CREATE_FAILED = "AGENT_CREATE_FAILED"
AGENT_LOOKUP_FAILED = "AGENT_LOOKUP_FAILED"
RESERVATION_CREATE_FAILED = "RESERVATION_CREATE_FAILED"
RESERVATION_RELEASE_FAILED = "RESERVATION_RELEASE_FAILED"
RESERVATION_LIST_FAILED = "RESERVATION_LIST_FAILED"
MESSAGE_SEND_FAILED = "MESSAGE_SEND_FAILED"
MESSAGE_FETCH_FAILED = "MESSAGE_FETCH_FAILED"
MESSAGE_UPDATE_FAILED = "MESSAGE_UPDATE_FAILED"
SEARCH_FAILED = "SEARCH_FAILED"
RETENTION_FAILED = "RETENTION_FAILED"
STORE_FAILED = "STORE_FAILED"


class CoordinationError(Exception):
    """Failure surfaced to callers of the engines.

    ``kind`` is a stable machine-readable code. ``recoverable`` separates
    caller mistakes and transient contention (retry or fix the input) from
    store failures.
    """

    def __init__(self, kind: str, message: str, *, recoverable: bool = True, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.kind = kind
        self.recoverable = recoverable
        self.data = data or {}

    @property
    def is_not_found(self) -> bool:
        return self.kind.endswith("_NOT_FOUND")

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.kind,
                "message": str(self),
                "recoverable": self.recoverable,
                "data": self.data,
            }
        }

    def __repr__(self) -> str:
        return f"CoordinationError({self.kind!r}, {str(self)!r}, recoverable={self.recoverable})"


def invalid_input(message: str, **data: Any) -> CoordinationError:
    return CoordinationError(INVALID_INPUT, message, recoverable=True, data=data or None)
