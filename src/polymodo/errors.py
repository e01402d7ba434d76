"""Error codes and the single exception type raised across polymodo.

Failures that are contained locally (a broken desktop file, an unreadable
directory, a slow app) are logged with their code and never raised past the
component that detected them. ``PolymodoError`` is what crosses component
boundaries and what the IPC layer serializes into its error envelope.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    PARSE_ERROR = "PARSE_ERROR"
    SCAN_ERROR = "SCAN_ERROR"
    MATCH_TIMEOUT = "MATCH_TIMEOUT"
    CACHE_VERSION_MISMATCH = "CACHE_VERSION_MISMATCH"
    ACTION_LAUNCH_FAILED = "ACTION_LAUNCH_FAILED"
    BIND_FAILED = "BIND_FAILED"
    INDEXER_FAILED = "INDEXER_FAILED"
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_DELTA = "INVALID_DELTA"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    ENTRY_NOT_FOUND = "ENTRY_NOT_FOUND"
    APP_NOT_FOUND = "APP_NOT_FOUND"
    ACTION_NOT_FOUND = "ACTION_NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class PolymodoError(Exception):
    """An error carrying a machine-readable code.

    ``recoverable`` tells a client whether retrying (or simply carrying on)
    makes sense; it is part of the wire envelope.
    """

    def __init__(self, code: ErrorCode, message: str, *, recoverable: bool = False) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.recoverable = recoverable

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "recoverable": self.recoverable,
        }

    def __repr__(self) -> str:
        return f"PolymodoError({self.code.value}, {self.message!r})"
