"""
Classified errors raised by resolvers.

Every error carries a short ``code`` plus an ``exit_code`` the surrounding
CLI uses to pick an exit status.
"""

from __future__ import annotations

import enum
from pathlib import Path
from typing import Any


class ExitCode(enum.IntEnum):
    SUCCESS = 0
    GENERAL = 1
    USAGE = 2
    AUTH = 3
    NOT_FOUND = 4


class ResolveError(RuntimeError):
    """Base class for classified resolution failures."""

    code = "general"
    exit_code = ExitCode.GENERAL

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "exitCode": int(self.exit_code), "message": self.message}


class UsageError(ResolveError):
    """Malformed identifier, missing context, or ambiguous input."""

    code = "usage"
    exit_code = ExitCode.USAGE


class AmbiguousError(UsageError):
    """Identifier matched more than one entry."""

    code = "ambiguous"

    def __init__(self, message: str, candidates: list[tuple[str, str]]):
        super().__init__(message)
        self.candidates = candidates


class NotFoundError(ResolveError):
    code = "not_found"
    exit_code = ExitCode.NOT_FOUND


class UpstreamError(ResolveError):
    """A remote call failed while ``operation`` was in flight."""

    code = "upstream"

    def __init__(self, operation: str, cause: BaseException | None = None):
        message = f"{operation}: {cause}" if cause is not None else operation
        super().__init__(message)
        self.operation = operation
        self.cause = cause
        if getattr(cause, "code", None) == "auth_failed":
            self.exit_code = ExitCode.AUTH


class CacheWriteError(ResolveError):
    """The cache directory or a cache file could not be written."""

    code = "cache_write"

    def __init__(self, path: Path | str, cause: BaseException):
        super().__init__(f"writing cache {path}: {cause}")
        self.path = Path(path)
        self.cause = cause


def exit_code_for(exc: BaseException | None) -> int:
    if exc is None:
        return int(ExitCode.SUCCESS)
    if isinstance(exc, ResolveError):
        return int(exc.exit_code)
    return int(ExitCode.GENERAL)
