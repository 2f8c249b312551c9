"""
Error taxonomy shared by the import, manifest and diff entry points.

Internal helpers raise one of the ``PackError`` subclasses; the top-level
operations catch them at their boundary and hand back an ``Outcome`` so a
caller never has to guess which exceptions might escape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    IO = "io"
    NETWORK = "network"
    INTEGRITY = "integrity"
    PARSE = "parse"
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"


class PackError(Exception):
    kind: ErrorKind = ErrorKind.IO

    def __init__(self, message: str = "", code: str = ""):
        super().__init__(message)
        # finer-grained reason within a kind, e.g. "empty_archive"
        self.code = code


class PackValidationError(PackError):
    kind = ErrorKind.VALIDATION


class PackIOError(PackError):
    kind = ErrorKind.IO


class DownloadError(PackError):
    kind = ErrorKind.NETWORK


class IntegrityError(PackError):
    kind = ErrorKind.INTEGRITY


class DescriptorParseError(PackError):
    kind = ErrorKind.PARSE


class PackNotFoundError(PackError):
    kind = ErrorKind.NOT_FOUND


class OperationCancelled(PackError):
    kind = ErrorKind.CANCELLED


def check_cancelled(cancel) -> None:
    """Raise ``OperationCancelled`` if the cancel token (a threading.Event) is set."""
    if cancel is not None and cancel.is_set():
        raise OperationCancelled("operation cancelled")


@dataclass
class Outcome:
    value: Any = None
    error: Optional[ErrorKind] = None
    message: str = ""
    warnings: list[str] = field(default_factory=list)
    code: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any, warnings: Optional[list[str]] = None) -> "Outcome":
        return cls(value=value, warnings=list(warnings or []))

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, warnings: Optional[list[str]] = None, code: str = "") -> "Outcome":
        return cls(error=kind, message=message, warnings=list(warnings or []), code=code)

    @classmethod
    def from_exception(cls, exc: BaseException, warnings: Optional[list[str]] = None) -> "Outcome":
        if isinstance(exc, PackError):
            return cls.failure(exc.kind, str(exc), warnings, code=exc.code)
        if isinstance(exc, OSError):
            return cls.failure(ErrorKind.IO, str(exc), warnings)
        return cls.failure(ErrorKind.IO, f"{type(exc).__name__}: {exc}", warnings)
