"""Error definitions for the markdown/spreadsheet translator."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional


class ErrorCategory(Enum):
    """Categorises runtime errors to apply policy decisions."""

    ARGUMENT = auto()
    FILE_IO = auto()
    FORMAT = auto()
    ENCODING = auto()
    BATCHING = auto()
    TRANSLATION = auto()
    REINSERTION = auto()
    NETWORK = auto()
    OTHER = auto()


class CmarkTranslateError(Exception):
    """Base exception for all custom errors."""


class AbortRequested(CmarkTranslateError):
    """Raised when policy dictates that the current document must stop."""


class UnsupportedFileTypeError(CmarkTranslateError):
    """Raised when a given file extension is not supported."""


class DocumentFormatError(CmarkTranslateError):
    """Raised when an input document cannot be parsed."""


class OverwriteRefusedError(CmarkTranslateError):
    """Raised when attempting to overwrite an output without consent."""


class ConfigurationError(CmarkTranslateError):
    """Raised when settings or the translation provider are misconfigured."""


class UnsupportedNodeKind(CmarkTranslateError):
    """Raised when the encoder meets an element it cannot turn into a marker."""

    def __init__(self, kind: object, location: str | None = None) -> None:
        self.kind = kind
        self.location = location
        where = f" at {location}" if location else ""
        super().__init__(f"Unsupported node kind {kind!r}{where}.")


class UnitTooLarge(CmarkTranslateError):
    """Raised when one unit alone exceeds the batch payload limit."""

    def __init__(self, unit_id: int, size: int, limit: int) -> None:
        self.unit_id = unit_id
        self.size = size
        self.limit = limit
        super().__init__(
            f"Translation unit {unit_id} has {size} characters, "
            f"more than the {limit} allowed per request."
        )


class MalformedTranslationResponse(CmarkTranslateError):
    """Raised when a translated string does not match its marker table."""

    def __init__(self, unit_id: int, reason: str) -> None:
        self.unit_id = unit_id
        self.reason = reason
        super().__init__(f"Translation of unit {unit_id} is malformed: {reason}")


class GatewayError(CmarkTranslateError):
    """Base class for failures reported by the translation service."""

    retryable = False


class TransientServiceError(GatewayError):
    """The service failed temporarily; the whole batch may be resent."""

    retryable = True


class QuotaExceeded(GatewayError):
    """The account quota is exhausted; fatal for the run."""


class InvalidRequest(GatewayError):
    """The service rejected the request; fatal for the run."""


@dataclass
class ErrorRecord:
    """Stores context for a handled error."""

    category: ErrorCategory
    message: str
    location: Optional[str] = None
    unit_id: Optional[int] = None
