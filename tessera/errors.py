"""Error definitions for the Tessera pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional


class ErrorCategory(Enum):
    """Categorises runtime errors so job reports can group them."""

    VALIDATION = auto()
    TRANSLATION = auto()
    REVIEW = auto()
    NETWORK = auto()
    FORMAT = auto()
    BUDGET = auto()
    OTHER = auto()


class TesseraError(Exception):
    """Base exception for all custom errors."""


class ValidationError(TesseraError):
    """Raised for bad input; never retried."""


class NotFoundError(ValidationError):
    """Raised when a referenced file, segment or task does not exist."""


class InvalidStateError(ValidationError):
    """Raised when a segment is not in a status that allows the operation."""


class TransientError(TesseraError):
    """Base for failures worth retrying."""


class TranslationProviderError(TransientError):
    """Raised when the AI backend fails (network, API error, timeout)."""


class ReviewParseError(TransientError):
    """Raised when a review response cannot be decoded."""


class TranslationProviderConfigurationError(TesseraError):
    """Raised when the translation provider is misconfigured."""


class UnsupportedFileTypeError(TesseraError):
    """Raised when a given file format is not supported."""


class FormatError(TesseraError):
    """Raised when a document cannot be parsed or serialised."""


class OverwriteRefusedError(TesseraError):
    """Raised when attempting to overwrite an output without consent."""


@dataclass
class ErrorRecord:
    """Stores context for a handled error."""

    category: ErrorCategory
    message: str
    item: Optional[str] = None


def categorise(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, ValidationError):
        return ErrorCategory.VALIDATION
    if isinstance(exc, ReviewParseError):
        return ErrorCategory.REVIEW
    if isinstance(exc, TranslationProviderError):
        return ErrorCategory.NETWORK
    if isinstance(exc, FormatError):
        return ErrorCategory.FORMAT
    return ErrorCategory.OTHER
