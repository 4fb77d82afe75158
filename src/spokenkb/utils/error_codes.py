"""
Error code definitions for the ingestion pipeline and the query surface.

This module defines standardized error codes, the exception taxonomy raised by
processing steps and collaborators, and the result dictionaries every
processing step returns.

Taxonomy:
    TransientIO            network/storage hiccups and timeouts, retried with backoff
    IntegrityViolation     checksum mismatch or malformed transcript, stage-local retry
    UnsupportedInput       malformed or unsupported source media, terminal
    AttemptBudgetExceeded  retries exhausted, terminal until an operator resets
    QueryRejected          oversized or malformed query, surfaced to the caller only
"""

from enum import Enum
from typing import Dict, Any, Optional


class ErrorCode(Enum):
    """Standardized error codes for the processing pipeline."""

    # Transient errors (should retry)
    NETWORK_ERROR = "network_error"
    STORAGE_ERROR = "storage_error"
    TIMEOUT = "timeout"
    TEMPORARY_FAILURE = "temporary_failure"
    STALE_CLAIM = "stale_claim"

    # Integrity errors (stage-local retry)
    CHECKSUM_MISMATCH = "checksum_mismatch"
    MISSING_ARTIFACT = "missing_artifact"
    MALFORMED_TRANSCRIPT = "malformed_transcript"
    DIMENSION_MISMATCH = "dimension_mismatch"

    # Permanent errors (should not retry)
    UNSUPPORTED_MEDIA = "unsupported_media"
    CORRUPT_MEDIA = "corrupt_media"
    EMPTY_TRANSCRIPT = "empty_transcript"

    # Retry budget
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"

    # Query surface
    QUERY_TOO_LONG = "query_too_long"
    QUERY_INVALID = "query_invalid"

    UNKNOWN_ERROR = "unknown_error"


# Error categories for policy handling
ERROR_CATEGORIES = {
    'transient': [
        ErrorCode.NETWORK_ERROR,
        ErrorCode.STORAGE_ERROR,
        ErrorCode.TIMEOUT,
        ErrorCode.TEMPORARY_FAILURE,
        ErrorCode.STALE_CLAIM,
        ErrorCode.UNKNOWN_ERROR,
    ],
    'integrity': [
        ErrorCode.CHECKSUM_MISMATCH,
        ErrorCode.MISSING_ARTIFACT,
        ErrorCode.MALFORMED_TRANSCRIPT,
        ErrorCode.DIMENSION_MISMATCH,
    ],
    'permanent': [
        ErrorCode.UNSUPPORTED_MEDIA,
        ErrorCode.CORRUPT_MEDIA,
        ErrorCode.EMPTY_TRANSCRIPT,
    ],
    'budget': [
        ErrorCode.ATTEMPTS_EXHAUSTED,
    ],
    'query': [
        ErrorCode.QUERY_TOO_LONG,
        ErrorCode.QUERY_INVALID,
    ],
}


def get_error_category(error_code: ErrorCode) -> Optional[str]:
    """Get the category for an error code."""
    for category, codes in ERROR_CATEGORIES.items():
        if error_code in codes:
            return category
    return None


class PipelineError(Exception):
    """Base class for errors with a standardized error code."""

    default_code = ErrorCode.UNKNOWN_ERROR

    def __init__(self, message: str, error_code: Optional[ErrorCode] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}

    @property
    def category(self) -> Optional[str]:
        return get_error_category(self.error_code)


class TransientIO(PipelineError):
    """Network or storage hiccup, including timeouts. Retryable."""
    default_code = ErrorCode.TEMPORARY_FAILURE


class IntegrityViolation(PipelineError):
    """Checksum mismatch or malformed transcript. Retried within the stage."""
    default_code = ErrorCode.CHECKSUM_MISMATCH


class ArtifactMissing(IntegrityViolation):
    """An artifact expected in the store or staging area is absent."""
    default_code = ErrorCode.MISSING_ARTIFACT


class UnsupportedInput(PipelineError):
    """Source media cannot be processed. Terminal, never retried."""
    default_code = ErrorCode.UNSUPPORTED_MEDIA


class AttemptBudgetExceeded(PipelineError):
    """Retries exhausted for a video. Terminal until reset by an operator."""
    default_code = ErrorCode.ATTEMPTS_EXHAUSTED


class QueryRejected(PipelineError):
    """Oversized or malformed query. Reported to the caller only."""
    default_code = ErrorCode.QUERY_INVALID


def create_error_result(
    error_code: ErrorCode,
    error_message: str,
    error_details: Optional[Dict[str, Any]] = None,
    permanent: bool = False
) -> Dict[str, Any]:
    """
    Create a standardized error result dictionary.

    Args:
        error_code: The ErrorCode enum value
        error_message: Human-readable error message
        error_details: Optional additional context
        permanent: Whether this is a permanent failure

    Returns:
        Standardized error result dictionary
    """
    return {
        'status': 'failed',
        'error_code': error_code.value,
        'error_message': error_message,
        'error_details': error_details or {},
        'permanent': permanent,
    }


def create_success_result(
    data: Optional[Dict[str, Any]] = None,
    message: Optional[str] = None
) -> Dict[str, Any]:
    """
    Create a standardized success result dictionary.

    Args:
        data: Optional step-specific return data
        message: Optional success message

    Returns:
        Standardized success result dictionary
    """
    result = {
        'status': 'completed',
        'data': data or {}
    }

    if message:
        result['message'] = message

    return result


def create_skipped_result(
    reason: str,
    data: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Create a standardized skipped result dictionary.

    Args:
        reason: Why the step was skipped
        data: Optional additional data

    Returns:
        Standardized skipped result dictionary
    """
    return {
        'status': 'skipped',
        'reason': reason,
        'data': data or {}
    }
