"""
Centralized error handling for the ingestion pipeline.

This module provides the ErrorHandler class that maps exceptions raised by
processing steps onto error codes and policy decisions (retry or fail, and
whether operations gets alerted).
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import OperationalError

from spokenkb.utils.error_codes import (
    ErrorCode, PipelineError, get_error_category
)
from spokenkb.utils.logger import setup_worker_logger

logger = setup_worker_logger('error_handler')

# Category -> default policy
DEFAULT_POLICIES: Dict[str, Dict[str, Any]] = {
    'transient': {'action': 'retry', 'alert': False},
    'integrity': {'action': 'retry', 'alert': False},
    'permanent': {'action': 'fail', 'alert': True},
    'budget': {'action': 'fail', 'alert': True},
}


@dataclass
class FailureDecision:
    """What the orchestrator should do with a failed stage."""
    action: str  # 'retry' or 'fail'
    alert: bool
    error_code: ErrorCode
    category: Optional[str]
    message: str
    rewind_to: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.action == 'retry'


class ErrorHandler:
    """Policy-based classification of stage failures."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the error handler.

        Args:
            config: Application configuration dictionary. Per-code overrides
                live under error_handling.policies, e.g.
                {'malformed_transcript': {'action': 'fail', 'alert': True}}
        """
        self.config = config or {}
        self.policies = (self.config.get('error_handling') or {}).get('policies') or {}

    def classify(self, error: BaseException) -> ErrorCode:
        """Map an exception to an ErrorCode."""
        if isinstance(error, PipelineError):
            return error.error_code
        if isinstance(error, TimeoutError):
            return ErrorCode.TIMEOUT
        if isinstance(error, (ConnectionError, OSError)):
            return ErrorCode.NETWORK_ERROR
        if isinstance(error, OperationalError):
            return ErrorCode.TEMPORARY_FAILURE
        # Unknown failures are assumed transient; the attempt budget bounds them
        return ErrorCode.UNKNOWN_ERROR

    def _get_policy(self, error_code: ErrorCode) -> Dict[str, Any]:
        policy = self.policies.get(error_code.value)
        if policy:
            return policy
        category = get_error_category(error_code)
        return DEFAULT_POLICIES.get(category, DEFAULT_POLICIES['transient'])

    def decide(self, error: BaseException) -> FailureDecision:
        """Decide retry vs fail for an exception raised by a stage."""
        error_code = self.classify(error)
        policy = self._get_policy(error_code)
        message = getattr(error, 'message', None) or str(error) or error.__class__.__name__
        rewind_to = None
        if isinstance(error, PipelineError):
            rewind_to = error.details.get('rewind_to')

        decision = FailureDecision(
            action=policy.get('action', 'retry'),
            alert=bool(policy.get('alert', False)),
            error_code=error_code,
            category=get_error_category(error_code),
            message=f"{error.__class__.__name__}: {message}",
            rewind_to=rewind_to,
        )
        logger.debug(f"Error {error_code.value} -> {decision.action} (alert={decision.alert})")
        return decision
