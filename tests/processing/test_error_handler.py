"""
Tests for ErrorHandler.
"""

from sqlalchemy.exc import OperationalError

from spokenkb.processing.error_handler import ErrorHandler
from spokenkb.utils.error_codes import (
    ArtifactMissing, AttemptBudgetExceeded, ErrorCode, IntegrityViolation,
    TransientIO, UnsupportedInput, create_error_result, create_skipped_result,
    create_success_result, get_error_category,
)


class TestClassification:
    """Tests for ErrorHandler.classify."""

    def setup_method(self):
        """Set up test fixtures."""
        self.handler = ErrorHandler()

    def test_pipeline_errors_keep_their_code(self):
        """Taxonomy exceptions carry their own code."""
        assert self.handler.classify(TransientIO("x")) == ErrorCode.TEMPORARY_FAILURE
        assert self.handler.classify(ArtifactMissing("x")) == ErrorCode.MISSING_ARTIFACT
        assert self.handler.classify(
            UnsupportedInput("x", error_code=ErrorCode.CORRUPT_MEDIA)) == ErrorCode.CORRUPT_MEDIA

    def test_builtin_errors(self):
        """Timeouts, connection and database errors map to transient codes."""
        assert self.handler.classify(TimeoutError()) == ErrorCode.TIMEOUT
        assert self.handler.classify(ConnectionResetError()) == ErrorCode.NETWORK_ERROR
        db_error = OperationalError("UPDATE videos", {}, Exception("database is locked"))
        assert self.handler.classify(db_error) == ErrorCode.TEMPORARY_FAILURE

    def test_unknown_is_transient(self):
        """Anything else is UNKNOWN_ERROR in the transient category."""
        code = self.handler.classify(ZeroDivisionError())
        assert code == ErrorCode.UNKNOWN_ERROR
        assert get_error_category(code) == 'transient'


class TestDecisions:
    """Tests for ErrorHandler.decide."""

    def test_transient_retries_silently(self):
        """Transient errors retry without alerting."""
        decision = ErrorHandler().decide(TransientIO("socket closed"))
        assert decision.retryable is True
        assert decision.alert is False
        assert 'socket closed' in decision.message

    def test_integrity_retries_with_rewind(self):
        """Integrity errors retry and carry their rewind target."""
        decision = ErrorHandler().decide(
            IntegrityViolation("bad checksum", details={'rewind_to': 'discovered'}))
        assert decision.retryable is True
        assert decision.rewind_to == 'discovered'
        assert decision.category == 'integrity'

    def test_unsupported_fails_and_alerts(self):
        """UnsupportedInput is terminal and alerting."""
        decision = ErrorHandler().decide(UnsupportedInput("drm protected"))
        assert decision.action == 'fail'
        assert decision.alert is True

    def test_budget_fails_and_alerts(self):
        """AttemptBudgetExceeded is terminal and alerting."""
        decision = ErrorHandler().decide(AttemptBudgetExceeded("5 attempts"))
        assert decision.retryable is False
        assert decision.alert is True

    def test_policy_override_by_code(self):
        """error_handling.policies overrides the category default."""
        config = {'error_handling': {'policies': {
            'malformed_transcript': {'action': 'fail', 'alert': True}}}}
        decision = ErrorHandler(config).decide(
            IntegrityViolation("bad json", error_code=ErrorCode.MALFORMED_TRANSCRIPT))
        assert decision.retryable is False
        assert decision.alert is True


class TestResultHelpers:
    """Tests for the standardized result dictionaries."""

    def test_error_result(self):
        """Error results carry code, message and permanence."""
        result = create_error_result(ErrorCode.TIMEOUT, "slow", {'stage': 'upload'})
        assert result == {
            'status': 'failed',
            'error_code': 'timeout',
            'error_message': 'slow',
            'error_details': {'stage': 'upload'},
            'permanent': False,
        }

    def test_success_and_skipped_results(self):
        """Success and skipped results use their own status."""
        assert create_success_result({'n': 1}, "done") == {'status': 'completed', 'data': {'n': 1},
                                                           'message': 'done'}
        assert create_skipped_result("exists")['status'] == 'skipped'
