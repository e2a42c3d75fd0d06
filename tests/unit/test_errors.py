"""
Unit tests for parley.errors.

Created by orpheus497
"""

from parley.errors import (
    AuthenticationRejected,
    ErrorCode,
    InvalidMutation,
    ParleyError,
    PersistenceFailure,
    StreamUnavailable,
    TransportUnavailable,
    is_fatal,
    is_retryable,
)


class TestErrors:
    def test_message_includes_code(self):
        error = TransportUnavailable(ErrorCode.E201_CONNECTION_FAILED, "reset", {"conversation_id": "c1"})
        assert str(error) == "[E201] reset"
        assert error.conversation_id == "c1"
        assert error.operation is None

    def test_to_dict(self):
        error = PersistenceFailure(details={"operation": "upsert"})
        assert error.to_dict() == {
            "code": "E400",
            "message": "Local replica write failed",
            "details": {"operation": "upsert"},
        }

    def test_invalid_mutation_rule(self):
        error = InvalidMutation(ErrorCode.E505_LAST_SUPER_ADMIN, "keep one", rule="last_super_admin")
        assert error.rule == "last_super_admin"
        assert error.details["rule"] == "last_super_admin"
        assert InvalidMutation().rule is None

    def test_hierarchy(self):
        for cls in (TransportUnavailable, AuthenticationRejected, InvalidMutation, StreamUnavailable, PersistenceFailure):
            assert issubclass(cls, ParleyError)


class TestClassification:
    def test_only_transport_errors_are_retryable(self):
        assert is_retryable(TransportUnavailable())
        assert not is_retryable(AuthenticationRejected())
        assert not is_retryable(InvalidMutation())
        assert not is_retryable(ValueError())

    def test_fatal_errors(self):
        assert is_fatal(AuthenticationRejected())
        assert is_fatal(StreamUnavailable())
        assert not is_fatal(TransportUnavailable())
        assert not is_fatal(PersistenceFailure())
