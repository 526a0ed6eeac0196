"""Tests for the engine error taxonomy."""

from triangle.errors import (
    AlreadyFinalized,
    ConsistencyViolation,
    EngineError,
    InvalidReferrer,
    NoEligibleSlot,
    NotEligibleForPayout,
)


class TestEngineErrors:
    """Messages, codes and exposure rules."""

    def test_default_message_from_docstring(self):
        error = InvalidReferrer()
        assert error.message == "Referral code does not match any active user"
        assert error.http_status == 404

    def test_details_in_payload(self):
        error = NotEligibleForPayout("Only the apex can request a payout", position="B")
        assert error.to_dict() == {
            "error": "Only the apex can request a payout",
            "code": "not_eligible_for_payout",
            "details": {"position": "B"},
        }

    def test_payload_without_details(self):
        assert "details" not in AlreadyFinalized().to_dict()

    def test_internal_errors_not_user_facing(self):
        assert NoEligibleSlot.user_facing is False
        assert ConsistencyViolation.user_facing is False
        assert NotEligibleForPayout.user_facing is True

    def test_consistency_violation_carries_formation(self):
        error = ConsistencyViolation("count mismatch", triangle_id=7)
        assert error.triangle_id == 7
        assert error.details == {"triangle_id": 7}
        assert isinstance(error, EngineError)
