# ==========================================================
#                  ENGINE EXCEPTIONS
# ==========================================================


class EngineError(Exception):
    """Base engine exception. Carries enough detail to render a message."""
    code = "engine_error"
    http_status = 400
    user_facing = True

    def __init__(self, message: str = None, **details):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        payload = {"error": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidReferrer(EngineError):
    """Referral code does not match any active user"""
    code = "invalid_referrer"
    http_status = 404


class InvalidPlan(EngineError):
    """Unknown plan"""
    code = "invalid_plan"


class AlreadyPlaced(EngineError):
    """User already holds a position or a pending reservation"""
    code = "already_placed"
    http_status = 409


class RegistrationClosed(EngineError):
    """Registration is currently disabled"""
    code = "registration_closed"
    http_status = 403


class NoEligibleSlot(EngineError):
    """No open slot could be claimed"""
    code = "no_eligible_slot"
    http_status = 500
    user_facing = False


class NotEligibleForPayout(EngineError):
    """Only the apex of a complete formation can request a payout"""
    code = "not_eligible_for_payout"


class AlreadyFinalized(EngineError):
    """Transaction has already been decided"""
    code = "already_finalized"
    http_status = 409


class IllegalTransition(EngineError):
    """Requested status change is not allowed"""
    code = "illegal_transition"
    http_status = 409


class InsufficientBalance(EngineError):
    """Payout amount exceeds available balance"""
    code = "insufficient_balance"


class TransactionNotFound(EngineError):
    """Transaction not found"""
    code = "transaction_not_found"
    http_status = 404


class ConsistencyViolation(EngineError):
    """
    An aggregate was found in a state its invariants forbid. Never shown
    to end users; the affected formation is frozen and operators alerted.
    """
    code = "consistency_violation"
    http_status = 500
    user_facing = False

    def __init__(self, message: str = None, triangle_id: int = None, **details):
        self.triangle_id = triangle_id
        super().__init__(message, triangle_id=triangle_id, **details)


class ConcurrentUpdate(EngineError):
    """The record changed while this request was being processed, please retry"""
    code = "concurrent_update"
    http_status = 409


class DuplicateAccount(EngineError):
    """Username or wallet address is already registered"""
    code = "duplicate_account"
    http_status = 409
