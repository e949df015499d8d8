"""
Ledger Error Taxonomy

Three families reach callers: NotFound, BadRequest and Conflict. A
ConcurrentModificationError is a Conflict the caller may retry; every
other error must not be retried unchanged.
"""

from typing import Any, Dict, Optional


class LedgerError(ValueError):
    """Base class for all ledger errors"""

    status = "error"
    code = "LEDGER_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "status": self.status,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            result["details"] = self.details
        return result


class NotFoundError(LedgerError):
    """Entity is missing or belongs to another tenant"""
    status = "not_found"
    code = "NOT_FOUND"


class BadRequestError(LedgerError):
    """Input or state does not allow the operation"""
    status = "bad_request"
    code = "BAD_REQUEST"


class PermissionDeniedError(LedgerError):
    """Actor is not privileged for the operation"""
    status = "forbidden"
    code = "FORBIDDEN"


class ConflictError(LedgerError):
    """Operation clashes with the current state of a record"""
    status = "conflict"
    code = "CONFLICT"


class ConcurrentModificationError(ConflictError):
    """Optimistic version check failed, the caller should re-read and retry"""
    code = "CONCURRENT_MODIFICATION"
    retryable = True

    def __init__(self, message: str = "Loan was modified concurrently, please retry",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class InvalidTransitionError(BadRequestError):
    code = "INVALID_TRANSITION"


class LoanNotActiveError(BadRequestError):
    code = "LOAN_NOT_ACTIVE"


class WrongLoanTypeError(BadRequestError):
    code = "WRONG_LOAN_TYPE"


class OverpaymentExceedsPrincipalError(BadRequestError):
    code = "OVERPAYMENT_EXCEEDS_PRINCIPAL"


class NoNewPenaltyDueError(BadRequestError):
    code = "NO_NEW_PENALTY_DUE"


class AlreadyDecidedError(ConflictError):
    code = "ALREADY_DECIDED"


class AlreadyCorrectedError(ConflictError):
    code = "ALREADY_CORRECTED"
