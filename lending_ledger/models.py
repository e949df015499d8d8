"""
Ledger Records

Loan aggregate, ledger transactions, principal-return journal and penalties.
Decimals are stored as strings, dates as YYYY-MM-DD and timestamps as ISO 8601.
"""

from dataclasses import dataclass, fields
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .money import ZERO, normalize, to_decimal
from .storage import StorageRecord


class LoanType(Enum):
    """Loan product variants"""
    MONTHLY = "MONTHLY"  # Interest billed monthly on the outstanding principal
    DAILY = "DAILY"      # Flat repayment collected in daily instalments


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"
    DEFAULTED = "DEFAULTED"
    WRITTEN_OFF = "WRITTEN_OFF"
    CANCELLED = "CANCELLED"


# No transaction is accepted on these
TERMINAL_STATUSES = (LoanStatus.CLOSED, LoanStatus.CANCELLED, LoanStatus.WRITTEN_OFF)

# status -> statuses it may move to
ALLOWED_TRANSITIONS = {
    LoanStatus.ACTIVE: (LoanStatus.CLOSED, LoanStatus.DEFAULTED, LoanStatus.CANCELLED),
    LoanStatus.DEFAULTED: (LoanStatus.CLOSED, LoanStatus.WRITTEN_OFF),
    LoanStatus.CLOSED: (),
    LoanStatus.WRITTEN_OFF: (),
    LoanStatus.CANCELLED: (),
}


class TransactionType(Enum):
    """Kinds of money movement recorded against a loan"""
    DISBURSEMENT = "DISBURSEMENT"
    ADVANCE_INTEREST = "ADVANCE_INTEREST"
    OPENING_BALANCE = "OPENING_BALANCE"
    INTEREST_PAYMENT = "INTEREST_PAYMENT"
    PRINCIPAL_RETURN = "PRINCIPAL_RETURN"
    DAILY_COLLECTION = "DAILY_COLLECTION"
    PENALTY = "PENALTY"
    PENALTY_WAIVER = "PENALTY_WAIVER"
    INTEREST_WAIVER = "INTEREST_WAIVER"
    GUARANTOR_PAYMENT = "GUARANTOR_PAYMENT"


# Written by loan creation or migration, never by record_transaction
INITIAL_TRANSACTION_TYPES = (
    TransactionType.DISBURSEMENT,
    TransactionType.ADVANCE_INTEREST,
    TransactionType.OPENING_BALANCE,
)

# Accepted by record_transaction
RECORDABLE_TRANSACTION_TYPES = (
    TransactionType.INTEREST_PAYMENT,
    TransactionType.PRINCIPAL_RETURN,
    TransactionType.DAILY_COLLECTION,
    TransactionType.PENALTY,
    TransactionType.GUARANTOR_PAYMENT,
)

# Cash received by the lender
MONEY_IN_TYPES = (
    TransactionType.ADVANCE_INTEREST,
    TransactionType.INTEREST_PAYMENT,
    TransactionType.PRINCIPAL_RETURN,
    TransactionType.DAILY_COLLECTION,
    TransactionType.PENALTY,
    TransactionType.GUARANTOR_PAYMENT,
)

WAIVER_TYPES = (TransactionType.PENALTY_WAIVER, TransactionType.INTEREST_WAIVER)


class ApprovalStatus(Enum):
    """Approval workflow states"""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class PenaltyStatus(Enum):
    """Penalty settlement states"""
    PENDING = "PENDING"
    PARTIALLY_PAID = "PARTIALLY_PAID"
    PAID = "PAID"
    WAIVED = "WAIVED"


OUTSTANDING_PENALTY_STATUSES = (PenaltyStatus.PENDING, PenaltyStatus.PARTIALLY_PAID)


def _iso(value: Optional[Any]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _normalized(value: Optional[Decimal]) -> Optional[Decimal]:
    return normalize(value) if value is not None else None


@dataclass
class LedgerRecord(StorageRecord):
    """
    StorageRecord with typed (de)serialization.

    Subclasses list their Decimal, date, datetime and Enum fields; everything
    else is stored as-is.
    """

    DECIMAL_FIELDS = ()
    DATE_FIELDS = ()
    DATETIME_FIELDS = ('created_at', 'updated_at')
    ENUM_FIELDS = {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                result[f.name] = None
            elif f.name in self.DECIMAL_FIELDS:
                result[f.name] = str(value)
            elif f.name in self.DATE_FIELDS or f.name in self.DATETIME_FIELDS:
                result[f.name] = value.isoformat()
            elif f.name in self.ENUM_FIELDS:
                result[f.name] = value.value
            else:
                result[f.name] = value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        """Create instance from dictionary, ignoring storage bookkeeping keys"""
        kwargs = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if value is None:
                kwargs[f.name] = None
            elif f.name in cls.DECIMAL_FIELDS:
                kwargs[f.name] = to_decimal(value)
            elif f.name in cls.DATE_FIELDS:
                kwargs[f.name] = date.fromisoformat(value)
            elif f.name in cls.DATETIME_FIELDS:
                kwargs[f.name] = datetime.fromisoformat(value)
            elif f.name in cls.ENUM_FIELDS:
                kwargs[f.name] = cls.ENUM_FIELDS[f.name](value)
            else:
                kwargs[f.name] = value
        return cls(**kwargs)


@dataclass
class Loan(LedgerRecord):
    """
    Loan aggregate

    MONTHLY loans track remaining and billing principal; DAILY loans track the
    flat repayment schedule and total collected. The version counter guards
    every write to the row.
    """
    tenant_id: str = ""
    loan_number: str = ""
    loan_type: LoanType = LoanType.MONTHLY
    borrower_id: str = ""
    principal_amount: Decimal = ZERO
    interest_rate: Decimal = ZERO          # Percent, e.g. 5 for 5%
    disbursement_date: Optional[date] = None
    status: LoanStatus = LoanStatus.ACTIVE
    version: int = 1
    guarantor_id: Optional[str] = None
    is_migrated: bool = False
    created_by: Optional[str] = None
    notes: Optional[str] = None

    # MONTHLY
    remaining_principal: Optional[Decimal] = None
    billing_principal: Optional[Decimal] = None     # Cache of the current cycle's billing principal
    advance_interest_amount: Optional[Decimal] = None
    monthly_due_day: Optional[int] = None
    last_interest_paid_through: Optional[date] = None
    expected_months: Optional[int] = None
    migrated_principal: Optional[Decimal] = None    # Remaining principal at migration time

    # DAILY
    term_days: Optional[int] = None
    total_repayment_amount: Optional[Decimal] = None
    daily_payment_amount: Optional[Decimal] = None
    term_end_date: Optional[date] = None
    grace_days: Optional[int] = None
    total_collected: Optional[Decimal] = None

    # Status bookkeeping
    closure_date: Optional[date] = None
    closed_at: Optional[datetime] = None
    closed_by: Optional[str] = None
    defaulted_at: Optional[datetime] = None
    defaulted_by: Optional[str] = None
    written_off_at: Optional[datetime] = None
    written_off_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    status_reason: Optional[str] = None

    DECIMAL_FIELDS = ('principal_amount', 'interest_rate', 'remaining_principal', 'billing_principal',
                      'advance_interest_amount', 'migrated_principal', 'total_repayment_amount',
                      'daily_payment_amount', 'total_collected')
    DATE_FIELDS = ('disbursement_date', 'last_interest_paid_through', 'term_end_date', 'closure_date')
    DATETIME_FIELDS = ('created_at', 'updated_at', 'closed_at', 'defaulted_at',
                       'written_off_at', 'cancelled_at')
    ENUM_FIELDS = {'loan_type': LoanType, 'status': LoanStatus}

    @property
    def is_monthly(self) -> bool:
        return self.loan_type == LoanType.MONTHLY

    @property
    def is_daily(self) -> bool:
        return self.loan_type == LoanType.DAILY

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def opening_billing_principal(self) -> Decimal:
        """Billing principal before any principal return was journaled"""
        if self.is_migrated and self.migrated_principal is not None:
            return self.migrated_principal
        return self.principal_amount

    def can_transition_to(self, target: LoanStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def to_view(self) -> Dict[str, Any]:
        """Entity view: plain numbers and YYYY-MM-DD dates"""
        view = {
            'id': self.id,
            'loan_number': self.loan_number,
            'loan_type': self.loan_type.value,
            'borrower_id': self.borrower_id,
            'guarantor_id': self.guarantor_id,
            'principal_amount': normalize(self.principal_amount),
            'interest_rate': normalize(self.interest_rate),
            'disbursement_date': _iso(self.disbursement_date),
            'status': self.status.value,
            'version': self.version,
            'is_migrated': self.is_migrated,
            'notes': self.notes,
            'closure_date': _iso(self.closure_date),
            'closed_by': self.closed_by,
            'defaulted_at': _iso(self.defaulted_at),
            'defaulted_by': self.defaulted_by,
            'written_off_at': _iso(self.written_off_at),
            'written_off_by': self.written_off_by,
            'cancelled_at': _iso(self.cancelled_at),
            'cancelled_by': self.cancelled_by,
            'status_reason': self.status_reason,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
        }
        if self.is_monthly:
            view.update({
                'remaining_principal': _normalized(self.remaining_principal),
                'billing_principal': _normalized(self.billing_principal),
                'advance_interest_amount': _normalized(self.advance_interest_amount),
                'monthly_due_day': self.monthly_due_day,
                'last_interest_paid_through': _iso(self.last_interest_paid_through),
                'expected_months': self.expected_months,
            })
        else:
            view.update({
                'term_days': self.term_days,
                'total_repayment_amount': _normalized(self.total_repayment_amount),
                'daily_payment_amount': _normalized(self.daily_payment_amount),
                'term_end_date': _iso(self.term_end_date),
                'grace_days': self.grace_days,
                'total_collected': _normalized(self.total_collected),
            })
        return view


@dataclass
class LedgerTransaction(LedgerRecord):
    """
    One immutable money movement against a loan.

    A correction is a new row of the same type with the negated amount and
    corrected_transaction_id pointing at the row it reverses.
    """
    tenant_id: str = ""
    loan_id: str = ""
    transaction_type: TransactionType = TransactionType.DAILY_COLLECTION
    amount: Decimal = ZERO
    transaction_date: Optional[date] = None
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    effective_date: Optional[date] = None    # Cycle an INTEREST_PAYMENT or INTEREST_WAIVER counts against
    penalty_id: Optional[str] = None
    corrected_transaction_id: Optional[str] = None
    collected_by: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    notes: Optional[str] = None

    DECIMAL_FIELDS = ('amount',)
    DATE_FIELDS = ('transaction_date', 'effective_date')
    DATETIME_FIELDS = ('created_at', 'updated_at', 'approved_at', 'rejected_at')
    ENUM_FIELDS = {'transaction_type': TransactionType, 'approval_status': ApprovalStatus}

    @property
    def is_approved(self) -> bool:
        return self.approval_status == ApprovalStatus.APPROVED

    @property
    def is_correction(self) -> bool:
        return self.corrected_transaction_id is not None

    def to_view(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'transaction_type': self.transaction_type.value,
            'amount': normalize(self.amount),
            'transaction_date': _iso(self.transaction_date),
            'effective_date': _iso(self.effective_date),
            'approval_status': self.approval_status.value,
            'penalty_id': self.penalty_id,
            'corrected_transaction_id': self.corrected_transaction_id,
            'collected_by': self.collected_by,
            'approved_by': self.approved_by,
            'approved_at': _iso(self.approved_at),
            'rejected_by': self.rejected_by,
            'rejected_at': _iso(self.rejected_at),
            'rejection_reason': self.rejection_reason,
            'notes': self.notes,
            'created_at': _iso(self.created_at),
        }


@dataclass
class PrincipalReturn(LedgerRecord):
    """Append-only journal row: remaining principal after one (possibly corrective) return"""
    tenant_id: str = ""
    loan_id: str = ""
    transaction_id: str = ""
    amount_returned: Decimal = ZERO
    remaining_principal_after: Decimal = ZERO
    return_date: Optional[date] = None
    created_by: Optional[str] = None

    DECIMAL_FIELDS = ('amount_returned', 'remaining_principal_after')
    DATE_FIELDS = ('return_date',)


@dataclass
class Penalty(LedgerRecord):
    """Penalty imposed on an overdue DAILY loan for a number of new months"""
    tenant_id: str = ""
    loan_id: str = ""
    days_overdue: int = 0
    months_charged: int = 0
    penalty_amount: Decimal = ZERO
    waived_amount: Decimal = ZERO
    net_payable: Decimal = ZERO
    amount_collected: Decimal = ZERO
    status: PenaltyStatus = PenaltyStatus.PENDING
    imposed_date: Optional[date] = None
    calculated_amount: Optional[Decimal] = None
    was_overridden: bool = False
    created_by: Optional[str] = None
    notes: Optional[str] = None

    DECIMAL_FIELDS = ('penalty_amount', 'waived_amount', 'net_payable', 'amount_collected',
                      'calculated_amount')
    DATE_FIELDS = ('imposed_date',)
    ENUM_FIELDS = {'status': PenaltyStatus}

    @property
    def outstanding(self) -> Decimal:
        return self.net_payable - self.amount_collected

    def derive_status(self) -> PenaltyStatus:
        """WAIVED when nothing is payable, then PAID, PARTIALLY_PAID or PENDING by collection"""
        if self.net_payable == ZERO:
            return PenaltyStatus.WAIVED
        if self.amount_collected >= self.net_payable:
            return PenaltyStatus.PAID
        if self.amount_collected > ZERO:
            return PenaltyStatus.PARTIALLY_PAID
        return PenaltyStatus.PENDING

    def to_view(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'loan_id': self.loan_id,
            'days_overdue': self.days_overdue,
            'months_charged': self.months_charged,
            'penalty_amount': normalize(self.penalty_amount),
            'waived_amount': normalize(self.waived_amount),
            'net_payable': normalize(self.net_payable),
            'amount_collected': normalize(self.amount_collected),
            'status': self.status.value,
            'imposed_date': _iso(self.imposed_date),
            'was_overridden': self.was_overridden,
            'notes': self.notes,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
