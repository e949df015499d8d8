"""
Pydantic schemas for ledger requests

Payloads are validated for shape before any ledger work starts: positive
amounts, YYYY-MM-DD dates, field combinations. Business rules that need the
stored state (remaining principal, loan status, ...) are checked by the engines.
"""

from decimal import Decimal
from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import get_config
from .dates import parse_date
from .funds import ExpenseCategory, FundEntryType
from .models import (
    ApprovalStatus, LoanStatus, LoanType, RECORDABLE_TRANSACTION_TYPES, TransactionType,
)
from .money import to_decimal

NOTES_MAX_LENGTH = 2000


class LedgerRequest(BaseModel):
    """Common configuration: unknown fields are rejected"""
    model_config = ConfigDict(extra="forbid")

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_scalars(cls, value, info):
        """Dates must be YYYY-MM-DD, floats become Decimals through str()"""
        annotation = cls.model_fields[info.field_name].annotation
        if value is None:
            return value
        if annotation in (date, Optional[date]):
            return parse_date(value)
        if annotation in (Decimal, Optional[Decimal]) and not isinstance(value, bool):
            return to_decimal(value)
        return value


# Loan creation

class CreateMonthlyLoanRequest(LedgerRequest):
    borrower_id: str = Field(..., min_length=1)
    principal_amount: Decimal = Field(..., gt=0)
    interest_rate: Decimal = Field(..., gt=0, description="Monthly rate in percent")
    disbursement_date: date
    expected_months: Optional[int] = Field(None, gt=0)
    guarantor_id: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=NOTES_MAX_LENGTH)

    @model_validator(mode="after")
    def _guarantor_differs(self):
        if self.guarantor_id and self.guarantor_id == self.borrower_id:
            raise ValueError("Guarantor cannot be the same as borrower")
        return self


class CreateDailyLoanRequest(LedgerRequest):
    borrower_id: str = Field(..., min_length=1)
    principal_amount: Decimal = Field(..., gt=0)
    interest_rate: Decimal = Field(..., gt=0, description="Rate in percent per 30 days")
    disbursement_date: date
    term_days: int = Field(..., gt=0)
    grace_days: Optional[int] = Field(None, ge=0)
    guarantor_id: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=NOTES_MAX_LENGTH)

    @model_validator(mode="after")
    def _guarantor_differs(self):
        if self.guarantor_id and self.guarantor_id == self.borrower_id:
            raise ValueError("Guarantor cannot be the same as borrower")
        return self


class MigrateMonthlyLoanRequest(CreateMonthlyLoanRequest):
    remaining_principal: Decimal = Field(..., ge=0)
    last_interest_paid_through: Optional[date] = None

    @model_validator(mode="after")
    def _remaining_within_principal(self):
        if self.remaining_principal > self.principal_amount:
            raise ValueError("remaining_principal cannot exceed principal_amount")
        if self.last_interest_paid_through and self.last_interest_paid_through < self.disbursement_date:
            raise ValueError("last_interest_paid_through cannot precede disbursement_date")
        return self


class PreExistingPenalty(LedgerRequest):
    days_overdue: int = Field(..., gt=0)
    months_charged: int = Field(..., gt=0)
    penalty_amount: Decimal = Field(..., gt=0)
    status: Literal["PENDING", "PAID"] = "PENDING"


class MigrateDailyLoanRequest(CreateDailyLoanRequest):
    total_base_collected_so_far: Decimal = Field(..., ge=0)
    pre_existing_penalties: List[PreExistingPenalty] = Field(default_factory=list)


# Loan queries and status changes

class PageQuery(LedgerRequest):
    """Page and limit are clamped, never rejected"""
    page: Optional[int] = None
    limit: Optional[int] = None


class LoanListQuery(PageQuery):
    loan_type: Optional[LoanType] = None
    status: Optional[LoanStatus] = None
    borrower_id: Optional[str] = None
    search: Optional[str] = Field(None, max_length=100)


class StatusChangeRequest(LedgerRequest):
    reason: Optional[str] = Field(None, max_length=NOTES_MAX_LENGTH)


# Transactions

class RecordTransactionRequest(LedgerRequest):
    loan_id: str = Field(..., min_length=1)
    transaction_type: TransactionType
    amount: Decimal
    transaction_date: date
    effective_date: Optional[date] = None
    penalty_id: Optional[str] = None
    corrected_transaction_id: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=NOTES_MAX_LENGTH)

    @model_validator(mode="after")
    def _check_combination(self):
        if self.transaction_type not in RECORDABLE_TRANSACTION_TYPES:
            raise ValueError(f"{self.transaction_type.value} cannot be recorded directly")
        if self.corrected_transaction_id:
            if self.amount >= 0:
                raise ValueError("Corrective transaction amount must be negative")
        else:
            if self.amount <= 0:
                raise ValueError("Amount must be positive")
            if self.transaction_type == TransactionType.INTEREST_PAYMENT and self.effective_date is None:
                raise ValueError("effective_date is required for INTEREST_PAYMENT")
        if self.penalty_id and self.transaction_type != TransactionType.PENALTY:
            raise ValueError("penalty_id is only valid for PENALTY transactions")
        return self


class BulkCollectionItem(LedgerRequest):
    loan_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    transaction_date: date
    notes: Optional[str] = Field(None, max_length=NOTES_MAX_LENGTH)


class BulkCollectionsRequest(LedgerRequest):
    collections: List[BulkCollectionItem] = Field(..., min_length=1)

    @field_validator("collections")
    @classmethod
    def _within_batch_limit(cls, value: List[BulkCollectionItem]) -> List[BulkCollectionItem]:
        limit = get_config().max_bulk_collections
        if len(value) > limit:
            raise ValueError(f"At most {limit} collections per batch")
        return value


class RejectTransactionRequest(LedgerRequest):
    reason: str = Field(..., min_length=1, max_length=NOTES_MAX_LENGTH)

    @field_validator("reason")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Rejection reason is required")
        return value


class TransactionListQuery(PageQuery):
    approval_status: Optional[ApprovalStatus] = None
    transaction_type: Optional[TransactionType] = None
    loan_id: Optional[str] = None
    collected_by: Optional[str] = None


# Penalties and waivers

class ImposePenaltyRequest(LedgerRequest):
    override_amount: Optional[Decimal] = Field(None, gt=0)
    notes: Optional[str] = Field(None, max_length=NOTES_MAX_LENGTH)


class WaivePenaltyRequest(LedgerRequest):
    waive_amount: Decimal = Field(..., gt=0)
    notes: Optional[str] = Field(None, max_length=NOTES_MAX_LENGTH)


class WaiveInterestRequest(LedgerRequest):
    effective_date: date
    waive_amount: Decimal = Field(..., gt=0)
    notes: Optional[str] = Field(None, max_length=NOTES_MAX_LENGTH)


# Reports

class DateRangeQuery(LedgerRequest):
    from_date: date
    to_date: date

    @model_validator(mode="after")
    def _ordered(self):
        if self.from_date > self.to_date:
            raise ValueError("from_date must not be after to_date")
        return self


# Collaborators

class RegisterBorrowerRequest(LedgerRequest):
    full_name: str = Field(..., min_length=1, max_length=200)
    phone: Optional[str] = Field(None, max_length=30)
    borrower_id: Optional[str] = None


class FundEntryRequest(LedgerRequest):
    entry_type: FundEntryType
    amount: Decimal = Field(..., gt=0)
    entry_date: date
    description: Optional[str] = Field(None, max_length=NOTES_MAX_LENGTH)


class ExpenseRequest(LedgerRequest):
    category: ExpenseCategory
    amount: Decimal = Field(..., gt=0)
    expense_date: date
    description: Optional[str] = Field(None, max_length=NOTES_MAX_LENGTH)


class ExpenseListQuery(PageQuery):
    category: Optional[ExpenseCategory] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    include_deleted: bool = False
