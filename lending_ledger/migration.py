"""
Loan Migration Adapter

Brings loans that were running before the ledger existed onto the books.
A migrated loan carries its state as of migration (remaining principal and
interest watermark for MONTHLY, base collected and penalties for DAILY);
no disbursement is written because that money left before the ledger did.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .actors import Actor
from .audit import AuditEventType
from .config import get_config
from .errors import BadRequestError
from .loans import LoanManager
from .models import Loan, LoanType, Penalty, PenaltyStatus, TransactionType, utc_now
from .money import ZERO, percent_of, round_currency
from .repository import new_id
from .schedule import compute_daily_terms


class LoanMigrator:
    """Creates migrated MONTHLY and DAILY loans through the loan manager"""

    def __init__(self, loans: LoanManager):
        self.loans = loans
        self.repository = loans.repository

    def migrate_monthly_loan(self, actor: Actor, borrower_id: str, principal_amount: Decimal,
                             interest_rate: Decimal, disbursement_date: date,
                             remaining_principal: Decimal,
                             last_interest_paid_through: Optional[date] = None,
                             expected_months: Optional[int] = None,
                             guarantor_id: Optional[str] = None,
                             notes: Optional[str] = None) -> Loan:
        """
        Migrate a MONTHLY loan

        Billing starts after last_interest_paid_through; the advance interest
        is recorded on the loan for information only.
        """
        if remaining_principal < ZERO or remaining_principal > principal_amount:
            raise BadRequestError("remaining_principal must be between 0 and principal_amount")
        self.loans.resolve_parties(borrower_id, guarantor_id)

        loan = self.loans.new_loan(
            LoanType.MONTHLY, actor, borrower_id, principal_amount, interest_rate,
            disbursement_date, guarantor_id=guarantor_id, notes=notes,
            is_migrated=True,
            remaining_principal=remaining_principal,
            billing_principal=remaining_principal,
            migrated_principal=remaining_principal,
            advance_interest_amount=round_currency(percent_of(principal_amount, interest_rate)),
            monthly_due_day=disbursement_date.day,
            last_interest_paid_through=last_interest_paid_through,
            expected_months=expected_months,
        )
        self.repository.insert_loan(loan)
        self.loans._log_created(loan, actor, AuditEventType.LOAN_MIGRATED, {
            'remaining_principal': remaining_principal,
            'last_interest_paid_through': last_interest_paid_through,
        })
        return loan

    def migrate_daily_loan(self, actor: Actor, borrower_id: str, principal_amount: Decimal,
                           interest_rate: Decimal, disbursement_date: date, term_days: int,
                           total_base_collected_so_far: Decimal, grace_days: Optional[int] = None,
                           pre_existing_penalties: Optional[List[Dict[str, Any]]] = None,
                           guarantor_id: Optional[str] = None,
                           notes: Optional[str] = None) -> Loan:
        """
        Migrate a DAILY loan

        The base collected so far becomes an APPROVED OPENING_BALANCE dated at
        disbursement; penalties imposed before migration are copied as-is.
        """
        if total_base_collected_so_far < ZERO:
            raise BadRequestError("total_base_collected_so_far cannot be negative")
        self.loans.resolve_parties(borrower_id, guarantor_id)
        terms = compute_daily_terms(principal_amount, interest_rate, term_days, disbursement_date)

        loan = self.loans.new_loan(
            LoanType.DAILY, actor, borrower_id, principal_amount, interest_rate,
            disbursement_date, guarantor_id=guarantor_id, notes=notes,
            is_migrated=True,
            term_days=term_days,
            total_repayment_amount=terms.total_repayment_amount,
            daily_payment_amount=terms.daily_payment_amount,
            term_end_date=terms.term_end_date,
            grace_days=get_config().default_grace_days if grace_days is None else grace_days,
            total_collected=total_base_collected_so_far,
        )
        self.repository.insert_loan(loan)
        if total_base_collected_so_far > ZERO:
            self.loans.initial_transaction(loan, TransactionType.OPENING_BALANCE,
                                           total_base_collected_so_far, actor)

        penalties = pre_existing_penalties or []
        for entry in penalties:
            self._copy_penalty(loan, actor, entry)

        self.loans._log_created(loan, actor, AuditEventType.LOAN_MIGRATED, {
            'total_base_collected_so_far': total_base_collected_so_far,
            'pre_existing_penalties': len(penalties),
        })
        return loan

    def _copy_penalty(self, loan: Loan, actor: Actor, entry: Dict[str, Any]) -> Penalty:
        amount = entry['penalty_amount']
        paid = PenaltyStatus(entry.get('status', 'PENDING')) == PenaltyStatus.PAID
        now = utc_now()
        penalty = Penalty(
            id=new_id(),
            created_at=now,
            updated_at=now,
            tenant_id=loan.tenant_id,
            loan_id=loan.id,
            days_overdue=entry['days_overdue'],
            months_charged=entry['months_charged'],
            penalty_amount=amount,
            net_payable=amount,
            amount_collected=amount if paid else ZERO,
            status=PenaltyStatus.PAID if paid else PenaltyStatus.PENDING,
            imposed_date=loan.disbursement_date,
            created_by=actor.id,
            notes="Migrated penalty",
        )
        return self.repository.save_penalty(penalty)
