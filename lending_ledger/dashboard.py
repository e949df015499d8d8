"""
Dashboard Aggregates

Read-only views over the current tenant's book: what is due and received
today, which loans are overdue and which have defaulted. Amounts are
formatted to 2 decimal places.
"""

from typing import Any, Dict, List, Optional

from .billing import BillingCalculator
from .borrowers import Borrower, BorrowerDirectory
from .dates import Clock, SystemClock, due_date_for, month_start
from .models import (
    MONEY_IN_TYPES, OUTSTANDING_PENALTY_STATUSES, ApprovalStatus, Loan, LoanStatus, TransactionType,
)
from .money import format_amount, sum_amounts
from .reconciliation import DEFAULTED_STATUSES, principal_outstanding
from .repository import LedgerRepository
from .schedule import days_overdue, is_overdue, total_remaining


class Dashboard:
    """Today summary, overdue loans and defaulters"""

    def __init__(self, repository: LedgerRepository, borrowers: BorrowerDirectory,
                 clock: Optional[Clock] = None):
        self.repository = repository
        self.borrowers = borrowers
        self.clock = clock or SystemClock()
        self.billing = BillingCalculator(repository)

    def _borrower(self, borrower_id: Optional[str]) -> Optional[Borrower]:
        return self.borrowers.get(borrower_id) if borrower_id else None

    def _name(self, borrower_id: Optional[str]) -> Optional[str]:
        borrower = self._borrower(borrower_id)
        return borrower.full_name if borrower else None

    def get_today_summary(self) -> Dict[str, Any]:
        today = self.clock.today()
        active = self.repository.list_loans(lambda loan: loan.status == LoanStatus.ACTIVE)
        active_daily = [loan for loan in active if loan.is_daily]
        in_term = [loan for loan in active_daily if today <= loan.term_end_date]

        transactions = self.repository.all_transactions()
        approved_today = [t for t in transactions if t.is_approved and t.transaction_date == today]
        collections_today = [t for t in approved_today
                             if t.transaction_type == TransactionType.DAILY_COLLECTION]
        collected_loans = {t.loan_id for t in collections_today}

        missed = [{
            'loan_id': loan.id,
            'borrower_name': self._name(loan.borrower_id),
            'daily_payment_amount': format_amount(loan.daily_payment_amount),
        } for loan in in_term if loan.id not in collected_loans]

        return {
            'active_daily_loan_count': len(active_daily),
            'expected_collections': {
                'count': len(in_term),
                'total_amount': format_amount(sum_amounts(l.daily_payment_amount for l in in_term)),
            },
            'received_collections': {
                'count': len(collections_today),
                'total_amount': format_amount(sum_amounts(t.amount for t in collections_today)),
            },
            'missed_today': missed,
            'monthly_interest_due_today': self._monthly_due_today(
                [loan for loan in active if loan.is_monthly]),
            'pending_approvals_count': sum(1 for t in transactions
                                           if t.approval_status == ApprovalStatus.PENDING),
            'total_collected_today': format_amount(sum_amounts(
                t.amount for t in approved_today if t.transaction_type in MONEY_IN_TYPES)),
        }

    def _monthly_due_today(self, loans: List[Loan]) -> List[Dict[str, Any]]:
        """MONTHLY loans whose cycle for this month falls due today and is not prepaid"""
        today = self.clock.today()
        first_of_month = month_start(today.year, today.month)
        rows = []
        for loan in loans:
            due_date = due_date_for(today.year, today.month, loan.monthly_due_day)
            if due_date != today or loan.disbursement_date >= first_of_month:
                continue
            if loan.last_interest_paid_through and loan.last_interest_paid_through >= first_of_month:
                continue
            rows.append({
                'loan_id': loan.id,
                'borrower_name': self._name(loan.borrower_id),
                'interest_amount': format_amount(self.billing.interest_due(loan, today.year, today.month)),
                'due_date': due_date.isoformat(),
            })
        return rows

    def get_overdue_loans(self) -> Dict[str, Any]:
        today = self.clock.today()
        active = self.repository.list_loans(lambda loan: loan.status == LoanStatus.ACTIVE)

        overdue_daily = []
        for loan in active:
            if not loan.is_daily or not is_overdue(loan, today):
                continue
            penalties = sum_amounts(p.outstanding for p in self.repository.penalties_for_loan(loan.id)
                                    if p.status in OUTSTANDING_PENALTY_STATUSES)
            overdue_daily.append({
                'loan_id': loan.id,
                'loan_number': loan.loan_number,
                'borrower_name': self._name(loan.borrower_id),
                'days_overdue': days_overdue(loan, today),
                'amount_remaining': format_amount(total_remaining(loan)),
                'guarantor_name': self._name(loan.guarantor_id),
                'penalty_applicable': format_amount(penalties),
            })

        overdue_monthly = []
        for loan in active:
            if not loan.is_monthly:
                continue
            cycles = self.billing.overdue_cycles(loan, today)
            if not cycles:
                continue
            overdue_monthly.append({
                'loan_id': loan.id,
                'loan_number': loan.loan_number,
                'borrower_name': self._name(loan.borrower_id),
                'months_overdue': len(cycles),
                'interest_due': format_amount(sum_amounts(c.shortfall for c in cycles)),
                'oldest_due_date': cycles[0].due_date.isoformat(),
                'last_interest_paid_through': (loan.last_interest_paid_through.isoformat()
                                               if loan.last_interest_paid_through else None),
            })

        return {'overdue_daily_loans': overdue_daily, 'overdue_monthly_loans': overdue_monthly}

    def get_defaulters(self) -> Dict[str, Any]:
        loans = self.repository.list_loans(lambda loan: loan.status in DEFAULTED_STATUSES)
        loans.sort(key=lambda loan: loan.defaulted_at.isoformat() if loan.defaulted_at else "",
                   reverse=True)

        rows = []
        for loan in loans:
            borrower = self._borrower(loan.borrower_id)
            guarantor = self._borrower(loan.guarantor_id)
            rows.append({
                'loan_id': loan.id,
                'loan_number': loan.loan_number,
                'status': loan.status.value,
                'borrower_name': borrower.full_name if borrower else None,
                'borrower_phone': borrower.phone if borrower else None,
                'guarantor_name': guarantor.full_name if guarantor else None,
                'guarantor_phone': guarantor.phone if guarantor else None,
                'outstanding_amount': format_amount(principal_outstanding(loan)),
                'defaulted_at': loan.defaulted_at.isoformat() if loan.defaulted_at else None,
                'written_off_at': loan.written_off_at.isoformat() if loan.written_off_at else None,
            })
        return {'defaulters': rows}
