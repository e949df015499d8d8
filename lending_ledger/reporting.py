"""
Loan book and collector performance reports
"""

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List

from .borrowers import BorrowerDirectory
from .models import ApprovalStatus, Loan, LoanStatus, TransactionType, WAIVER_TYPES
from .money import format_amount, sum_amounts
from .reconciliation import INTEREST_TYPES, daily_interest
from .repository import LedgerRepository
from .schedule import total_remaining

# Not collections: opening entries written by origination and migration, and waivers
NON_COLLECTION_TYPES = (
    TransactionType.DISBURSEMENT,
    TransactionType.OPENING_BALANCE,
) + WAIVER_TYPES


class ReportGenerator:
    """Builds the loan book and the collector summary for the current tenant"""

    def __init__(self, repository: LedgerRepository, borrowers: BorrowerDirectory):
        self.repository = repository
        self.borrowers = borrowers

    def _interest_earned(self, loan: Loan) -> Decimal:
        if loan.is_daily:
            return daily_interest(loan)
        return sum_amounts(t.amount for t in self.repository.transactions_for_loan(loan.id)
                           if t.is_approved and t.transaction_type in INTEREST_TYPES)

    def get_loan_book(self) -> List[Dict[str, Any]]:
        """Every non-cancelled loan, latest disbursement first"""
        names = self.borrowers.names()
        loans = self.repository.list_loans(lambda loan: loan.status != LoanStatus.CANCELLED)
        loans.sort(key=lambda loan: (loan.disbursement_date, loan.created_at), reverse=True)

        book = []
        for loan in loans:
            outstanding = loan.remaining_principal if loan.is_monthly else total_remaining(loan)
            book.append({
                'loan_id': loan.id,
                'loan_number': loan.loan_number,
                'loan_type': loan.loan_type.value,
                'status': loan.status.value,
                'borrower_name': names.get(loan.borrower_id),
                'guarantor_name': names.get(loan.guarantor_id) if loan.guarantor_id else None,
                'principal_amount': format_amount(loan.principal_amount),
                'disbursement_date': loan.disbursement_date.isoformat(),
                'outstanding_amount': format_amount(outstanding),
                'interest_earned': format_amount(self._interest_earned(loan)),
            })
        return book

    def get_collector_summary(self, from_date: date, to_date: date) -> List[Dict[str, Any]]:
        """
        Per-collector activity between two dates, largest amount first

        Counts every transaction a user recorded in the range whatever its
        approval state; disbursements, opening balances and waivers are not
        collections.
        """
        by_collector = defaultdict(list)
        for txn in self.repository.all_transactions():
            if txn.transaction_type in NON_COLLECTION_TYPES or txn.collected_by is None:
                continue
            if from_date <= txn.transaction_date <= to_date:
                by_collector[txn.collected_by].append(txn)

        rows = []
        for user_id, transactions in by_collector.items():
            statuses = [t.approval_status for t in transactions]
            total = sum_amounts(t.amount for t in transactions)
            rows.append({
                'user_id': user_id,
                'total_transactions': len(transactions),
                'total_amount': total,
                'loans_serviced': len({t.loan_id for t in transactions}),
                'approved': statuses.count(ApprovalStatus.APPROVED),
                'pending': statuses.count(ApprovalStatus.PENDING),
                'rejected': statuses.count(ApprovalStatus.REJECTED),
            })

        rows.sort(key=lambda row: row['total_amount'], reverse=True)
        for row in rows:
            row['total_amount'] = format_amount(row['total_amount'])
        return rows
