"""
Reconciliation Engine

Derives the lender's financial position from the ledger. Cash in hand is
computed twice through separate code paths: top-down from per-category
totals and bottom-up by walking every loan's ledger. The two figures must
always agree; reconcile() reports whether they do.

Figures are kept at full precision and formatted to 2 decimal places only
in the returned summaries.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from .funds import FundBook, FundEntryType
from .logging_config import get_logger
from .models import (
    MONEY_IN_TYPES, ApprovalStatus, LedgerTransaction, Loan, LoanStatus, LoanType, TransactionType,
)
from .money import ZERO, clamp_non_negative, format_amount, sum_amounts, to_decimal
from .repository import LedgerRepository

DEFAULTED_STATUSES = (LoanStatus.DEFAULTED, LoanStatus.WRITTEN_OFF)
INTEREST_TYPES = (TransactionType.INTEREST_PAYMENT, TransactionType.ADVANCE_INTEREST)

SUMMARY_FIELDS = (
    'total_capital_invested', 'money_deployed', 'total_interest_earned', 'money_lost_to_defaults',
    'total_expenses', 'revenue_forgone', 'net_profit', 'cash_in_hand',
)


def principal_outstanding(loan: Loan) -> Decimal:
    """Principal still out: remaining principal (MONTHLY) or principal not yet collected (DAILY)"""
    if loan.is_monthly:
        return loan.remaining_principal or ZERO
    return clamp_non_negative(loan.principal_amount - (loan.total_collected or ZERO))


def daily_interest(loan: Loan, collected: Optional[Decimal] = None) -> Decimal:
    """Interest part of a DAILY loan's collections: whatever exceeds the principal"""
    if collected is None:
        collected = loan.total_collected or ZERO
    return clamp_non_negative(collected - loan.principal_amount)


class ReconciliationEngine:
    """Fund summary, dual-path cash in hand and profit & loss"""

    def __init__(self, repository: LedgerRepository, funds: FundBook):
        self.repository = repository
        self.funds = funds
        self.logger = get_logger("lending_ledger.reconciliation")

    # Shared selections

    def _booked_loans(self) -> Dict[str, Loan]:
        """Every loan except CANCELLED ones, by id"""
        return {loan.id: loan for loan in self.repository.list_loans()
                if loan.status != LoanStatus.CANCELLED}

    def _approved(self, loans: Dict[str, Loan],
                  types: Iterable[TransactionType]) -> List[LedgerTransaction]:
        """APPROVED transactions of the given types on the given loans"""
        types = tuple(types)
        return [txn for txn in self.repository.all_transactions()
                if txn.is_approved and txn.transaction_type in types and txn.loan_id in loans]

    def _capital(self, through: Optional[date] = None) -> Decimal:
        return sum_amounts(entry.signed_amount for entry in self.funds.fund_entries(to_date=through))

    def _expenses(self, from_date: Optional[date] = None, to_date: Optional[date] = None) -> Decimal:
        return sum_amounts(e.amount for e in self.funds.expenses(from_date=from_date, to_date=to_date))

    # Cash in hand

    def compute_cash_in_hand(self) -> Decimal:
        """
        Top-down cash in hand

        capital - approved disbursements + approved money-in - expenses, each
        taken as one category total over non-cancelled loans.
        """
        loans = self._booked_loans()
        disbursed = sum_amounts(t.amount for t in self._approved(loans, [TransactionType.DISBURSEMENT]))
        money_in = sum_amounts(t.amount for t in self._approved(loans, MONEY_IN_TYPES))
        return self._capital() - disbursed + money_in - self._expenses()

    def compute_cash_in_hand_bottom_up(self) -> Decimal:
        """
        Bottom-up cash in hand

        Walks the raw fund, loan, transaction and expense rows one by one and
        nets every cash movement. Kept independent of compute_cash_in_hand so
        that a fault in either shows up as a mismatch.
        """
        storage = self.repository.storage
        cash = ZERO

        for row in storage.load_all(self.funds.fund_entries_table):
            amount = to_decimal(row['amount'])
            cash += amount if row['entry_type'] == FundEntryType.INJECTION.value else -amount

        cancelled = {row['id'] for row in storage.load_all(self.repository.loans_table)
                     if row['status'] == LoanStatus.CANCELLED.value}
        money_in = {kind.value for kind in MONEY_IN_TYPES}
        for row in storage.load_all(self.repository.transactions_table):
            if row['approval_status'] != ApprovalStatus.APPROVED.value or row['loan_id'] in cancelled:
                continue
            if row['transaction_type'] == TransactionType.DISBURSEMENT.value:
                cash -= to_decimal(row['amount'])
            elif row['transaction_type'] in money_in:
                cash += to_decimal(row['amount'])

        for row in storage.load_all(self.funds.expenses_table):
            if not row.get('is_deleted'):
                cash -= to_decimal(row['amount'])
        return cash

    def reconcile(self) -> Dict[str, Any]:
        query_result = format_amount(self.compute_cash_in_hand())
        bottom_up_result = format_amount(self.compute_cash_in_hand_bottom_up())
        matches = query_result == bottom_up_result
        if not matches:
            self.logger.error(f"Cash in hand mismatch: top-down {query_result}, bottom-up {bottom_up_result}")
        return {
            'query_result': query_result,
            'bottom_up_result': bottom_up_result,
            'matches': matches,
        }

    # Fund summary

    def _money_deployed(self) -> Decimal:
        return sum_amounts(principal_outstanding(loan) for loan in self.repository.list_loans()
                           if loan.status == LoanStatus.ACTIVE)

    def _lost_to_defaults(self, defaulted: Dict[str, Loan]) -> Decimal:
        outstanding = sum_amounts(principal_outstanding(loan) for loan in defaulted.values())
        recovered = sum_amounts(t.amount for t in self._approved(defaulted, [TransactionType.GUARANTOR_PAYMENT]))
        return outstanding - recovered

    def compute_fund_summary(self) -> Dict[str, Any]:
        """Capital, deployment, earnings, losses and cash, formatted to 2 dp"""
        loans = self._booked_loans()

        interest = sum_amounts(t.amount for t in self._approved(loans, INTEREST_TYPES))
        interest += sum_amounts(daily_interest(loan) for loan in loans.values()
                                if loan.loan_type == LoanType.DAILY)
        interest += sum_amounts(t.amount for t in self._approved(loans, [TransactionType.PENALTY]))

        defaulted = {loan_id: loan for loan_id, loan in loans.items() if loan.status in DEFAULTED_STATUSES}
        lost = self._lost_to_defaults(defaulted)
        expenses = self._expenses()

        forgone = sum_amounts(t.amount for t in self._approved(loans, [TransactionType.INTEREST_WAIVER]))
        forgone += sum_amounts(p.waived_amount for p in self.repository.all_penalties() if p.loan_id in loans)

        return self._format({
            'total_capital_invested': self._capital(),
            'money_deployed': self._money_deployed(),
            'total_interest_earned': interest,
            'money_lost_to_defaults': lost,
            'total_expenses': expenses,
            'revenue_forgone': forgone,
            'net_profit': interest - lost - expenses,
            'cash_in_hand': self.compute_cash_in_hand(),
        })

    # Profit & loss

    def _daily_interest_between(self, loan: Loan, collections: List[LedgerTransaction],
                                from_date: date, to_date: date) -> Decimal:
        """Interest earned inside the range: interest through to_date less interest before from_date"""
        collected = loan.total_collected or ZERO
        through_end = sum_amounts(t.amount for t in collections if t.transaction_date <= to_date)
        before_start = sum_amounts(t.amount for t in collections if t.transaction_date < from_date)
        return (daily_interest(loan, min(collected, through_end))
                - daily_interest(loan, min(collected, before_start)))

    def compute_profit_loss(self, from_date: date, to_date: date) -> Dict[str, Any]:
        """
        Profit & loss for a date range, formatted to 2 dp

        Capital runs through to_date; money deployed and cash in hand are
        current snapshots. Daily-loan interest is counted at the margin so
        adjacent ranges never count the same collection twice.
        """
        loans = self._booked_loans()

        def in_range(value: Optional[date]) -> bool:
            return value is not None and from_date <= value <= to_date

        interest = sum_amounts(t.amount for t in self._approved(loans, INTEREST_TYPES)
                               if in_range(t.transaction_date))
        collections = self._approved(loans, [TransactionType.DAILY_COLLECTION])
        for loan in loans.values():
            if loan.loan_type == LoanType.DAILY:
                own = [t for t in collections if t.loan_id == loan.id]
                interest += self._daily_interest_between(loan, own, from_date, to_date)
        interest += sum_amounts(t.amount for t in self._approved(loans, [TransactionType.PENALTY])
                                if in_range(t.transaction_date))

        defaulted = {loan_id: loan for loan_id, loan in loans.items()
                     if loan.status in DEFAULTED_STATUSES
                     and loan.defaulted_at is not None and in_range(loan.defaulted_at.date())}
        lost = self._lost_to_defaults(defaulted)
        expenses = self._expenses(from_date, to_date)

        forgone = sum_amounts(t.amount for t in self._approved(loans, [TransactionType.INTEREST_WAIVER])
                              if in_range(t.transaction_date))
        forgone += sum_amounts(p.waived_amount for p in self.repository.all_penalties()
                               if p.loan_id in loans and in_range(p.created_at.date()))

        return self._format({
            'total_capital_invested': self._capital(through=to_date),
            'money_deployed': self._money_deployed(),
            'total_interest_earned': interest,
            'money_lost_to_defaults': lost,
            'total_expenses': expenses,
            'revenue_forgone': forgone,
            'net_profit': interest - lost - expenses,
            'cash_in_hand': self.compute_cash_in_hand_bottom_up(),
        })

    @staticmethod
    def _format(figures: Dict[str, Decimal]) -> Dict[str, str]:
        return {name: format_amount(figures[name]) for name in SUMMARY_FIELDS}
