"""
Billing Cycle Calculator (MONTHLY loans)

Cycles are a pure function of the disbursement date, the due-day anchor, the
evaluation date and the migration watermark. Nothing about the "current
cycle" is stored; every view re-derives it from the ledger and the
principal-return journal.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .dates import due_date_for, month_start, next_month
from .models import (
    Loan, LoanStatus, LedgerTransaction, PrincipalReturn, TransactionType,
)
from .money import ZERO, normalize, percent_of, round_currency
from .repository import LedgerRepository


@dataclass
class CycleStatus:
    """Interest position of one monthly cycle"""
    cycle_year: int
    cycle_month: int
    due_date: date
    billing_principal: Decimal
    interest_due: Decimal
    interest_paid: Decimal
    interest_waived: Decimal

    @property
    def settled_amount(self) -> Decimal:
        return self.interest_paid + self.interest_waived

    @property
    def is_settled(self) -> bool:
        return self.settled_amount >= self.interest_due

    @property
    def shortfall(self) -> Decimal:
        return max(self.interest_due - self.settled_amount, ZERO)

    def to_view(self) -> Dict[str, Any]:
        return {
            'cycle_year': self.cycle_year,
            'cycle_month': self.cycle_month,
            'due_date': self.due_date.isoformat(),
            'billing_principal': normalize(self.billing_principal),
            'interest_due': normalize(self.interest_due),
            'interest_paid': normalize(self.interest_paid),
            'interest_waived': normalize(self.interest_waived),
            'is_settled': self.is_settled,
        }


def iterate_cycles(disbursement_date: date, through: date,
                   paid_through: Optional[date] = None) -> Iterator[Tuple[int, int]]:
    """
    Yield (year, month) for every billable cycle.

    Starts the month after disbursement, or the month after paid_through when
    that is later, and ends with the month of `through`.
    """
    year, month = next_month(disbursement_date.year, disbursement_date.month)
    if paid_through is not None:
        watermark = next_month(paid_through.year, paid_through.month)
        if watermark > (year, month):
            year, month = watermark
    while (year, month) <= (through.year, through.month):
        yield year, month
        year, month = next_month(year, month)


def interest_for(billing_principal: Decimal, rate: Decimal) -> Decimal:
    """Interest due for one cycle, the single place currency rounding happens"""
    return round_currency(percent_of(billing_principal, rate))


def billing_principal_for(loan: Loan, returns: List[PrincipalReturn], year: int, month: int) -> Decimal:
    """
    Principal billed in a cycle: remaining-after of the latest return dated
    strictly before the cycle's first day, else the opening principal.
    """
    cycle_start = month_start(year, month)
    latest = None
    for entry in returns:
        if entry.return_date < cycle_start:
            latest = entry  # returns are ordered by (return_date, created_at)
    if latest is None:
        return loan.opening_billing_principal
    return latest.remaining_principal_after


def cycle_amounts(transactions: List[LedgerTransaction], year: int, month: int) -> Tuple[Decimal, Decimal]:
    """(interest paid, interest waived) for a cycle from approved entries by effective date"""
    paid = ZERO
    waived = ZERO
    for txn in transactions:
        if not txn.is_approved or txn.effective_date is None:
            continue
        if (txn.effective_date.year, txn.effective_date.month) != (year, month):
            continue
        if txn.transaction_type == TransactionType.INTEREST_PAYMENT:
            paid += txn.amount
        elif txn.transaction_type == TransactionType.INTEREST_WAIVER:
            waived += txn.amount
    return paid, waived


class BillingCalculator:
    """Derives monthly cycles, interest due and settlement for MONTHLY loans"""

    def __init__(self, repository: LedgerRepository):
        self.repository = repository

    def evaluation_date(self, loan: Loan, today: date) -> date:
        """Cycles run through the closure month for closed loans, else through today"""
        if loan.status == LoanStatus.CLOSED and loan.closure_date:
            return loan.closure_date
        return today

    def billing_principal(self, loan: Loan, year: int, month: int,
                          returns: Optional[List[PrincipalReturn]] = None) -> Decimal:
        if returns is None:
            returns = self.repository.principal_returns_for_loan(loan.id)
        return billing_principal_for(loan, returns, year, month)

    def interest_due(self, loan: Loan, year: int, month: int,
                     returns: Optional[List[PrincipalReturn]] = None) -> Decimal:
        return interest_for(self.billing_principal(loan, year, month, returns), loan.interest_rate)

    def cycle_status(self, loan: Loan, year: int, month: int,
                     transactions: Optional[List[LedgerTransaction]] = None,
                     returns: Optional[List[PrincipalReturn]] = None) -> CycleStatus:
        if transactions is None:
            transactions = self.repository.transactions_for_loan(loan.id)
        if returns is None:
            returns = self.repository.principal_returns_for_loan(loan.id)

        principal = billing_principal_for(loan, returns, year, month)
        paid, waived = cycle_amounts(transactions, year, month)
        return CycleStatus(
            cycle_year=year,
            cycle_month=month,
            due_date=due_date_for(year, month, loan.monthly_due_day),
            billing_principal=principal,
            interest_due=interest_for(principal, loan.interest_rate),
            interest_paid=paid,
            interest_waived=waived,
        )

    def cycles(self, loan: Loan, today: date) -> List[CycleStatus]:
        """Every cycle from the first billable month through the evaluation month"""
        transactions = self.repository.transactions_for_loan(loan.id)
        returns = self.repository.principal_returns_for_loan(loan.id)
        through = self.evaluation_date(loan, today)
        return [self.cycle_status(loan, year, month, transactions, returns)
                for year, month in iterate_cycles(loan.disbursement_date, through,
                                                  loan.last_interest_paid_through)]

    def all_cycles_settled(self, loan: Loan, today: date) -> bool:
        return all(cycle.is_settled for cycle in self.cycles(loan, today))

    def overdue_cycles(self, loan: Loan, today: date) -> List[CycleStatus]:
        """Unsettled cycles whose due date has been reached"""
        return [cycle for cycle in self.cycles(loan, today)
                if not cycle.is_settled and cycle.due_date <= today]

    def due_date_info(self, loan: Loan, today: date) -> Tuple[Optional[date], bool]:
        """
        (next_due_date, is_overdue).

        The first unsettled cycle gives the next due date and is overdue once
        its due date is reached. When every cycle is settled the next due date
        is the following month's.
        """
        if loan.status == LoanStatus.CLOSED:
            return None, False

        cycles = self.cycles(loan, today)
        for cycle in cycles:
            if not cycle.is_settled:
                return cycle.due_date, cycle.due_date <= today

        if cycles:
            year, month = next_month(cycles[-1].cycle_year, cycles[-1].cycle_month)
        else:
            first = next(iterate_cycles(loan.disbursement_date, date.max,
                                        loan.last_interest_paid_through))
            year, month = first
        return due_date_for(year, month, loan.monthly_due_day), False
