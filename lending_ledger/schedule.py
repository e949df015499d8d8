"""
Daily Schedule Calculator (DAILY loans)

A DAILY loan repays principal x (1 + rate/100 x termDays/30) in termDays equal
instalments starting the day after disbursement. Overdue detection starts
once the grace period after the term end has passed.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .config import get_config
from .dates import add_days, days_between
from .models import Loan, LoanStatus, LedgerTransaction, TransactionType
from .money import HUNDRED, ZERO, clamp_non_negative, floor_div, normalize, round_currency, to_decimal


@dataclass(frozen=True)
class DailyTerms:
    """Derived repayment terms of a DAILY loan"""
    total_repayment_amount: Decimal
    daily_payment_amount: Decimal
    term_end_date: date


def compute_daily_terms(principal: Decimal, rate: Decimal, term_days: int,
                        disbursement_date: date) -> DailyTerms:
    """
    Total repayment, daily instalment and term end.

    The instalment is rounded half-up to currency precision and the total is
    restated as instalment x termDays, so the two always agree exactly. When
    the formula divides evenly (the usual case) nothing moves.
    """
    if term_days <= 0:
        raise ValueError("term_days must be positive")
    period = Decimal(get_config().daily_rate_period_days)
    principal = to_decimal(principal)
    exact_total = principal + principal * to_decimal(rate) * Decimal(term_days) / (HUNDRED * period)
    daily = round_currency(exact_total / Decimal(term_days))
    return DailyTerms(
        total_repayment_amount=daily * Decimal(term_days),
        daily_payment_amount=daily,
        term_end_date=add_days(disbursement_date, term_days),
    )


def overdue_threshold(loan: Loan) -> date:
    """Last day before the loan counts as overdue: term end + grace days"""
    return add_days(loan.term_end_date, loan.grace_days or 0)


def is_overdue(loan: Loan, today: date) -> bool:
    return (loan.status == LoanStatus.ACTIVE
            and today > overdue_threshold(loan)
            and loan.total_collected < loan.total_repayment_amount)


def days_overdue(loan: Loan, today: date) -> int:
    """Whole days past the overdue threshold, 0 when not overdue"""
    if not is_overdue(loan, today):
        return 0
    return days_between(overdue_threshold(loan), today)


def days_past_threshold(loan: Loan, today: date) -> int:
    """Days past term end + grace regardless of status, used by penalty imposition"""
    return max(days_between(overdue_threshold(loan), today), 0)


def total_remaining(loan: Loan) -> Decimal:
    return clamp_non_negative(loan.total_repayment_amount - loan.total_collected)


def days_elapsed(loan: Loan, today: date) -> int:
    """Instalment days that have started, capped at the term"""
    return min(max(days_between(loan.disbursement_date, today), 0), loan.term_days)


@dataclass
class ScheduleDay:
    day_number: int
    date: date
    daily_payment_amount: Decimal
    amount_collected: Decimal
    cumulative_collected: Decimal
    is_covered: bool

    def to_view(self) -> Dict[str, Any]:
        return {
            'day_number': self.day_number,
            'date': self.date.isoformat(),
            'daily_payment_amount': normalize(self.daily_payment_amount),
            'amount_collected': normalize(self.amount_collected),
            'cumulative_collected': normalize(self.cumulative_collected),
            'is_covered': self.is_covered,
        }


def day_by_day(loan: Loan, transactions: List[LedgerTransaction], today: date) -> List[ScheduleDay]:
    """
    Coverage of each instalment day from disbursement+1 through min(today, term end).

    Opening balances and collections dated on or before the disbursement date
    seed the running total.
    """
    by_date: Dict[date, Decimal] = {}
    carried = ZERO
    for txn in transactions:
        if not txn.is_approved:
            continue
        if txn.transaction_type == TransactionType.OPENING_BALANCE:
            carried += txn.amount
        elif txn.transaction_type == TransactionType.DAILY_COLLECTION:
            if txn.transaction_date <= loan.disbursement_date:
                carried += txn.amount
            else:
                by_date[txn.transaction_date] = by_date.get(txn.transaction_date, ZERO) + txn.amount

    end = min(today, loan.term_end_date)
    daily = loan.daily_payment_amount
    cumulative = carried
    days = []
    for day_number in range(1, loan.term_days + 1):
        day = add_days(loan.disbursement_date, day_number)
        if day > end:
            break
        collected = by_date.get(day, ZERO)
        cumulative += collected
        days.append(ScheduleDay(
            day_number=day_number,
            date=day,
            daily_payment_amount=daily,
            amount_collected=collected,
            cumulative_collected=cumulative,
            is_covered=cumulative >= daily * day_number,
        ))
    return days


def daily_summary(loan: Loan, today: date, outstanding_penalties: Optional[Decimal] = None) -> Dict[str, Any]:
    """Derived fields of the DAILY loan detail view"""
    overdue = is_overdue(loan, today)
    paid_days = floor_div(loan.total_collected, loan.daily_payment_amount)
    summary = {
        'total_remaining': normalize(total_remaining(loan)),
        'days_paid': min(paid_days, loan.term_days),
        'days_remaining': max(loan.term_days - paid_days, 0),
        'days_elapsed': days_elapsed(loan, loan.closure_date or today),
        'is_overdue': overdue,
        'days_overdue': days_overdue(loan, today),
        'is_base_paid': loan.total_collected >= loan.total_repayment_amount,
    }
    if outstanding_penalties is not None:
        summary['outstanding_penalties'] = normalize(outstanding_penalties)
    return summary
