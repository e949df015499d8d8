"""
Penalty Engine

Penalties are charged on overdue DAILY loans one "penalty month" at a time.
Every month ever charged counts against later impositions, including months
of penalties that were waived afterwards. Waivers of penalties and of
monthly interest are written to the ledger as APPROVED waiver transactions.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from .actors import Actor
from .audit import AuditEventType, AuditTrail
from .config import get_config
from .dates import Clock, SystemClock
from .errors import BadRequestError, LoanNotActiveError, NoNewPenaltyDueError, WrongLoanTypeError
from .logging_config import get_logger, log_action
from .models import (
    ApprovalStatus, LedgerTransaction, Loan, Penalty, PenaltyStatus, TransactionType,
    WAIVER_TYPES, utc_now,
)
from .money import ZERO, percent_of
from .repository import LedgerRepository, new_id, paginate
from .schedule import days_past_threshold


def penalty_months(days_overdue: int) -> int:
    """Months owed for a number of overdue days, any started month counts"""
    period = get_config().penalty_month_days
    return -(-days_overdue // period)


def monthly_penalty(loan: Loan, months: int) -> Decimal:
    """principal x rate / 100 for each charged month, at full precision"""
    return percent_of(loan.principal_amount, loan.interest_rate) * months


class PenaltyEngine:
    """Imposes and waives penalties, waives interest and lists waivers"""

    def __init__(self, repository: LedgerRepository, audit_trail: AuditTrail,
                 clock: Optional[Clock] = None):
        self.repository = repository
        self.audit_trail = audit_trail
        self.clock = clock or SystemClock()
        self.logger = get_logger("lending_ledger.penalties")

    def impose_penalty(self, loan_id: str, actor: Actor, override_amount: Optional[Decimal] = None,
                       notes: Optional[str] = None) -> Dict[str, Any]:
        """
        Charge the overdue months not yet covered by an earlier penalty

        Returns:
            {'penalty': penalty view, 'calculation': how the months were counted}

        Raises:
            WrongLoanTypeError: Loan is MONTHLY
            LoanNotActiveError: Loan is CLOSED, CANCELLED or WRITTEN_OFF
            BadRequestError: Loan is not past term end + grace days
            NoNewPenaltyDueError: Every overdue month is already charged
        """
        loan = self.repository.require_loan(loan_id)
        if not loan.is_daily:
            raise WrongLoanTypeError("Penalties can only be imposed on DAILY loans")
        if loan.is_terminal:
            raise LoanNotActiveError(f"Cannot impose penalty on a {loan.status.value} loan")

        today = self.clock.today()
        days_overdue = days_past_threshold(loan, today)
        if days_overdue <= 0:
            raise BadRequestError("Loan is not overdue")

        total_months = penalty_months(days_overdue)
        already_charged = sum(p.months_charged for p in self.repository.penalties_for_loan(loan.id))
        incremental = total_months - already_charged
        if incremental <= 0:
            raise NoNewPenaltyDueError(
                "No new penalty months to charge, all overdue months are already covered",
                {'total_months_owed': total_months, 'months_already_penalised': already_charged}
            )

        calculated = monthly_penalty(loan, incremental)
        overridden = override_amount is not None
        amount = override_amount if overridden else calculated

        now = utc_now()
        penalty = Penalty(
            id=new_id(),
            created_at=now,
            updated_at=now,
            tenant_id=loan.tenant_id,
            loan_id=loan.id,
            days_overdue=days_overdue,
            months_charged=incremental,
            penalty_amount=amount,
            net_payable=amount,
            status=PenaltyStatus.PENDING,
            imposed_date=today,
            calculated_amount=calculated,
            was_overridden=overridden,
            created_by=actor.id,
            notes=notes,
        )
        self.repository.save_penalty(penalty)

        self.audit_trail.log_event(
            AuditEventType.PENALTY_IMPOSED, "penalty", penalty.id,
            {'loan_id': loan.id, 'months_charged': incremental, 'penalty_amount': amount,
             'calculated_amount': calculated, 'was_overridden': overridden},
            user_id=actor.id
        )
        log_action(
            self.logger, "info", f"Penalty of {amount} imposed on {loan.loan_number}",
            user_id=actor.id, action="impose_penalty", resource=f"loan:{loan.id}",
            tenant_id=loan.tenant_id, extra={'penalty_id': penalty.id, 'months_charged': incremental}
        )
        return {
            'penalty': penalty.to_view(),
            'calculation': {
                'days_overdue': days_overdue,
                'total_months_owed': total_months,
                'months_already_penalised': already_charged,
                'incremental_months': incremental,
                'calculated_amount': calculated,
                'was_overridden': overridden,
            },
        }

    def list_penalties(self, loan_id: str, page: Optional[int] = None,
                       limit: Optional[int] = None) -> Dict[str, Any]:
        self.repository.require_loan(loan_id)
        penalties = list(reversed(self.repository.penalties_for_loan(loan_id)))
        return paginate(penalties, page, limit, Penalty.to_view)

    def waive_penalty(self, penalty_id: str, actor: Actor, waive_amount: Decimal,
                      notes: Optional[str] = None) -> Dict[str, Any]:
        """
        Waive part or all of a penalty under its row lock

        The waiver reduces net payable; the status is recomputed from what
        has been collected against the new net payable.
        """
        if waive_amount <= ZERO:
            raise BadRequestError("Waive amount must be positive")
        penalty = self.repository.lock_penalty(penalty_id)
        if penalty.status == PenaltyStatus.PAID:
            raise BadRequestError("Cannot waive a PAID penalty")
        if penalty.status == PenaltyStatus.WAIVED:
            raise BadRequestError("Cannot waive an already WAIVED penalty")

        waivable = penalty.penalty_amount - penalty.waived_amount
        if waive_amount > waivable:
            raise BadRequestError(f"Waive amount exceeds waivable amount (max: {waivable})",
                                  {'max_waivable': str(waivable)})

        penalty.waived_amount += waive_amount
        penalty.net_payable = penalty.penalty_amount - penalty.waived_amount
        penalty.status = penalty.derive_status()
        self.repository.save_penalty(penalty)

        waiver = self._waiver_transaction(penalty.loan_id, actor, TransactionType.PENALTY_WAIVER,
                                          waive_amount, penalty_id=penalty.id, notes=notes)
        self.audit_trail.log_event(
            AuditEventType.PENALTY_WAIVED, "penalty", penalty.id,
            {'loan_id': penalty.loan_id, 'waive_amount': waive_amount,
             'net_payable': penalty.net_payable, 'status': penalty.status},
            user_id=actor.id
        )
        log_action(
            self.logger, "info", f"Penalty {penalty.id} waived by {waive_amount}",
            user_id=actor.id, action="waive_penalty", resource=f"loan:{penalty.loan_id}",
            tenant_id=penalty.tenant_id, extra={'status': penalty.status.value}
        )
        return {'penalty': penalty.to_view(), 'waiver': waiver.to_view()}

    def waive_interest(self, loan_id: str, actor: Actor, effective_date: date,
                       waive_amount: Decimal, notes: Optional[str] = None) -> LedgerTransaction:
        """Waive interest of the MONTHLY cycle that contains effective_date"""
        if waive_amount <= ZERO:
            raise BadRequestError("Waive amount must be positive")
        loan = self.repository.require_loan(loan_id)
        if not loan.is_monthly:
            raise WrongLoanTypeError("Interest waivers are only for MONTHLY loans")
        if loan.is_terminal:
            raise LoanNotActiveError(f"Cannot waive interest on a {loan.status.value} loan")

        waiver = self._waiver_transaction(loan.id, actor, TransactionType.INTEREST_WAIVER,
                                          waive_amount, effective_date=effective_date, notes=notes)
        self.audit_trail.log_event(
            AuditEventType.INTEREST_WAIVED, "loan", loan.id,
            {'waive_amount': waive_amount, 'effective_date': effective_date, 'transaction_id': waiver.id},
            user_id=actor.id
        )
        log_action(
            self.logger, "info", f"Interest of {waive_amount} waived on {loan.loan_number}",
            user_id=actor.id, action="waive_interest", resource=f"loan:{loan.id}",
            tenant_id=loan.tenant_id, extra={'cycle': effective_date.strftime("%Y-%m")}
        )
        return waiver

    def _waiver_transaction(self, loan_id: str, actor: Actor, transaction_type: TransactionType,
                            amount: Decimal, effective_date: Optional[date] = None,
                            penalty_id: Optional[str] = None,
                            notes: Optional[str] = None) -> LedgerTransaction:
        now = utc_now()
        txn = LedgerTransaction(
            id=new_id(),
            created_at=now,
            updated_at=now,
            tenant_id=self.repository.require_loan(loan_id).tenant_id,
            loan_id=loan_id,
            transaction_type=transaction_type,
            amount=amount,
            transaction_date=self.clock.today(),
            approval_status=ApprovalStatus.APPROVED,
            effective_date=effective_date,
            penalty_id=penalty_id,
            collected_by=actor.id,
            approved_by=actor.id,
            approved_at=now,
            notes=notes,
        )
        return self.repository.insert_transaction(txn)

    def list_waivers(self, loan_id: str, page: Optional[int] = None,
                     limit: Optional[int] = None) -> Dict[str, Any]:
        """APPROVED penalty and interest waivers of a loan, newest first"""
        self.repository.require_loan(loan_id)
        waivers = [txn for txn in self.repository.transactions_for_loan(loan_id)
                   if txn.transaction_type in WAIVER_TYPES and txn.is_approved]
        waivers.reverse()
        return paginate(waivers, page, limit, LedgerTransaction.to_view)
