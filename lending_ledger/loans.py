"""
Loan Lifecycle Module

Creates MONTHLY and DAILY loans, renders loan views, and drives the status
state machine: ACTIVE -> CLOSED | DEFAULTED | CANCELLED, DEFAULTED -> CLOSED
| WRITTEN_OFF. Every write to a loan row goes through the version guard of
the repository.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .actors import Actor
from .audit import AuditEventType, AuditTrail
from .billing import BillingCalculator
from .borrowers import Borrower, BorrowerDirectory
from .dates import Clock, SystemClock, months_between
from .errors import BadRequestError, InvalidTransitionError, NotFoundError
from .logging_config import get_logger, log_action
from .models import (
    INITIAL_TRANSACTION_TYPES, OUTSTANDING_PENALTY_STATUSES,
    ApprovalStatus, LedgerTransaction, Loan, LoanStatus, LoanType, TransactionType, utc_now,
)
from .money import ZERO, normalize, round_currency, percent_of, sum_amounts
from .repository import LedgerRepository, new_id, paginate
from .schedule import compute_daily_terms, daily_summary, day_by_day
from .config import get_config
from .tenancy import require_tenant


class LoanManager:
    """
    Manages loan origination, views and status transitions
    """

    def __init__(
        self,
        repository: LedgerRepository,
        borrowers: BorrowerDirectory,
        audit_trail: AuditTrail,
        clock: Optional[Clock] = None
    ):
        self.repository = repository
        self.borrowers = borrowers
        self.audit_trail = audit_trail
        self.clock = clock or SystemClock()
        self.billing = BillingCalculator(repository)
        self.logger = get_logger("lending_ledger.loans")

    # Origination

    def resolve_parties(self, borrower_id: str,
                        guarantor_id: Optional[str]) -> Tuple[Borrower, Optional[Borrower]]:
        """Borrower and guarantor of a new loan, both from the current tenant"""
        if guarantor_id and guarantor_id == borrower_id:
            raise BadRequestError("Guarantor cannot be the same as borrower")
        borrower = self.borrowers.require(borrower_id, "Borrower")
        guarantor = self.borrowers.require(guarantor_id, "Guarantor") if guarantor_id else None
        return borrower, guarantor

    def new_loan(self, loan_type: LoanType, actor: Actor, borrower_id: str,
                 principal_amount: Decimal, interest_rate: Decimal, disbursement_date: date,
                 guarantor_id: Optional[str] = None, notes: Optional[str] = None,
                 **fields) -> Loan:
        """Unsaved loan with a fresh loan number, shared by origination and migration"""
        now = utc_now()
        return Loan(
            id=new_id(),
            created_at=now,
            updated_at=now,
            tenant_id=require_tenant(),
            loan_number=self.repository.next_loan_number(loan_type, disbursement_date.year),
            loan_type=loan_type,
            borrower_id=borrower_id,
            guarantor_id=guarantor_id,
            principal_amount=principal_amount,
            interest_rate=interest_rate,
            disbursement_date=disbursement_date,
            created_by=actor.id,
            notes=notes,
            **fields
        )

    def initial_transaction(self, loan: Loan, transaction_type: TransactionType,
                            amount: Decimal, actor: Actor) -> LedgerTransaction:
        """Approved opening entry dated at disbursement"""
        now = utc_now()
        txn = LedgerTransaction(
            id=new_id(),
            created_at=now,
            updated_at=now,
            tenant_id=loan.tenant_id,
            loan_id=loan.id,
            transaction_type=transaction_type,
            amount=amount,
            transaction_date=loan.disbursement_date,
            approval_status=ApprovalStatus.APPROVED,
            collected_by=actor.id,
            approved_by=actor.id,
            approved_at=now,
        )
        return self.repository.insert_transaction(txn)

    def create_monthly_loan(self, actor: Actor, borrower_id: str, principal_amount: Decimal,
                            interest_rate: Decimal, disbursement_date: date,
                            expected_months: Optional[int] = None, guarantor_id: Optional[str] = None,
                            notes: Optional[str] = None) -> Loan:
        """
        Originate a MONTHLY loan

        The advance interest for the first month is collected at disbursement;
        the due day of every later cycle is the disbursement day of month.
        """
        self.resolve_parties(borrower_id, guarantor_id)
        advance_interest = round_currency(percent_of(principal_amount, interest_rate))

        loan = self.new_loan(
            LoanType.MONTHLY, actor, borrower_id, principal_amount, interest_rate,
            disbursement_date, guarantor_id=guarantor_id, notes=notes,
            remaining_principal=principal_amount,
            billing_principal=principal_amount,
            advance_interest_amount=advance_interest,
            monthly_due_day=disbursement_date.day,
            expected_months=expected_months,
        )
        self.repository.insert_loan(loan)
        self.initial_transaction(loan, TransactionType.DISBURSEMENT, principal_amount, actor)
        self.initial_transaction(loan, TransactionType.ADVANCE_INTEREST, advance_interest, actor)

        self._log_created(loan, actor, AuditEventType.LOAN_CREATED, {
            'advance_interest_amount': advance_interest,
            'monthly_due_day': loan.monthly_due_day,
        })
        return loan

    def create_daily_loan(self, actor: Actor, borrower_id: str, principal_amount: Decimal,
                          interest_rate: Decimal, disbursement_date: date, term_days: int,
                          grace_days: Optional[int] = None, guarantor_id: Optional[str] = None,
                          notes: Optional[str] = None) -> Loan:
        """Originate a DAILY loan; no advance interest is taken"""
        self.resolve_parties(borrower_id, guarantor_id)
        terms = compute_daily_terms(principal_amount, interest_rate, term_days, disbursement_date)

        loan = self.new_loan(
            LoanType.DAILY, actor, borrower_id, principal_amount, interest_rate,
            disbursement_date, guarantor_id=guarantor_id, notes=notes,
            term_days=term_days,
            total_repayment_amount=terms.total_repayment_amount,
            daily_payment_amount=terms.daily_payment_amount,
            term_end_date=terms.term_end_date,
            grace_days=get_config().default_grace_days if grace_days is None else grace_days,
            total_collected=ZERO,
        )
        self.repository.insert_loan(loan)
        self.initial_transaction(loan, TransactionType.DISBURSEMENT, principal_amount, actor)

        self._log_created(loan, actor, AuditEventType.LOAN_CREATED, {
            'term_days': term_days,
            'total_repayment_amount': terms.total_repayment_amount,
            'daily_payment_amount': terms.daily_payment_amount,
        })
        return loan

    def _log_created(self, loan: Loan, actor: Actor, event_type: AuditEventType,
                     metadata: Dict[str, Any]) -> None:
        metadata = dict(metadata, loan_number=loan.loan_number, loan_type=loan.loan_type.value,
                        borrower_id=loan.borrower_id, principal_amount=loan.principal_amount,
                        interest_rate=loan.interest_rate)
        self.audit_trail.log_event(event_type, "loan", loan.id, metadata, user_id=actor.id)
        log_action(
            self.logger, "info", f"Loan {loan.loan_number} {event_type.value.split('_')[-1]}",
            user_id=actor.id, action=event_type.value, resource=f"loan:{loan.id}",
            tenant_id=loan.tenant_id,
            extra={'loan_type': loan.loan_type.value, 'principal_amount': str(loan.principal_amount)}
        )

    # Views

    def _party_fields(self, loan: Loan) -> Dict[str, Any]:
        borrower = self.borrowers.get(loan.borrower_id)
        guarantor = self.borrowers.get(loan.guarantor_id) if loan.guarantor_id else None
        return {
            'borrower_name': borrower.full_name if borrower else None,
            'borrower_is_defaulter': bool(borrower and borrower.is_defaulter),
            'guarantor_name': guarantor.full_name if guarantor else None,
        }

    def loan_view(self, loan: Loan) -> Dict[str, Any]:
        """Entity view of a loan with borrower and guarantor names"""
        view = loan.to_view()
        view.update(self._party_fields(loan))
        return view

    def detail_view(self, loan: Loan) -> Dict[str, Any]:
        """Loan view plus the fields derived from the ledger"""
        today = self.clock.today()
        view = self.loan_view(loan)
        if loan.is_monthly:
            view.update(self._monthly_detail(loan, today))
        else:
            outstanding = self.outstanding_penalties(loan)
            view.update(daily_summary(loan, today, outstanding))
        return view

    def _monthly_detail(self, loan: Loan, today: date) -> Dict[str, Any]:
        interest_types = (TransactionType.INTEREST_PAYMENT, TransactionType.ADVANCE_INTEREST)
        collected = sum_amounts(
            txn.amount for txn in self.repository.transactions_for_loan(loan.id)
            if txn.is_approved and txn.transaction_type in interest_types
        )
        next_due, overdue = self.billing.due_date_info(loan, today)
        evaluation = self.billing.evaluation_date(loan, today)
        return {
            'monthly_interest_due': normalize(
                self.billing.interest_due(loan, evaluation.year, evaluation.month)),
            'next_due_date': next_due.isoformat() if next_due else None,
            'is_overdue': overdue,
            'total_interest_collected': normalize(collected),
            'months_active': max(months_between(loan.disbursement_date, evaluation), 0),
        }

    def outstanding_penalties(self, loan: Loan) -> Decimal:
        return sum_amounts(
            penalty.outstanding for penalty in self.repository.penalties_for_loan(loan.id)
            if penalty.status in OUTSTANDING_PENALTY_STATUSES
        )

    def list_loans(self, actor: Optional[Actor] = None, loan_type: Optional[LoanType] = None,
                   status: Optional[LoanStatus] = None, borrower_id: Optional[str] = None,
                   search: Optional[str] = None, page: Optional[int] = None,
                   limit: Optional[int] = None) -> Dict[str, Any]:
        """
        Paginated loans, newest first

        Collectors only ever see ACTIVE loans whatever status filter they pass.
        """
        if actor is not None and not actor.is_privileged:
            status = LoanStatus.ACTIVE
        needle = search.lower() if search else None

        def matches(loan: Loan) -> bool:
            if loan_type and loan.loan_type != loan_type:
                return False
            if status and loan.status != status:
                return False
            if borrower_id and loan.borrower_id != borrower_id:
                return False
            if needle and needle not in loan.loan_number.lower():
                return False
            return True

        loans = sorted(self.repository.list_loans(matches), key=lambda l: l.created_at, reverse=True)
        return paginate(loans, page, limit, self.loan_view)

    def get_loan(self, loan_id: str) -> Dict[str, Any]:
        return self.detail_view(self.repository.require_loan(loan_id))

    def get_loan_transactions(self, loan_id: str, page: Optional[int] = None,
                              limit: Optional[int] = None) -> Dict[str, Any]:
        """Ledger of one loan, latest transaction date first"""
        self.repository.require_loan(loan_id)
        transactions = self.repository.transactions_for_loan(loan_id)
        transactions.sort(key=lambda t: (t.transaction_date, t.created_at), reverse=True)
        return paginate(transactions, page, limit, LedgerTransaction.to_view)

    def get_payment_status(self, loan_id: str) -> Dict[str, Any]:
        """Cycle-by-cycle (MONTHLY) or day-by-day (DAILY) payment status"""
        loan = self.repository.require_loan(loan_id)
        today = self.clock.today()
        result = {
            'loan_id': loan.id,
            'loan_number': loan.loan_number,
            'loan_type': loan.loan_type.value,
        }
        if loan.is_monthly:
            result['cycles'] = [cycle.to_view() for cycle in self.billing.cycles(loan, today)]
            return result

        transactions = self.repository.transactions_for_loan(loan.id)
        result.update({
            'total_repayment_amount': normalize(loan.total_repayment_amount),
            'daily_payment_amount': normalize(loan.daily_payment_amount),
            'total_collected': normalize(loan.total_collected),
            'days': [day.to_view() for day in day_by_day(loan, transactions, today)],
        })
        return result

    # Status transitions

    def _require_transition(self, loan: Loan, target: LoanStatus) -> None:
        if not loan.can_transition_to(target):
            raise InvalidTransitionError(
                f"Cannot move a {loan.status.value} loan to {target.value}",
                {'loan_id': loan.id, 'from': loan.status.value, 'to': target.value}
            )

    def _log_transition(self, loan: Loan, actor: Actor, event_type: AuditEventType,
                        previous: LoanStatus, reason: Optional[str] = None) -> None:
        self.audit_trail.log_event(
            event_type, "loan", loan.id,
            {'loan_number': loan.loan_number, 'from_status': previous, 'to_status': loan.status,
             'reason': reason, 'version': loan.version},
            user_id=actor.id
        )
        log_action(
            self.logger, "info", f"Loan {loan.loan_number} {previous.value} -> {loan.status.value}",
            user_id=actor.id, action=event_type.value, resource=f"loan:{loan.id}",
            tenant_id=loan.tenant_id, extra={'reason': reason} if reason else None
        )

    def close_loan(self, loan_id: str, actor: Actor) -> Loan:
        """
        Close a fully repaid loan

        MONTHLY loans need zero remaining principal and every cycle settled;
        DAILY loans need the full repayment collected and no outstanding penalty.
        """
        loan = self.repository.require_loan(loan_id)
        self._require_transition(loan, LoanStatus.CLOSED)
        today = self.clock.today()

        if loan.is_monthly:
            if loan.remaining_principal != ZERO:
                raise BadRequestError("Cannot close loan with remaining principal",
                                      {'remaining_principal': str(loan.remaining_principal)})
            if not self.billing.all_cycles_settled(loan, today):
                raise BadRequestError("Cannot close loan with unsettled interest cycles")
        else:
            if loan.total_collected < loan.total_repayment_amount:
                raise BadRequestError(
                    "Cannot close loan: total collected is less than total repayment amount")
            if any(p.status in OUTSTANDING_PENALTY_STATUSES
                   for p in self.repository.penalties_for_loan(loan.id)):
                raise BadRequestError("Cannot close loan with outstanding penalties")

        previous = loan.status
        loan = self.repository.update_loan(
            loan, status=LoanStatus.CLOSED, closure_date=today,
            closed_at=utc_now(), closed_by=actor.id
        )
        self._log_transition(loan, actor, AuditEventType.LOAN_CLOSED, previous)
        return loan

    def default_loan(self, loan_id: str, actor: Actor, reason: Optional[str] = None) -> Loan:
        """Mark an ACTIVE loan defaulted and flag its borrower as a defaulter"""
        loan = self.repository.require_loan(loan_id)
        self._require_transition(loan, LoanStatus.DEFAULTED)

        previous = loan.status
        loan = self.repository.update_loan(
            loan, status=LoanStatus.DEFAULTED, defaulted_at=utc_now(),
            defaulted_by=actor.id, status_reason=reason
        )
        borrower = self.borrowers.get(loan.borrower_id)
        if borrower is None:
            raise NotFoundError("Borrower not found", {'customer_id': loan.borrower_id})
        if not borrower.is_defaulter:
            self.borrowers.mark_defaulter(borrower.id)
            self.audit_trail.log_event(
                AuditEventType.BORROWER_FLAGGED_DEFAULTER, "borrower", borrower.id,
                {'loan_id': loan.id}, user_id=actor.id
            )
        self._log_transition(loan, actor, AuditEventType.LOAN_DEFAULTED, previous, reason)
        return loan

    def write_off_loan(self, loan_id: str, actor: Actor, reason: Optional[str] = None) -> Loan:
        """Write off a DEFAULTED loan"""
        loan = self.repository.require_loan(loan_id)
        self._require_transition(loan, LoanStatus.WRITTEN_OFF)

        previous = loan.status
        loan = self.repository.update_loan(
            loan, status=LoanStatus.WRITTEN_OFF, written_off_at=utc_now(),
            written_off_by=actor.id, status_reason=reason
        )
        self._log_transition(loan, actor, AuditEventType.LOAN_WRITTEN_OFF, previous, reason)
        return loan

    def cancel_loan(self, loan_id: str, actor: Actor, reason: Optional[str] = None) -> Loan:
        """
        Cancel an ACTIVE loan that has no activity

        Any transaction besides the opening entries, pending or approved,
        blocks cancellation.
        """
        loan = self.repository.require_loan(loan_id)
        self._require_transition(loan, LoanStatus.CANCELLED)

        activity = self._activity(loan.id)
        if activity:
            raise BadRequestError(
                "Cannot cancel a loan with recorded transactions",
                {'transaction_count': len(activity)}
            )

        previous = loan.status
        loan = self.repository.update_loan(
            loan, status=LoanStatus.CANCELLED, cancelled_at=utc_now(),
            cancelled_by=actor.id, status_reason=reason
        )
        self._log_transition(loan, actor, AuditEventType.LOAN_CANCELLED, previous, reason)
        return loan

    def _activity(self, loan_id: str) -> List[LedgerTransaction]:
        return [
            txn for txn in self.repository.transactions_for_loan(loan_id)
            if txn.transaction_type not in INITIAL_TRANSACTION_TYPES
            and txn.approval_status in (ApprovalStatus.PENDING, ApprovalStatus.APPROVED)
        ]
