"""
Transaction Ledger Module

Records money movements against loans, splits interest overpayments into an
interest and a principal part, reverses approved entries with corrective
rows, and runs the PENDING -> APPROVED | REJECTED approval workflow.

Side effects on the loan (total collected, remaining principal, penalty
collection) are applied only to APPROVED entries, either at recording time
for privileged actors or later on approval.
"""

from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from .actors import Actor
from .audit import AuditEventType, AuditTrail
from .billing import BillingCalculator
from .borrowers import BorrowerDirectory
from .dates import Clock, SystemClock
from .errors import (
    AlreadyCorrectedError, AlreadyDecidedError, BadRequestError, LedgerError,
    LoanNotActiveError, NotFoundError, OverpaymentExceedsPrincipalError, WrongLoanTypeError,
)
from .logging_config import get_logger, log_action
from .models import (
    OUTSTANDING_PENALTY_STATUSES, ApprovalStatus, LedgerTransaction, Loan, LoanStatus,
    Penalty, PenaltyStatus, PrincipalReturn, TransactionType, utc_now,
)
from .money import ZERO, clamp_non_negative
from .repository import LedgerRepository, new_id, paginate

DAILY_ONLY_TYPES = (TransactionType.DAILY_COLLECTION, TransactionType.PENALTY)
MONTHLY_ONLY_TYPES = (TransactionType.INTEREST_PAYMENT, TransactionType.PRINCIPAL_RETURN)


class TransactionProcessor:
    """
    Records, corrects and approves ledger transactions
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
        self.logger = get_logger("lending_ledger.transactions")

    def record_transaction(
        self,
        actor: Actor,
        loan_id: str,
        transaction_type: TransactionType,
        amount: Decimal,
        transaction_date: date,
        effective_date: Optional[date] = None,
        penalty_id: Optional[str] = None,
        corrected_transaction_id: Optional[str] = None,
        notes: Optional[str] = None
    ) -> List[LedgerTransaction]:
        """
        Record a transaction against a loan

        Returns:
            The created rows: two for a split interest overpayment, else one

        Raises:
            NotFoundError: Loan, penalty or corrected transaction missing
            LoanNotActiveError: Loan is CLOSED, CANCELLED or WRITTEN_OFF
            WrongLoanTypeError: Transaction type does not fit the loan type
            OverpaymentExceedsPrincipalError: Principal part of a split is too large
        """
        loan = self.repository.require_loan(loan_id)
        if loan.is_terminal:
            raise LoanNotActiveError(
                f"Cannot record transactions on a {loan.status.value} loan",
                {'loan_id': loan.id, 'status': loan.status.value}
            )

        if corrected_transaction_id:
            actor.require_privileged("create corrective transactions")
            return [self._record_correction(loan, actor, transaction_type, amount, transaction_date,
                                            effective_date, corrected_transaction_id, notes)]

        if transaction_type == TransactionType.GUARANTOR_PAYMENT:
            if loan.status != LoanStatus.DEFAULTED:
                raise BadRequestError("GUARANTOR_PAYMENT is only allowed on DEFAULTED loans")
        elif transaction_type in DAILY_ONLY_TYPES and not loan.is_daily:
            raise WrongLoanTypeError(f"{transaction_type.value} is only for DAILY loans")
        elif transaction_type in MONTHLY_ONLY_TYPES and not loan.is_monthly:
            raise WrongLoanTypeError(f"{transaction_type.value} is only for MONTHLY loans")

        if amount <= ZERO:
            raise BadRequestError("Amount must be positive")

        if transaction_type == TransactionType.INTEREST_PAYMENT:
            # The billing-principal sync may bump the version; carry the synced row on
            loan, created = self._record_interest_payment(loan, actor, amount, transaction_date,
                                                          effective_date, notes)
        elif transaction_type == TransactionType.PRINCIPAL_RETURN:
            if amount > loan.remaining_principal:
                raise BadRequestError("Amount exceeds remaining principal",
                                      {'remaining_principal': str(loan.remaining_principal)})
            created = [self._new_transaction(loan, actor, transaction_type, amount,
                                             transaction_date, notes=notes)]
        elif transaction_type == TransactionType.PENALTY:
            penalty = self._payable_penalty(loan, penalty_id, amount)
            created = [self._new_transaction(loan, actor, transaction_type, amount, transaction_date,
                                             penalty_id=penalty.id, notes=notes)]
        else:
            created = [self._new_transaction(loan, actor, transaction_type, amount,
                                             transaction_date, notes=notes)]

        for txn in created:
            if txn.is_approved:
                loan = self._apply_side_effects(loan, txn, actor)
            self._log_recorded(loan, txn, actor)
        return created

    def _new_transaction(self, loan: Loan, actor: Actor, transaction_type: TransactionType,
                         amount: Decimal, transaction_date: date, effective_date: Optional[date] = None,
                         penalty_id: Optional[str] = None, corrected_transaction_id: Optional[str] = None,
                         notes: Optional[str] = None, approved: Optional[bool] = None) -> LedgerTransaction:
        """Insert one row; privileged actors get APPROVED, everyone else PENDING"""
        if approved is None:
            approved = actor.is_privileged
        now = utc_now()
        txn = LedgerTransaction(
            id=new_id(),
            created_at=now,
            updated_at=now,
            tenant_id=loan.tenant_id,
            loan_id=loan.id,
            transaction_type=transaction_type,
            amount=amount,
            transaction_date=transaction_date,
            approval_status=ApprovalStatus.APPROVED if approved else ApprovalStatus.PENDING,
            effective_date=effective_date,
            penalty_id=penalty_id,
            corrected_transaction_id=corrected_transaction_id,
            collected_by=actor.id,
            approved_by=actor.id if approved else None,
            approved_at=now if approved else None,
            notes=notes,
        )
        return self.repository.insert_transaction(txn)

    # Interest payments

    def sync_billing_principal(self, loan: Loan, year: int, month: int, actor: Actor) -> Loan:
        """Correct the cached billing principal when it disagrees with the cycle's"""
        expected = self.billing.billing_principal(loan, year, month)
        if loan.billing_principal == expected:
            return loan
        previous = loan.billing_principal
        loan = self.repository.update_loan(loan, billing_principal=expected)
        self.audit_trail.log_event(
            AuditEventType.BILLING_PRINCIPAL_SYNCED, "loan", loan.id,
            {'previous': previous, 'billing_principal': expected, 'cycle': f"{year}-{month:02d}"},
            user_id=actor.id
        )
        return loan

    def _record_interest_payment(self, loan: Loan, actor: Actor, amount: Decimal,
                                 transaction_date: date, effective_date: Optional[date],
                                 notes: Optional[str]) -> Tuple[Loan, List[LedgerTransaction]]:
        if effective_date is None:
            raise BadRequestError("effective_date is required for INTEREST_PAYMENT")
        year, month = effective_date.year, effective_date.month

        if actor.is_privileged:
            loan = self.sync_billing_principal(loan, year, month, actor)
        interest_due = self.billing.interest_due(loan, year, month)

        if amount <= interest_due:
            return loan, [self._new_transaction(loan, actor, TransactionType.INTEREST_PAYMENT, amount,
                                                transaction_date, effective_date=effective_date,
                                                notes=notes)]

        principal_portion = amount - interest_due
        if principal_portion > loan.remaining_principal:
            raise OverpaymentExceedsPrincipalError(
                "Overpayment exceeds remaining principal",
                {'principal_portion': str(principal_portion),
                 'remaining_principal': str(loan.remaining_principal)}
            )

        interest_txn = self._new_transaction(loan, actor, TransactionType.INTEREST_PAYMENT, interest_due,
                                             transaction_date, effective_date=effective_date, notes=notes)
        principal_txn = self._new_transaction(
            loan, actor, TransactionType.PRINCIPAL_RETURN, principal_portion, transaction_date,
            notes=f"Auto-split: {notes}" if notes else "Auto-split from overpayment"
        )
        return loan, [interest_txn, principal_txn]

    # Penalty payments

    def _payable_penalty(self, loan: Loan, penalty_id: Optional[str], amount: Decimal) -> Penalty:
        """Explicit penalty of the loan, or its oldest unpaid one"""
        if penalty_id:
            penalty = self.repository.require_penalty(penalty_id)
            if penalty.loan_id != loan.id:
                raise BadRequestError("Penalty does not belong to this loan")
        else:
            unpaid = [p for p in self.repository.penalties_for_loan(loan.id)
                      if p.status in OUTSTANDING_PENALTY_STATUSES]
            if not unpaid:
                raise BadRequestError("No unpaid penalties found for this loan")
            penalty = unpaid[0]

        if penalty.status in (PenaltyStatus.PAID, PenaltyStatus.WAIVED):
            raise BadRequestError(f"Cannot pay a {penalty.status.value} penalty")
        if amount > penalty.outstanding:
            raise BadRequestError(
                f"Amount exceeds remaining penalty balance (max: {penalty.outstanding})",
                {'penalty_id': penalty.id, 'remaining': str(penalty.outstanding)}
            )
        return penalty

    def _collect_on_penalty(self, penalty_id: str, amount: Decimal) -> Penalty:
        penalty = self.repository.lock_penalty(penalty_id)
        penalty.amount_collected = clamp_non_negative(penalty.amount_collected + amount)
        penalty.status = penalty.derive_status()
        return self.repository.save_penalty(penalty)

    # Side effects

    def _apply_side_effects(self, loan: Loan, txn: LedgerTransaction, actor: Actor) -> Loan:
        """
        Apply an APPROVED row to the loan aggregate

        Corrections carry negative amounts, so the same arithmetic reverses
        the original entry.
        """
        kind = txn.transaction_type
        if kind == TransactionType.DAILY_COLLECTION or (
                kind == TransactionType.GUARANTOR_PAYMENT and loan.is_daily):
            return self.repository.update_loan(loan, total_collected=loan.total_collected + txn.amount)

        if kind == TransactionType.PRINCIPAL_RETURN:
            remaining = loan.remaining_principal - txn.amount
            if remaining < ZERO:
                raise BadRequestError("Amount exceeds remaining principal",
                                      {'remaining_principal': str(loan.remaining_principal)})
            loan = self.repository.update_loan(loan, remaining_principal=remaining)
            now = utc_now()
            self.repository.insert_principal_return(PrincipalReturn(
                id=new_id(),
                created_at=now,
                updated_at=now,
                tenant_id=loan.tenant_id,
                loan_id=loan.id,
                transaction_id=txn.id,
                amount_returned=txn.amount,
                remaining_principal_after=remaining,
                return_date=txn.transaction_date,
                created_by=actor.id,
            ))
            return loan

        if kind == TransactionType.PENALTY and txn.penalty_id:
            self._collect_on_penalty(txn.penalty_id, txn.amount)
        return loan

    # Corrections

    def _record_correction(self, loan: Loan, actor: Actor, transaction_type: TransactionType,
                           amount: Decimal, transaction_date: date, effective_date: Optional[date],
                           corrected_transaction_id: str, notes: Optional[str]) -> LedgerTransaction:
        original = self.repository.get_transaction(corrected_transaction_id)
        if original is None:
            raise NotFoundError("Original transaction not found",
                                {'transaction_id': corrected_transaction_id})
        if original.loan_id != loan.id:
            raise BadRequestError("Corrected transaction does not belong to the specified loan")
        if original.transaction_type != transaction_type:
            raise BadRequestError("Corrective transaction must match the type of the original transaction")
        if original.approval_status != ApprovalStatus.APPROVED:
            raise BadRequestError("Can only correct APPROVED transactions")
        if original.is_correction:
            raise BadRequestError("A corrective transaction cannot itself be corrected")
        if self.repository.correction_of(original.id) is not None:
            raise AlreadyCorrectedError("This transaction has already been corrected",
                                        {'transaction_id': original.id})
        if amount != -original.amount:
            raise BadRequestError(
                "Corrective transaction amount must be the negative of the original amount",
                {'expected': str(-original.amount)}
            )

        txn = self._new_transaction(
            loan, actor, transaction_type, amount, transaction_date,
            effective_date=effective_date or original.effective_date,
            penalty_id=original.penalty_id,
            corrected_transaction_id=original.id,
            notes=notes or f"Correction of transaction {original.id}",
            approved=True,
        )
        loan = self._apply_side_effects(loan, txn, actor)

        self.audit_trail.log_event(
            AuditEventType.TRANSACTION_CORRECTED, "transaction", original.id,
            {'loan_id': loan.id, 'corrective_transaction_id': txn.id,
             'transaction_type': transaction_type, 'amount': amount},
            user_id=actor.id
        )
        self._log_recorded(loan, txn, actor)
        return txn

    # Approval workflow

    def _require_pending(self, transaction_id: str) -> LedgerTransaction:
        txn = self.repository.require_transaction(transaction_id)
        if txn.approval_status != ApprovalStatus.PENDING:
            raise AlreadyDecidedError(f"Transaction is already {txn.approval_status.value}",
                                      {'transaction_id': txn.id})
        return txn

    def approve_transaction(self, transaction_id: str, actor: Actor) -> LedgerTransaction:
        """
        Approve a PENDING transaction and apply its side effects

        The loan row is re-read so the side effects run against the current
        version and remaining principal.
        """
        txn = self._require_pending(transaction_id)
        loan = self.repository.require_loan(txn.loan_id)

        if txn.transaction_type == TransactionType.PENALTY and txn.penalty_id:
            penalty = self.repository.require_penalty(txn.penalty_id)
            if penalty.status in (PenaltyStatus.PAID, PenaltyStatus.WAIVED) or txn.amount > penalty.outstanding:
                raise BadRequestError("Amount exceeds remaining penalty balance",
                                      {'penalty_id': penalty.id, 'remaining': str(penalty.outstanding)})

        now = utc_now()
        txn.approval_status = ApprovalStatus.APPROVED
        txn.approved_by = actor.id
        txn.approved_at = now
        self.repository.save_transaction(txn)
        loan = self._apply_side_effects(loan, txn, actor)

        self.audit_trail.log_event(
            AuditEventType.TRANSACTION_APPROVED, "transaction", txn.id,
            {'loan_id': loan.id, 'transaction_type': txn.transaction_type, 'amount': txn.amount},
            user_id=actor.id
        )
        log_action(
            self.logger, "info", f"Transaction {txn.id} approved",
            user_id=actor.id, action="approve_transaction", resource=f"transaction:{txn.id}",
            tenant_id=txn.tenant_id, extra={'loan_id': loan.id, 'amount': str(txn.amount)}
        )
        return txn

    def reject_transaction(self, transaction_id: str, actor: Actor, reason: str) -> LedgerTransaction:
        """Reject a PENDING transaction; nothing is applied to the loan"""
        if not reason or not reason.strip():
            raise BadRequestError("Rejection reason is required")
        txn = self._require_pending(transaction_id)

        txn.approval_status = ApprovalStatus.REJECTED
        txn.rejected_by = actor.id
        txn.rejected_at = utc_now()
        txn.rejection_reason = reason
        self.repository.save_transaction(txn)

        self.audit_trail.log_event(
            AuditEventType.TRANSACTION_REJECTED, "transaction", txn.id,
            {'loan_id': txn.loan_id, 'reason': reason}, user_id=actor.id
        )
        log_action(
            self.logger, "info", f"Transaction {txn.id} rejected",
            user_id=actor.id, action="reject_transaction", resource=f"transaction:{txn.id}",
            tenant_id=txn.tenant_id, extra={'loan_id': txn.loan_id}
        )
        return txn

    def _log_recorded(self, loan: Loan, txn: LedgerTransaction, actor: Actor) -> None:
        self.audit_trail.log_event(
            AuditEventType.TRANSACTION_RECORDED, "transaction", txn.id,
            {'loan_id': loan.id, 'transaction_type': txn.transaction_type, 'amount': txn.amount,
             'approval_status': txn.approval_status},
            user_id=actor.id
        )
        log_action(
            self.logger, "info", f"{txn.transaction_type.value} of {txn.amount} on {loan.loan_number}",
            user_id=actor.id, action="record_transaction", resource=f"transaction:{txn.id}",
            tenant_id=loan.tenant_id,
            extra={'loan_id': loan.id, 'approval_status': txn.approval_status.value}
        )

    # Listings

    def detail_view(self, txn: LedgerTransaction, loans: Dict[str, Loan],
                    names: Dict[str, str]) -> Dict[str, Any]:
        """Transaction view with its loan number and borrower name"""
        view = txn.to_view()
        loan = loans.get(txn.loan_id)
        view['loan_number'] = loan.loan_number if loan else None
        view['borrower_name'] = names.get(loan.borrower_id) if loan else None
        return view

    def _formatter(self) -> Callable[[LedgerTransaction], Dict[str, Any]]:
        loans = {loan.id: loan for loan in self.repository.list_loans()}
        names = self.borrowers.names()
        return lambda txn: self.detail_view(txn, loans, names)

    def list_pending_transactions(self, page: Optional[int] = None,
                                  limit: Optional[int] = None) -> Dict[str, Any]:
        """PENDING transactions, oldest first"""
        pending = self.repository.find_transactions(approval_status=ApprovalStatus.PENDING)
        return paginate(pending, page, limit, self._formatter())

    def list_transactions(self, approval_status: Optional[ApprovalStatus] = None,
                          transaction_type: Optional[TransactionType] = None,
                          loan_id: Optional[str] = None, collected_by: Optional[str] = None,
                          page: Optional[int] = None, limit: Optional[int] = None) -> Dict[str, Any]:
        """Transactions matching every given filter, newest first"""
        filters = {}
        if approval_status:
            filters['approval_status'] = approval_status
        if transaction_type:
            filters['transaction_type'] = transaction_type
        if loan_id:
            filters['loan_id'] = loan_id
        if collected_by:
            filters['collected_by'] = collected_by
        transactions = list(reversed(self.repository.find_transactions(**filters)))
        return paginate(transactions, page, limit, self._formatter())

    def record_bulk_collections(self, actor: Actor, collections: List[Dict[str, Any]],
                                atomic: Callable[[], Any]) -> Dict[str, Any]:
        """
        Record DAILY_COLLECTION items one by one

        Each item runs in its own atomic block; a failed item is reported and
        does not undo the others.
        """
        created = 0
        failed = 0
        results = []
        for item in collections:
            try:
                with atomic():
                    txns = self.record_transaction(
                        actor, item['loan_id'], TransactionType.DAILY_COLLECTION, item['amount'],
                        item['transaction_date'], notes=item.get('notes')
                    )
            except LedgerError as e:
                failed += 1
                results.append({'success': False, 'error': e.message})
                self.logger.warning(f"Bulk collection for loan {item['loan_id']} failed: {e.message}")
                continue
            created += 1
            results.append({'success': True, 'transaction': txns[0].to_view()})
        return {'created': created, 'failed': failed, 'results': results}
