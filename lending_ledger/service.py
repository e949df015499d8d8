"""
Lending Ledger Facade

Wires storage, audit trail, collaborators and engines together and exposes
every ledger operation as a plain call taking the tenant id, the acting user
where the operation needs one, and a payload dict validated with the request
schemas. Each mutating call runs in its tenant's context inside one atomic
block: either all of its writes land or none do.
"""

from contextlib import contextmanager
from typing import Any, Dict, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from .actors import Actor
from .audit import AuditEventType, AuditTrail
from .borrowers import BorrowerDirectory
from .config import LedgerConfig, get_config
from .dashboard import Dashboard
from .dates import Clock, SystemClock
from .errors import BadRequestError, LedgerError
from .funds import FundBook, FundEntryType
from .loans import LoanManager
from .logging_config import get_logger, log_action, setup_logging
from .migration import LoanMigrator
from .penalties import PenaltyEngine
from .reconciliation import ReconciliationEngine
from .reporting import ReportGenerator
from .repository import LedgerRepository, paginate
from .schemas import (
    BulkCollectionsRequest, CreateDailyLoanRequest, CreateMonthlyLoanRequest, DateRangeQuery,
    ExpenseListQuery, ExpenseRequest, FundEntryRequest, ImposePenaltyRequest, LoanListQuery,
    MigrateDailyLoanRequest, MigrateMonthlyLoanRequest, PageQuery, RecordTransactionRequest,
    RegisterBorrowerRequest, RejectTransactionRequest, StatusChangeRequest, TransactionListQuery,
    WaiveInterestRequest, WaivePenaltyRequest,
)
from .storage import StorageInterface, create_storage
from .tenancy import TenantAwareStorage, tenant_context
from .transactions import TransactionProcessor

RequestT = TypeVar('RequestT', bound=BaseModel)


def validate_payload(schema: Type[RequestT], payload: Optional[Dict[str, Any]]) -> RequestT:
    """Validate a payload, reporting every field problem as one BadRequestError"""
    try:
        return schema.model_validate(payload or {})
    except ValidationError as e:
        errors = []
        for error in e.errors():
            location = ".".join(str(part) for part in error['loc']) or "payload"
            errors.append(f"{location}: {error['msg']}")
        raise BadRequestError("Validation failed", {'errors': errors}) from e


class LendingLedger:
    """Multi-tenant lending ledger with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None, clock: Optional[Clock] = None,
                 config: Optional[LedgerConfig] = None):
        self.config = config or get_config()
        self.raw_storage = storage or create_storage(self.config.database_url)
        self.storage = TenantAwareStorage(self.raw_storage)
        self.clock = clock or SystemClock()

        # The audit chain spans tenants, so it writes to the raw storage
        self.audit_trail = AuditTrail(self.raw_storage, enabled=self.config.enable_audit_logging)

        self.repository = LedgerRepository(self.storage)
        self.borrowers = BorrowerDirectory(self.storage)
        self.funds = FundBook(self.storage)
        self.loan_manager = LoanManager(self.repository, self.borrowers, self.audit_trail, self.clock)
        self.migrator = LoanMigrator(self.loan_manager)
        self.transaction_processor = TransactionProcessor(
            self.repository, self.borrowers, self.audit_trail, self.clock
        )
        self.penalty_engine = PenaltyEngine(self.repository, self.audit_trail, self.clock)
        self.reconciliation = ReconciliationEngine(self.repository, self.funds)
        self.dashboard = Dashboard(self.repository, self.borrowers, self.clock)
        self.reports = ReportGenerator(self.repository, self.borrowers)

        self.logger = get_logger("lending_ledger.service")

    @classmethod
    def from_config(cls, config: Optional[LedgerConfig] = None) -> 'LendingLedger':
        """Ledger with storage and logging set up from configuration"""
        config = config or get_config()
        setup_logging(config.log_level, "lending_ledger", config.log_format, config.log_file)
        return cls(create_storage(config.database_url), config=config)

    @contextmanager
    def _operation(self, name: str, tenant_id: str, actor: Optional[Actor] = None,
                   write: bool = True):
        """Tenant context, one atomic block for writes, and a WARNING for every rejection"""
        with tenant_context(tenant_id):
            try:
                if write:
                    with self.storage.atomic():
                        yield
                else:
                    yield
            except LedgerError as e:
                log_action(
                    self.logger, "warning", f"{name} rejected: {e.message}",
                    user_id=actor.id if actor else None, action=name, tenant_id=tenant_id,
                    extra={'code': e.code, 'retryable': e.retryable}
                )
                raise

    # Collaborators

    def register_borrower(self, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._operation("register_borrower", tenant_id):
            request = validate_payload(RegisterBorrowerRequest, payload)
            borrower = self.borrowers.register(request.full_name, request.phone, request.borrower_id)
            return borrower.to_view()

    def record_fund_entry(self, tenant_id: str, actor: Actor, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._operation("record_fund_entry", tenant_id, actor):
            actor.require_privileged("record fund entries")
            request = validate_payload(FundEntryRequest, payload)
            if request.entry_type == FundEntryType.INJECTION:
                entry = self.funds.record_injection(request.amount, request.entry_date,
                                                    request.description, actor.id)
            else:
                entry = self.funds.record_withdrawal(request.amount, request.entry_date,
                                                     request.description, actor.id)
            self.audit_trail.log_event(
                AuditEventType.FUND_ENTRY_RECORDED, "fund_entry", entry.id,
                {'entry_type': entry.entry_type, 'amount': entry.amount}, user_id=actor.id
            )
            return entry.to_view()

    def list_fund_entries(self, tenant_id: str, query: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._operation("list_fund_entries", tenant_id, write=False):
            page = validate_payload(PageQuery, query)
            return paginate(self.funds.fund_entries(), page.page, page.limit, lambda e: e.to_view())

    def record_expense(self, tenant_id: str, actor: Actor, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._operation("record_expense", tenant_id, actor):
            actor.require_privileged("record expenses")
            request = validate_payload(ExpenseRequest, payload)
            expense = self.funds.record_expense(request.category, request.amount, request.expense_date,
                                                request.description, actor.id)
            self.audit_trail.log_event(
                AuditEventType.EXPENSE_RECORDED, "expense", expense.id,
                {'category': expense.category, 'amount': expense.amount}, user_id=actor.id
            )
            return expense.to_view()

    def delete_expense(self, tenant_id: str, actor: Actor, expense_id: str) -> Dict[str, Any]:
        with self._operation("delete_expense", tenant_id, actor):
            actor.require_privileged("delete expenses")
            expense = self.funds.delete_expense(expense_id)
            self.audit_trail.log_event(
                AuditEventType.EXPENSE_DELETED, "expense", expense.id,
                {'amount': expense.amount}, user_id=actor.id
            )
            return expense.to_view()

    def list_expenses(self, tenant_id: str, query: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._operation("list_expenses", tenant_id, write=False):
            request = validate_payload(ExpenseListQuery, query)
            expenses = self.funds.expenses(request.include_deleted, request.category,
                                           request.from_date, request.to_date)
            return paginate(expenses, request.page, request.limit, lambda e: e.to_view())

    # Loans

    def create_monthly_loan(self, tenant_id: str, actor: Actor, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._operation("create_monthly_loan", tenant_id, actor):
            actor.require_privileged("create loans")
            request = validate_payload(CreateMonthlyLoanRequest, payload)
            loan = self.loan_manager.create_monthly_loan(actor, **request.model_dump())
            return self.loan_manager.detail_view(loan)

    def create_daily_loan(self, tenant_id: str, actor: Actor, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._operation("create_daily_loan", tenant_id, actor):
            actor.require_privileged("create loans")
            request = validate_payload(CreateDailyLoanRequest, payload)
            loan = self.loan_manager.create_daily_loan(actor, **request.model_dump())
            return self.loan_manager.detail_view(loan)

    def migrate_monthly_loan(self, tenant_id: str, actor: Actor, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._operation("migrate_monthly_loan", tenant_id, actor):
            actor.require_privileged("migrate loans")
            request = validate_payload(MigrateMonthlyLoanRequest, payload)
            loan = self.migrator.migrate_monthly_loan(actor, **request.model_dump())
            return self.loan_manager.detail_view(loan)

    def migrate_daily_loan(self, tenant_id: str, actor: Actor, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._operation("migrate_daily_loan", tenant_id, actor):
            actor.require_privileged("migrate loans")
            request = validate_payload(MigrateDailyLoanRequest, payload)
            loan = self.migrator.migrate_daily_loan(actor, **request.model_dump())
            return self.loan_manager.detail_view(loan)

    def list_loans(self, tenant_id: str, actor: Actor,
                   query: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._operation("list_loans", tenant_id, actor, write=False):
            request = validate_payload(LoanListQuery, query)
            return self.loan_manager.list_loans(actor, **request.model_dump())

    def get_loan(self, tenant_id: str, loan_id: str) -> Dict[str, Any]:
        with self._operation("get_loan", tenant_id, write=False):
            return self.loan_manager.get_loan(loan_id)

    def get_loan_transactions(self, tenant_id: str, loan_id: str,
                              query: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._operation("get_loan_transactions", tenant_id, write=False):
            page = validate_payload(PageQuery, query)
            return self.loan_manager.get_loan_transactions(loan_id, page.page, page.limit)

    def get_payment_status(self, tenant_id: str, loan_id: str) -> Dict[str, Any]:
        with self._operation("get_payment_status", tenant_id, write=False):
            return self.loan_manager.get_payment_status(loan_id)

    def close_loan(self, tenant_id: str, actor: Actor, loan_id: str) -> Dict[str, Any]:
        with self._operation("close_loan", tenant_id, actor):
            actor.require_privileged("close loans")
            loan = self.loan_manager.close_loan(loan_id, actor)
            return self.loan_manager.detail_view(loan)

    def default_loan(self, tenant_id: str, actor: Actor, loan_id: str,
                     payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._operation("default_loan", tenant_id, actor):
            actor.require_privileged("default loans")
            request = validate_payload(StatusChangeRequest, payload)
            loan = self.loan_manager.default_loan(loan_id, actor, request.reason)
            return self.loan_manager.detail_view(loan)

    def write_off_loan(self, tenant_id: str, actor: Actor, loan_id: str,
                       payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._operation("write_off_loan", tenant_id, actor):
            actor.require_privileged("write off loans")
            request = validate_payload(StatusChangeRequest, payload)
            loan = self.loan_manager.write_off_loan(loan_id, actor, request.reason)
            return self.loan_manager.detail_view(loan)

    def cancel_loan(self, tenant_id: str, actor: Actor, loan_id: str,
                    payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._operation("cancel_loan", tenant_id, actor):
            actor.require_privileged("cancel loans")
            request = validate_payload(StatusChangeRequest, payload)
            loan = self.loan_manager.cancel_loan(loan_id, actor, request.reason)
            return self.loan_manager.detail_view(loan)

    # Transactions

    def record_transaction(self, tenant_id: str, actor: Actor, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Record a transaction; a split interest overpayment returns two rows"""
        with self._operation("record_transaction", tenant_id, actor):
            request = validate_payload(RecordTransactionRequest, payload)
            created = self.transaction_processor.record_transaction(actor, **request.model_dump())
            return {'transactions': [txn.to_view() for txn in created]}

    def approve_transaction(self, tenant_id: str, actor: Actor, transaction_id: str) -> Dict[str, Any]:
        with self._operation("approve_transaction", tenant_id, actor):
            actor.require_privileged("approve transactions")
            return self.transaction_processor.approve_transaction(transaction_id, actor).to_view()

    def reject_transaction(self, tenant_id: str, actor: Actor, transaction_id: str,
                           payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._operation("reject_transaction", tenant_id, actor):
            actor.require_privileged("reject transactions")
            request = validate_payload(RejectTransactionRequest, payload)
            return self.transaction_processor.reject_transaction(transaction_id, actor, request.reason).to_view()

    def list_pending_transactions(self, tenant_id: str,
                                  query: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._operation("list_pending_transactions", tenant_id, write=False):
            page = validate_payload(PageQuery, query)
            return self.transaction_processor.list_pending_transactions(page.page, page.limit)

    def list_transactions(self, tenant_id: str, query: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._operation("list_transactions", tenant_id, write=False):
            request = validate_payload(TransactionListQuery, query)
            return self.transaction_processor.list_transactions(**request.model_dump())

    def record_bulk_collections(self, tenant_id: str, actor: Actor,
                                payload: Dict[str, Any]) -> Dict[str, Any]:
        """Each collection commits on its own; failures are reported per item"""
        with self._operation("record_bulk_collections", tenant_id, actor, write=False):
            request = validate_payload(BulkCollectionsRequest, payload)
            items = [item.model_dump() for item in request.collections]
            result = self.transaction_processor.record_bulk_collections(actor, items, self.storage.atomic)
            log_action(
                self.logger, "info", f"Bulk collections: {result['created']} created, {result['failed']} failed",
                user_id=actor.id, action="record_bulk_collections", tenant_id=tenant_id
            )
            return result

    # Penalties and waivers

    def impose_penalty(self, tenant_id: str, actor: Actor, loan_id: str,
                       payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._operation("impose_penalty", tenant_id, actor):
            actor.require_privileged("impose penalties")
            request = validate_payload(ImposePenaltyRequest, payload)
            return self.penalty_engine.impose_penalty(loan_id, actor, **request.model_dump())

    def list_penalties(self, tenant_id: str, loan_id: str,
                       query: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._operation("list_penalties", tenant_id, write=False):
            page = validate_payload(PageQuery, query)
            return self.penalty_engine.list_penalties(loan_id, page.page, page.limit)

    def waive_penalty(self, tenant_id: str, actor: Actor, penalty_id: str,
                      payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._operation("waive_penalty", tenant_id, actor):
            actor.require_privileged("waive penalties")
            request = validate_payload(WaivePenaltyRequest, payload)
            return self.penalty_engine.waive_penalty(penalty_id, actor, **request.model_dump())

    def waive_interest(self, tenant_id: str, actor: Actor, loan_id: str,
                       payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._operation("waive_interest", tenant_id, actor):
            actor.require_privileged("waive interest")
            request = validate_payload(WaiveInterestRequest, payload)
            return self.penalty_engine.waive_interest(loan_id, actor, **request.model_dump()).to_view()

    def list_waivers(self, tenant_id: str, loan_id: str,
                     query: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        with self._operation("list_waivers", tenant_id, write=False):
            page = validate_payload(PageQuery, query)
            return self.penalty_engine.list_waivers(loan_id, page.page, page.limit)

    # Reconciliation, dashboard and reports

    def compute_fund_summary(self, tenant_id: str) -> Dict[str, Any]:
        with self._operation("compute_fund_summary", tenant_id, write=False):
            return self.reconciliation.compute_fund_summary()

    def compute_cash_in_hand(self, tenant_id: str):
        with self._operation("compute_cash_in_hand", tenant_id, write=False):
            return self.reconciliation.compute_cash_in_hand()

    def compute_cash_in_hand_bottom_up(self, tenant_id: str):
        with self._operation("compute_cash_in_hand_bottom_up", tenant_id, write=False):
            return self.reconciliation.compute_cash_in_hand_bottom_up()

    def reconcile(self, tenant_id: str) -> Dict[str, Any]:
        with self._operation("reconcile", tenant_id, write=False):
            return self.reconciliation.reconcile()

    def compute_profit_loss(self, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._operation("compute_profit_loss", tenant_id, write=False):
            request = validate_payload(DateRangeQuery, payload)
            return self.reconciliation.compute_profit_loss(request.from_date, request.to_date)

    def get_today_summary(self, tenant_id: str) -> Dict[str, Any]:
        with self._operation("get_today_summary", tenant_id, write=False):
            return self.dashboard.get_today_summary()

    def get_overdue_loans(self, tenant_id: str) -> Dict[str, Any]:
        with self._operation("get_overdue_loans", tenant_id, write=False):
            return self.dashboard.get_overdue_loans()

    def get_defaulters(self, tenant_id: str) -> Dict[str, Any]:
        with self._operation("get_defaulters", tenant_id, write=False):
            return self.dashboard.get_defaulters()

    def get_loan_book(self, tenant_id: str):
        with self._operation("get_loan_book", tenant_id, write=False):
            return self.reports.get_loan_book()

    def get_collector_summary(self, tenant_id: str, payload: Dict[str, Any]):
        with self._operation("get_collector_summary", tenant_id, write=False):
            request = validate_payload(DateRangeQuery, payload)
            return self.reports.get_collector_summary(request.from_date, request.to_date)

    def verify_audit_integrity(self) -> Dict[str, Any]:
        return self.audit_trail.verify_integrity()
