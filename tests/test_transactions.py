"""
Test suite for recording, correcting and approving ledger transactions
"""

import pytest
from decimal import Decimal

from lending_ledger.actors import Actor
from lending_ledger.audit import AuditEventType
from lending_ledger.dates import FixedClock
from lending_ledger.errors import (
    AlreadyCorrectedError, AlreadyDecidedError, BadRequestError, ConcurrentModificationError,
    NotFoundError, OverpaymentExceedsPrincipalError, PermissionDeniedError, WrongLoanTypeError,
)
from lending_ledger.service import LendingLedger
from lending_ledger.storage import InMemoryStorage
from lending_ledger.tenancy import tenant_context


TENANT = "lender-a"


class LedgerTestCase:
    """Shared setup: one borrower, an admin and a collector"""

    def setup_method(self):
        self.clock = FixedClock("2024-02-20")
        self.ledger = LendingLedger(InMemoryStorage(), clock=self.clock)
        self.admin = Actor.admin("admin-1")
        self.collector = Actor.collector("col-1")
        self.ledger.register_borrower(TENANT, {"full_name": "Sunita Rao", "borrower_id": "b1"})

    def monthly_loan(self, principal="40000"):
        return self.ledger.create_monthly_loan(TENANT, self.admin, {
            "borrower_id": "b1", "principal_amount": principal, "interest_rate": "5",
            "disbursement_date": "2024-01-15",
        })

    def daily_loan(self):
        return self.ledger.create_daily_loan(TENANT, self.admin, {
            "borrower_id": "b1", "principal_amount": "30000", "interest_rate": "10",
            "disbursement_date": "2024-01-01", "term_days": 30,
        })

    def record(self, actor, loan_id, transaction_type, amount, transaction_date="2024-02-15", **fields):
        payload = dict(loan_id=loan_id, transaction_type=transaction_type, amount=amount,
                       transaction_date=transaction_date, **fields)
        return self.ledger.record_transaction(TENANT, actor, payload)["transactions"]


class TestInterestPayments(LedgerTestCase):
    """Test interest payments and the overpayment split"""

    def test_payment_within_due_is_one_row(self):
        loan = self.monthly_loan()
        rows = self.record(self.admin, loan["id"], "INTEREST_PAYMENT", "2000", effective_date="2024-02-15")

        assert len(rows) == 1
        assert rows[0]["effective_date"] == "2024-02-15"
        assert rows[0]["approval_status"] == "APPROVED"
        assert self.ledger.get_loan(TENANT, loan["id"])["remaining_principal"] == Decimal('40000')

    def test_overpayment_is_split(self):
        """5000.01 against 2000 due: 3000.01 goes to principal"""
        loan = self.monthly_loan()
        rows = self.record(self.admin, loan["id"], "INTEREST_PAYMENT", "5000.01", effective_date="2024-02-15")

        assert [(r["transaction_type"], r["amount"]) for r in rows] == [
            ("INTEREST_PAYMENT", Decimal('2000')),
            ("PRINCIPAL_RETURN", Decimal('3000.01')),
        ]
        assert rows[1]["notes"] == "Auto-split from overpayment"
        assert self.ledger.get_loan(TENANT, loan["id"])["remaining_principal"] == Decimal('36999.99')

    def test_next_cycle_bills_reduced_principal(self):
        loan = self.monthly_loan()
        self.record(self.admin, loan["id"], "INTEREST_PAYMENT", "5000.01", effective_date="2024-02-15")

        self.clock.set("2024-03-20")
        rows = self.record(self.admin, loan["id"], "INTEREST_PAYMENT", "1850",
                           transaction_date="2024-03-15", effective_date="2024-03-15")
        assert len(rows) == 1

        detail = self.ledger.get_loan(TENANT, loan["id"])
        assert detail["billing_principal"] == Decimal('36999.99')
        assert detail["monthly_interest_due"] == Decimal('1850')
        assert detail["is_overdue"] is False

        synced = self.ledger.audit_trail.get_events_by_type(AuditEventType.BILLING_PRINCIPAL_SYNCED)
        assert len(synced) == 1
        assert synced[0].metadata["billing_principal"] == "36999.99"

    def test_overpayment_after_principal_return_splits_on_synced_principal(self):
        """The split uses the loan row written by the billing-principal sync"""
        loan = self.monthly_loan()
        self.record(self.admin, loan["id"], "PRINCIPAL_RETURN", "10000", transaction_date="2024-02-10")

        self.clock.set("2024-03-20")
        rows = self.record(self.admin, loan["id"], "INTEREST_PAYMENT", "2500",
                           transaction_date="2024-03-20", effective_date="2024-03-15")

        assert [(r["transaction_type"], r["amount"]) for r in rows] == [
            ("INTEREST_PAYMENT", Decimal('1500')),
            ("PRINCIPAL_RETURN", Decimal('1000')),
        ]
        detail = self.ledger.get_loan(TENANT, loan["id"])
        assert detail["remaining_principal"] == Decimal('29000')
        assert detail["billing_principal"] == Decimal('30000')

    def test_overpayment_exceeding_principal(self):
        loan = self.monthly_loan(principal="10000")
        with pytest.raises(OverpaymentExceedsPrincipalError):
            self.record(self.admin, loan["id"], "INTEREST_PAYMENT", "20000", effective_date="2024-02-15")

        # Nothing of the rejected payment was written
        entries = self.ledger.get_loan_transactions(TENANT, loan["id"])["data"]
        assert {e["transaction_type"] for e in entries} == {"DISBURSEMENT", "ADVANCE_INTEREST"}

    def test_effective_date_is_required(self):
        loan = self.monthly_loan()
        with pytest.raises(BadRequestError) as exc_info:
            self.record(self.admin, loan["id"], "INTEREST_PAYMENT", "2000")
        assert exc_info.value.message == "Validation failed"

    def test_collector_split_waits_for_approval(self):
        loan = self.monthly_loan(principal="10000")
        rows = self.record(self.collector, loan["id"], "INTEREST_PAYMENT", "2500", effective_date="2024-02-15")

        assert [r["approval_status"] for r in rows] == ["PENDING", "PENDING"]
        assert self.ledger.get_loan(TENANT, loan["id"])["remaining_principal"] == Decimal('10000')

        self.ledger.approve_transaction(TENANT, self.admin, rows[1]["id"])
        assert self.ledger.get_loan(TENANT, loan["id"])["remaining_principal"] == Decimal('8000')


class TestTransactionRules(LedgerTestCase):
    """Test type, amount and loan-type checks"""

    def test_wrong_loan_type(self):
        monthly = self.monthly_loan()
        daily = self.daily_loan()

        with pytest.raises(WrongLoanTypeError):
            self.record(self.admin, monthly["id"], "DAILY_COLLECTION", "1000")
        with pytest.raises(WrongLoanTypeError):
            self.record(self.admin, daily["id"], "INTEREST_PAYMENT", "1000", effective_date="2024-02-15")
        with pytest.raises(WrongLoanTypeError):
            self.record(self.admin, daily["id"], "PRINCIPAL_RETURN", "1000")

    def test_principal_return_cannot_exceed_remaining(self):
        loan = self.monthly_loan(principal="10000")
        with pytest.raises(BadRequestError) as exc_info:
            self.record(self.admin, loan["id"], "PRINCIPAL_RETURN", "10000.01")
        assert exc_info.value.message == "Amount exceeds remaining principal"

    def test_principal_return_is_journaled(self):
        loan = self.monthly_loan()
        self.record(self.admin, loan["id"], "PRINCIPAL_RETURN", "15000")

        with tenant_context(TENANT):
            journal = self.ledger.repository.principal_returns_for_loan(loan["id"])
        assert [(j.amount_returned, j.remaining_principal_after) for j in journal] == [
            (Decimal('15000'), Decimal('25000'))
        ]

    def test_initial_types_cannot_be_recorded(self):
        loan = self.monthly_loan()
        for kind in ("DISBURSEMENT", "ADVANCE_INTEREST", "OPENING_BALANCE", "INTEREST_WAIVER"):
            with pytest.raises(BadRequestError):
                self.record(self.admin, loan["id"], kind, "100")

    def test_amount_must_be_positive(self):
        loan = self.daily_loan()
        for amount in ("0", "-5"):
            with pytest.raises(BadRequestError):
                self.record(self.admin, loan["id"], "DAILY_COLLECTION", amount)

    def test_unknown_loan(self):
        with pytest.raises(NotFoundError):
            self.record(self.admin, "missing", "DAILY_COLLECTION", "100")

    def test_penalty_without_any_penalty(self):
        loan = self.daily_loan()
        with pytest.raises(BadRequestError) as exc_info:
            self.record(self.admin, loan["id"], "PENALTY", "100")
        assert exc_info.value.message == "No unpaid penalties found for this loan"


class TestCorrections(LedgerTestCase):
    """Test reversing approved entries with corrective rows"""

    def test_correction_nets_to_zero(self):
        loan = self.daily_loan()
        original = self.record(self.admin, loan["id"], "DAILY_COLLECTION", "1000")[0]
        assert self.ledger.get_loan(TENANT, loan["id"])["total_collected"] == Decimal('1000')

        correction = self.record(self.admin, loan["id"], "DAILY_COLLECTION", "-1000",
                                 corrected_transaction_id=original["id"])[0]
        assert correction["corrected_transaction_id"] == original["id"]
        assert correction["approval_status"] == "APPROVED"
        assert self.ledger.get_loan(TENANT, loan["id"])["total_collected"] == Decimal('0')

        corrected = self.ledger.audit_trail.get_events_for_entity("transaction", original["id"])
        assert AuditEventType.TRANSACTION_CORRECTED in [e.event_type for e in corrected]

    def test_correction_restores_principal(self):
        loan = self.monthly_loan()
        original = self.record(self.admin, loan["id"], "PRINCIPAL_RETURN", "3000", transaction_date="2024-02-10")[0]
        self.record(self.admin, loan["id"], "PRINCIPAL_RETURN", "-3000", transaction_date="2024-02-12",
                    corrected_transaction_id=original["id"])

        assert self.ledger.get_loan(TENANT, loan["id"])["remaining_principal"] == Decimal('40000')
        with tenant_context(TENANT):
            journal = self.ledger.repository.principal_returns_for_loan(loan["id"])
        assert [j.remaining_principal_after for j in journal] == [Decimal('37000'), Decimal('40000')]

    def test_correction_rules(self):
        loan = self.daily_loan()
        original = self.record(self.admin, loan["id"], "DAILY_COLLECTION", "1000")[0]

        # Amount must mirror the original exactly
        with pytest.raises(BadRequestError):
            self.record(self.admin, loan["id"], "DAILY_COLLECTION", "-500",
                        corrected_transaction_id=original["id"])
        # Collectors cannot correct
        with pytest.raises(PermissionDeniedError):
            self.record(self.collector, loan["id"], "DAILY_COLLECTION", "-1000",
                        corrected_transaction_id=original["id"])
        # Positive correction amounts are rejected up front
        with pytest.raises(BadRequestError):
            self.record(self.admin, loan["id"], "DAILY_COLLECTION", "1000",
                        corrected_transaction_id=original["id"])

        correction = self.record(self.admin, loan["id"], "DAILY_COLLECTION", "-1000",
                                 corrected_transaction_id=original["id"])[0]

        with pytest.raises(AlreadyCorrectedError):
            self.record(self.admin, loan["id"], "DAILY_COLLECTION", "-1000",
                        corrected_transaction_id=original["id"])
        with pytest.raises(BadRequestError):
            self.record(self.admin, loan["id"], "DAILY_COLLECTION", "1000",
                        corrected_transaction_id=correction["id"])

    def test_cannot_correct_pending(self):
        loan = self.daily_loan()
        pending = self.record(self.collector, loan["id"], "DAILY_COLLECTION", "1000")[0]
        with pytest.raises(BadRequestError) as exc_info:
            self.record(self.admin, loan["id"], "DAILY_COLLECTION", "-1000",
                        corrected_transaction_id=pending["id"])
        assert exc_info.value.message == "Can only correct APPROVED transactions"

    def test_missing_original(self):
        loan = self.daily_loan()
        with pytest.raises(NotFoundError):
            self.record(self.admin, loan["id"], "DAILY_COLLECTION", "-1000", corrected_transaction_id="missing")


class TestApprovalWorkflow(LedgerTestCase):
    """Test PENDING -> APPROVED | REJECTED"""

    def test_approve_is_applied_once(self):
        loan = self.daily_loan()
        pending = self.record(self.collector, loan["id"], "DAILY_COLLECTION", "1000")[0]
        assert pending["approval_status"] == "PENDING"
        assert pending["collected_by"] == "col-1"
        assert self.ledger.get_loan(TENANT, loan["id"])["total_collected"] == Decimal('0')

        approved = self.ledger.approve_transaction(TENANT, self.admin, pending["id"])
        assert approved["approval_status"] == "APPROVED"
        assert approved["approved_by"] == "admin-1"
        assert self.ledger.get_loan(TENANT, loan["id"])["total_collected"] == Decimal('1000')

        with pytest.raises(AlreadyDecidedError):
            self.ledger.approve_transaction(TENANT, self.admin, pending["id"])
        assert self.ledger.get_loan(TENANT, loan["id"])["total_collected"] == Decimal('1000')

    def test_reject(self):
        loan = self.daily_loan()
        pending = self.record(self.collector, loan["id"], "DAILY_COLLECTION", "1000")[0]

        with pytest.raises(BadRequestError):
            self.ledger.reject_transaction(TENANT, self.admin, pending["id"], {"reason": "   "})

        rejected = self.ledger.reject_transaction(TENANT, self.admin, pending["id"], {"reason": "Cash not received"})
        assert rejected["approval_status"] == "REJECTED"
        assert rejected["rejection_reason"] == "Cash not received"
        assert self.ledger.get_loan(TENANT, loan["id"])["total_collected"] == Decimal('0')

        with pytest.raises(AlreadyDecidedError):
            self.ledger.approve_transaction(TENANT, self.admin, pending["id"])

    def test_collectors_cannot_decide(self):
        loan = self.daily_loan()
        pending = self.record(self.collector, loan["id"], "DAILY_COLLECTION", "1000")[0]
        with pytest.raises(PermissionDeniedError):
            self.ledger.approve_transaction(TENANT, self.collector, pending["id"])

    def test_pending_listing(self):
        loan = self.daily_loan()
        first = self.record(self.collector, loan["id"], "DAILY_COLLECTION", "1000")[0]
        second = self.record(self.collector, loan["id"], "DAILY_COLLECTION", "1100")[0]
        self.record(self.admin, loan["id"], "DAILY_COLLECTION", "1200")

        pending = self.ledger.list_pending_transactions(TENANT)
        assert [t["id"] for t in pending["data"]] == [first["id"], second["id"]]
        assert pending["data"][0]["loan_number"] == "DL-2024-0001"
        assert pending["data"][0]["borrower_name"] == "Sunita Rao"

        by_collector = self.ledger.list_transactions(TENANT, {"collected_by": "col-1"})
        assert by_collector["pagination"]["total"] == 2

        approved = self.ledger.list_transactions(TENANT, {"approval_status": "APPROVED",
                                                          "transaction_type": "DAILY_COLLECTION"})
        assert [t["amount"] for t in approved["data"]] == [Decimal('1200')]


class TestConcurrency(LedgerTestCase):
    """Test the version guard on loan rows"""

    def test_stale_writer_is_rejected(self):
        loan_view = self.monthly_loan()
        with tenant_context(TENANT):
            repository = self.ledger.repository
            first_reader = repository.require_loan(loan_view["id"])
            second_reader = repository.require_loan(loan_view["id"])

            updated = repository.update_loan(first_reader, notes="first")
            assert updated.version == 2

            with pytest.raises(ConcurrentModificationError) as exc_info:
                repository.update_loan(second_reader, notes="second")

        error = exc_info.value
        assert error.retryable
        assert error.to_dict()["code"] == "CONCURRENT_MODIFICATION"
        assert self.ledger.get_loan(TENANT, loan_view["id"])["notes"] == "first"


class TestBulkCollections(LedgerTestCase):
    """Test per-item commits of bulk collections"""

    def test_failures_do_not_undo_successes(self):
        daily = self.daily_loan()
        monthly = self.monthly_loan()

        result = self.ledger.record_bulk_collections(TENANT, self.collector, {"collections": [
            {"loan_id": daily["id"], "amount": "1100", "transaction_date": "2024-01-02"},
            {"loan_id": monthly["id"], "amount": "1100", "transaction_date": "2024-01-02"},
            {"loan_id": "missing", "amount": "1100", "transaction_date": "2024-01-02"},
        ]})

        assert result["created"] == 1
        assert result["failed"] == 2
        assert result["results"][0]["success"] is True
        assert result["results"][0]["transaction"]["approval_status"] == "PENDING"
        assert result["results"][1] == {"success": False, "error": "DAILY_COLLECTION is only for DAILY loans"}
        assert result["results"][2] == {"success": False, "error": "Loan not found"}

        assert self.ledger.list_pending_transactions(TENANT)["pagination"]["total"] == 1

    def test_batch_shape_is_validated(self):
        with pytest.raises(BadRequestError):
            self.ledger.record_bulk_collections(TENANT, self.collector, {"collections": []})
        with pytest.raises(BadRequestError):
            self.ledger.record_bulk_collections(TENANT, self.collector, {"collections": [
                {"loan_id": "x", "amount": "-1", "transaction_date": "2024-01-02"},
            ]})
