"""
Test suite for migrating running loans onto the ledger
"""

import pytest
from decimal import Decimal

from lending_ledger.actors import Actor
from lending_ledger.audit import AuditEventType
from lending_ledger.dates import FixedClock
from lending_ledger.errors import BadRequestError, NoNewPenaltyDueError, PermissionDeniedError
from lending_ledger.service import LendingLedger
from lending_ledger.storage import InMemoryStorage


TENANT = "lender-a"


class TestMonthlyMigration:
    """Test migrated MONTHLY loans"""

    def setup_method(self):
        self.clock = FixedClock("2024-02-20")
        self.ledger = LendingLedger(InMemoryStorage(), clock=self.clock)
        self.admin = Actor.admin("admin-1")
        self.ledger.register_borrower(TENANT, {"full_name": "Sunita Rao", "borrower_id": "b1"})

    def _migrate(self, **overrides):
        payload = {
            "borrower_id": "b1", "principal_amount": "100000", "interest_rate": "5",
            "disbursement_date": "2023-06-10", "remaining_principal": "60000",
            "last_interest_paid_through": "2024-01-10",
        }
        payload.update(overrides)
        return self.ledger.migrate_monthly_loan(TENANT, self.admin, payload)

    def test_billing_resumes_after_watermark(self):
        loan = self._migrate()

        assert loan["is_migrated"] is True
        assert loan["loan_number"] == "ML-2023-0001"
        assert loan["remaining_principal"] == Decimal('60000')
        assert loan["billing_principal"] == Decimal('60000')
        assert loan["last_interest_paid_through"] == "2024-01-10"

        cycles = self.ledger.get_payment_status(TENANT, loan["id"])["cycles"]
        assert len(cycles) == 1
        assert (cycles[0]["cycle_year"], cycles[0]["cycle_month"]) == (2024, 2)
        assert cycles[0]["due_date"] == "2024-02-10"
        assert cycles[0]["billing_principal"] == Decimal('60000')
        assert cycles[0]["interest_due"] == Decimal('3000')

        assert loan["next_due_date"] == "2024-02-10"
        assert loan["is_overdue"] is True

    def test_no_money_moves_on_migration(self):
        loan = self._migrate()
        assert self.ledger.get_loan_transactions(TENANT, loan["id"])["pagination"]["total"] == 0
        summary = self.ledger.compute_fund_summary(TENANT)
        assert summary["cash_in_hand"] == "0.00"
        assert summary["money_deployed"] == "60000.00"

        events = self.ledger.audit_trail.get_events_for_entity("loan", loan["id"])
        assert [e.event_type for e in events] == [AuditEventType.LOAN_MIGRATED]

    def test_interest_payment_against_migrated_principal(self):
        loan = self._migrate()
        rows = self.ledger.record_transaction(TENANT, self.admin, {
            "loan_id": loan["id"], "transaction_type": "INTEREST_PAYMENT", "amount": "13000",
            "transaction_date": "2024-02-20", "effective_date": "2024-02-10",
        })["transactions"]
        assert [r["amount"] for r in rows] == [Decimal('3000'), Decimal('10000')]
        assert self.ledger.get_loan(TENANT, loan["id"])["remaining_principal"] == Decimal('50000')

    def test_remaining_cannot_exceed_principal(self):
        with pytest.raises(BadRequestError):
            self._migrate(remaining_principal="100000.01")

    def test_watermark_cannot_precede_disbursement(self):
        with pytest.raises(BadRequestError):
            self._migrate(last_interest_paid_through="2023-05-31")

    def test_admin_only(self):
        with pytest.raises(PermissionDeniedError):
            self.ledger.migrate_monthly_loan(TENANT, Actor.collector("col-1"), {
                "borrower_id": "b1", "principal_amount": "100000", "interest_rate": "5",
                "disbursement_date": "2023-06-10", "remaining_principal": "60000",
            })


class TestDailyMigration:
    """Test migrated DAILY loans"""

    def setup_method(self):
        self.clock = FixedClock("2024-01-10")
        self.ledger = LendingLedger(InMemoryStorage(), clock=self.clock)
        self.admin = Actor.admin("admin-1")
        self.ledger.register_borrower(TENANT, {"full_name": "Arjun Singh", "borrower_id": "b1"})

    def _migrate(self, penalties=None):
        return self.ledger.migrate_daily_loan(TENANT, self.admin, {
            "borrower_id": "b1", "principal_amount": "30000", "interest_rate": "10",
            "disbursement_date": "2024-01-01", "term_days": 30, "grace_days": 0,
            "total_base_collected_so_far": "11000",
            "pre_existing_penalties": penalties or [],
        })

    def test_opening_balance(self):
        loan = self._migrate()

        assert loan["is_migrated"] is True
        assert loan["total_collected"] == Decimal('11000')
        assert loan["total_remaining"] == Decimal('22000')
        assert loan["days_paid"] == 10

        entries = self.ledger.get_loan_transactions(TENANT, loan["id"])["data"]
        assert [(e["transaction_type"], e["amount"]) for e in entries] == [("OPENING_BALANCE", Decimal('11000'))]

        days = self.ledger.get_payment_status(TENANT, loan["id"])["days"]
        assert days[0]["cumulative_collected"] == Decimal('11000')
        assert all(day["is_covered"] for day in days)

    def test_pre_existing_penalties(self):
        loan = self._migrate([
            {"days_overdue": 10, "months_charged": 1, "penalty_amount": "3000", "status": "PAID"},
            {"days_overdue": 40, "months_charged": 1, "penalty_amount": "3000"},
        ])

        penalties = self.ledger.list_penalties(TENANT, loan["id"])["data"]
        by_status = {p["status"]: p for p in penalties}
        assert set(by_status) == {"PAID", "PENDING"}
        assert by_status["PAID"]["amount_collected"] == Decimal('3000')
        assert by_status["PAID"]["net_payable"] == Decimal('3000')
        assert by_status["PENDING"]["amount_collected"] == Decimal('0')
        assert loan["outstanding_penalties"] == Decimal('3000')

    def test_migrated_months_count_against_new_penalties(self):
        loan = self._migrate([
            {"days_overdue": 10, "months_charged": 1, "penalty_amount": "3000", "status": "PAID"},
            {"days_overdue": 40, "months_charged": 1, "penalty_amount": "3000"},
        ])

        # 59 days past term end is two months, both already charged before migration
        self.clock.set("2024-03-30")
        with pytest.raises(NoNewPenaltyDueError):
            self.ledger.impose_penalty(TENANT, self.admin, loan["id"])

    def test_invalid_penalty_status(self):
        with pytest.raises(BadRequestError):
            self._migrate([{"days_overdue": 10, "months_charged": 1, "penalty_amount": "3000",
                            "status": "WAIVED"}])
