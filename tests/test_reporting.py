"""
Test suite for dashboard aggregates and reports
"""

from lending_ledger.actors import Actor
from lending_ledger.dates import FixedClock
from lending_ledger.service import LendingLedger
from lending_ledger.storage import InMemoryStorage


TENANT = "lender-a"


class ReportingCase:
    """Shared setup: a borrower with a phone number and a guarantor"""

    def setup_method(self):
        self.clock = FixedClock("2024-01-10")
        self.ledger = LendingLedger(InMemoryStorage(), clock=self.clock)
        self.admin = Actor.admin("admin-1")
        self.collector = Actor.collector("col-1")
        self.ledger.register_borrower(TENANT, {"full_name": "Sunita Rao", "phone": "+91 98450 00001",
                                               "borrower_id": "b1"})
        self.ledger.register_borrower(TENANT, {"full_name": "Kiran Rao", "phone": "+91 98450 00002",
                                               "borrower_id": "g1"})

    def daily_loan(self, **fields):
        payload = {"borrower_id": "b1", "principal_amount": "30000", "interest_rate": "10",
                   "disbursement_date": "2024-01-01", "term_days": 30}
        payload.update(fields)
        return self.ledger.create_daily_loan(TENANT, self.admin, payload)

    def monthly_loan(self, disbursement_date="2024-01-15", **fields):
        payload = {"borrower_id": "b1", "principal_amount": "40000", "interest_rate": "5",
                   "disbursement_date": disbursement_date}
        payload.update(fields)
        return self.ledger.create_monthly_loan(TENANT, self.admin, payload)

    def collect(self, actor, loan_id, amount, on):
        return self.ledger.record_transaction(TENANT, actor, {
            "loan_id": loan_id, "transaction_type": "DAILY_COLLECTION", "amount": amount,
            "transaction_date": on,
        })["transactions"][0]


class TestTodaySummary(ReportingCase):
    """Test what is due and received today"""

    def test_collections_and_missed_loans(self):
        paid = self.daily_loan()
        missed = self.daily_loan()
        self.collect(self.admin, paid["id"], "1100", "2024-01-10")
        self.collect(self.collector, missed["id"], "1100", "2024-01-10")

        summary = self.ledger.get_today_summary(TENANT)
        assert summary["active_daily_loan_count"] == 2
        assert summary["expected_collections"] == {'count': 2, 'total_amount': "2200.00"}
        assert summary["received_collections"] == {'count': 1, 'total_amount': "1100.00"}
        assert [row["loan_id"] for row in summary["missed_today"]] == [missed["id"]]
        assert summary["missed_today"][0]["daily_payment_amount"] == "1100.00"
        assert summary["pending_approvals_count"] == 1
        assert summary["total_collected_today"] == "1100.00"

    def test_finished_term_is_not_expected(self):
        self.daily_loan(disbursement_date="2023-11-01")
        summary = self.ledger.get_today_summary(TENANT)
        assert summary["active_daily_loan_count"] == 1
        assert summary["expected_collections"]["count"] == 0

    def test_monthly_interest_due_today(self):
        due = self.monthly_loan(disbursement_date="2023-12-10")
        self.monthly_loan(disbursement_date="2023-12-15")

        rows = self.ledger.get_today_summary(TENANT)["monthly_interest_due_today"]
        assert rows == [{
            'loan_id': due["id"],
            'borrower_name': "Sunita Rao",
            'interest_amount': "2000.00",
            'due_date': "2024-01-10",
        }]

    def test_loan_disbursed_this_month_is_not_due(self):
        self.clock.set("2024-01-31")
        self.monthly_loan(disbursement_date="2024-01-31")
        assert self.ledger.get_today_summary(TENANT)["monthly_interest_due_today"] == []


class TestOverdueLoans(ReportingCase):
    """Test overdue DAILY and MONTHLY listings"""

    def test_overdue_daily(self):
        loan = self.daily_loan(grace_days=0, guarantor_id="g1")
        self.clock.set("2024-02-10")

        overdue = self.ledger.get_overdue_loans(TENANT)
        assert overdue["overdue_monthly_loans"] == []
        row = overdue["overdue_daily_loans"][0]
        assert row["loan_id"] == loan["id"]
        assert row["days_overdue"] == 10
        assert row["amount_remaining"] == "33000.00"
        assert row["guarantor_name"] == "Kiran Rao"
        assert row["penalty_applicable"] == "0.00"

    def test_within_grace_is_not_overdue(self):
        self.daily_loan()
        self.clock.set("2024-02-07")
        assert self.ledger.get_overdue_loans(TENANT)["overdue_daily_loans"] == []

    def test_overdue_monthly(self):
        loan = self.monthly_loan()
        self.clock.set("2024-03-20")

        row = self.ledger.get_overdue_loans(TENANT)["overdue_monthly_loans"][0]
        assert row["loan_id"] == loan["id"]
        assert row["months_overdue"] == 2
        assert row["interest_due"] == "4000.00"
        assert row["oldest_due_date"] == "2024-02-15"
        assert row["last_interest_paid_through"] is None

    def test_partial_payment_reduces_interest_due(self):
        loan = self.monthly_loan()
        self.clock.set("2024-03-20")
        self.ledger.record_transaction(TENANT, self.admin, {
            "loan_id": loan["id"], "transaction_type": "INTEREST_PAYMENT", "amount": "2000",
            "transaction_date": "2024-03-01", "effective_date": "2024-02-15",
        })
        self.ledger.record_transaction(TENANT, self.admin, {
            "loan_id": loan["id"], "transaction_type": "INTEREST_PAYMENT", "amount": "1500",
            "transaction_date": "2024-03-20", "effective_date": "2024-03-15",
        })

        row = self.ledger.get_overdue_loans(TENANT)["overdue_monthly_loans"][0]
        assert row["months_overdue"] == 1
        assert row["interest_due"] == "500.00"
        assert row["oldest_due_date"] == "2024-03-15"


class TestDefaulters(ReportingCase):
    """Test the defaulter listing"""

    def test_defaulted_and_written_off(self):
        first = self.monthly_loan(guarantor_id="g1")
        second = self.daily_loan()
        self.ledger.default_loan(TENANT, self.admin, first["id"])
        self.ledger.default_loan(TENANT, self.admin, second["id"])
        self.ledger.write_off_loan(TENANT, self.admin, second["id"])

        rows = {row["loan_id"]: row for row in self.ledger.get_defaulters(TENANT)["defaulters"]}
        assert set(rows) == {first["id"], second["id"]}

        monthly = rows[first["id"]]
        assert monthly["status"] == "DEFAULTED"
        assert monthly["borrower_phone"] == "+91 98450 00001"
        assert monthly["guarantor_name"] == "Kiran Rao"
        assert monthly["guarantor_phone"] == "+91 98450 00002"
        assert monthly["outstanding_amount"] == "40000.00"
        assert monthly["defaulted_at"] is not None
        assert monthly["written_off_at"] is None

        daily = rows[second["id"]]
        assert daily["status"] == "WRITTEN_OFF"
        assert daily["outstanding_amount"] == "30000.00"
        assert daily["written_off_at"] is not None


class TestLoanBook(ReportingCase):
    """Test the loan book report"""

    def test_book(self):
        monthly = self.monthly_loan(disbursement_date="2024-01-05")
        daily = self.daily_loan(guarantor_id="g1")
        cancelled = self.daily_loan(disbursement_date="2024-01-08")
        self.ledger.cancel_loan(TENANT, self.admin, cancelled["id"])
        self.collect(self.admin, daily["id"], "31000", "2024-01-09")

        book = self.ledger.get_loan_book(TENANT)
        assert [row["loan_id"] for row in book] == [monthly["id"], daily["id"]]

        assert book[0]["outstanding_amount"] == "40000.00"
        assert book[0]["interest_earned"] == "2000.00"
        assert book[1]["outstanding_amount"] == "2000.00"
        assert book[1]["interest_earned"] == "1000.00"
        assert book[1]["guarantor_name"] == "Kiran Rao"
        assert book[1]["principal_amount"] == "30000.00"


class TestCollectorSummary(ReportingCase):
    """Test per-collector activity"""

    def test_grouped_by_collector(self):
        loan = self.daily_loan()
        self.collect(self.collector, loan["id"], "1100", "2024-01-02")
        rejected = self.collect(self.collector, loan["id"], "1100", "2024-01-03")
        self.ledger.reject_transaction(TENANT, self.admin, rejected["id"], {"reason": "Duplicate entry"})
        self.collect(self.admin, loan["id"], "500", "2024-01-04")
        self.collect(self.collector, loan["id"], "700", "2024-02-01")

        rows = self.ledger.get_collector_summary(TENANT, {"from_date": "2024-01-01", "to_date": "2024-01-31"})
        assert rows == [
            {'user_id': "col-1", 'total_transactions': 2, 'total_amount': "2200.00", 'loans_serviced': 1,
             'approved': 0, 'pending': 1, 'rejected': 1},
            {'user_id': "admin-1", 'total_transactions': 1, 'total_amount': "500.00", 'loans_serviced': 1,
             'approved': 1, 'pending': 0, 'rejected': 0},
        ]
