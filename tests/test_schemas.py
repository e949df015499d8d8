"""
Tests for request schemas and payload validation
"""

import pytest
from decimal import Decimal
from datetime import date

from pydantic import ValidationError

from lending_ledger.errors import BadRequestError
from lending_ledger.models import TransactionType
from lending_ledger.schemas import (
    BulkCollectionsRequest, CreateDailyLoanRequest, CreateMonthlyLoanRequest, DateRangeQuery,
    MigrateMonthlyLoanRequest, RecordTransactionRequest, RejectTransactionRequest,
)
from lending_ledger.service import validate_payload


def transaction(**fields):
    payload = {"loan_id": "loan_1", "transaction_type": "DAILY_COLLECTION", "amount": "1100",
               "transaction_date": "2024-01-02"}
    payload.update(fields)
    return payload


class TestScalarCoercion:
    """Test date and Decimal parsing of payload values"""

    def test_values_are_typed(self):
        request = RecordTransactionRequest.model_validate(transaction())
        assert request.transaction_type == TransactionType.DAILY_COLLECTION
        assert request.amount == Decimal('1100')
        assert request.transaction_date == date(2024, 1, 2)

    def test_float_amounts_go_through_str(self):
        request = RecordTransactionRequest.model_validate(transaction(amount=0.1))
        assert request.amount == Decimal('0.1')

    def test_dates_must_be_iso(self):
        for value in ("02/01/2024", "2024-1-2", "2023-02-29"):
            with pytest.raises(ValidationError):
                RecordTransactionRequest.model_validate(transaction(transaction_date=value))

    def test_garbage_amount(self):
        with pytest.raises(ValidationError):
            RecordTransactionRequest.model_validate(transaction(amount="a lot"))

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            RecordTransactionRequest.model_validate(transaction(collector="col-1"))


class TestTransactionRequest:
    """Test field combinations of recorded transactions"""

    def test_interest_payment_needs_effective_date(self):
        with pytest.raises(ValidationError):
            RecordTransactionRequest.model_validate(transaction(transaction_type="INTEREST_PAYMENT"))
        request = RecordTransactionRequest.model_validate(
            transaction(transaction_type="INTEREST_PAYMENT", effective_date="2024-02-15"))
        assert request.effective_date == date(2024, 2, 15)

    def test_correction_must_be_negative(self):
        with pytest.raises(ValidationError):
            RecordTransactionRequest.model_validate(transaction(corrected_transaction_id="t1"))
        request = RecordTransactionRequest.model_validate(
            transaction(amount="-1100", corrected_transaction_id="t1"))
        assert request.amount == Decimal('-1100')

    def test_penalty_id_only_on_penalty(self):
        with pytest.raises(ValidationError):
            RecordTransactionRequest.model_validate(transaction(penalty_id="p1"))
        RecordTransactionRequest.model_validate(transaction(transaction_type="PENALTY", penalty_id="p1"))

    def test_opening_entries_not_recordable(self):
        for kind in ("DISBURSEMENT", "ADVANCE_INTEREST", "OPENING_BALANCE", "PENALTY_WAIVER"):
            with pytest.raises(ValidationError):
                RecordTransactionRequest.model_validate(transaction(transaction_type=kind))


class TestLoanRequests:
    """Test loan creation and migration payloads"""

    def test_positive_amounts(self):
        base = {"borrower_id": "b1", "principal_amount": "1000", "interest_rate": "5",
                "disbursement_date": "2024-01-15"}
        CreateMonthlyLoanRequest.model_validate(base)
        for field in ("principal_amount", "interest_rate"):
            with pytest.raises(ValidationError):
                CreateMonthlyLoanRequest.model_validate(dict(base, **{field: "0"}))

    def test_term_and_grace(self):
        base = {"borrower_id": "b1", "principal_amount": "1000", "interest_rate": "5",
                "disbursement_date": "2024-01-15", "term_days": 30}
        assert CreateDailyLoanRequest.model_validate(base).grace_days is None
        assert CreateDailyLoanRequest.model_validate(dict(base, grace_days=0)).grace_days == 0
        with pytest.raises(ValidationError):
            CreateDailyLoanRequest.model_validate(dict(base, term_days=0))
        with pytest.raises(ValidationError):
            CreateDailyLoanRequest.model_validate(dict(base, grace_days=-1))

    def test_migration_bounds(self):
        base = {"borrower_id": "b1", "principal_amount": "1000", "interest_rate": "5",
                "disbursement_date": "2024-01-15", "remaining_principal": "0"}
        assert MigrateMonthlyLoanRequest.model_validate(base).remaining_principal == Decimal('0')
        with pytest.raises(ValidationError):
            MigrateMonthlyLoanRequest.model_validate(dict(base, remaining_principal="1000.01"))
        with pytest.raises(ValidationError):
            MigrateMonthlyLoanRequest.model_validate(dict(base, last_interest_paid_through="2024-01-14"))


class TestOtherRequests:

    def test_reject_reason(self):
        with pytest.raises(ValidationError):
            RejectTransactionRequest.model_validate({"reason": ""})
        with pytest.raises(ValidationError):
            RejectTransactionRequest.model_validate({"reason": "  \n"})
        with pytest.raises(ValidationError):
            RejectTransactionRequest.model_validate({"reason": "x" * 2001})

    def test_date_range(self):
        DateRangeQuery.model_validate({"from_date": "2024-01-01", "to_date": "2024-01-01"})
        with pytest.raises(ValidationError):
            DateRangeQuery.model_validate({"from_date": "2024-01-02", "to_date": "2024-01-01"})

    def test_bulk_batch_limit(self):
        item = {"loan_id": "loan_1", "amount": "1100", "transaction_date": "2024-01-02"}
        assert len(BulkCollectionsRequest.model_validate({"collections": [item] * 100}).collections) == 100
        with pytest.raises(ValidationError):
            BulkCollectionsRequest.model_validate({"collections": [item] * 101})


class TestValidatePayload:
    """Test translation of validation failures into BadRequestError"""

    def test_field_errors_are_listed(self):
        with pytest.raises(BadRequestError) as exc_info:
            validate_payload(RecordTransactionRequest, transaction(transaction_date="yesterday", amount="x"))

        error = exc_info.value
        assert error.message == "Validation failed"
        assert error.code == "BAD_REQUEST"
        locations = [entry.split(":")[0] for entry in error.details['errors']]
        assert "transaction_date" in locations
        assert "amount" in locations

    def test_model_errors_have_payload_location(self):
        with pytest.raises(BadRequestError) as exc_info:
            validate_payload(DateRangeQuery, {"from_date": "2024-01-02", "to_date": "2024-01-01"})
        assert exc_info.value.details['errors'][0].startswith("payload: ")

    def test_missing_payload(self):
        with pytest.raises(BadRequestError):
            validate_payload(RejectTransactionRequest, None)
