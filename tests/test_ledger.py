"""
Tests for the Page Balance Ledger

Tests the append-only log, the non-negative balance invariant, idempotent
payment credits and per-user serialization.
"""

import pytest
import threading
from dataclasses import replace
from datetime import date, datetime

from quota_rail.core.errors import (
    ConflictError,
    InsufficientBalanceError,
    StorageError,
    ValidationError,
)
from quota_rail.core.ledger import BalanceLedger, InMemoryTransactionStore
from quota_rail.core.models import GENESIS_HASH, TransactionType


class FailingStore(InMemoryTransactionStore):
    """Store whose writes always fail."""

    def append(self, transaction):
        raise RuntimeError("disk full")


class TestBalance:
    """Test balance derivation."""

    def test_unknown_user_has_zero(self, ledger):
        assert ledger.current_balance("nobody") == 0
        assert ledger.get_balance("nobody").last_updated is None

    def test_credit_then_debit(self, ledger):
        """Allocate 100, spend 30, then 80 is refused."""
        ledger.credit("u1", TransactionType.ALLOCATE, 100)
        debit = ledger.debit("u1", 30, reference_job_id="BATCH-1")

        assert debit.delta == -30
        assert debit.balance_after == 70
        assert debit.type is TransactionType.DEDUCT

        with pytest.raises(InsufficientBalanceError) as exc_info:
            ledger.debit("u1", 80)

        assert exc_info.value.current_balance == 70
        assert exc_info.value.required == 80
        assert exc_info.value.details["shortfall"] == 10
        assert ledger.current_balance("u1") == 70
        assert ledger.store.count_for_user("u1") == 2

    def test_debit_to_exactly_zero(self, ledger):
        ledger.credit("u1", TransactionType.ALLOCATE, 5)
        ledger.debit("u1", 5)

        assert ledger.current_balance("u1") == 0

    def test_balance_is_latest_balance_after(self, ledger):
        ledger.credit("u1", TransactionType.ALLOCATE, 10)
        ledger.credit("u1", TransactionType.PURCHASE, 15, payment_reference="PAY1")
        ledger.debit("u1", 7)

        balance = ledger.get_balance("u1")
        assert balance.current_a4 == 18
        assert balance.last_updated == ledger.store.latest("u1").created_at

    def test_users_are_independent(self, ledger):
        ledger.credit("u1", TransactionType.ALLOCATE, 10)

        with pytest.raises(InsufficientBalanceError):
            ledger.debit("u2", 1)
        assert ledger.current_balance("u1") == 10


class TestAmountValidation:
    """Test rejected amounts and types."""

    @pytest.mark.parametrize("amount", [0, -5, 1.5, True])
    def test_bad_credit_amount(self, ledger, amount):
        with pytest.raises(ValidationError):
            ledger.credit("u1", TransactionType.ALLOCATE, amount)

    @pytest.mark.parametrize("amount", [0, -1])
    def test_bad_debit_amount(self, ledger, amount):
        with pytest.raises(ValidationError):
            ledger.debit("u1", amount)

    def test_deduct_is_not_a_credit(self, ledger):
        with pytest.raises(ValidationError):
            ledger.credit("u1", TransactionType.DEDUCT, 10)


class TestPaymentReferenceIdempotency:
    """Test that a payment is credited at most once."""

    def test_repeat_returns_first_entry(self, ledger):
        first = ledger.credit("u1", TransactionType.PURCHASE, 50, payment_reference="PAY123")
        second = ledger.credit("u1", TransactionType.PURCHASE, 50, payment_reference="PAY123")

        assert second.transaction_id == first.transaction_id
        assert ledger.current_balance("u1") == 50
        assert ledger.store.count_for_user("u1") == 1

    def test_reference_owned_by_other_user(self, ledger):
        ledger.credit("u1", TransactionType.PURCHASE, 50, payment_reference="PAY123")

        with pytest.raises(ConflictError):
            ledger.credit("u2", TransactionType.PURCHASE, 50, payment_reference="PAY123")
        assert ledger.current_balance("u2") == 0


class TestHistory:
    """Test paginated history."""

    def test_newest_first(self, ledger):
        ledger.credit("u1", TransactionType.ALLOCATE, 10)
        ledger.debit("u1", 3)
        ledger.debit("u1", 2)

        page = ledger.history("u1")

        assert [t.sequence for t in page.content] == [3, 2, 1]
        assert page.total_elements == 3
        assert page.total_pages == 1

    def test_pagination(self, ledger):
        for _ in range(7):
            ledger.credit("u1", TransactionType.ALLOCATE, 1)

        first = ledger.history("u1", page=0, size=3)
        last = ledger.history("u1", page=2, size=3)

        assert [t.sequence for t in first.content] == [7, 6, 5]
        assert [t.sequence for t in last.content] == [1]
        assert first.total_pages == 3
        assert last.to_dict()["current_page"] == 2

    def test_filter_by_type(self, ledger):
        ledger.credit("u1", TransactionType.ALLOCATE, 10)
        ledger.debit("u1", 3)
        ledger.credit("u1", TransactionType.PURCHASE, 5, payment_reference="PAY1")

        page = ledger.history("u1", type=TransactionType.DEDUCT)

        assert page.total_elements == 1
        assert page.content[0].delta == -3

    def test_empty_history(self, ledger):
        page = ledger.history("nobody")

        assert page.content == []
        assert page.total_pages == 0

    @pytest.mark.parametrize("page,size", [(-1, 10), (0, 0), (0, 101)])
    def test_bad_paging(self, ledger, page, size):
        with pytest.raises(ValidationError):
            ledger.history("u1", page=page, size=size)


def write_dated(monkeypatch, ledger, stamps):
    """Allocate 1 page per timestamp, each entry created at that time."""
    for stamp in stamps:
        monkeypatch.setattr("quota_rail.core.ledger.utc_now", lambda stamp=stamp: stamp)
        ledger.credit("u1", TransactionType.ALLOCATE, 1, note=stamp)


class TestHistoryDateRange:
    """Test limiting history to a creation-time window."""

    STAMPS = [
        "2024-01-31T23:59:59.999999+00:00",
        "2024-02-01T00:00:00+00:00",
        "2024-02-15T12:30:00.250000+00:00",
        "2024-02-29T23:59:59+00:00",
        "2024-03-01T00:00:00+00:00",
    ]

    def test_whole_days(self, ledger, monkeypatch):
        """A bare end date includes that whole day."""
        write_dated(monkeypatch, ledger, self.STAMPS)

        page = ledger.history("u1", start="2024-02-01", end="2024-02-29")

        assert page.total_elements == 3
        assert [t.note for t in page.content] == self.STAMPS[3:0:-1]

    def test_open_ended(self, ledger, monkeypatch):
        write_dated(monkeypatch, ledger, self.STAMPS)

        assert ledger.history("u1", start="2024-02-15").total_elements == 3
        assert ledger.history("u1", end="2024-01-31").total_elements == 1

    def test_datetime_bounds(self, ledger, monkeypatch):
        """Datetimes are exact; naive ones and Z suffixes mean UTC."""
        write_dated(monkeypatch, ledger, self.STAMPS)

        page = ledger.history(
            "u1",
            start=datetime(2024, 2, 1),
            end="2024-02-15T12:30:00.250000Z",
        )

        assert [t.note for t in page.content] == [self.STAMPS[1]]

    def test_other_offsets_normalized(self, ledger, monkeypatch):
        write_dated(monkeypatch, ledger, self.STAMPS)

        page = ledger.history("u1", start="2024-02-01T07:00:00+07:00")

        assert page.total_elements == 4

    def test_combined_with_type_and_paging(self, ledger, monkeypatch):
        write_dated(monkeypatch, ledger, self.STAMPS)
        monkeypatch.setattr("quota_rail.core.ledger.utc_now", lambda: "2024-02-20T00:00:00+00:00")
        ledger.debit("u1", 2)

        deducts = ledger.history("u1", start=date(2024, 2, 1), type=TransactionType.DEDUCT)
        second = ledger.history("u1", page=1, size=2, start="2024-02-01", end="2024-02-29")

        assert deducts.total_elements == 1
        assert second.total_elements == 4
        assert [t.note for t in second.content] == [self.STAMPS[2], self.STAMPS[1]]

    @pytest.mark.parametrize("start,end", [
        ("02/01/2024", None),
        (None, "2024-13-01"),
        ("2024-03-01", "2024-02-01"),
    ])
    def test_invalid_bounds(self, ledger, start, end):
        with pytest.raises(ValidationError):
            ledger.history("u1", start=start, end=end)


class TestIntegrity:
    """Test log replay and hash chaining."""

    def test_valid_chain(self, ledger):
        ledger.credit("u1", TransactionType.ALLOCATE, 100)
        ledger.debit("u1", 30)
        ledger.credit("u1", TransactionType.REFUND, 10)

        is_valid, error, length = ledger.verify_integrity("u1")

        assert is_valid
        assert error is None
        assert length == 3

    def test_chain_links(self, ledger):
        first = ledger.credit("u1", TransactionType.ALLOCATE, 10)
        second = ledger.debit("u1", 1)

        assert first.prev_hash == GENESIS_HASH
        assert second.prev_hash == first.entry_hash
        assert len(first.entry_hash) == 64

    def test_detects_rewritten_balance(self, ledger):
        ledger.credit("u1", TransactionType.ALLOCATE, 10)
        ledger.debit("u1", 4)

        entries = ledger.store._entries["u1"]
        entries[1] = replace(entries[1], balance_after=9)

        is_valid, error, _ = ledger.verify_integrity("u1")
        assert not is_valid
        assert "balance" in error

    def test_detects_rewritten_timestamp(self, ledger):
        ledger.credit("u1", TransactionType.ALLOCATE, 10)
        ledger.debit("u1", 4)

        entries = ledger.store._entries["u1"]
        entries[0] = replace(entries[0], created_at="2000-01-01T00:00:00+00:00")

        is_valid, error, _ = ledger.verify_integrity("u1")
        assert not is_valid
        assert "hash" in error.lower()

    def test_empty_log_is_valid(self, ledger):
        assert ledger.verify_integrity("nobody") == (True, None, 0)


class TestStoreFailure:
    """Test that a failed write leaves nothing behind."""

    def test_failed_append_raises_storage_error(self):
        ledger = BalanceLedger(FailingStore())

        with pytest.raises(StorageError):
            ledger.credit("u1", TransactionType.ALLOCATE, 10)
        assert ledger.current_balance("u1") == 0


class TestConcurrency:
    """Test per-user serialization of debits."""

    def test_concurrent_debits_never_overdraw(self, ledger):
        """20 debits of 10 against a balance of 100: exactly 10 succeed."""
        ledger.credit("u1", TransactionType.ALLOCATE, 100)

        successes = []
        failures = []
        barrier = threading.Barrier(20)

        def spend():
            barrier.wait()
            try:
                successes.append(ledger.debit("u1", 10))
            except InsufficientBalanceError:
                failures.append(1)

        threads = [threading.Thread(target=spend) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(successes) == 10
        assert len(failures) == 10
        assert ledger.current_balance("u1") == 0
        assert ledger.verify_integrity("u1")[0]

    def test_lock_is_per_user(self, ledger):
        assert ledger.user_lock("u1") is ledger.user_lock("u1")
        assert ledger.user_lock("u1") is not ledger.user_lock("u2")
