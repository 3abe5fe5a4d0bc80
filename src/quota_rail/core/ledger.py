"""
Page Balance Ledger

Per-user append-only log of balance-affecting transactions. The current
balance is never stored on its own; it is the balance_after of the latest
entry, or 0.

Every write for a user happens under that user's lock, so the balance read
before a debit and the entry written after it cannot interleave with another
writer for the same user. Different users never contend.
"""

from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import date, datetime, time, timedelta, timezone
from threading import Lock, RLock
from typing import Dict, List, Optional, Tuple, Union
import uuid
import structlog

from .errors import (
    ConflictError,
    InsufficientBalanceError,
    StorageError,
    ValidationError,
)
from .models import (
    GENESIS_HASH,
    PageBalance,
    PageTransaction,
    TransactionPage,
    TransactionType,
    utc_now,
)

logger = structlog.get_logger()

MAX_HISTORY_PAGE_SIZE = 100


class TransactionStore(ABC):
    """Durable home of ledger entries. append() must be all-or-nothing."""

    @abstractmethod
    def append(self, transaction: PageTransaction) -> None:
        pass

    @abstractmethod
    def latest(self, user_id: str) -> Optional[PageTransaction]:
        pass

    @abstractmethod
    def list_for_user(
        self,
        user_id: str,
        limit: int,
        offset: int = 0,
        type: Optional[TransactionType] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> List[PageTransaction]:
        """
        Entries for a user, newest first. start and end are ISO UTC bounds
        on created_at, start inclusive and end exclusive.
        """

    @abstractmethod
    def count_for_user(
        self,
        user_id: str,
        type: Optional[TransactionType] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> int:
        pass

    @abstractmethod
    def chain(self, user_id: str) -> List[PageTransaction]:
        """Entries for a user, oldest first."""

    @abstractmethod
    def find_by_payment_reference(self, payment_reference: str) -> Optional[PageTransaction]:
        pass


class InMemoryTransactionStore(TransactionStore):
    """Process-local store behind DATABASE_URL=memory:// and most tests."""

    def __init__(self):
        self._entries: Dict[str, List[PageTransaction]] = {}
        self._by_payment_reference: Dict[str, PageTransaction] = {}
        self._lock = Lock()

    def append(self, transaction: PageTransaction) -> None:
        with self._lock:
            entries = self._entries.setdefault(transaction.user_id, [])
            expected = len(entries) + 1
            if transaction.sequence != expected:
                raise StorageError(
                    f"Out-of-order ledger append for {transaction.user_id}",
                    {"expected_sequence": expected, "got": transaction.sequence},
                )
            ref = transaction.payment_reference
            if ref is not None and ref in self._by_payment_reference:
                raise StorageError(
                    f"Payment reference already recorded: {ref}",
                    {"payment_reference": ref},
                )
            entries.append(transaction)
            if ref is not None:
                self._by_payment_reference[ref] = transaction

    def latest(self, user_id: str) -> Optional[PageTransaction]:
        entries = self._entries.get(user_id)
        return entries[-1] if entries else None

    def list_for_user(
        self,
        user_id: str,
        limit: int,
        offset: int = 0,
        type: Optional[TransactionType] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> List[PageTransaction]:
        entries = list(reversed(self._matching(user_id, type, start, end)))
        return entries[offset:offset + limit]

    def count_for_user(
        self,
        user_id: str,
        type: Optional[TransactionType] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> int:
        return len(self._matching(user_id, type, start, end))

    def _matching(self, user_id, type, start, end) -> List[PageTransaction]:
        return [
            t for t in self._entries.get(user_id, [])
            if (type is None or t.type is type)
            and (start is None or t.created_at >= start)
            and (end is None or t.created_at < end)
        ]

    def chain(self, user_id: str) -> List[PageTransaction]:
        return list(self._entries.get(user_id, []))

    def find_by_payment_reference(self, payment_reference: str) -> Optional[PageTransaction]:
        return self._by_payment_reference.get(payment_reference)


def time_bound(
    value: Union[str, date, datetime, None],
    field: str,
    is_end: bool = False,
) -> Optional[str]:
    """
    Normalize a history filter bound to an ISO UTC string comparable with
    created_at.

    A bare date covers the whole day: as a start it means that midnight, as
    an end the following midnight. Naive datetimes are taken as UTC.
    """
    if value is None:
        return None

    if isinstance(value, str):
        text = value.strip()
        try:
            if len(text) == 10:
                value = date.fromisoformat(text)
            else:
                value = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid date: {value!r}", field=field, token=value)

    if not isinstance(value, datetime):
        if not isinstance(value, date):
            raise ValidationError(f"Invalid date: {value!r}", field=field)
        if is_end:
            value = value + timedelta(days=1)
        value = datetime.combine(value, time.min)

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _check_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(
            f"Amount must be a positive integer, got {amount!r}",
            field="amount",
        )


class BalanceLedger:
    """
    The page-balance ledger.

    Usage:
        ledger = BalanceLedger()
        ledger.credit("u1", TransactionType.ALLOCATE, 100, note="semester")
        ledger.debit("u1", 30, reference_job_id="BATCH-1")
        ledger.current_balance("u1")  # 70
    """

    def __init__(self, store: Optional[TransactionStore] = None):
        self.store = store or InMemoryTransactionStore()
        self._user_locks: Dict[str, RLock] = {}
        self._registry_lock = Lock()

    def user_lock(self, user_id: str) -> RLock:
        """
        The lock serializing all writes for `user_id`.

        Reentrant, so a caller may hold it across a debit and the work that
        depends on it.
        """
        with self._registry_lock:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = RLock()
                self._user_locks[user_id] = lock
            return lock

    def current_balance(self, user_id: str) -> int:
        latest = self.store.latest(user_id)
        return latest.balance_after if latest else 0

    def get_balance(self, user_id: str) -> PageBalance:
        latest = self.store.latest(user_id)
        return PageBalance(
            user_id=user_id,
            current_a4=latest.balance_after if latest else 0,
            last_updated=latest.created_at if latest else None,
        )

    def credit(
        self,
        user_id: str,
        type: TransactionType,
        amount: int,
        note: str = "",
        payment_reference: Optional[str] = None,
        reference_job_id: Optional[str] = None,
    ) -> PageTransaction:
        """
        Add pages to a balance.

        When payment_reference is given the credit is applied at most once:
        a repeat returns the entry written the first time.
        """
        if not type.is_credit:
            raise ValidationError(f"{type.value} is not a credit type", field="type")
        _check_amount(amount)

        with self.user_lock(user_id):
            if payment_reference is not None:
                existing = self.store.find_by_payment_reference(payment_reference)
                if existing is not None:
                    if existing.user_id != user_id:
                        raise ConflictError(
                            f"Payment reference {payment_reference} belongs to another user",
                            {"payment_reference": payment_reference},
                        )
                    logger.info(
                        "ledger_credit_duplicate_ignored",
                        user_id=user_id,
                        payment_reference=payment_reference,
                        transaction_id=existing.transaction_id,
                    )
                    return existing

            transaction = self._append(
                user_id,
                type,
                amount,
                note=note,
                payment_reference=payment_reference,
                reference_job_id=reference_job_id,
            )

        logger.info(
            "ledger_credit",
            user_id=user_id,
            type=type.value,
            amount=amount,
            balance_after=transaction.balance_after,
            transaction_id=transaction.transaction_id,
        )
        return transaction

    def debit(
        self,
        user_id: str,
        amount: int,
        reference_job_id: Optional[str] = None,
        note: str = "",
    ) -> PageTransaction:
        """Charge pages; fails without writing if the balance cannot cover it."""
        _check_amount(amount)

        with self.user_lock(user_id):
            balance_before = self.current_balance(user_id)
            if balance_before < amount:
                logger.warning(
                    "ledger_debit_rejected",
                    user_id=user_id,
                    balance=balance_before,
                    required=amount,
                )
                raise InsufficientBalanceError(balance_before, amount, user_id=user_id)

            transaction = self._append(
                user_id,
                TransactionType.DEDUCT,
                -amount,
                note=note,
                reference_job_id=reference_job_id,
            )

        logger.info(
            "ledger_debit",
            user_id=user_id,
            amount=amount,
            balance_after=transaction.balance_after,
            reference_job_id=reference_job_id,
            transaction_id=transaction.transaction_id,
        )
        return transaction

    def _append(
        self,
        user_id: str,
        type: TransactionType,
        delta: int,
        note: str = "",
        payment_reference: Optional[str] = None,
        reference_job_id: Optional[str] = None,
    ) -> PageTransaction:
        # Caller holds the user's lock.
        latest = self.store.latest(user_id)
        balance_before = latest.balance_after if latest else 0
        balance_after = balance_before + delta
        if balance_after < 0:
            raise InsufficientBalanceError(balance_before, -delta, user_id=user_id)

        transaction = PageTransaction(
            transaction_id=f"TXN-{uuid.uuid4().hex[:20].upper()}",
            user_id=user_id,
            type=type,
            delta=delta,
            balance_after=balance_after,
            sequence=(latest.sequence + 1) if latest else 1,
            created_at=utc_now(),
            reference_job_id=reference_job_id,
            payment_reference=payment_reference,
            note=note,
            prev_hash=latest.entry_hash if latest else GENESIS_HASH,
        )
        transaction = replace(transaction, entry_hash=transaction.compute_hash())

        try:
            self.store.append(transaction)
        except StorageError:
            logger.error("ledger_append_failed", user_id=user_id, type=type.value, delta=delta)
            raise
        except Exception as e:
            logger.error("ledger_append_failed", user_id=user_id, type=type.value, delta=delta, error=str(e))
            raise StorageError(
                "Ledger entry could not be written",
                {"user_id": user_id, "type": type.value, "delta": delta},
            ) from e

        return transaction

    def history(
        self,
        user_id: str,
        page: int = 0,
        size: int = 10,
        type: Optional[TransactionType] = None,
        start: Union[str, date, datetime, None] = None,
        end: Union[str, date, datetime, None] = None,
    ) -> TransactionPage:
        """
        Paginated history, newest first, optionally limited to entries
        created in [start, end).
        """
        if page < 0:
            raise ValidationError("Page index must be >= 0", field="page")
        if not 1 <= size <= MAX_HISTORY_PAGE_SIZE:
            raise ValidationError(
                f"Page size must be between 1 and {MAX_HISTORY_PAGE_SIZE}",
                field="size",
            )

        start = time_bound(start, "start_date")
        end = time_bound(end, "end_date", is_end=True)
        if start is not None and end is not None and start > end:
            raise ValidationError("start_date must not be after end_date", field="start_date")

        return TransactionPage(
            content=self.store.list_for_user(
                user_id, limit=size, offset=page * size, type=type, start=start, end=end,
            ),
            total_elements=self.store.count_for_user(user_id, type=type, start=start, end=end),
            current_page=page,
            page_size=size,
        )

    def verify_integrity(self, user_id: str) -> Tuple[bool, Optional[str], int]:
        """
        Replay a user's log and check it.

        Returns (is_valid, error_message, chain_length)
        """
        entries = self.store.chain(user_id)

        balance = 0
        prev_hash = GENESIS_HASH
        for i, entry in enumerate(entries):
            if entry.sequence != i + 1:
                return (False, f"Sequence mismatch at position {i}", i)

            if entry.type is TransactionType.DEDUCT and entry.delta > 0:
                return (False, f"Positive deduction at position {i}", i)
            if entry.type.is_credit and entry.delta < 0:
                return (False, f"Negative credit at position {i}", i)

            balance += entry.delta
            if entry.balance_after != balance:
                return (False, f"Running balance mismatch at position {i}", i)
            if balance < 0:
                return (False, f"Negative balance at position {i}", i)

            if entry.prev_hash != prev_hash:
                return (False, f"Hash chain broken at position {i}", i)
            if entry.entry_hash != entry.compute_hash():
                return (False, f"Entry hash mismatch at position {i}", i)

            prev_hash = entry.entry_hash

        return (True, None, len(entries))
