"""
Page Top-Up Payments

A user buys pages by creating a pending payment, paying it out of band and
waiting for the gateway to report it. Confirmation is polled by an explicit,
cancellable task that stops on success, expiry or cancellation.

A payment is credited to the ledger at most once. The payment code is the
ledger's payment_reference, so even if confirmation fires repeatedly (poller
tick, webhook, manual test-complete) only the first credit is written.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Event, Lock, Thread
from typing import Any, Callable, Dict, List, Optional
import uuid
import structlog

from .errors import ConflictError, NotFoundError, QuotaRailError, ValidationError
from .ledger import BalanceLedger
from .models import PageTransaction, PaperSize, TransactionType
from .pricing import PricingTable
from .session import SessionContext

logger = structlog.get_logger()

DEFAULT_EXPIRY = timedelta(minutes=15)


class PaymentStatus(Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Payment:
    payment_code: str
    user_id: str
    a4_pages: int
    amount: int
    expires_at: str
    status: PaymentStatus = PaymentStatus.PENDING
    created_at: str = field(default_factory=lambda: _now().isoformat())
    completed_at: Optional[str] = None
    currency: str = "VND"

    def is_past_expiry(self, now: datetime) -> bool:
        return now >= datetime.fromisoformat(self.expires_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_code": self.payment_code,
            "user_id": self.user_id,
            "a4_pages": self.a4_pages,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "completed_at": self.completed_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.payment_code,
            self.user_id,
            self.a4_pages,
            self.amount,
            self.currency,
            self.status.value,
            self.created_at,
            self.expires_at,
            self.completed_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Payment":
        return cls(
            payment_code=row["payment_code"],
            user_id=row["user_id"],
            a4_pages=row["a4_pages"],
            amount=row["amount"],
            currency=row.get("currency") or "VND",
            status=PaymentStatus(row["status"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            completed_at=row.get("completed_at"),
        )


class PaymentGateway(ABC):
    """The payment collaborator, seen only through its status report."""

    @abstractmethod
    def get_status(self, payment_code: str) -> PaymentStatus:
        pass

    def register(self, payment: Payment) -> None:
        """Called when a payment is created."""

    def cancel(self, payment_code: str) -> None:
        """
        Called when the user abandons a payment. Raises ConflictError if the
        payment has already been paid.
        """


class InMemoryPaymentGateway(PaymentGateway):
    """Dev/test gateway; complete() stands in for the bank transfer arriving."""

    def __init__(self):
        self._statuses: Dict[str, PaymentStatus] = {}
        self._lock = Lock()

    def register(self, payment: Payment) -> None:
        with self._lock:
            self._statuses[payment.payment_code] = PaymentStatus.PENDING

    def get_status(self, payment_code: str) -> PaymentStatus:
        status = self._statuses.get(payment_code)
        if status is None:
            raise NotFoundError("Payment", payment_code)
        return status

    def complete(self, payment_code: str) -> None:
        self._set(payment_code, PaymentStatus.COMPLETED)

    def expire(self, payment_code: str) -> None:
        self._set(payment_code, PaymentStatus.EXPIRED)

    def cancel(self, payment_code: str) -> None:
        self._set(payment_code, PaymentStatus.CANCELLED)

    def _set(self, payment_code: str, status: PaymentStatus) -> None:
        with self._lock:
            current = self._statuses.get(payment_code)
            if current is None:
                raise NotFoundError("Payment", payment_code)
            # Money received stays received.
            if current is PaymentStatus.COMPLETED and status is not PaymentStatus.COMPLETED:
                raise ConflictError(
                    f"Payment {payment_code} has already been paid",
                    {"payment_code": payment_code, "status": current.value},
                )
            self._statuses[payment_code] = status


class PaymentStore(ABC):

    @abstractmethod
    def save(self, payment: Payment) -> None:
        """Insert or update."""

    @abstractmethod
    def get(self, payment_code: str) -> Optional[Payment]:
        pass

    @abstractmethod
    def list_for_user(self, user_id: str, status: Optional[PaymentStatus] = None) -> List[Payment]:
        pass


class InMemoryPaymentStore(PaymentStore):

    def __init__(self):
        self._payments: Dict[str, Payment] = {}

    def save(self, payment: Payment) -> None:
        self._payments[payment.payment_code] = payment

    def get(self, payment_code: str) -> Optional[Payment]:
        return self._payments.get(payment_code)

    def list_for_user(self, user_id: str, status: Optional[PaymentStatus] = None) -> List[Payment]:
        payments = [
            p for p in self._payments.values()
            if p.user_id == user_id and (status is None or p.status is status)
        ]
        return sorted(payments, key=lambda p: p.created_at, reverse=True)


class TopUpService:
    """Creates, confirms, expires and cancels page purchases."""

    def __init__(
        self,
        ledger: BalanceLedger,
        gateway: Optional[PaymentGateway] = None,
        pricing: Optional[PricingTable] = None,
        payments: Optional[PaymentStore] = None,
        expiry: timedelta = DEFAULT_EXPIRY,
        clock: Callable[[], datetime] = _now,
    ):
        self.ledger = ledger
        self.gateway = gateway or InMemoryPaymentGateway()
        self.pricing = pricing or PricingTable()
        self.payments = payments or InMemoryPaymentStore()
        self.expiry = expiry
        self.clock = clock

    def create_payment(self, session: SessionContext, a4_pages: int) -> Payment:
        if isinstance(a4_pages, bool) or not isinstance(a4_pages, int) or a4_pages < 1:
            raise ValidationError(
                f"Pages to buy must be a positive integer, got {a4_pages!r}",
                field="a4_pages",
            )

        price = self.pricing.price_for(PaperSize.A4)
        now = self.clock()
        payment = Payment(
            payment_code=f"PAY{uuid.uuid4().hex[:12].upper()}",
            user_id=session.user_id,
            a4_pages=a4_pages,
            amount=self.pricing.calculate_price(PaperSize.A4, a4_pages),
            currency=price.currency,
            created_at=now.isoformat(),
            expires_at=(now + self.expiry).isoformat(),
        )
        self.payments.save(payment)
        self.gateway.register(payment)

        logger.info(
            "payment_created",
            user_id=session.user_id,
            payment_code=payment.payment_code,
            a4_pages=a4_pages,
            amount=payment.amount,
        )
        return payment

    def _load(self, payment_code: str) -> Payment:
        payment = self.payments.get(payment_code)
        if payment is None:
            raise NotFoundError("Payment", payment_code)
        return payment

    def get_payment(self, session: SessionContext, payment_code: str) -> Payment:
        payment = self._load(payment_code)
        if payment.user_id != session.user_id and not session.is_admin:
            raise NotFoundError("Payment", payment_code)
        return payment

    def pending_payments(self, session: SessionContext) -> List[Payment]:
        return self.payments.list_for_user(session.user_id, PaymentStatus.PENDING)

    def cancel_payment(self, session: SessionContext, payment_code: str) -> Payment:
        """
        Abandon a pending payment. If the gateway reports it paid, the
        purchase is credited instead and ConflictError is raised.
        """
        payment = self.get_payment(session, payment_code)

        with self.ledger.user_lock(payment.user_id):
            payment = self._load(payment_code)
            if payment.status is not PaymentStatus.PENDING:
                raise ConflictError(
                    f"Payment {payment_code} is {payment.status.value}, not PENDING",
                    {"payment_code": payment_code, "status": payment.status.value},
                )

            paid = self.gateway.get_status(payment_code) is PaymentStatus.COMPLETED
            if not paid:
                try:
                    self.gateway.cancel(payment_code)
                except ConflictError:
                    # Paid between the status check and the cancel.
                    paid = True

            if paid:
                self.confirm(payment_code)
                logger.warning("payment_cancel_refused_paid", user_id=payment.user_id, payment_code=payment_code)
                raise ConflictError(
                    f"Payment {payment_code} has already been paid",
                    {"payment_code": payment_code, "status": PaymentStatus.COMPLETED.value},
                )

            payment.status = PaymentStatus.CANCELLED
            self.payments.save(payment)

        logger.info("payment_cancelled", user_id=payment.user_id, payment_code=payment_code)
        return payment

    def _expire(self, payment: Payment) -> Payment:
        payment.status = PaymentStatus.EXPIRED
        self.payments.save(payment)
        logger.info("payment_expired", user_id=payment.user_id, payment_code=payment.payment_code)
        return payment

    def confirm(self, payment_code: str) -> PageTransaction:
        """
        Credit a paid payment. Safe to call any number of times; the ledger
        entry is written once and returned on every later call.
        """
        payment = self._load(payment_code)

        with self.ledger.user_lock(payment.user_id):
            payment = self._load(payment_code)

            if payment.status is PaymentStatus.CANCELLED:
                raise ConflictError(
                    f"Payment {payment_code} was cancelled",
                    {"payment_code": payment_code, "status": payment.status.value},
                )
            if payment.status is PaymentStatus.EXPIRED or (
                payment.status is PaymentStatus.PENDING and payment.is_past_expiry(self.clock())
            ):
                if payment.status is PaymentStatus.PENDING:
                    self._expire(payment)
                raise ConflictError(
                    f"Payment {payment_code} has expired",
                    {"payment_code": payment_code, "status": PaymentStatus.EXPIRED.value},
                )

            transaction = self.ledger.credit(
                payment.user_id,
                TransactionType.PURCHASE,
                payment.a4_pages,
                note=f"Purchase {payment.a4_pages} A4 pages",
                payment_reference=payment_code,
            )

            if payment.status is not PaymentStatus.COMPLETED:
                payment.status = PaymentStatus.COMPLETED
                payment.completed_at = transaction.created_at
                self.payments.save(payment)
                logger.info(
                    "payment_completed",
                    user_id=payment.user_id,
                    payment_code=payment_code,
                    a4_pages=payment.a4_pages,
                )

        return transaction

    def refresh(self, payment_code: str) -> PaymentStatus:
        """Ask the gateway about a payment and apply whatever it reports."""
        payment = self._load(payment_code)
        if payment.status is not PaymentStatus.PENDING:
            return payment.status

        reported = self.gateway.get_status(payment_code)
        if reported is PaymentStatus.COMPLETED:
            self.confirm(payment_code)
            return PaymentStatus.COMPLETED

        with self.ledger.user_lock(payment.user_id):
            payment = self._load(payment_code)
            if payment.status is not PaymentStatus.PENDING:
                return payment.status
            if reported is PaymentStatus.CANCELLED:
                payment.status = PaymentStatus.CANCELLED
                self.payments.save(payment)
            elif reported is PaymentStatus.EXPIRED or payment.is_past_expiry(self.clock()):
                self._expire(payment)
            return payment.status


class PaymentConfirmationPoller:
    """
    Cancellable polling task for one payment.

    tick() polls once and returns True once polling should stop. start()
    runs ticks on a daemon thread every `interval` seconds until then.
    """

    def __init__(
        self,
        topups: TopUpService,
        payment_code: str,
        interval: float = 5.0,
        on_finish: Optional[Callable[["PaymentConfirmationPoller"], None]] = None,
    ):
        self.topups = topups
        self.payment_code = payment_code
        self.interval = interval
        self.on_finish = on_finish
        self.outcome: Optional[PaymentStatus] = None
        self._stop = Event()
        self._thread: Optional[Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set() and self.outcome is None

    def tick(self) -> bool:
        if self._stop.is_set():
            return True

        try:
            status = self.topups.refresh(self.payment_code)
        except ConflictError as e:
            status = PaymentStatus(e.details.get("status", PaymentStatus.EXPIRED.value))

        if status is PaymentStatus.PENDING:
            return False

        self.outcome = status
        self._stop.set()
        logger.info("payment_poll_finished", payment_code=self.payment_code, outcome=status.value)
        return True

    def _run(self) -> None:
        try:
            while not self._stop.is_set():
                try:
                    if self.tick():
                        break
                except QuotaRailError as e:
                    logger.error("payment_poll_failed", payment_code=self.payment_code, error=e.message)
                    self._stop.set()
                    break
                except Exception as e:
                    # Gateway transport trouble; try again next interval.
                    logger.warning("payment_poll_error", payment_code=self.payment_code, error=str(e))
                self._stop.wait(self.interval)
        finally:
            logger.debug(
                "payment_poll_stopped",
                payment_code=self.payment_code,
                cancelled=self.cancelled,
            )
            if self.on_finish is not None:
                self.on_finish(self)

    def start(self) -> "PaymentConfirmationPoller":
        if self._thread is not None:
            raise ConflictError("Poller already started", {"payment_code": self.payment_code})
        self._thread = Thread(
            target=self._run,
            name=f"payment-poll-{self.payment_code}",
            daemon=True,
        )
        self._thread.start()
        return self

    def cancel(self, session: Optional[SessionContext] = None) -> None:
        """
        Stop polling. With a session, the payment itself is abandoned too.
        """
        try:
            if session is not None:
                self.topups.cancel_payment(session, self.payment_code)
        finally:
            self._stop.set()
            logger.info("payment_poll_cancelled", payment_code=self.payment_code)

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
