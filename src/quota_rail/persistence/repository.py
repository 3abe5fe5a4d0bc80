"""
Repository Layer for Quota Rail

Database-backed implementations of the core's store interfaces.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple
import structlog

from ..core.errors import StorageError
from ..core.ledger import TransactionStore
from ..core.models import PageTransaction, PrintJob, TransactionType
from ..core.payment import Payment, PaymentStatus, PaymentStore
from ..core.submission import JobStore
from .database import Database, get_database

logger = structlog.get_logger()


def _write_failed(operation: str, error: Exception, **context: Any) -> StorageError:
    logger.error("storage_write_failed", operation=operation, error=str(error), **context)
    return StorageError(f"{operation} failed", dict(context, cause=type(error).__name__))


class TransactionRepository(TransactionStore):
    """Repository for ledger entries. Rows are inserted, never updated."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def append(self, transaction: PageTransaction) -> None:
        try:
            self.db.execute(
                """INSERT INTO page_transactions
                   (transaction_id, user_id, sequence, type, delta, balance_after,
                    reference_job_id, payment_reference, note, created_at,
                    prev_hash, entry_hash)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                transaction.to_db_tuple()
            )
        except Exception as e:
            raise _write_failed(
                "ledger append",
                e,
                user_id=transaction.user_id,
                sequence=transaction.sequence,
            ) from e
        logger.debug("transaction_created", transaction_id=transaction.transaction_id)

    def latest(self, user_id: str) -> Optional[PageTransaction]:
        results = self.db.execute(
            "SELECT * FROM page_transactions WHERE user_id = ? ORDER BY sequence DESC LIMIT 1",
            (user_id,)
        )
        return PageTransaction.from_row(results[0]) if results else None

    @staticmethod
    def _filters(
        user_id: str,
        type: Optional[TransactionType],
        start: Optional[str],
        end: Optional[str],
    ) -> Tuple[str, list]:
        clauses = ["user_id = ?"]
        params: list = [user_id]
        if type is not None:
            clauses.append("type = ?")
            params.append(type.value)
        if start is not None:
            clauses.append("created_at >= ?")
            params.append(start)
        if end is not None:
            clauses.append("created_at < ?")
            params.append(end)
        return " AND ".join(clauses), params

    def list_for_user(
        self,
        user_id: str,
        limit: int,
        offset: int = 0,
        type: Optional[TransactionType] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> List[PageTransaction]:
        where, params = self._filters(user_id, type, start, end)
        results = self.db.execute(
            f"""SELECT * FROM page_transactions WHERE {where}
                ORDER BY sequence DESC LIMIT ? OFFSET ?""",
            tuple(params + [limit, offset])
        )
        return [PageTransaction.from_row(r) for r in results]

    def count_for_user(
        self,
        user_id: str,
        type: Optional[TransactionType] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
    ) -> int:
        where, params = self._filters(user_id, type, start, end)
        results = self.db.execute(
            f"SELECT COUNT(*) as cnt FROM page_transactions WHERE {where}",
            tuple(params)
        )
        return results[0]["cnt"] if results else 0

    def chain(self, user_id: str) -> List[PageTransaction]:
        results = self.db.execute(
            "SELECT * FROM page_transactions WHERE user_id = ? ORDER BY sequence ASC",
            (user_id,)
        )
        return [PageTransaction.from_row(r) for r in results]

    def find_by_payment_reference(self, payment_reference: str) -> Optional[PageTransaction]:
        results = self.db.execute(
            "SELECT * FROM page_transactions WHERE payment_reference = ?",
            (payment_reference,)
        )
        return PageTransaction.from_row(results[0]) if results else None

    def get_user_summary(self, user_id: str) -> Dict[str, Any]:
        """Totals per transaction type for reporting."""
        results = self.db.execute(
            """SELECT type, COUNT(*) as cnt, SUM(delta) as total
               FROM page_transactions WHERE user_id = ? GROUP BY type""",
            (user_id,)
        )
        summary = {t.value: {"count": 0, "total": 0} for t in TransactionType}
        for row in results:
            summary[row["type"]] = {"count": row["cnt"], "total": row["total"] or 0}
        return {"user_id": user_id, "by_type": summary}


class PrintJobRepository(JobStore):
    """Repository for print job records."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create_many(self, jobs: Sequence[PrintJob]) -> None:
        try:
            self.db.execute_many(
                """INSERT INTO print_jobs
                   (job_id, user_id, batch_id, request, equivalent_pages_charged,
                    pages_to_print, status, submitted_at, completed_at, error_message)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [job.to_db_tuple() for job in jobs]
            )
        except Exception as e:
            raise _write_failed("job creation", e, job_count=len(jobs)) from e
        logger.debug("print_jobs_created", count=len(jobs))

    def get(self, job_id: str) -> Optional[PrintJob]:
        results = self.db.execute(
            "SELECT * FROM print_jobs WHERE job_id = ?",
            (job_id,)
        )
        return PrintJob.from_row(results[0]) if results else None

    def update(self, job: PrintJob) -> None:
        # The charge column is deliberately absent: it never changes.
        try:
            self.db.execute(
                """UPDATE print_jobs SET status = ?, completed_at = ?, error_message = ?
                   WHERE job_id = ?""",
                (job.status.value, job.completed_at, job.error_message, job.job_id)
            )
        except Exception as e:
            raise _write_failed("job update", e, job_id=job.job_id) from e
        logger.debug("print_job_updated", job_id=job.job_id, status=job.status.value)

    def list_for_user(self, user_id: str) -> List[PrintJob]:
        results = self.db.execute(
            "SELECT * FROM print_jobs WHERE user_id = ? ORDER BY submitted_at DESC",
            (user_id,)
        )
        return [PrintJob.from_row(r) for r in results]

    def list_by_batch(self, batch_id: str) -> List[PrintJob]:
        results = self.db.execute(
            "SELECT * FROM print_jobs WHERE batch_id = ? ORDER BY job_id",
            (batch_id,)
        )
        return [PrintJob.from_row(r) for r in results]

    def count(self) -> int:
        results = self.db.execute("SELECT COUNT(*) as cnt FROM print_jobs")
        return results[0]["cnt"] if results else 0


class PaymentRepository(PaymentStore):
    """Repository for top-up payments."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def save(self, payment: Payment) -> None:
        try:
            if self.get(payment.payment_code) is None:
                self.db.execute(
                    """INSERT INTO payments
                       (payment_code, user_id, a4_pages, amount, currency, status,
                        created_at, expires_at, completed_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    payment.to_db_tuple()
                )
            else:
                self.db.execute(
                    "UPDATE payments SET status = ?, completed_at = ? WHERE payment_code = ?",
                    (payment.status.value, payment.completed_at, payment.payment_code)
                )
        except Exception as e:
            raise _write_failed("payment save", e, payment_code=payment.payment_code) from e

    def get(self, payment_code: str) -> Optional[Payment]:
        results = self.db.execute(
            "SELECT * FROM payments WHERE payment_code = ?",
            (payment_code,)
        )
        return Payment.from_row(results[0]) if results else None

    def list_for_user(self, user_id: str, status: Optional[PaymentStatus] = None) -> List[Payment]:
        if status is None:
            results = self.db.execute(
                "SELECT * FROM payments WHERE user_id = ? ORDER BY created_at DESC",
                (user_id,)
            )
        else:
            results = self.db.execute(
                "SELECT * FROM payments WHERE user_id = ? AND status = ? ORDER BY created_at DESC",
                (user_id, status.value)
            )
        return [Payment.from_row(r) for r in results]
