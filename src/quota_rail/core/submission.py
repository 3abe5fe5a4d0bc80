"""
Print Job Submission

Accepts or rejects a batch of print requests as a unit:

1. Resolve each document and validate its page ranges.
2. Check every request against its printer's capabilities.
3. Price every request in A4-equivalent pages and sum the batch.
4. Debit the batch total once, under the user's ledger lock.
5. Create one Pending job per request.

Nothing is written unless every step succeeds. A batch is never split into
per-document debits.
"""

from abc import ABC, abstractmethod
from threading import Lock
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union
import uuid
import structlog

from .equivalence import MAX_COPIES, JobEstimate, estimate_request
from .errors import (
    CapabilityMismatchError,
    ConflictError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .ledger import BalanceLedger
from .models import (
    ALLOWED_TRANSITIONS,
    Document,
    JobStatus,
    PrintJob,
    PrintRequest,
    PrinterCapabilities,
    TransactionType,
    index_printers,
    utc_now,
)
from .session import SessionContext

logger = structlog.get_logger()

PrinterCapabilitiesArg = Union[
    PrinterCapabilities,
    Mapping[str, PrinterCapabilities],
    Iterable[PrinterCapabilities],
]


class DocumentStore(ABC):
    """Read side of the document-storage collaborator."""

    @abstractmethod
    def get(self, document_id: str) -> Optional[Document]:
        pass


class InMemoryDocumentStore(DocumentStore):

    def __init__(self, documents: Optional[Iterable[Document]] = None):
        self._documents: Dict[str, Document] = {}
        for document in documents or []:
            self.add(document)

    def add(self, document: Document) -> Document:
        if isinstance(document.total_pages, bool) or not isinstance(document.total_pages, int) or document.total_pages < 1:
            raise ValidationError(
                "Document must have at least one page",
                field="total_pages",
            )
        self._documents[document.document_id] = document
        return document

    def get(self, document_id: str) -> Optional[Document]:
        return self._documents.get(document_id)


class JobStore(ABC):
    """Where print job records live. create_many() is all-or-nothing."""

    @abstractmethod
    def create_many(self, jobs: Sequence[PrintJob]) -> None:
        pass

    @abstractmethod
    def get(self, job_id: str) -> Optional[PrintJob]:
        pass

    @abstractmethod
    def update(self, job: PrintJob) -> None:
        pass

    @abstractmethod
    def list_for_user(self, user_id: str) -> List[PrintJob]:
        """Jobs for a user, newest first."""

    @abstractmethod
    def count(self) -> int:
        pass


class InMemoryJobStore(JobStore):

    def __init__(self):
        self._jobs: Dict[str, PrintJob] = {}
        self._lock = Lock()

    def create_many(self, jobs: Sequence[PrintJob]) -> None:
        with self._lock:
            duplicates = [j.job_id for j in jobs if j.job_id in self._jobs]
            if duplicates:
                raise StorageError("Duplicate job ids", {"job_ids": duplicates})
            for job in jobs:
                self._jobs[job.job_id] = job

    def get(self, job_id: str) -> Optional[PrintJob]:
        return self._jobs.get(job_id)

    def update(self, job: PrintJob) -> None:
        with self._lock:
            if job.job_id not in self._jobs:
                raise StorageError("Unknown job", {"job_id": job.job_id})
            self._jobs[job.job_id] = job

    def list_for_user(self, user_id: str) -> List[PrintJob]:
        jobs = [j for j in self._jobs.values() if j.user_id == user_id]
        return sorted(jobs, key=lambda j: j.submitted_at, reverse=True)

    def count(self) -> int:
        return len(self._jobs)


def _index_capabilities(printer_capabilities: PrinterCapabilitiesArg) -> Dict[str, PrinterCapabilities]:
    if isinstance(printer_capabilities, PrinterCapabilities):
        return {printer_capabilities.printer_id: printer_capabilities}
    if isinstance(printer_capabilities, Mapping):
        return dict(printer_capabilities)
    return index_printers(printer_capabilities)


class PrintJobSubmissionCoordinator:
    """
    Orchestrates batch submission, cancellation and job status changes.

    Cancelling a Pending job refunds its charge with a Refund entry unless
    refund_on_cancel is off.
    """

    def __init__(
        self,
        ledger: BalanceLedger,
        documents: DocumentStore,
        jobs: Optional[JobStore] = None,
        max_copies: int = MAX_COPIES,
        refund_on_cancel: bool = True,
        dispatcher: Optional[Callable[[List[PrintJob]], None]] = None,
    ):
        self.ledger = ledger
        self.documents = documents
        self.jobs = jobs or InMemoryJobStore()
        self.max_copies = max_copies
        self.refund_on_cancel = refund_on_cancel
        self.dispatcher = dispatcher

    def _resolve_document(self, document_id: str) -> Document:
        document = self.documents.get(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)
        return document

    def _estimate_all(self, batch: Sequence[PrintRequest]) -> List[JobEstimate]:
        if not batch:
            raise ValidationError("A print batch needs at least one request", field="batch")

        estimates = []
        for index, request in enumerate(batch):
            document = self._resolve_document(request.document_id)
            try:
                estimates.append(estimate_request(request, document, self.max_copies))
            except ValidationError as e:
                e.details["request_index"] = index
                e.details["document_id"] = request.document_id
                raise
        return estimates

    @staticmethod
    def _check_capabilities(
        index: int,
        request: PrintRequest,
        printers: Dict[str, PrinterCapabilities],
    ) -> None:
        printer = printers.get(request.printer_id)
        if printer is None:
            raise NotFoundError("Printer", request.printer_id)

        if not printer.supports_paper(request.paper_size):
            raise CapabilityMismatchError(
                "paper_size",
                index,
                printer.printer_id,
                requested=request.paper_size.value,
            )
        if request.duplex and not printer.duplex:
            raise CapabilityMismatchError("duplex", index, printer.printer_id, requested=True)
        if request.wants_color and not printer.color:
            raise CapabilityMismatchError(
                "color",
                index,
                printer.printer_id,
                requested=request.color_mode.value,
            )

    def estimate(self, session: SessionContext, batch: Sequence[PrintRequest]) -> List[JobEstimate]:
        """Price a batch without checking printers or touching the ledger."""
        estimates = self._estimate_all(batch)
        logger.debug(
            "batch_estimated",
            user_id=session.user_id,
            requests=len(batch),
            total_charge=sum(e.equivalent_pages for e in estimates),
        )
        return estimates

    def submit(
        self,
        session: SessionContext,
        batch: Sequence[PrintRequest],
        printer_capabilities: PrinterCapabilitiesArg,
    ) -> List[PrintJob]:
        """
        Submit a batch; returns one Pending job per request.

        Raises ValidationError, NotFoundError, CapabilityMismatchError or
        InsufficientBalanceError, in each case with nothing written.
        """
        user_id = session.user_id
        try:
            estimates = self._estimate_all(batch)

            printers = _index_capabilities(printer_capabilities)
            for index, request in enumerate(batch):
                self._check_capabilities(index, request, printers)
        except (ValidationError, NotFoundError, CapabilityMismatchError) as e:
            logger.info("batch_rejected", user_id=user_id, reason=type(e).__name__, error=e.message)
            raise

        total_charge = sum(e.equivalent_pages for e in estimates)
        batch_id = f"BATCH-{uuid.uuid4().hex[:16].upper()}"

        with self.ledger.user_lock(user_id):
            debit = self.ledger.debit(
                user_id,
                total_charge,
                reference_job_id=batch_id,
                note=f"Print batch of {len(batch)} document(s)",
            )

            submitted_at = utc_now()
            jobs = [
                PrintJob(
                    job_id=f"JOB-{uuid.uuid4().hex[:16].upper()}",
                    user_id=user_id,
                    request=request,
                    equivalent_pages_charged=estimate.equivalent_pages,
                    pages_to_print=estimate.pages_to_print,
                    batch_id=batch_id,
                    submitted_at=submitted_at,
                )
                for request, estimate in zip(batch, estimates)
            ]
            assert sum(j.equivalent_pages_charged for j in jobs) == total_charge == -debit.delta

            try:
                self.jobs.create_many(jobs)
            except Exception as e:
                # Offset the debit; the ledger stays append-only.
                self.ledger.credit(
                    user_id,
                    TransactionType.REFUND,
                    total_charge,
                    note="Reversal: job records could not be created",
                    reference_job_id=batch_id,
                )
                logger.error("batch_job_creation_failed", user_id=user_id, batch_id=batch_id, error=str(e))
                raise StorageError(
                    "Print jobs could not be recorded; charge reversed",
                    {"batch_id": batch_id},
                ) from e

        logger.info(
            "batch_accepted",
            user_id=user_id,
            batch_id=batch_id,
            jobs=len(jobs),
            total_charge=total_charge,
            balance_after=debit.balance_after,
        )

        if self.dispatcher is not None:
            self.dispatcher(jobs)

        return jobs

    def get_job(self, session: SessionContext, job_id: str) -> PrintJob:
        job = self.jobs.get(job_id)
        if job is None or (job.user_id != session.user_id and not session.is_admin):
            raise NotFoundError("PrintJob", job_id)
        return job

    def list_jobs(self, session: SessionContext) -> List[PrintJob]:
        return self.jobs.list_for_user(session.user_id)

    def cancel(self, session: SessionContext, job_id: str) -> PrintJob:
        """Cancel a Pending job; any other state raises ConflictError."""
        job = self.get_job(session, job_id)

        with self.ledger.user_lock(job.user_id):
            job = self.jobs.get(job_id)
            if job.status is not JobStatus.PENDING:
                raise ConflictError(
                    f"Only Pending jobs can be cancelled; {job_id} is {job.status.value}",
                    {"job_id": job_id, "status": job.status.value},
                )

            job.status = JobStatus.CANCELLED
            self.jobs.update(job)

            if self.refund_on_cancel:
                try:
                    self.ledger.credit(
                        job.user_id,
                        TransactionType.REFUND,
                        job.equivalent_pages_charged,
                        note=f"Refund for cancelled job {job_id}",
                        reference_job_id=job_id,
                    )
                except Exception:
                    job.status = JobStatus.PENDING
                    self.jobs.update(job)
                    raise

        logger.info(
            "job_cancelled",
            user_id=job.user_id,
            job_id=job_id,
            refunded=job.equivalent_pages_charged if self.refund_on_cancel else 0,
        )
        return job

    def _transition(self, job_id: str, target: JobStatus, error_message: Optional[str] = None) -> PrintJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise NotFoundError("PrintJob", job_id)

        with self.ledger.user_lock(job.user_id):
            job = self.jobs.get(job_id)
            if target not in ALLOWED_TRANSITIONS[job.status]:
                raise ConflictError(
                    f"Cannot move job {job_id} from {job.status.value} to {target.value}",
                    {"job_id": job_id, "status": job.status.value, "target": target.value},
                )

            job.status = target
            if target in (JobStatus.COMPLETED, JobStatus.FAILED):
                job.completed_at = utc_now()
            if error_message is not None:
                job.error_message = error_message
            self.jobs.update(job)

        logger.info("job_status_changed", job_id=job_id, status=target.value)
        return job

    def mark_printing(self, job_id: str) -> PrintJob:
        return self._transition(job_id, JobStatus.PRINTING)

    def mark_completed(self, job_id: str) -> PrintJob:
        return self._transition(job_id, JobStatus.COMPLETED)

    def mark_failed(self, job_id: str, error_message: str) -> PrintJob:
        return self._transition(job_id, JobStatus.FAILED, error_message)
