"""
Tests for Print Job Submission

A batch is accepted or rejected as a unit: one debit for the whole batch,
or nothing written at all.
"""

import pytest

from quota_rail.core.errors import (
    CapabilityMismatchError,
    ConflictError,
    InsufficientBalanceError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from quota_rail.core.models import JobStatus, PrintRequest, TransactionType
from quota_rail.core.session import SessionContext
from quota_rail.core.submission import InMemoryJobStore, PrintJobSubmissionCoordinator


class FailingJobStore(InMemoryJobStore):
    """Job store that cannot record new jobs."""

    def create_many(self, jobs):
        raise RuntimeError("connection reset")


def fund(ledger, user_id, amount):
    ledger.credit(user_id, TransactionType.ALLOCATE, amount)


class TestBatchSubmission:
    """Test accepted batches."""

    def test_single_request(self, coordinator, ledger, session, printers):
        fund(ledger, session.user_id, 100)

        jobs = coordinator.submit(
            session,
            [PrintRequest(document_id="doc-10", printer_id="basic")],
            printers,
        )

        assert len(jobs) == 1
        assert jobs[0].status is JobStatus.PENDING
        assert jobs[0].equivalent_pages_charged == 10
        assert jobs[0].pages_to_print == 10
        assert ledger.current_balance(session.user_id) == 90

    def test_batch_is_one_debit(self, coordinator, ledger, session, printers):
        """Three requests, one Deduct entry equal to the sum of charges."""
        fund(ledger, session.user_id, 100)
        batch = [
            PrintRequest(document_id="doc-10", printer_id="basic"),
            PrintRequest(document_id="doc-25", printer_id="full", paper_size="A3", duplex=True, copies=2, page_range="1-5,10,15-20"),
            PrintRequest(document_id="doc-3", printer_id="full", duplex=True, copies=2),
        ]

        jobs = coordinator.submit(session, batch, printers)

        charges = [j.equivalent_pages_charged for j in jobs]
        assert charges == [10, 24, 3]
        deducts = ledger.history(session.user_id, type=TransactionType.DEDUCT).content
        assert len(deducts) == 1
        assert -deducts[0].delta == sum(charges)
        assert deducts[0].reference_job_id == jobs[0].batch_id
        assert len({j.batch_id for j in jobs}) == 1
        assert ledger.current_balance(session.user_id) == 63

    def test_accepts_single_printer(self, coordinator, ledger, session, printers):
        fund(ledger, session.user_id, 10)

        jobs = coordinator.submit(
            session,
            [PrintRequest(document_id="doc-3", printer_id="full", color_mode="Color")],
            printers["full"],
        )

        assert jobs[0].equivalent_pages_charged == 3

    def test_accepts_printer_list(self, coordinator, ledger, session, printers):
        fund(ledger, session.user_id, 10)

        jobs = coordinator.submit(
            session,
            [PrintRequest(document_id="doc-3", printer_id="basic")],
            list(printers.values()),
        )

        assert len(jobs) == 1

    def test_dispatcher_receives_jobs(self, ledger, documents, session, printers):
        dispatched = []
        coordinator = PrintJobSubmissionCoordinator(ledger, documents, dispatcher=dispatched.extend)
        fund(ledger, session.user_id, 10)

        jobs = coordinator.submit(session, [PrintRequest(document_id="doc-3", printer_id="basic")], printers)

        assert dispatched == jobs

    def test_charge_is_write_once(self, coordinator, ledger, session, printers):
        fund(ledger, session.user_id, 10)
        job = coordinator.submit(session, [PrintRequest(document_id="doc-3", printer_id="basic")], printers)[0]

        with pytest.raises(AttributeError):
            job.equivalent_pages_charged = 0


class TestBatchRejection:
    """Test that rejected batches write nothing."""

    def assert_untouched(self, coordinator, ledger, user_id, balance):
        assert ledger.current_balance(user_id) == balance
        assert coordinator.jobs.count() == 0
        assert ledger.history(user_id, type=TransactionType.DEDUCT).total_elements == 0

    def test_insufficient_balance_rejects_whole_batch(self, coordinator, ledger, session, printers):
        """Charge 12 against a balance of 10: no jobs, balance unchanged."""
        fund(ledger, session.user_id, 10)
        batch = [
            PrintRequest(document_id="doc-10", printer_id="basic"),
            PrintRequest(document_id="doc-3", printer_id="basic", page_range="1-2"),
        ]

        with pytest.raises(InsufficientBalanceError) as exc_info:
            coordinator.submit(session, batch, printers)

        assert exc_info.value.current_balance == 10
        assert exc_info.value.required == 12
        self.assert_untouched(coordinator, ledger, session.user_id, 10)

    def test_invalid_range_in_later_request(self, coordinator, ledger, session, printers):
        fund(ledger, session.user_id, 100)
        batch = [
            PrintRequest(document_id="doc-10", printer_id="basic"),
            PrintRequest(document_id="doc-3", printer_id="basic", page_range="2-4"),
        ]

        with pytest.raises(ValidationError) as exc_info:
            coordinator.submit(session, batch, printers)

        assert exc_info.value.details["request_index"] == 1
        assert exc_info.value.token == "2-4"
        self.assert_untouched(coordinator, ledger, session.user_id, 100)

    def test_empty_batch(self, coordinator, session, printers):
        with pytest.raises(ValidationError):
            coordinator.submit(session, [], printers)

    def test_unknown_document(self, coordinator, ledger, session, printers):
        fund(ledger, session.user_id, 100)

        with pytest.raises(NotFoundError):
            coordinator.submit(session, [PrintRequest(document_id="missing", printer_id="basic")], printers)
        self.assert_untouched(coordinator, ledger, session.user_id, 100)

    def test_unknown_printer(self, coordinator, ledger, session, printers):
        fund(ledger, session.user_id, 100)

        with pytest.raises(NotFoundError) as exc_info:
            coordinator.submit(session, [PrintRequest(document_id="doc-3", printer_id="ghost")], printers)
        assert exc_info.value.resource == "Printer"

    @pytest.mark.parametrize("options,feature", [
        ({"paper_size": "A3"}, "paper_size"),
        ({"duplex": True}, "duplex"),
        ({"color_mode": "Color"}, "color"),
        ({"color_page_range": "1"}, "color"),
    ])
    def test_capability_mismatch(self, coordinator, ledger, session, printers, options, feature):
        fund(ledger, session.user_id, 100)
        batch = [
            PrintRequest(document_id="doc-3", printer_id="full"),
            PrintRequest(document_id="doc-3", printer_id="basic", **options),
        ]

        with pytest.raises(CapabilityMismatchError) as exc_info:
            coordinator.submit(session, batch, printers)

        assert exc_info.value.feature == feature
        assert exc_info.value.request_index == 1
        assert exc_info.value.printer_id == "basic"
        self.assert_untouched(coordinator, ledger, session.user_id, 100)

    def test_too_many_copies(self, coordinator, ledger, session, printers):
        fund(ledger, session.user_id, 1000)

        with pytest.raises(ValidationError):
            coordinator.submit(session, [PrintRequest(document_id="doc-3", printer_id="basic", copies=11)], printers)

    def test_job_store_failure_reverses_charge(self, ledger, documents, session, printers):
        coordinator = PrintJobSubmissionCoordinator(ledger, documents, jobs=FailingJobStore())
        fund(ledger, session.user_id, 20)

        with pytest.raises(StorageError):
            coordinator.submit(session, [PrintRequest(document_id="doc-10", printer_id="basic")], printers)

        assert ledger.current_balance(session.user_id) == 20
        types = [t.type for t in ledger.history(session.user_id).content]
        assert types == [TransactionType.REFUND, TransactionType.DEDUCT, TransactionType.ALLOCATE]
        assert ledger.verify_integrity(session.user_id)[0]


class TestEstimate:
    """Test the side-effect-free preview."""

    def test_estimate_matches_charge(self, coordinator, ledger, session, printers):
        fund(ledger, session.user_id, 100)
        batch = [PrintRequest(document_id="doc-25", printer_id="full", paper_size="A3", duplex=True, copies=3, page_range="1-7")]

        estimates = coordinator.estimate(session, batch)
        jobs = coordinator.submit(session, batch, printers)

        assert estimates[0].equivalent_pages == jobs[0].equivalent_pages_charged == 21

    def test_estimate_writes_nothing(self, coordinator, ledger, session):
        coordinator.estimate(session, [PrintRequest(document_id="doc-10", printer_id="basic")])

        assert ledger.store.count_for_user(session.user_id) == 0
        assert coordinator.jobs.count() == 0


class TestCancellation:
    """Test cancelling jobs and refunds."""

    def submit_one(self, coordinator, ledger, session, printers):
        fund(ledger, session.user_id, 20)
        return coordinator.submit(session, [PrintRequest(document_id="doc-10", printer_id="basic")], printers)[0]

    def test_cancel_pending_refunds(self, coordinator, ledger, session, printers):
        job = self.submit_one(coordinator, ledger, session, printers)

        cancelled = coordinator.cancel(session, job.job_id)

        assert cancelled.status is JobStatus.CANCELLED
        assert ledger.current_balance(session.user_id) == 20
        refund = ledger.store.latest(session.user_id)
        assert refund.type is TransactionType.REFUND
        assert refund.delta == 10
        assert refund.reference_job_id == job.job_id

    def test_cancel_without_refund(self, ledger, documents, session, printers):
        coordinator = PrintJobSubmissionCoordinator(ledger, documents, refund_on_cancel=False)
        job = self.submit_one(coordinator, ledger, session, printers)

        coordinator.cancel(session, job.job_id)

        assert ledger.current_balance(session.user_id) == 10

    def test_double_cancel_conflicts(self, coordinator, ledger, session, printers):
        job = self.submit_one(coordinator, ledger, session, printers)
        coordinator.cancel(session, job.job_id)

        with pytest.raises(ConflictError):
            coordinator.cancel(session, job.job_id)
        assert ledger.current_balance(session.user_id) == 20

    def test_cancel_printing_conflicts(self, coordinator, ledger, session, printers):
        job = self.submit_one(coordinator, ledger, session, printers)
        coordinator.mark_printing(job.job_id)

        with pytest.raises(ConflictError) as exc_info:
            coordinator.cancel(session, job.job_id)

        assert exc_info.value.status_code == 409
        assert coordinator.get_job(session, job.job_id).status is JobStatus.PRINTING

    def test_other_user_cannot_see_job(self, coordinator, ledger, session, printers):
        job = self.submit_one(coordinator, ledger, session, printers)

        with pytest.raises(NotFoundError):
            coordinator.cancel(SessionContext(user_id="intruder"), job.job_id)

    def test_admin_can_cancel_any_job(self, coordinator, ledger, session, printers):
        job = self.submit_one(coordinator, ledger, session, printers)

        coordinator.cancel(SessionContext(user_id="staff", role="spso"), job.job_id)

        assert ledger.current_balance(session.user_id) == 20
        assert ledger.current_balance("staff") == 0


class TestStatusTransitions:
    """Test the job state machine."""

    def submit_one(self, coordinator, ledger, session, printers):
        fund(ledger, session.user_id, 20)
        return coordinator.submit(session, [PrintRequest(document_id="doc-3", printer_id="basic")], printers)[0]

    def test_happy_path(self, coordinator, ledger, session, printers):
        job = self.submit_one(coordinator, ledger, session, printers)

        coordinator.mark_printing(job.job_id)
        done = coordinator.mark_completed(job.job_id)

        assert done.status is JobStatus.COMPLETED
        assert done.completed_at is not None
        assert done.status.is_terminal

    def test_failed_job_keeps_charge(self, coordinator, ledger, session, printers):
        job = self.submit_one(coordinator, ledger, session, printers)

        coordinator.mark_printing(job.job_id)
        failed = coordinator.mark_failed(job.job_id, "paper jam")

        assert failed.error_message == "paper jam"
        assert ledger.current_balance(session.user_id) == 17

    def test_pending_cannot_complete(self, coordinator, ledger, session, printers):
        job = self.submit_one(coordinator, ledger, session, printers)

        with pytest.raises(ConflictError):
            coordinator.mark_completed(job.job_id)

    def test_terminal_is_final(self, coordinator, ledger, session, printers):
        job = self.submit_one(coordinator, ledger, session, printers)
        coordinator.cancel(session, job.job_id)

        with pytest.raises(ConflictError):
            coordinator.mark_printing(job.job_id)

    def test_unknown_job(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.mark_printing("JOB-NOPE")

    def test_list_jobs(self, coordinator, ledger, session, printers):
        job = self.submit_one(coordinator, ledger, session, printers)

        assert [j.job_id for j in coordinator.list_jobs(session)] == [job.job_id]
        assert coordinator.list_jobs(SessionContext(user_id="other")) == []
