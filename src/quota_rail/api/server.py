"""
QUOTA RAIL - FastAPI Server

HTTP surface over the print-quota core.

Endpoints:
- POST   /print-jobs               - Submit a batch (all-or-nothing)
- POST   /print-jobs/estimate      - Preview charges
- GET    /print-jobs               - List own jobs
- DELETE /print-jobs/{job_id}      - Cancel a Pending job
- GET    /page-balance             - Current A4-equivalent balance
- GET    /page-balance/transactions - Ledger history, newest first
- POST   /page-balance/credit      - Payment collaborator credit (idempotent)
- POST   /payments                 - Start a page purchase
- GET    /payments/{code}          - Poll a purchase
- DELETE /payments/{code}          - Abandon a purchase
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Dict, List, Optional
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import Settings, get_settings
from ..core.errors import ConflictError, QuotaRailError
from ..core.ledger import BalanceLedger, InMemoryTransactionStore
from ..core.models import (
    Document,
    PaperSize,
    PrintRequest,
    PrinterCapabilities,
    TransactionType,
)
from ..core.payment import (
    InMemoryPaymentGateway,
    InMemoryPaymentStore,
    PaymentConfirmationPoller,
    TopUpService,
)
from ..core.pricing import PagePricing, PricingTable
from ..core.session import SessionContext
from ..core.submission import (
    InMemoryDocumentStore,
    InMemoryJobStore,
    PrintJobSubmissionCoordinator,
)
from ..logging_config import configure_logging

logger = structlog.get_logger()

VERSION = "1.0.0"


# ============================================================================
# Pydantic Models
# ============================================================================

class PrintRequestBody(BaseModel):
    """One document in a submission batch."""
    document_id: str
    printer_id: str
    paper_size: str = Field(default="A4", description="A4 or A3")
    page_range: Optional[str] = Field(None, description="e.g. 1-5,10,15-20; empty prints all")
    duplex: bool = False
    copies: int = 1
    color_mode: str = Field(default="BlackWhite", description="BlackWhite or Color")
    color_page_range: Optional[str] = None

    def to_domain(self) -> PrintRequest:
        return PrintRequest(
            document_id=self.document_id,
            printer_id=self.printer_id,
            paper_size=self.paper_size,
            duplex=self.duplex,
            copies=self.copies,
            page_range=self.page_range,
            color_mode=self.color_mode,
            color_page_range=self.color_page_range,
        )


class SubmitBatchRequest(BaseModel):
    requests: List[PrintRequestBody] = Field(..., description="Documents submitted together")


class JobStatusUpdate(BaseModel):
    status: str = Field(..., description="Printing, Completed or Failed")
    error_message: Optional[str] = None


class DocumentRegistration(BaseModel):
    document_id: str
    total_pages: int
    file_name: Optional[str] = None


class PrinterRegistration(BaseModel):
    printer_id: str
    paper_sizes: str = Field(default="A4", description="Comma-separated, e.g. A4,A3")
    duplex: bool = False
    color: bool = False
    name: Optional[str] = None


class CreditRequest(BaseModel):
    """Credit pushed by the payment collaborator."""
    user_id: str
    amount: int
    payment_reference: str
    type: str = Field(default="Purchase", description="Purchase or Allocate")


class AllocateRequest(BaseModel):
    user_id: str
    amount: int
    note: str = "Semester allocation"


class CreatePaymentRequest(BaseModel):
    a4_pages: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    storage: str
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

        if self.settings.use_memory_storage:
            transaction_store = InMemoryTransactionStore()
            job_store = InMemoryJobStore()
            payment_store = InMemoryPaymentStore()
        else:
            from ..persistence import (
                Database,
                PaymentRepository,
                PrintJobRepository,
                TransactionRepository,
            )
            db = Database(self.settings.database_url)
            db.initialize()
            transaction_store = TransactionRepository(db)
            job_store = PrintJobRepository(db)
            payment_store = PaymentRepository(db)

        # Stand-ins for the document and printer registries
        self.documents = InMemoryDocumentStore()
        self.printers: Dict[str, PrinterCapabilities] = {}

        self.ledger = BalanceLedger(transaction_store)
        self.coordinator = PrintJobSubmissionCoordinator(
            ledger=self.ledger,
            documents=self.documents,
            jobs=job_store,
            max_copies=self.settings.max_copies,
            refund_on_cancel=self.settings.refund_on_cancel,
        )
        self.pricing = PricingTable([
            PagePricing(PaperSize.A4, self.settings.price_a4, self.settings.currency),
            PagePricing(PaperSize.A3, self.settings.price_a3, self.settings.currency),
        ])
        self.gateway = InMemoryPaymentGateway()
        self.topups = TopUpService(
            ledger=self.ledger,
            gateway=self.gateway,
            pricing=self.pricing,
            payments=payment_store,
            expiry=timedelta(minutes=self.settings.payment_expiry_minutes),
        )
        self.pollers: Dict[str, PaymentConfirmationPoller] = {}
        self._pollers_lock = Lock()
        self.start_time = datetime.now(timezone.utc)

    def start_poller(self, payment_code: str) -> None:
        interval = self.settings.payment_poll_interval_seconds
        if interval <= 0:
            return
        poller = PaymentConfirmationPoller(
            self.topups,
            payment_code,
            interval=interval,
            on_finish=self._release_poller,
        )
        # Registered before the thread runs so a fast finish can release it.
        with self._pollers_lock:
            self.pollers[payment_code] = poller
        poller.start()

    def _release_poller(self, poller: PaymentConfirmationPoller) -> None:
        with self._pollers_lock:
            if self.pollers.get(poller.payment_code) is poller:
                del self.pollers[poller.payment_code]

    def cancel_poller(self, payment_code: str) -> None:
        with self._pollers_lock:
            poller = self.pollers.pop(payment_code, None)
        if poller is not None:
            poller.cancel()

    def stop_pollers(self) -> None:
        with self._pollers_lock:
            pollers = list(self.pollers.values())
            self.pollers.clear()
        for poller in pollers:
            poller.cancel()


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    settings = get_settings()
    configure_logging(settings.log_level, json=settings.log_format == "json")
    logger.info("quota_rail_starting", version=VERSION)
    app_state = AppState(settings)
    yield
    app_state.stop_pollers()
    logger.info("quota_rail_stopping")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Quota Rail",
        description="""
# Campus Print Quota Service

Every print job is charged in **A4-equivalent pages** against an append-only
per-user ledger.

## Features
- **Page ranges**: `1-5,10,15-20` style selection, validated per document
- **A4 equivalence**: A3 counts double, duplex counts half, one ceiling at the end
- **Batch submission**: several documents accepted or rejected as one unit
- **Ledger**: balance is a projection of immutable transactions
- **Top-ups**: payment confirmation credited exactly once
        """,
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=get_settings().cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(QuotaRailError)
    async def quota_rail_error_handler(request: Request, exc: QuotaRailError):
        logger.info(
            "request_failed",
            path=request.url.path,
            error=type(exc).__name__,
            message=exc.message,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(
    x_api_key: str = Header(..., alias="X-API-Key"),
    state: AppState = Depends(get_state),
) -> str:
    """Verify API key."""
    if x_api_key != state.settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def get_session(
    x_user_id: str = Header(..., alias="X-User-Id"),
    x_user_role: str = Header("student", alias="X-User-Role"),
    x_api_key: str = Depends(verify_api_key),
) -> SessionContext:
    """Caller identity, established upstream by the auth service."""
    return SessionContext(user_id=x_user_id, role=x_user_role, token=x_api_key)


def require_admin(session: SessionContext = Depends(get_session)) -> SessionContext:
    if not session.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required")
    return session


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        storage="memory" if state.settings.use_memory_storage else "database",
        uptime_seconds=uptime,
    )


@app.post("/documents", tags=["Registry"])
def register_document(
    request: DocumentRegistration,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Make a stored document known to the quota service."""
    document = state.documents.add(Document(
        document_id=request.document_id,
        total_pages=request.total_pages,
        file_name=request.file_name,
    ))
    return document.to_dict()


@app.post("/printers", tags=["Registry"])
def register_printer(
    request: PrinterRegistration,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Publish a printer's capabilities."""
    printer = PrinterCapabilities.from_paper_sizes_string(
        request.printer_id,
        request.paper_sizes,
        duplex=request.duplex,
        color=request.color,
        name=request.name,
    )
    state.printers[printer.printer_id] = printer
    return printer.to_dict()


@app.post("/print-jobs", tags=["Printing"])
def submit_print_jobs(
    request: SubmitBatchRequest,
    state: AppState = Depends(get_state),
    session: SessionContext = Depends(get_session),
):
    """
    Submit one or more documents for printing.

    The whole batch is charged with a single debit. If any document fails
    validation, any printer cannot honour an option, or the balance cannot
    cover the total, nothing is charged and no job is created.
    """
    batch = [r.to_domain() for r in request.requests]
    jobs = state.coordinator.submit(session, batch, state.printers)

    return {
        "batch_id": jobs[0].batch_id,
        "total_charged": sum(j.equivalent_pages_charged for j in jobs),
        "balance_after": state.ledger.current_balance(session.user_id),
        "jobs": [
            {
                "job_id": j.job_id,
                "document_id": j.request.document_id,
                "pages_to_print": j.pages_to_print,
                "equivalent_pages_charged": j.equivalent_pages_charged,
                "status": j.status.value,
                "submitted_at": j.submitted_at,
            }
            for j in jobs
        ],
    }


@app.post("/print-jobs/estimate", tags=["Printing"])
def estimate_print_jobs(
    request: SubmitBatchRequest,
    state: AppState = Depends(get_state),
    session: SessionContext = Depends(get_session),
):
    """Preview the charge using the same calculation as submission."""
    estimates = state.coordinator.estimate(session, [r.to_domain() for r in request.requests])
    total = sum(e.equivalent_pages for e in estimates)
    balance = state.ledger.current_balance(session.user_id)
    return {
        "estimates": [e.to_dict() for e in estimates],
        "total_equivalent_pages": total,
        "current_balance": balance,
        "sufficient": balance >= total,
    }


@app.get("/print-jobs", tags=["Printing"])
def list_print_jobs(
    state: AppState = Depends(get_state),
    session: SessionContext = Depends(get_session),
):
    jobs = state.coordinator.list_jobs(session)
    return {"total": len(jobs), "jobs": [j.to_dict() for j in jobs]}


@app.get("/print-jobs/{job_id}", tags=["Printing"])
def get_print_job(
    job_id: str,
    state: AppState = Depends(get_state),
    session: SessionContext = Depends(get_session),
):
    return state.coordinator.get_job(session, job_id).to_dict()


@app.delete("/print-jobs/{job_id}", tags=["Printing"])
def cancel_print_job(
    job_id: str,
    state: AppState = Depends(get_state),
    session: SessionContext = Depends(get_session),
):
    """Cancel a Pending job; 409 in any other state."""
    job = state.coordinator.cancel(session, job_id)
    return {
        "job_id": job.job_id,
        "status": job.status.value,
        "refunded": job.equivalent_pages_charged if state.coordinator.refund_on_cancel else 0,
        "balance_after": state.ledger.current_balance(job.user_id),
    }


@app.post("/print-jobs/{job_id}/status", tags=["Printing"])
def update_print_job_status(
    job_id: str,
    request: JobStatusUpdate,
    state: AppState = Depends(get_state),
    session: SessionContext = Depends(require_admin),
):
    """Report progress from the print pipeline."""
    target = request.status.strip().lower()
    if target == "printing":
        job = state.coordinator.mark_printing(job_id)
    elif target == "completed":
        job = state.coordinator.mark_completed(job_id)
    elif target == "failed":
        job = state.coordinator.mark_failed(job_id, request.error_message or "Printer error")
    else:
        raise HTTPException(status_code=400, detail=f"Invalid status: {request.status}")
    return job.to_dict()


@app.get("/page-balance", tags=["Balance"])
def get_page_balance(
    state: AppState = Depends(get_state),
    session: SessionContext = Depends(get_session),
):
    return state.ledger.get_balance(session.user_id).to_dict()


@app.get("/page-balance/transactions", tags=["Balance"])
def get_page_transactions(
    page: int = 0,
    size: int = 10,
    type: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    state: AppState = Depends(get_state),
    session: SessionContext = Depends(get_session),
):
    """
    Ledger history for the caller, newest first. start_date and end_date
    take ISO dates or datetimes; a bare end date includes that whole day.
    """
    tx_type = None
    if type:
        try:
            tx_type = TransactionType(type.strip().capitalize())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid transaction type: {type}")
    return state.ledger.history(
        session.user_id,
        page=page,
        size=size,
        type=tx_type,
        start=start_date,
        end=end_date,
    ).to_dict()


@app.get("/page-balance/verify", tags=["Balance"])
def verify_page_ledger(
    state: AppState = Depends(get_state),
    session: SessionContext = Depends(get_session),
):
    """Replay the caller's ledger and check its invariants."""
    is_valid, error, length = state.ledger.verify_integrity(session.user_id)
    return {"valid": is_valid, "error": error, "chain_length": length}


@app.post("/page-balance/credit", tags=["Balance"])
def credit_page_balance(
    request: CreditRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Credit from the payment collaborator.

    Idempotent on payment_reference: replays return the original entry.
    """
    try:
        tx_type = TransactionType(request.type.strip().capitalize())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid credit type: {request.type}")
    if tx_type not in (TransactionType.PURCHASE, TransactionType.ALLOCATE):
        raise HTTPException(status_code=400, detail=f"Invalid credit type: {request.type}")

    transaction = state.ledger.credit(
        request.user_id,
        tx_type,
        request.amount,
        note=f"Payment {request.payment_reference}",
        payment_reference=request.payment_reference,
    )
    return transaction.to_dict()


@app.post("/page-balance/allocate", tags=["Balance"])
def allocate_pages(
    request: AllocateRequest,
    state: AppState = Depends(get_state),
    session: SessionContext = Depends(require_admin),
):
    """Grant free quota (e.g. the semester allowance)."""
    transaction = state.ledger.credit(
        request.user_id,
        TransactionType.ALLOCATE,
        request.amount,
        note=request.note,
    )
    return transaction.to_dict()


@app.get("/page-pricing", tags=["Payments"])
async def list_page_pricing(state: AppState = Depends(get_state)):
    return [p.to_dict() for p in state.pricing.all()]


@app.get("/page-pricing/{paper_size}", tags=["Payments"])
async def get_page_pricing(paper_size: str, state: AppState = Depends(get_state)):
    return state.pricing.price_for(paper_size).to_dict()


@app.post("/payments", tags=["Payments"])
def create_payment(
    request: CreatePaymentRequest,
    state: AppState = Depends(get_state),
    session: SessionContext = Depends(get_session),
):
    """Start a page purchase; confirmation is polled in the background."""
    payment = state.topups.create_payment(session, request.a4_pages)
    state.start_poller(payment.payment_code)
    return payment.to_dict()


@app.get("/payments/pending", tags=["Payments"])
def list_pending_payments(
    state: AppState = Depends(get_state),
    session: SessionContext = Depends(get_session),
):
    return [p.to_dict() for p in state.topups.pending_payments(session)]


@app.get("/payments/{payment_code}", tags=["Payments"])
def get_payment_status(
    payment_code: str,
    state: AppState = Depends(get_state),
    session: SessionContext = Depends(get_session),
):
    state.topups.get_payment(session, payment_code)
    try:
        state.topups.refresh(payment_code)
    except ConflictError:
        # Expired or cancelled locally; the stored record says which.
        pass
    return state.topups.get_payment(session, payment_code).to_dict()


@app.delete("/payments/{payment_code}", tags=["Payments"])
def cancel_payment(
    payment_code: str,
    state: AppState = Depends(get_state),
    session: SessionContext = Depends(get_session),
):
    """Abandon a pending payment and stop polling for it."""
    state.cancel_poller(payment_code)
    return state.topups.cancel_payment(session, payment_code).to_dict()


@app.post("/payments/{payment_code}/test-complete", tags=["Payments"])
def test_complete_payment(
    payment_code: str,
    state: AppState = Depends(get_state),
    session: SessionContext = Depends(get_session),
):
    """Dev only: mark a payment as paid and confirm it."""
    if not state.settings.debug:
        raise HTTPException(status_code=404, detail="Not found")
    payment = state.topups.get_payment(session, payment_code)
    state.gateway.complete(payment_code)
    transaction = state.topups.confirm(payment_code)
    return {
        "success": True,
        "a4_pages": payment.a4_pages,
        "balance_after": transaction.balance_after,
    }


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "quota_rail.api.server:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
