"""
QUOTA RAIL - Core Module

Print-job cost accounting and page-balance ledger:
- Page range parsing
- A4-equivalent charge calculation
- Append-only per-user balance ledger
- All-or-nothing batch submission
- Idempotent top-up confirmation
"""

from .errors import (
    QuotaRailError,
    ValidationError,
    CapabilityMismatchError,
    InsufficientBalanceError,
    NotFoundError,
    ConflictError,
    StorageError,
)
from .models import (
    PaperSize,
    ColorMode,
    JobStatus,
    TransactionType,
    Document,
    PrinterCapabilities,
    PrintRequest,
    PrintJob,
    PageBalance,
    PageTransaction,
    TransactionPage,
)
from .page_range import PageRangeParser, parse_page_range, parse_page_tokens
from .equivalence import JobEstimate, compute_equivalent_pages, estimate_request
from .ledger import BalanceLedger, TransactionStore, InMemoryTransactionStore
from .submission import (
    PrintJobSubmissionCoordinator,
    DocumentStore,
    InMemoryDocumentStore,
    JobStore,
    InMemoryJobStore,
)
from .session import SessionContext
from .pricing import PagePricing, PricingTable
from .payment import (
    Payment,
    PaymentStatus,
    PaymentGateway,
    InMemoryPaymentGateway,
    PaymentStore,
    InMemoryPaymentStore,
    TopUpService,
    PaymentConfirmationPoller,
)

__all__ = [
    "QuotaRailError",
    "ValidationError",
    "CapabilityMismatchError",
    "InsufficientBalanceError",
    "NotFoundError",
    "ConflictError",
    "StorageError",
    "PaperSize",
    "ColorMode",
    "JobStatus",
    "TransactionType",
    "Document",
    "PrinterCapabilities",
    "PrintRequest",
    "PrintJob",
    "PageBalance",
    "PageTransaction",
    "TransactionPage",
    "PageRangeParser",
    "parse_page_range",
    "parse_page_tokens",
    "JobEstimate",
    "compute_equivalent_pages",
    "estimate_request",
    "BalanceLedger",
    "TransactionStore",
    "InMemoryTransactionStore",
    "PrintJobSubmissionCoordinator",
    "DocumentStore",
    "InMemoryDocumentStore",
    "JobStore",
    "InMemoryJobStore",
    "SessionContext",
    "PagePricing",
    "PricingTable",
    "Payment",
    "PaymentStatus",
    "PaymentGateway",
    "InMemoryPaymentGateway",
    "PaymentStore",
    "InMemoryPaymentStore",
    "TopUpService",
    "PaymentConfirmationPoller",
]
