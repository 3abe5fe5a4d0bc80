"""
Domain Models for Quota Rail

Documents and printers are owned by external collaborators and only read here.
Print jobs and page transactions are produced by the core.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional
import hashlib
import json

from .errors import ValidationError


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PaperSize(Enum):
    A4 = "A4"
    A3 = "A3"

    @classmethod
    def parse(cls, value: Any) -> "PaperSize":
        """Accept an enum member or its (case-insensitive) string value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ValidationError(
                f"Unsupported paper size: {value}",
                field="paper_size",
                token=str(value),
            )


class ColorMode(Enum):
    BLACK_WHITE = "BlackWhite"
    COLOR = "Color"

    @classmethod
    def parse(cls, value: Any) -> "ColorMode":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().replace("_", "").replace(" ", "").lower()
        for member in cls:
            if member.value.lower() == normalized or member.name.replace("_", "").lower() == normalized:
                return member
        raise ValidationError(
            f"Unsupported color mode: {value}",
            field="color_mode",
            token=str(value),
        )


class JobStatus(Enum):
    PENDING = "Pending"
    PRINTING = "Printing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
})

# Pending -> Printing -> {Completed, Failed}; Pending -> Cancelled
ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PRINTING, JobStatus.CANCELLED}),
    JobStatus.PRINTING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class TransactionType(Enum):
    """Ledger entry types. Only DEDUCT carries a negative delta."""
    ALLOCATE = "Allocate"
    PURCHASE = "Purchase"
    DEDUCT = "Deduct"
    REFUND = "Refund"

    @property
    def is_credit(self) -> bool:
        return self is not TransactionType.DEDUCT


@dataclass
class Document:
    """A stored document; only total_pages matters to the core."""
    document_id: str
    total_pages: int
    file_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "total_pages": self.total_pages,
            "file_name": self.file_name,
        }


@dataclass
class PrinterCapabilities:
    """Read-only view of a printer from the capability registry."""
    printer_id: str
    paper_sizes: FrozenSet[PaperSize] = frozenset({PaperSize.A4})
    duplex: bool = False
    color: bool = False
    name: Optional[str] = None

    def __post_init__(self):
        self.paper_sizes = frozenset(PaperSize.parse(p) for p in self.paper_sizes)

    @classmethod
    def from_paper_sizes_string(
        cls,
        printer_id: str,
        paper_sizes: str,
        duplex: bool = False,
        color: bool = False,
        name: Optional[str] = None,
    ) -> "PrinterCapabilities":
        """Build from the registry's comma-separated format, e.g. "A4,A3"."""
        sizes = [s for s in (part.strip() for part in paper_sizes.split(",")) if s]
        return cls(
            printer_id=printer_id,
            paper_sizes=frozenset(PaperSize.parse(s) for s in sizes),
            duplex=duplex,
            color=color,
            name=name,
        )

    def supports_paper(self, paper_size: PaperSize) -> bool:
        return paper_size in self.paper_sizes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "printer_id": self.printer_id,
            "name": self.name,
            "paper_sizes": sorted(p.value for p in self.paper_sizes),
            "duplex": self.duplex,
            "color": self.color,
        }


@dataclass
class PrintRequest:
    """One document's print options inside a submission batch."""
    document_id: str
    printer_id: str
    paper_size: PaperSize = PaperSize.A4
    duplex: bool = False
    copies: int = 1
    page_range: Optional[str] = None
    color_mode: ColorMode = ColorMode.BLACK_WHITE
    color_page_range: Optional[str] = None

    def __post_init__(self):
        self.paper_size = PaperSize.parse(self.paper_size)
        self.color_mode = ColorMode.parse(self.color_mode)

    @property
    def wants_color(self) -> bool:
        if self.color_mode is ColorMode.COLOR:
            return True
        return bool(self.color_page_range and self.color_page_range.strip())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "printer_id": self.printer_id,
            "paper_size": self.paper_size.value,
            "duplex": self.duplex,
            "copies": self.copies,
            "page_range": self.page_range,
            "color_mode": self.color_mode.value,
            "color_page_range": self.color_page_range,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PrintRequest":
        return cls(
            document_id=str(data["document_id"]),
            printer_id=str(data["printer_id"]),
            paper_size=data.get("paper_size", "A4"),
            duplex=bool(data.get("duplex", False)),
            copies=int(data.get("copies", 1)),
            page_range=data.get("page_range"),
            color_mode=data.get("color_mode", ColorMode.BLACK_WHITE.value),
            color_page_range=data.get("color_page_range"),
        )


@dataclass
class PrintJob:
    """
    A print job created after a successful batch debit.

    equivalent_pages_charged is write-once: it must keep matching the
    ledger debit that paid for it.
    """
    job_id: str
    user_id: str
    request: PrintRequest
    equivalent_pages_charged: int
    pages_to_print: int
    batch_id: str
    status: JobStatus = JobStatus.PENDING
    submitted_at: str = field(default_factory=utc_now)
    completed_at: Optional[str] = None
    error_message: Optional[str] = None

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "equivalent_pages_charged" and name in self.__dict__:
            raise AttributeError("equivalent_pages_charged cannot be changed once set")
        super().__setattr__(name, value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "user_id": self.user_id,
            "request": self.request.to_dict(),
            "equivalent_pages_charged": self.equivalent_pages_charged,
            "pages_to_print": self.pages_to_print,
            "batch_id": self.batch_id,
            "status": self.status.value,
            "submitted_at": self.submitted_at,
            "completed_at": self.completed_at,
            "error_message": self.error_message,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.job_id,
            self.user_id,
            self.batch_id,
            json.dumps(self.request.to_dict()),
            self.equivalent_pages_charged,
            self.pages_to_print,
            self.status.value,
            self.submitted_at,
            self.completed_at,
            self.error_message,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PrintJob":
        request = row["request"]
        if isinstance(request, str):
            request = json.loads(request)

        return cls(
            job_id=row["job_id"],
            user_id=row["user_id"],
            request=PrintRequest.from_dict(request),
            equivalent_pages_charged=row["equivalent_pages_charged"],
            pages_to_print=row["pages_to_print"],
            batch_id=row["batch_id"],
            status=JobStatus(row["status"]),
            submitted_at=row["submitted_at"],
            completed_at=row.get("completed_at"),
            error_message=row.get("error_message"),
        )


@dataclass
class PageBalance:
    """Cached projection of the ledger; never stored on its own."""
    user_id: str
    current_a4: int
    last_updated: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "current_a4": self.current_a4,
            "last_updated": self.last_updated,
        }


GENESIS_HASH = "GENESIS"


@dataclass(frozen=True)
class PageTransaction:
    """
    One immutable ledger entry.

    Entries for a user form a hash chain: prev_hash is the entry_hash of the
    previous entry (GENESIS for the first), so any rewrite of history is
    detectable on replay.
    """
    transaction_id: str
    user_id: str
    type: TransactionType
    delta: int
    balance_after: int
    sequence: int
    created_at: str
    reference_job_id: Optional[str] = None
    payment_reference: Optional[str] = None
    note: str = ""
    prev_hash: str = GENESIS_HASH
    entry_hash: str = ""

    def compute_hash(self) -> str:
        content = json.dumps({
            "transaction_id": self.transaction_id,
            "user_id": self.user_id,
            "type": self.type.value,
            "delta": self.delta,
            "balance_after": self.balance_after,
            "sequence": self.sequence,
            "created_at": self.created_at,
            "reference_job_id": self.reference_job_id,
            "payment_reference": self.payment_reference,
            "prev_hash": self.prev_hash,
        }, sort_keys=True, separators=(',', ':'))
        return hashlib.sha3_256(content.encode('utf-8')).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "user_id": self.user_id,
            "type": self.type.value,
            "delta": self.delta,
            "balance_after": self.balance_after,
            "sequence": self.sequence,
            "reference_job_id": self.reference_job_id,
            "payment_reference": self.payment_reference,
            "note": self.note,
            "created_at": self.created_at,
            "prev_hash": self.prev_hash,
            "entry_hash": self.entry_hash,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.transaction_id,
            self.user_id,
            self.sequence,
            self.type.value,
            self.delta,
            self.balance_after,
            self.reference_job_id,
            self.payment_reference,
            self.note,
            self.created_at,
            self.prev_hash,
            self.entry_hash,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PageTransaction":
        return cls(
            transaction_id=row["transaction_id"],
            user_id=row["user_id"],
            type=TransactionType(row["type"]),
            delta=row["delta"],
            balance_after=row["balance_after"],
            sequence=row["sequence"],
            created_at=row["created_at"],
            reference_job_id=row.get("reference_job_id"),
            payment_reference=row.get("payment_reference"),
            note=row.get("note") or "",
            prev_hash=row.get("prev_hash") or GENESIS_HASH,
            entry_hash=row.get("entry_hash") or "",
        )


@dataclass
class TransactionPage:
    """A page of ledger history, newest first."""
    content: List[PageTransaction]
    total_elements: int
    current_page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total_elements + self.page_size - 1) // self.page_size

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": [t.to_dict() for t in self.content],
            "total_elements": self.total_elements,
            "total_pages": self.total_pages,
            "current_page": self.current_page,
            "page_size": self.page_size,
        }


def index_printers(printers: Iterable[PrinterCapabilities]) -> Dict[str, PrinterCapabilities]:
    return {p.printer_id: p for p in printers}
