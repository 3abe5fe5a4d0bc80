"""
A4-Equivalent Page Calculation

The single place where a print job's quota charge is computed. The submission
preview and the authoritative debit both go through here so that what the
user was shown is exactly what gets charged.

Formula (order matters, one ceiling at the very end):

    units = page_count
    if A3:     units *= 2
    if duplex: units *= 0.5
    units *= copies
    charge = ceil(units)

3 pages, duplex, 2 copies -> ceil(3 * 0.5 * 2) = 3, not ceil(1.5) * 2 = 4.
"""

from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Dict, Optional
import math

from .errors import ValidationError
from .models import Document, PaperSize, PrintRequest
from .page_range import parse_page_range

MAX_COPIES = 10

A3_MULTIPLIER = Fraction(2)
DUPLEX_MULTIPLIER = Fraction(1, 2)


def compute_equivalent_pages(
    page_count: int,
    paper_size: Any,
    duplex: bool,
    copies: int,
) -> int:
    """Convert a page count and print options into A4-equivalent pages."""
    if isinstance(page_count, bool) or not isinstance(page_count, int) or page_count < 0:
        raise ValidationError(
            f"Page count must be a non-negative integer, got {page_count!r}",
            field="page_count",
        )
    if isinstance(copies, bool) or not isinstance(copies, int) or copies < 1:
        raise ValidationError(
            f"Copies must be a positive integer, got {copies!r}",
            field="copies",
        )

    units = Fraction(page_count)
    if PaperSize.parse(paper_size) is PaperSize.A3:
        units *= A3_MULTIPLIER
    if duplex:
        units *= DUPLEX_MULTIPLIER
    units *= copies
    return math.ceil(units)


def validate_copies(copies: Any, max_copies: int = MAX_COPIES) -> int:
    if isinstance(copies, bool) or not isinstance(copies, int) or not 1 <= copies <= max_copies:
        raise ValidationError(
            f"Copies must be between 1 and {max_copies}, got {copies!r}",
            field="copies",
            token=str(copies),
        )
    return copies


@dataclass
class JobEstimate:
    """Charge preview for one request."""
    document_id: str
    pages_to_print: int
    color_pages: int
    equivalent_pages: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "pages_to_print": self.pages_to_print,
            "color_pages": self.color_pages,
            "equivalent_pages": self.equivalent_pages,
        }


def estimate_request(
    request: PrintRequest,
    document: Document,
    max_copies: Optional[int] = MAX_COPIES,
) -> JobEstimate:
    """
    Validate a request against its document and compute its charge.

    The color range, when given, is validated against the same page total;
    color promotion does not change the A4-equivalent charge.
    """
    if max_copies is not None:
        validate_copies(request.copies, max_copies)

    pages = parse_page_range(request.page_range, document.total_pages)

    color_pages = 0
    if request.color_page_range and request.color_page_range.strip():
        color_pages = parse_page_range(
            request.color_page_range,
            document.total_pages,
            field="color_page_range",
        )

    return JobEstimate(
        document_id=document.document_id,
        pages_to_print=pages,
        color_pages=color_pages,
        equivalent_pages=compute_equivalent_pages(
            pages,
            request.paper_size,
            request.duplex,
            request.copies,
        ),
    )
