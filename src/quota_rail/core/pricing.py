"""
Page Pricing

Price of one purchased page per paper size, used to price a top-up payment.
Purchased quota is always credited in A4-equivalent pages.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from .errors import NotFoundError, ValidationError
from .models import PaperSize


@dataclass(frozen=True)
class PagePricing:
    paper_size: PaperSize
    price_per_page: int
    currency: str = "VND"
    notes: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paper_size": self.paper_size.value,
            "price_per_page": self.price_per_page,
            "currency": self.currency,
            "notes": self.notes,
        }


class PricingTable:
    """Active prices keyed by paper size."""

    DEFAULT_PRICES = {
        PaperSize.A4: 500,
        PaperSize.A3: 1000,
    }

    def __init__(self, prices: Optional[Iterable[PagePricing]] = None):
        if prices is None:
            prices = [PagePricing(size, price) for size, price in self.DEFAULT_PRICES.items()]
        self._prices: Dict[PaperSize, PagePricing] = {p.paper_size: p for p in prices}

    def all(self) -> List[PagePricing]:
        return [self._prices[size] for size in PaperSize if size in self._prices]

    def price_for(self, paper_size: Any) -> PagePricing:
        size = PaperSize.parse(paper_size)
        pricing = self._prices.get(size)
        if pricing is None:
            raise NotFoundError("PagePricing", size.value)
        return pricing

    def calculate_price(self, paper_size: Any, num_pages: int) -> int:
        if isinstance(num_pages, bool) or not isinstance(num_pages, int) or num_pages < 1:
            raise ValidationError(
                f"Number of pages must be a positive integer, got {num_pages!r}",
                field="num_pages",
            )
        return self.price_for(paper_size).price_per_page * num_pages
