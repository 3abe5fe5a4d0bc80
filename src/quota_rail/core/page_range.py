"""
Page Range Parsing

Turns a range expression such as "1-5,10,15-20" into the number of pages it
selects, validated against the document's page total.

Overlapping tokens are NOT deduplicated: "1-5,3" selects 6 pages. Whether the
backend should deduplicate is still open; until it is settled the count stays
a plain sum of token lengths.
"""

import re
from typing import List, Optional, Tuple

from .errors import ValidationError

_SINGLE_PAGE = re.compile(r"^\d+$")
_PAGE_SPAN = re.compile(r"^(\d+)\s*-\s*(\d+)$")


def _check_max_pages(max_pages: int) -> None:
    if isinstance(max_pages, bool) or not isinstance(max_pages, int) or max_pages < 1:
        raise ValidationError(
            f"Document page total must be a positive integer, got {max_pages!r}",
            field="total_pages",
        )


def _parse_token(token: str, max_pages: int, field: str) -> Tuple[int, int]:
    if _SINGLE_PAGE.match(token):
        page = int(token)
        if not 1 <= page <= max_pages:
            raise ValidationError(
                f"Page {page} is outside 1-{max_pages}",
                field=field,
                token=token,
            )
        return (page, page)

    match = _PAGE_SPAN.match(token)
    if not match:
        raise ValidationError(
            f"Malformed page range token: '{token}'",
            field=field,
            token=token,
        )

    start, end = int(match.group(1)), int(match.group(2))
    if not 1 <= start <= max_pages:
        raise ValidationError(
            f"Range start {start} is outside 1-{max_pages}",
            field=field,
            token=token,
        )
    if not start <= end <= max_pages:
        raise ValidationError(
            f"Range end {end} must be between {start} and {max_pages}",
            field=field,
            token=token,
        )
    return (start, end)


def parse_page_tokens(
    expression: Optional[str],
    max_pages: int,
    field: str = "page_range",
) -> List[Tuple[int, int]]:
    """
    Validate a range expression and return its inclusive (start, end) spans
    in the order written. An empty expression selects the whole document.
    """
    _check_max_pages(max_pages)

    if expression is None or not expression.strip():
        return [(1, max_pages)]

    spans = []
    for raw in expression.split(","):
        token = raw.strip()
        if not token:
            raise ValidationError(
                f"Empty token in page range '{expression}'",
                field=field,
                token=raw,
            )
        spans.append(_parse_token(token, max_pages, field))
    return spans


def parse_page_range(expression: Optional[str], max_pages: int, field: str = "page_range") -> int:
    """
    Count the pages selected by `expression`.

    >>> parse_page_range("1-5,10,15-20", 25)
    12
    >>> parse_page_range("", 7)
    7
    """
    return sum(end - start + 1 for start, end in parse_page_tokens(expression, max_pages, field))


class PageRangeParser:
    """Stateless wrapper so the parser can be injected and shared freely."""

    def parse(self, expression: Optional[str], max_pages: int, field: str = "page_range") -> int:
        return parse_page_range(expression, max_pages, field)

    def spans(self, expression: Optional[str], max_pages: int, field: str = "page_range") -> List[Tuple[int, int]]:
        return parse_page_tokens(expression, max_pages, field)
