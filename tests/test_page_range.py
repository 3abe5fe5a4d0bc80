"""
Tests for Page Range Parsing

Counts are plain sums of token lengths; every token is bounded by the
document's page total.
"""

import pytest

from quota_rail.core.errors import ValidationError
from quota_rail.core.page_range import PageRangeParser, parse_page_range, parse_page_tokens


class TestPageCounting:
    """Test page counts for valid expressions."""

    def test_mixed_tokens(self):
        """Spans and single pages are summed."""
        assert parse_page_range("1-5,10,15-20", 25) == 12

    def test_empty_selects_whole_document(self):
        assert parse_page_range("", 7) == 7
        assert parse_page_range(None, 7) == 7
        assert parse_page_range("   ", 7) == 7

    def test_single_page(self):
        assert parse_page_range("4", 4) == 1

    def test_full_span(self):
        assert parse_page_range("1-25", 25) == 25

    def test_whitespace_around_tokens(self):
        assert parse_page_range(" 1 - 3 , 5 ", 10) == 4

    def test_overlap_is_not_deduplicated(self):
        """Overlapping tokens each count in full."""
        assert parse_page_range("1-5,3", 10) == 6
        assert parse_page_range("2,2,2", 3) == 3

    def test_degenerate_span(self):
        assert parse_page_range("3-3", 5) == 1


class TestPageRangeRejection:
    """Test that invalid tokens are reported, never skipped."""

    @pytest.mark.parametrize("spec,token", [
        ("0-5", "0-5"),
        ("5-3", "5-3"),
        ("1-26", "1-26"),
        ("26", "26"),
        ("0", "0"),
        ("1,abc", "abc"),
        ("1-", "1-"),
        ("-4", "-4"),
        ("1-2-3", "1-2-3"),
    ])
    def test_invalid_token_carries_token(self, spec, token):
        with pytest.raises(ValidationError) as exc_info:
            parse_page_range(spec, 25)

        assert exc_info.value.token == token
        assert exc_info.value.details["field"] == "page_range"

    def test_empty_token_rejected(self):
        """A stray comma is an error, not an empty selection."""
        with pytest.raises(ValidationError):
            parse_page_range("1,,2", 5)

    def test_trailing_comma_rejected(self):
        with pytest.raises(ValidationError):
            parse_page_range("1-3,", 5)

    @pytest.mark.parametrize("max_pages", [0, -1])
    def test_document_without_pages_rejected(self, max_pages):
        with pytest.raises(ValidationError) as exc_info:
            parse_page_range("", max_pages)

        assert exc_info.value.field == "total_pages"

    def test_custom_field_name(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_page_range("9", 3, field="color_page_range")

        assert exc_info.value.field == "color_page_range"

    def test_status_code_is_bad_request(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_page_range("x", 3)

        assert exc_info.value.status_code == 400


class TestPageTokens:
    """Test span output and the injectable parser."""

    def test_spans_preserve_written_order(self):
        assert parse_page_tokens("10,1-3", 10) == [(10, 10), (1, 3)]

    def test_empty_spans_cover_document(self):
        assert parse_page_tokens("", 4) == [(1, 4)]

    def test_parser_matches_function(self):
        parser = PageRangeParser()

        assert parser.parse("1-5,10,15-20", 25) == parse_page_range("1-5,10,15-20", 25)
        assert parser.spans("2-4", 5) == [(2, 4)]
