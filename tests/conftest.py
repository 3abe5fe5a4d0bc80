"""
Pytest Configuration and Fixtures
"""

import os
import sys
import pytest
import tempfile

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["DATABASE_URL"] = "memory://"
os.environ["API_KEY"] = "test-key-12345"
os.environ["PAYMENT_POLL_INTERVAL_SECONDS"] = "0"
os.environ["DEBUG"] = "true"

from quota_rail.core.ledger import BalanceLedger
from quota_rail.core.models import Document, PaperSize, PrinterCapabilities
from quota_rail.core.session import SessionContext
from quota_rail.core.submission import (
    InMemoryDocumentStore,
    InMemoryJobStore,
    PrintJobSubmissionCoordinator,
)


@pytest.fixture
def temp_db():
    """Create a temporary database file for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield f"sqlite:///{db_path}"

    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(db_path + suffix)
        except OSError:
            pass


@pytest.fixture
def ledger():
    return BalanceLedger()


@pytest.fixture
def session():
    return SessionContext(user_id="student-1")


@pytest.fixture
def documents():
    return InMemoryDocumentStore([
        Document(document_id="doc-10", total_pages=10, file_name="notes.pdf"),
        Document(document_id="doc-25", total_pages=25, file_name="thesis.pdf"),
        Document(document_id="doc-3", total_pages=3, file_name="form.pdf"),
    ])


@pytest.fixture
def printers():
    return {
        "basic": PrinterCapabilities(
            printer_id="basic",
            paper_sizes=frozenset({PaperSize.A4}),
        ),
        "full": PrinterCapabilities(
            printer_id="full",
            paper_sizes=frozenset({PaperSize.A4, PaperSize.A3}),
            duplex=True,
            color=True,
        ),
    }


@pytest.fixture
def jobs():
    return InMemoryJobStore()


@pytest.fixture
def coordinator(ledger, documents, jobs):
    return PrintJobSubmissionCoordinator(ledger=ledger, documents=documents, jobs=jobs)
