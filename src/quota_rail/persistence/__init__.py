"""
Persistence Layer for Quota Rail

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, get_database
from .repository import TransactionRepository, PrintJobRepository, PaymentRepository

__all__ = [
    "Database",
    "get_database",
    "TransactionRepository",
    "PrintJobRepository",
    "PaymentRepository",
]
