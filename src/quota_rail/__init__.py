"""
QUOTA RAIL

Print-job cost accounting and page-balance ledger for a campus print-quota
service.
"""

__version__ = "1.0.0"
