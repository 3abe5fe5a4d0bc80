"""
QUOTA RAIL - API Module

FastAPI server exposing:
- Print job submission, estimation and cancellation
- Page balance and ledger history
- Top-up payments and idempotent credits
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
