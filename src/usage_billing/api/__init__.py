"""
Usage Billing Rail - API Module

FastAPI trigger surface for billing runs, previews and ledger reads.
"""

from .server import app, create_app

__all__ = ["app", "create_app"]
