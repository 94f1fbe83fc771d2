"""
Usage Billing Rail

Daily usage-based billing: aggregate tenant usage, record a pending ledger,
charge each tenant through its billing provider, and reconcile the outcomes.
"""

__version__ = "1.0.0"
