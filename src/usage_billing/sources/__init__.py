"""
Usage Billing Rail - Identity and Usage Sources
"""

from .analytics import AnalyticsSource, AnalyticsSourceError, DatabaseAnalyticsSource

__all__ = [
    "AnalyticsSource",
    "AnalyticsSourceError",
    "DatabaseAnalyticsSource",
]
