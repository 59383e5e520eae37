"""
Network module initialization.

This module provides access to HTTP client management and
subscription downloads.
"""

from .http_client import HTTPClientManager, SubscriptionFetcher

__all__ = [
    "HTTPClientManager",
    "SubscriptionFetcher"
]
