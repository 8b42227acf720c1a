"""
Client SDK for consuming L402-paywalled APIs.

TollClient drives a BudgetAgent through 402 challenges automatically.
"""

from .fetch import CachedCredential, TollClient, TollResponse

__all__ = ["CachedCredential", "TollClient", "TollResponse"]
