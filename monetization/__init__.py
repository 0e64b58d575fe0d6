"""
Creator Monetization Ledger

This package provides:
- An append-only ledger of creator money movement
- Creator balances derived from the ledger at read time
- Entitlement checks and grants for paid content
- Atomic purchase recording (transaction + access + earnings)
- A payout request / approval workflow
"""

from .config import Settings
from .errors import (
    AlreadyOwnedError,
    AuthenticationError,
    AuthorizationError,
    BelowMinimumError,
    ConflictError,
    DuplicateRequestError,
    ErrorKind,
    InsufficientBalanceError,
    InvalidSignatureError,
    InvalidStateError,
    MonetizationError,
    NotApprovedError,
    NotFoundError,
    SelfPurchaseError,
    StateError,
    ValidationError,
)
from .money import Money
from .service import MonetizationService
from .storage import Database

__all__ = [
    "Settings",
    "Money",
    "Database",
    "MonetizationService",
    "ErrorKind",
    "MonetizationError",
    "ValidationError",
    "StateError",
    "AuthenticationError",
    "InvalidSignatureError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "AlreadyOwnedError",
    "SelfPurchaseError",
    "InvalidStateError",
    "InsufficientBalanceError",
    "BelowMinimumError",
    "NotApprovedError",
    "DuplicateRequestError",
]
