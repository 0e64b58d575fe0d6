"""
Error taxonomy for the monetization core.

Expected domain failures are ``MonetizationError`` subclasses carrying an
``ErrorKind`` and a stable ``reason`` string. Anything else raised from the
core is an unexpected fault.
"""

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    STATE = "state"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"


class MonetizationError(Exception):
    kind: ErrorKind = ErrorKind.VALIDATION
    default_reason = "error"

    def __init__(self, message: str = "", reason: str = None):
        super().__init__(message or self.default_reason)
        self.message = message or self.default_reason
        self.reason = reason or self.default_reason


class ValidationError(MonetizationError):
    kind = ErrorKind.VALIDATION
    default_reason = "validation_error"


class StateError(MonetizationError):
    kind = ErrorKind.STATE
    default_reason = "invalid_state"


class AuthenticationError(MonetizationError):
    kind = ErrorKind.AUTHENTICATION
    default_reason = "unauthenticated"


class AuthorizationError(MonetizationError):
    kind = ErrorKind.AUTHORIZATION
    default_reason = "forbidden"


class NotFoundError(MonetizationError):
    kind = ErrorKind.NOT_FOUND
    default_reason = "not_found"


class ConflictError(MonetizationError):
    kind = ErrorKind.CONFLICT
    default_reason = "conflict"


class AlreadyOwnedError(StateError):
    default_reason = "already_owned"


class SelfPurchaseError(StateError):
    default_reason = "self_purchase"


class InvalidStateError(StateError):
    default_reason = "invalid_state"


class InsufficientBalanceError(StateError):
    default_reason = "insufficient_balance"

    def __init__(self, message: str = "", available_cents: int = 0):
        super().__init__(message)
        self.available_cents = available_cents


class BelowMinimumError(ValidationError):
    default_reason = "below_minimum"


class InvalidSignatureError(AuthenticationError):
    default_reason = "invalid_signature"


class NotApprovedError(AuthorizationError):
    default_reason = "creator_not_approved"


class DuplicateRequestError(ConflictError):
    default_reason = "duplicate_payout_request"
