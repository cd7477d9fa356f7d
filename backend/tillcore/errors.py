# Overview: Error taxonomy shared by the stores, the checkout and the routes.

from __future__ import annotations


class TillcoreError(Exception):
    """Base class for every error raised by tillcore."""


class NotInitializedError(TillcoreError):
    """Storage accessed before the initialization sequence opened it."""


class ValidationError(TillcoreError, ValueError):
    """400-level input problem. The message names the offending field."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class ReceiptValidationError(ValidationError):
    """Receipt delivery contact failed validation."""


class NotFoundError(TillcoreError, LookupError):
    """Id-based lookup, update or delete matched nothing."""


class StorageError(TillcoreError):
    """
    Underlying storage operation failed (conflict or I/O).

    The message is stable and safe to show to a cashier; the original
    SQLAlchemy exception is chained as __cause__.
    """


class CheckoutError(TillcoreError):
    """Illegal checkout transition."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class SettlementRefused(CheckoutError):
    """Payment input does not cover the total. shortfall < 0 means overage."""

    def __init__(self, message: str, shortfall):
        super().__init__(message, {"shortfall": str(shortfall)})
        self.shortfall = shortfall


class PaymentDeclined(CheckoutError):
    """The payment gateway refused a capture."""


class DegradedCommitError(TillcoreError):
    """
    Payment was captured but the transaction could not be persisted.

    Always carries the ManualEntryNotice needed to reconcile by hand.
    """

    def __init__(self, notice):
        super().__init__("Payment captured but not saved - MANUAL ENTRY REQUIRED")
        self.notice = notice
