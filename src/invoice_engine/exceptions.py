"""Exception hierarchy raised by the invoice engine."""

from __future__ import annotations

from typing import Iterable


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced invoice or inventory item is unknown."""


class FieldValidationError(BusinessRuleViolation, ValueError):
    """Raised when a single submitted field value is unacceptable."""


class PaymentValidationError(BusinessRuleViolation):
    """Raised when a payment amount falls outside the admissible range."""


class SessionClosedError(BusinessRuleViolation):
    """Raised when an edit session is used after it was committed or cancelled."""


class InvoiceValidationError(BusinessRuleViolation):
    """Raised when an invoice edit cannot be committed.

    The individual messages are kept on :attr:`errors` so a front-end can list
    them; ``str(exc)`` joins them for logs and terminals.
    """

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors: tuple[str, ...] = tuple(errors)
        super().__init__("; ".join(self.errors) or "Invoice validation failed")


__all__ = [
    "BusinessRuleViolation",
    "MissingReferenceError",
    "FieldValidationError",
    "PaymentValidationError",
    "SessionClosedError",
    "InvoiceValidationError",
]
