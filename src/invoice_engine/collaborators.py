"""Interfaces the engine expects from the persistence layer.

The engine never talks to storage directly. It reads an inventory snapshot
when an edit session opens and hands immutable payloads over when an edit or
a payment is committed. Failures raised by these calls are not caught or
wrapped by the engine.
"""

from __future__ import annotations

from typing import AbstractSet, Mapping, Protocol, runtime_checkable

from .models import (
    BrokerPaymentPayload,
    InvoiceUpdatePayload,
    PaymentPayload,
    StockLevel,
)


@runtime_checkable
class InventorySource(Protocol):
    """Read-only access to current stock levels."""

    def fetch_inventory_availability(self, item_refs: AbstractSet[str]) -> Mapping[str, StockLevel]:
        """Return available stock for the requested items.

        Items unknown to the store are simply absent from the result.
        """
        ...


@runtime_checkable
class InvoiceCommitter(Protocol):
    """Persists a validated invoice edit or a newly generated invoice."""

    def commit_invoice_update(self, payload: InvoiceUpdatePayload) -> None:
        """Store the payload or raise; partial writes are the store's concern."""
        ...

    def create_invoice(self, payload: InvoiceUpdatePayload) -> None:
        """Insert an invoice that does not exist yet; ``original_items`` is empty."""
        ...


@runtime_checkable
class PaymentRecorder(Protocol):
    """Persists a customer or vendor payment."""

    def record_payment(self, payload: PaymentPayload) -> None:
        ...


@runtime_checkable
class BrokerPaymentRecorder(Protocol):
    """Persists a payment made to a broker against an invoice's commission."""

    def record_broker_payment(self, payload: BrokerPaymentPayload) -> None:
        ...


__all__ = [
    "InventorySource",
    "InvoiceCommitter",
    "PaymentRecorder",
    "BrokerPaymentRecorder",
]
