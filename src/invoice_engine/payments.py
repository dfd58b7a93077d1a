"""Payment recording for invoices and broker commissions.

A payment is accepted only when it is positive and does not exceed what is
still owed; anything else is an input error rather than something to clamp.
The resulting paid amount, remaining balance, and status are re-derived with
the same state machine the edit session uses.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any, Optional

from . import log
from .calculations import derive_payment_state, recompute_invoice
from .collaborators import BrokerPaymentRecorder, PaymentRecorder
from .constants import PaymentMethod, RoundingPolicy
from .exceptions import BusinessRuleViolation, PaymentValidationError
from .models import ZERO, BrokerPaymentPayload, Invoice, PaymentPayload, coerce_decimal


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for recording a payment against an invoice."""

    amount: Decimal
    method: PaymentMethod = PaymentMethod.CASH
    paid_on: Optional[date] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class BrokerPaymentCommand:
    """User intent for paying a broker part of an invoice's commission."""

    amount: Decimal
    paid_on: Optional[date] = None


def _resolve_date(candidate: Optional[date]) -> date:
    """Return ``candidate`` or today's UTC date when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC).date()


def validate_payment_amount(amount: Any, remaining_amount: Any) -> Decimal:
    """Check that a payment is positive and no larger than the balance.

    Args:
        amount (Any): Submitted payment amount.
        remaining_amount (Any): Balance outstanding before the payment.

    Returns:
        Decimal: The parsed amount.

    Raises:
        PaymentValidationError: If ``amount`` is not positive or exceeds
            ``remaining_amount``.
    """

    value = coerce_decimal(amount)
    remaining = coerce_decimal(remaining_amount)
    if value <= ZERO:
        log.error("Payment validation failed: amount %s is not positive", amount)
        raise PaymentValidationError("Payment amount must be greater than zero")
    if value > remaining:
        log.error("Payment validation failed: amount %s exceeds remaining %s", value, remaining)
        raise PaymentValidationError(f"Payment amount cannot exceed the remaining amount of {remaining}")
    return value


def prepare_payment(
    invoice: Invoice,
    command: PaymentCommand,
    *,
    rounding: RoundingPolicy = RoundingPolicy.TWO_DECIMAL,
) -> PaymentPayload:
    """Validate a payment and compute the invoice's resulting balance.

    Args:
        invoice (Invoice): Invoice being paid.
        command (PaymentCommand): Submitted payment.
        rounding (RoundingPolicy): Policy used to derive the invoice total.

    Returns:
        PaymentPayload: Payload carrying the new paid amount, remaining amount,
            and payment status.

    Raises:
        PaymentValidationError: If the amount is out of range.
        BusinessRuleViolation: If the payment method is unsupported.
    """

    if not isinstance(command.method, PaymentMethod):
        log.error("Unsupported payment method provided: %s", command.method)
        raise BusinessRuleViolation(f"Unsupported payment method: {command.method}")

    totals = recompute_invoice(invoice, rounding)
    amount = validate_payment_amount(command.amount, totals.remaining_amount)
    paid_amount = coerce_decimal(invoice.paid_amount) + amount
    state = derive_payment_state(totals.total_amount, paid_amount)
    return PaymentPayload(
        invoice_id=invoice.invoice_id,
        amount=amount,
        method=command.method,
        paid_on=_resolve_date(command.paid_on),
        paid_amount=paid_amount,
        remaining_amount=state.remaining_amount,
        payment_status=state.payment_status,
        notes=command.notes,
    )


def record_payment(
    invoice: Invoice,
    command: PaymentCommand,
    recorder: PaymentRecorder,
    *,
    rounding: RoundingPolicy = RoundingPolicy.TWO_DECIMAL,
) -> PaymentPayload:
    """Validate a payment and hand it to ``recorder``.

    Recorder failures propagate unchanged.
    """

    payload = prepare_payment(invoice, command, rounding=rounding)
    recorder.record_payment(payload)
    log.info(
        "Recorded %s payment of %s on invoice '%s' (remaining=%s, status=%s)",
        payload.method.value,
        payload.amount,
        payload.invoice_id,
        payload.remaining_amount,
        payload.payment_status.value,
    )
    return payload


def prepare_broker_payment(
    invoice: Invoice,
    command: BrokerPaymentCommand,
    *,
    rounding: RoundingPolicy = RoundingPolicy.TWO_DECIMAL,
) -> BrokerPaymentPayload:
    """Validate a broker payment against the commission still owed.

    Raises:
        BusinessRuleViolation: If the invoice has no broker commission.
        PaymentValidationError: If the amount is out of range.
    """

    if not invoice.profile.tracks_commission or not invoice.broker_ref:
        log.warning("Broker payment rejected for invoice '%s' without a broker", invoice.invoice_id)
        raise BusinessRuleViolation("Invoice has no broker commission to pay")

    commission = recompute_invoice(invoice, rounding).commission_amount
    already_paid = coerce_decimal(invoice.broker_paid_amount)
    before = derive_payment_state(commission, already_paid)
    amount = validate_payment_amount(command.amount, before.remaining_amount)
    after = derive_payment_state(commission, already_paid + amount)
    return BrokerPaymentPayload(
        invoice_id=invoice.invoice_id,
        broker_ref=invoice.broker_ref,
        amount=amount,
        paid_on=_resolve_date(command.paid_on),
        broker_paid_amount=already_paid + amount,
        broker_remaining_amount=after.remaining_amount,
        broker_payment_status=after.payment_status,
    )


def record_broker_payment(
    invoice: Invoice,
    command: BrokerPaymentCommand,
    recorder: BrokerPaymentRecorder,
    *,
    rounding: RoundingPolicy = RoundingPolicy.TWO_DECIMAL,
) -> BrokerPaymentPayload:
    """Validate a broker payment and hand it to ``recorder``."""

    payload = prepare_broker_payment(invoice, command, rounding=rounding)
    recorder.record_broker_payment(payload)
    log.info(
        "Recorded broker payment of %s to '%s' on invoice '%s' (remaining=%s)",
        payload.amount,
        payload.broker_ref,
        payload.invoice_id,
        payload.broker_remaining_amount,
    )
    return payload


__all__ = [
    "PaymentCommand",
    "BrokerPaymentCommand",
    "validate_payment_amount",
    "prepare_payment",
    "record_payment",
    "prepare_broker_payment",
    "record_broker_payment",
]
