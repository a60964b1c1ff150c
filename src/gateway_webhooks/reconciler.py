"""Billing record reconciliation for invoice and charge lifecycle events.

Records are keyed by the gateway's invoice id, payment-intent id or (for
synthetic refund/dispute rows) the id of the gateway object that produced
them. A record is created at most once per key and only updated afterwards.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any

from gateway_webhooks.models import BillingRecord, NewBillingRecord
from gateway_webhooks.repositories import BillingRepository
from gateway_webhooks.states import BillingStatus, BillingType

logger = logging.getLogger(__name__)

DEFAULT_DUE_DAYS = 30


class InvoiceEvent(StrEnum):
    CREATED = "created"
    FINALIZED = "finalized"
    UPCOMING = "upcoming"
    SENT = "sent"
    VOIDED = "voided"
    FINALIZATION_FAILED = "finalization_failed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"


class DisputeOutcome(StrEnum):
    OPEN = "open"
    WON = "won"
    LOST = "lost"


INVOICE_STATUS: dict[InvoiceEvent, BillingStatus] = {
    InvoiceEvent.CREATED: BillingStatus.PENDING,
    InvoiceEvent.FINALIZED: BillingStatus.PENDING,
    InvoiceEvent.SENT: BillingStatus.PENDING,
    InvoiceEvent.UPCOMING: BillingStatus.UPCOMING,
    InvoiceEvent.VOIDED: BillingStatus.CANCELLED,
    InvoiceEvent.FINALIZATION_FAILED: BillingStatus.FAILED,
    InvoiceEvent.PAYMENT_SUCCEEDED: BillingStatus.PAID,
    InvoiceEvent.PAYMENT_FAILED: BillingStatus.FAILED,
}

INVOICE_ERRORS: dict[InvoiceEvent, str | None] = {
    InvoiceEvent.VOIDED: "Invoice voided",
    InvoiceEvent.FINALIZATION_FAILED: "Invoice finalization failed",
    InvoiceEvent.PAYMENT_FAILED: "Payment failed via gateway",
    InvoiceEvent.PAYMENT_SUCCEEDED: None,
}

# Informational invoice events never pull a settled record back.
_INFORMATIONAL = frozenset({InvoiceEvent.CREATED, InvoiceEvent.FINALIZED, InvoiceEvent.SENT, InvoiceEvent.UPCOMING})
_SETTLED = frozenset({BillingStatus.PAID, BillingStatus.REFUNDED})

DISPUTE_CLOSED_STATUS: dict[DisputeOutcome, BillingStatus] = {
    DisputeOutcome.WON: BillingStatus.REFUNDED,
    DisputeOutcome.LOST: BillingStatus.PAID,
}


def from_minor_units(amount: int | None) -> Decimal:
    return (Decimal(amount or 0) / 100).quantize(Decimal("0.01"))


def from_timestamp(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value, UTC) if value else None


@dataclass(frozen=True)
class Invoice:
    id: str
    number: str | None
    amount: Decimal
    currency: str
    payment_intent: str | None
    created: datetime | None
    due_date: datetime | None

    @classmethod
    def from_payload(cls, obj: dict[str, Any]) -> "Invoice":
        amount = obj.get("amount_due")
        if amount is None:
            amount = obj.get("amount_paid")
        return cls(
            id=obj["id"],
            number=obj.get("number"),
            amount=from_minor_units(amount),
            currency=(obj.get("currency") or "usd").upper(),
            payment_intent=obj.get("payment_intent"),
            created=from_timestamp(obj.get("created")),
            due_date=from_timestamp(obj.get("due_date")),
        )


@dataclass(frozen=True)
class Dispute:
    id: str
    payment_intent: str | None
    charge: str | None
    amount: Decimal
    currency: str
    reason: str | None
    status: str | None

    @property
    def outcome(self) -> DisputeOutcome:
        try:
            return DisputeOutcome(self.status)
        except ValueError:
            return DisputeOutcome.OPEN

    @classmethod
    def from_payload(cls, obj: dict[str, Any]) -> "Dispute":
        return cls(
            id=obj["id"],
            payment_intent=obj.get("payment_intent"),
            charge=obj.get("charge"),
            amount=from_minor_units(obj.get("amount")),
            currency=(obj.get("currency") or "usd").upper(),
            reason=obj.get("reason"),
            status=obj.get("status"),
        )


@dataclass
class ReconcileResult:
    record: BillingRecord
    created: bool = False
    changed: bool = True
    companion: BillingRecord | None = None


class BillingReconciler:
    def __init__(self, billing: BillingRepository) -> None:
        self._billing = billing

    async def reconcile_invoice(
        self,
        kind: InvoiceEvent,
        invoice: Invoice,
        user_id: str,
        subscription_id: str | None = None,
        now: datetime | None = None,
    ) -> ReconcileResult:
        now = now or datetime.now(UTC)
        status = INVOICE_STATUS[kind]
        existing = await self._billing.find_by_external_invoice_id(invoice.id)
        if existing is None:
            record, created = await self._billing.create(
                NewBillingRecord(
                    user_id=user_id,
                    amount=invoice.amount,
                    currency=invoice.currency,
                    status=status,
                    type=BillingType.SUBSCRIPTION,
                    subscription_id=subscription_id,
                    external_invoice_id=invoice.id,
                    external_payment_intent_id=invoice.payment_intent,
                    invoice_number=invoice.number,
                    description=(
                        f"Invoice {invoice.number or invoice.id} {kind} - Amount: {invoice.amount} {invoice.currency}"
                    ),
                    billing_date=invoice.created if kind is InvoiceEvent.UPCOMING and invoice.created else now,
                    due_date=invoice.due_date or now + timedelta(days=DEFAULT_DUE_DAYS),
                    error_message=INVOICE_ERRORS.get(kind),
                )
            )
            if created:
                logger.info("Created billing record %s for invoice %s (%s)", record.id, invoice.id, status)
                return ReconcileResult(record, created=True)
            existing = record

        if kind in _INFORMATIONAL and existing.status in _SETTLED:
            logger.info(
                "Invoice %s %s ignored, billing record %s already %s",
                invoice.id,
                kind,
                existing.id,
                existing.status,
            )
            return ReconcileResult(existing, changed=False)

        changes: dict[str, Any] = {"status": status}
        if kind in INVOICE_ERRORS:
            changes["error_message"] = INVOICE_ERRORS[kind]
        if invoice.due_date is not None:
            changes["due_date"] = invoice.due_date
        if invoice.payment_intent and existing.external_payment_intent_id is None:
            changes["external_payment_intent_id"] = invoice.payment_intent
        record = await self._billing.update(existing.id, changes)
        logger.info("Billing record %s for invoice %s updated to %s", record.id, invoice.id, status)
        return ReconcileResult(record)

    async def refund(self, charge: dict[str, Any], now: datetime | None = None) -> ReconcileResult | None:
        now = now or datetime.now(UTC)
        record = await self._find_by_payment_intent(charge.get("payment_intent"), "charge", charge.get("id"))
        if record is None:
            return None
        record = await self._billing.update(record.id, {"status": BillingStatus.REFUNDED})
        refunded = charge.get("amount_refunded")
        refund, _ = await self._billing.create(
            NewBillingRecord(
                user_id=record.user_id,
                amount=from_minor_units(refunded),
                currency=(charge.get("currency") or record.currency).upper(),
                status=BillingStatus.REFUNDED,
                type=BillingType.REFUND,
                subscription_id=record.subscription_id,
                external_reference=f"{charge['id']}:refund:{refunded or 0}",
                parent_id=record.id,
                description=f"Refund for charge {charge['id']}",
                billing_date=now,
            )
        )
        logger.info("Charge %s refunded, billing record %s marked refunded", charge.get("id"), record.id)
        return ReconcileResult(record, companion=refund)

    async def dispute_created(self, dispute: Dispute, now: datetime | None = None) -> ReconcileResult | None:
        now = now or datetime.now(UTC)
        record = await self._find_by_payment_intent(dispute.payment_intent, "dispute", dispute.id)
        if record is None:
            return None
        record = await self._billing.update(record.id, {"status": BillingStatus.PENDING})
        held, _ = await self._billing.create(
            NewBillingRecord(
                user_id=record.user_id,
                amount=dispute.amount,
                currency=dispute.currency,
                status=BillingStatus.PENDING,
                type=BillingType.SUBSCRIPTION,
                subscription_id=record.subscription_id,
                external_reference=dispute.id,
                parent_id=record.id,
                description=f"Dispute created for charge {dispute.charge}. Reason: {dispute.reason}",
                billing_date=now,
            )
        )
        logger.info("Dispute %s opened, billing record %s held as pending", dispute.id, record.id)
        return ReconcileResult(record, companion=held)

    async def dispute_closed(self, dispute: Dispute) -> ReconcileResult | None:
        record = await self._find_by_payment_intent(dispute.payment_intent, "dispute", dispute.id)
        if record is None:
            return None
        status = DISPUTE_CLOSED_STATUS.get(dispute.outcome, BillingStatus.PAID)
        record = await self._billing.update(record.id, {"status": status})
        logger.info(
            "Dispute %s closed with status %s, billing record %s now %s",
            dispute.id,
            dispute.status,
            record.id,
            status,
        )
        return ReconcileResult(record)

    async def payment_action_required(self, payment_intent: dict[str, Any]) -> ReconcileResult | None:
        payment_intent_id = payment_intent.get("id")
        record = await self._find_by_payment_intent(payment_intent_id, "payment intent", payment_intent_id)
        if record is None:
            return None
        record = await self._billing.update(
            record.id,
            {
                "status": BillingStatus.PENDING,
                "error_message": "Payment requires additional authentication",
            },
        )
        return ReconcileResult(record)

    async def _find_by_payment_intent(
        self, payment_intent_id: str | None, source: str, source_id: str | None
    ) -> BillingRecord | None:
        record = None
        if payment_intent_id:
            record = await self._billing.find_by_external_payment_intent_id(payment_intent_id)
        if record is None:
            logger.warning(
                "No billing record found for %s %s (payment intent %s)",
                source,
                source_id,
                payment_intent_id,
            )
        return record
