import asyncio
import logging
from decimal import Decimal

import pytest
from factories import invoice

from gateway_webhooks.database import Database
from gateway_webhooks.models import NewBillingRecord
from gateway_webhooks.reconciler import BillingReconciler, Dispute, Invoice, InvoiceEvent
from gateway_webhooks.repositories import SQLiteBillingRepository
from gateway_webhooks.states import BillingStatus, BillingType


async def _count(db: Database) -> int:
    async with db.conn.execute("SELECT COUNT(*) FROM billing_records") as cursor:
        row = await cursor.fetchone()
    return row[0]


async def _paid_record(billing: SQLiteBillingRepository, payment_intent: str = "pi_001"):
    record, _ = await billing.create(
        NewBillingRecord(
            user_id="42",
            amount=Decimal("49.99"),
            currency="USD",
            status=BillingStatus.PAID,
            external_invoice_id="in_paid",
            external_payment_intent_id=payment_intent,
        )
    )
    return record


async def test_finalized_creates_pending_record_then_updates_it(
    db: Database, billing: SQLiteBillingRepository
) -> None:
    reconciler = BillingReconciler(billing)
    first = await reconciler.reconcile_invoice(InvoiceEvent.FINALIZED, Invoice.from_payload(invoice()), "42")
    assert first.created
    assert first.record.status is BillingStatus.PENDING
    assert first.record.external_invoice_id == "in_001"
    assert first.record.amount == Decimal("49.99")
    assert first.record.currency == "USD"
    assert first.record.type is BillingType.SUBSCRIPTION

    second = await reconciler.reconcile_invoice(InvoiceEvent.FINALIZED, Invoice.from_payload(invoice()), "42")
    assert not second.created
    assert second.record.id == first.record.id
    assert await _count(db) == 1


@pytest.mark.parametrize(
    ("kind", "status", "error"),
    [
        (InvoiceEvent.CREATED, BillingStatus.PENDING, None),
        (InvoiceEvent.SENT, BillingStatus.PENDING, None),
        (InvoiceEvent.UPCOMING, BillingStatus.UPCOMING, None),
        (InvoiceEvent.VOIDED, BillingStatus.CANCELLED, "Invoice voided"),
        (InvoiceEvent.FINALIZATION_FAILED, BillingStatus.FAILED, "Invoice finalization failed"),
        (InvoiceEvent.PAYMENT_SUCCEEDED, BillingStatus.PAID, None),
        (InvoiceEvent.PAYMENT_FAILED, BillingStatus.FAILED, "Payment failed via gateway"),
    ],
)
async def test_invoice_event_status_on_create(
    billing: SQLiteBillingRepository, kind: InvoiceEvent, status: BillingStatus, error: str | None
) -> None:
    result = await BillingReconciler(billing).reconcile_invoice(kind, Invoice.from_payload(invoice()), "42")
    assert result.created
    assert result.record.status is status
    assert result.record.error_message == error


async def test_invoice_lifecycle_updates_single_record(
    db: Database, billing: SQLiteBillingRepository
) -> None:
    reconciler = BillingReconciler(billing)
    obj = Invoice.from_payload(invoice())
    await reconciler.reconcile_invoice(InvoiceEvent.CREATED, obj, "42")
    await reconciler.reconcile_invoice(InvoiceEvent.FINALIZED, obj, "42")
    result = await reconciler.reconcile_invoice(InvoiceEvent.VOIDED, obj, "42")
    assert result.record.status is BillingStatus.CANCELLED
    assert result.record.error_message == "Invoice voided"
    assert await _count(db) == 1


async def test_informational_event_does_not_reopen_paid_record(billing: SQLiteBillingRepository) -> None:
    reconciler = BillingReconciler(billing)
    obj = Invoice.from_payload(invoice())
    await reconciler.reconcile_invoice(InvoiceEvent.PAYMENT_SUCCEEDED, obj, "42")
    result = await reconciler.reconcile_invoice(InvoiceEvent.SENT, obj, "42")
    assert not result.changed
    assert result.record.status is BillingStatus.PAID


async def test_payment_intent_is_linked_on_later_invoice_event(billing: SQLiteBillingRepository) -> None:
    reconciler = BillingReconciler(billing)
    await reconciler.reconcile_invoice(InvoiceEvent.FINALIZED, Invoice.from_payload(invoice()), "42")
    paid = Invoice.from_payload(invoice(payment_intent="pi_linked"))
    result = await reconciler.reconcile_invoice(InvoiceEvent.PAYMENT_SUCCEEDED, paid, "42")
    assert result.record.external_payment_intent_id == "pi_linked"
    assert (await billing.find_by_external_payment_intent_id("pi_linked")).id == result.record.id


async def test_refund_marks_record_and_adds_refund_row_once(
    db: Database, billing: SQLiteBillingRepository
) -> None:
    record = await _paid_record(billing)
    reconciler = BillingReconciler(billing)
    charge = {"id": "ch_001", "payment_intent": "pi_001", "amount_refunded": 4999, "currency": "usd"}
    result = await reconciler.refund(charge)
    assert result.record.id == record.id
    assert result.record.status is BillingStatus.REFUNDED
    assert result.companion.type is BillingType.REFUND
    assert result.companion.amount == Decimal("49.99")
    assert result.companion.parent_id == record.id

    again = await reconciler.refund(charge)
    assert again.companion.id == result.companion.id
    assert await _count(db) == 2


async def test_dispute_created_holds_record(db: Database, billing: SQLiteBillingRepository) -> None:
    record = await _paid_record(billing)
    dispute = Dispute.from_payload(
        {"id": "dp_001", "payment_intent": "pi_001", "charge": "ch_001", "amount": 4999, "reason": "fraudulent"}
    )
    result = await BillingReconciler(billing).dispute_created(dispute)
    assert result.record.id == record.id
    assert result.record.status is BillingStatus.PENDING
    assert "fraudulent" in result.companion.description
    assert await _count(db) == 2


@pytest.mark.parametrize(
    ("outcome", "status"),
    [
        ("won", BillingStatus.REFUNDED),
        ("lost", BillingStatus.PAID),
        ("warning_closed", BillingStatus.PAID),
    ],
)
async def test_dispute_closed_outcomes(billing: SQLiteBillingRepository, outcome: str, status: BillingStatus) -> None:
    await _paid_record(billing)
    dispute = Dispute.from_payload({"id": "dp_001", "payment_intent": "pi_001", "status": outcome})
    result = await BillingReconciler(billing).dispute_closed(dispute)
    assert result.record.status is status


async def test_payment_action_required_sets_error(billing: SQLiteBillingRepository) -> None:
    await _paid_record(billing)
    result = await BillingReconciler(billing).payment_action_required({"id": "pi_001"})
    assert result.record.status is BillingStatus.PENDING
    assert result.record.error_message == "Payment requires additional authentication"


async def test_missing_record_logs_warning(
    billing: SQLiteBillingRepository, caplog: pytest.LogCaptureFixture
) -> None:
    reconciler = BillingReconciler(billing)
    with caplog.at_level(logging.WARNING, logger="gateway_webhooks.reconciler"):
        assert await reconciler.refund({"id": "ch_x", "payment_intent": "pi_missing"}) is None
        assert await reconciler.dispute_closed(Dispute.from_payload({"id": "dp_x", "status": "won"})) is None
    assert "No billing record found" in caplog.text


async def test_concurrent_finalized_events_create_one_record(
    db: Database, billing: SQLiteBillingRepository
) -> None:
    reconciler = BillingReconciler(billing)
    first, second = await asyncio.gather(
        reconciler.reconcile_invoice(InvoiceEvent.FINALIZED, Invoice.from_payload(invoice()), "42"),
        reconciler.reconcile_invoice(InvoiceEvent.FINALIZED, Invoice.from_payload(invoice()), "42"),
    )
    assert await _count(db) == 1
    assert first.record.id == second.record.id
    assert [first.created, second.created].count(True) == 1
