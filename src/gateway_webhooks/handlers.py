"""Handlers for the gateway event types this service understands.

Each handler reads the event object, applies subscription transitions through
the state machine and billing changes through the reconciler, then emits
notifications and audit entries. Errors from repositories propagate so the
receiver can retry the delivery.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from gateway_webhooks.dispatcher import EventDispatcher
from gateway_webhooks.models import Subscription, WebhookEvent
from gateway_webhooks.reconciler import (
    BillingReconciler,
    Dispute,
    Invoice,
    InvoiceEvent,
    from_minor_units,
    from_timestamp,
)
from gateway_webhooks.repositories import SubscriptionRepository
from gateway_webhooks.side_effects import SideEffects
from gateway_webhooks.state_machine import (
    Audit,
    EventContext,
    Notify,
    SubscriptionStateMachine,
    Transition,
)
from gateway_webhooks.states import NotificationKind, Priority, SubscriptionEvent

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS: dict[str, SubscriptionEvent] = {
    "customer.subscription.created": SubscriptionEvent.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": SubscriptionEvent.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": SubscriptionEvent.SUBSCRIPTION_DELETED,
    "customer.subscription.paused": SubscriptionEvent.SUBSCRIPTION_PAUSED,
    "customer.subscription.resumed": SubscriptionEvent.SUBSCRIPTION_RESUMED,
    "customer.subscription.past_due": SubscriptionEvent.SUBSCRIPTION_PAST_DUE,
    "customer.subscription.unpaid": SubscriptionEvent.SUBSCRIPTION_UNPAID,
    "customer.subscription.trial_will_end": SubscriptionEvent.TRIAL_WILL_END,
}

INVOICE_PAYMENT_EVENTS: dict[str, SubscriptionEvent] = {
    "invoice.payment_succeeded": SubscriptionEvent.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": SubscriptionEvent.PAYMENT_FAILED,
    "invoice.payment_action_required": SubscriptionEvent.PAYMENT_ACTION_REQUIRED,
}

INVOICE_EVENTS: dict[str, InvoiceEvent] = {
    "invoice.created": InvoiceEvent.CREATED,
    "invoice.finalized": InvoiceEvent.FINALIZED,
    "invoice.upcoming": InvoiceEvent.UPCOMING,
    "invoice.sent": InvoiceEvent.SENT,
    "invoice.voided": InvoiceEvent.VOIDED,
    "invoice.finalization_failed": InvoiceEvent.FINALIZATION_FAILED,
}

# Invoice events whose handling also leaves an audit entry.
_AUDITED_INVOICE_EVENTS = {InvoiceEvent.CREATED: "Created", InvoiceEvent.VOIDED: "Voided"}

# Acknowledged for the audit trail only.
PAYMENT_METHOD_EVENTS = {
    "payment_method.attached": "Attached",
    "payment_method.updated": "Updated",
    "payment_method.detached": "Detached",
}
SETUP_INTENT_EVENTS = {
    "setup_intent.succeeded": "SetupSucceeded",
    "setup_intent.setup_failed": "SetupFailed",
}
LOGGED_EVENTS = (
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "customer.created",
    "customer.updated",
    "customer.deleted",
)


def subscription_id_from_invoice(invoice: dict[str, Any]) -> str | None:
    subscription = invoice.get("subscription")
    if isinstance(subscription, dict):
        subscription = subscription.get("id")
    if subscription:
        return subscription
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") or {}
    if details.get("subscription"):
        return details["subscription"]
    return (invoice.get("metadata") or {}).get("subscription_id")


def subscription_context(obj: dict[str, Any], now: datetime) -> EventContext:
    items = (obj.get("items") or {}).get("data") or []
    first = items[0] if items else {}
    period_end = obj.get("current_period_end") or first.get("current_period_end")
    unit_amount = (first.get("price") or {}).get("unit_amount")
    return EventContext(
        now=now,
        gateway_status=obj.get("status"),
        next_billing_date=from_timestamp(period_end),
        current_price=from_minor_units(unit_amount) if unit_amount is not None else None,
        trial_end=from_timestamp(obj.get("trial_end")),
    )


class WebhookHandlers:
    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        reconciler: BillingReconciler,
        side_effects: SideEffects,
        state_machine: SubscriptionStateMachine | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._subscriptions = subscriptions
        self._reconciler = reconciler
        self._effects = side_effects
        self._machine = state_machine or SubscriptionStateMachine()
        self._clock = clock or (lambda: datetime.now(UTC))

    def register(self, dispatcher: EventDispatcher) -> EventDispatcher:
        for event_type, kind in SUBSCRIPTION_EVENTS.items():
            dispatcher.register(event_type, self._subscription_handler(kind))
        for event_type, kind in INVOICE_PAYMENT_EVENTS.items():
            dispatcher.register(event_type, self._invoice_payment_handler(kind))
        for event_type, kind in INVOICE_EVENTS.items():
            dispatcher.register(event_type, self._invoice_handler(kind))
        dispatcher.register("charge.refunded", self.handle_charge_refunded)
        dispatcher.register("charge.dispute.created", self.handle_dispute_created)
        dispatcher.register("charge.dispute.closed", self.handle_dispute_closed)
        dispatcher.register("payment_intent.requires_action", self.handle_payment_intent_requires_action)
        for event_type, action in PAYMENT_METHOD_EVENTS.items():
            dispatcher.register(event_type, self._audit_only_handler("PaymentMethod", action))
        for event_type, action in SETUP_INTENT_EVENTS.items():
            dispatcher.register(event_type, self._audit_only_handler("PaymentMethod", action))
        for event_type in LOGGED_EVENTS:
            dispatcher.register(event_type, self.handle_logged)
        return dispatcher

    # -- subscriptions ---------------------------------------------------

    async def apply(self, subscription: Subscription, kind: SubscriptionEvent, context: EventContext) -> Transition:
        transition = self._machine.apply(subscription, kind, context)
        if not transition.applied:
            logger.info(
                "Subscription %s in status %s has no transition for %s, ignoring",
                subscription.id,
                subscription.status,
                kind,
            )
            return transition
        if transition.cancel_reason is not None:
            await self._subscriptions.cancel(subscription.id, transition.cancel_reason)
        elif transition.updates:
            await self._subscriptions.update(subscription.id, transition.updates)
        if transition.changed:
            logger.info(
                "Subscription %s %s -> %s on %s",
                subscription.id,
                transition.previous,
                transition.status,
                kind,
            )
        await self._effects.run(transition.effects, subscription.user_id, subscription.id)
        return transition

    def _subscription_handler(self, kind: SubscriptionEvent):
        async def handle(event: WebhookEvent) -> None:
            external_id = event.object_id
            subscription = await self._find_subscription(external_id, event)
            if subscription is None:
                return
            await self.apply(subscription, kind, subscription_context(event.object, self._clock()))

        handle.__name__ = f"handle_{kind}"
        return handle

    def _invoice_payment_handler(self, kind: SubscriptionEvent):
        async def handle(event: WebhookEvent) -> None:
            obj = event.object
            subscription = await self._find_subscription(subscription_id_from_invoice(obj), event)
            now = self._clock()
            if subscription is not None:
                context = EventContext(now=now, invoice_number=obj.get("number"))
                await self.apply(subscription, kind, context)
            if kind is SubscriptionEvent.PAYMENT_ACTION_REQUIRED or not obj.get("id"):
                return
            user_id = self._invoice_owner(obj, subscription)
            if user_id is None:
                logger.warning("Invoice %s has no resolvable owner, billing not reconciled", obj.get("id"))
                return
            await self._reconciler.reconcile_invoice(
                InvoiceEvent(kind.value),
                Invoice.from_payload(obj),
                user_id,
                subscription.id if subscription else None,
                now,
            )

        handle.__name__ = f"handle_invoice_{kind}"
        return handle

    async def _find_subscription(self, external_id: str | None, event: WebhookEvent) -> Subscription | None:
        if not external_id:
            logger.info("%s event %s carries no subscription id", event.type, event.id)
            return None
        subscription = await self._subscriptions.find_by_external_id(external_id)
        if subscription is None:
            logger.info("Subscription %s from event %s is not tracked locally", external_id, event.id)
        return subscription

    # -- invoices --------------------------------------------------------

    def _invoice_owner(self, invoice: dict[str, Any], subscription: Subscription | None) -> str | None:
        if subscription is not None:
            return subscription.user_id
        metadata = invoice.get("metadata") or {}
        return metadata.get("user_id") or invoice.get("customer")

    def _invoice_handler(self, kind: InvoiceEvent):
        async def handle(event: WebhookEvent) -> None:
            obj = event.object
            if not obj.get("id"):
                logger.warning("%s event %s has no invoice id", event.type, event.id)
                return
            subscription = None
            subscription_external_id = subscription_id_from_invoice(obj)
            if subscription_external_id:
                subscription = await self._subscriptions.find_by_external_id(subscription_external_id)
            user_id = self._invoice_owner(obj, subscription)
            if user_id is None:
                logger.warning("Invoice %s has no resolvable owner, billing not reconciled", obj["id"])
                return
            await self._reconciler.reconcile_invoice(
                kind,
                Invoice.from_payload(obj),
                user_id,
                subscription.id if subscription else None,
                self._clock(),
            )
            if kind in _AUDITED_INVOICE_EVENTS:
                await self._effects.audit(
                    Audit(
                        _AUDITED_INVOICE_EVENTS[kind],
                        f"Invoice {obj.get('number') or obj['id']} {kind} for customer {obj.get('customer')}",
                        category="Invoice",
                    ),
                    obj["id"],
                )

        handle.__name__ = f"handle_invoice_{kind}"
        return handle

    # -- charges and disputes --------------------------------------------

    async def handle_charge_refunded(self, event: WebhookEvent) -> None:
        charge = event.object
        result = await self._reconciler.refund(charge, self._clock())
        if result is None:
            return
        await self._effects.audit(
            Audit("Refunded", f"Charge {charge.get('id')} refunded", category="Billing"),
            result.record.id,
        )

    async def handle_dispute_created(self, event: WebhookEvent) -> None:
        dispute = Dispute.from_payload(event.object)
        result = await self._reconciler.dispute_created(dispute, self._clock())
        if result is None:
            return
        await self._effects.audit(
            Audit(
                "DisputeCreated",
                f"Dispute {dispute.id} opened for charge {dispute.charge}. Reason: {dispute.reason}",
                category="Billing",
            ),
            result.record.id,
        )

    async def handle_dispute_closed(self, event: WebhookEvent) -> None:
        dispute = Dispute.from_payload(event.object)
        result = await self._reconciler.dispute_closed(dispute)
        if result is None:
            return
        await self._effects.audit(
            Audit(
                "DisputeClosed",
                f"Dispute {dispute.id} closed as {dispute.status}, billing record now {result.record.status}",
                category="Billing",
            ),
            result.record.id,
        )

    async def handle_payment_intent_requires_action(self, event: WebhookEvent) -> None:
        result = await self._reconciler.payment_action_required(event.object)
        if result is None:
            return
        await self._effects.notify(
            result.record.user_id,
            Notify(
                "Payment Action Required",
                "Your payment requires additional verification. Please complete the authentication process.",
                NotificationKind.PAYMENT_ACTION,
                Priority.HIGH,
            ),
        )

    # -- audit and log only ----------------------------------------------

    def _audit_only_handler(self, category: str, action: str):
        async def handle(event: WebhookEvent) -> None:
            obj = event.object
            customer = obj.get("customer")
            description = f"{event.type} {obj.get('id')} for customer {customer}"
            error = (obj.get("last_setup_error") or {}).get("message")
            if error:
                logger.warning("%s: %s", description, error)
                description = f"{description}: {error}"
            await self._effects.audit(Audit(action, description, category=category), obj.get("id"))

        handle.__name__ = f"handle_{category.lower()}_{action.lower()}"
        return handle

    async def handle_logged(self, event: WebhookEvent) -> None:
        logger.info("%s %s received for customer %s", event.type, event.object_id, event.object.get("customer"))


def build_dispatcher(handlers: WebhookHandlers) -> EventDispatcher:
    return handlers.register(EventDispatcher())
