"""Subscription lifecycle transitions driven by gateway events.

Every status change a webhook handler may make is listed in ``TRANSITIONS``.
``SubscriptionStateMachine.apply`` is pure: it reads the current subscription
and returns the target status, the field updates and the side effects
(notifications, audit entries) for the handler to carry out. A pair missing
from the table yields an unapplied transition rather than an error, because
the gateway does not order deliveries of distinct events.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from gateway_webhooks.exceptions import InvalidTransition
from gateway_webhooks.models import Subscription
from gateway_webhooks.states import (
    NotificationKind,
    Priority,
    SubscriptionEvent,
    SubscriptionStatus,
    map_gateway_status,
)

S = SubscriptionStatus
E = SubscriptionEvent

CANCELLED_VIA_GATEWAY = "Cancelled via gateway"


@dataclass(frozen=True)
class Notify:
    title: str
    message: str
    kind: NotificationKind
    priority: Priority = Priority.NORMAL


@dataclass(frozen=True)
class Audit:
    action: str
    description: str
    category: str = "Subscription"


SideEffect = Notify | Audit


@dataclass(frozen=True)
class EventContext:
    """Values extracted from the gateway payload that transitions may use."""

    now: datetime
    invoice_number: str | None = None
    gateway_status: str | None = None
    next_billing_date: datetime | None = None
    current_price: Decimal | None = None
    trial_end: datetime | None = None


@dataclass
class Transition:
    previous: SubscriptionStatus
    status: SubscriptionStatus
    updates: dict[str, Any] = field(default_factory=dict)
    effects: list[SideEffect] = field(default_factory=list)
    applied: bool = True
    cancel_reason: str | None = None

    @property
    def changed(self) -> bool:
        return self.status != self.previous

    @property
    def notifications(self) -> list[Notify]:
        return [effect for effect in self.effects if isinstance(effect, Notify)]

    @property
    def audits(self) -> list[Audit]:
        return [effect for effect in self.effects if isinstance(effect, Audit)]


def _edges(
    sources: Iterable[SubscriptionStatus], kind: SubscriptionEvent, target: SubscriptionStatus | None
) -> dict[tuple[SubscriptionStatus, SubscriptionEvent], SubscriptionStatus | None]:
    return {(source, kind): target for source in sources}


def _all_but(*excluded: SubscriptionStatus) -> list[SubscriptionStatus]:
    return [status for status in SubscriptionStatus if status not in excluded]


# (current status, event) -> next status. ``None`` keeps the current status.
TRANSITIONS: dict[tuple[SubscriptionStatus, SubscriptionEvent], SubscriptionStatus | None] = {
    **_edges(
        [S.PENDING, S.TRIAL_ACTIVE, S.ACTIVE, S.PAYMENT_FAILED, S.PAYMENT_ACTION_REQUIRED, S.TRIAL_EXPIRED],
        E.PAYMENT_SUCCEEDED,
        S.ACTIVE,
    ),
    **_edges([S.PENDING, S.ACTIVE, S.PAYMENT_FAILED, S.PAYMENT_ACTION_REQUIRED], E.PAYMENT_FAILED, S.PAYMENT_FAILED),
    (S.TRIAL_ACTIVE, E.PAYMENT_FAILED): S.TRIAL_EXPIRED,
    **_edges(
        [S.PENDING, S.TRIAL_ACTIVE, S.ACTIVE, S.PAYMENT_FAILED, S.PAYMENT_ACTION_REQUIRED],
        E.PAYMENT_ACTION_REQUIRED,
        S.PAYMENT_ACTION_REQUIRED,
    ),
    **_edges([S.TRIAL_ACTIVE, S.ACTIVE, S.PAYMENT_FAILED, S.PAYMENT_ACTION_REQUIRED], E.SUBSCRIPTION_PAUSED, S.PAUSED),
    (S.PAUSED, E.SUBSCRIPTION_RESUMED): S.ACTIVE,
    **_edges(_all_but(S.CANCELLED), E.SUBSCRIPTION_DELETED, S.CANCELLED),
    **_edges(_all_but(S.CANCELLED, S.EXPIRED), E.SUBSCRIPTION_PAST_DUE, S.PAYMENT_FAILED),
    **_edges(_all_but(S.CANCELLED, S.EXPIRED), E.SUBSCRIPTION_UNPAID, S.PAYMENT_FAILED),
    **_edges(SubscriptionStatus, E.TRIAL_WILL_END, None),
}

# Events whose target is the gateway's own status for the subscription.
GATEWAY_SYNC_EVENTS = frozenset({E.SUBSCRIPTION_CREATED, E.SUBSCRIPTION_UPDATED})


def allowed_targets(kind: SubscriptionEvent) -> set[SubscriptionStatus]:
    if kind in GATEWAY_SYNC_EVENTS:
        return set(SubscriptionStatus)
    return {target if target is not None else source for (source, k), target in TRANSITIONS.items() if k is kind}


def _invoice_suffix(context: EventContext) -> str:
    return f" Invoice: {context.invoice_number}" if context.invoice_number else ""


def _payment_succeeded(sub: Subscription, target: SubscriptionStatus, ctx: EventContext):
    updates = {
        "last_payment_date": ctx.now,
        "failed_payment_attempts": 0,
        "last_payment_error": None,
    }
    if sub.status is S.TRIAL_ACTIVE:
        reason = "Trial converted to active subscription via payment"
    elif sub.status is S.PAYMENT_FAILED:
        reason = "Subscription reactivated after successful payment"
    else:
        reason = "Payment succeeded via gateway"
    effects = [
        Notify(
            "Payment Successful",
            f"Your payment for subscription has been processed successfully.{_invoice_suffix(ctx)}",
            NotificationKind.PAYMENT_SUCCESS,
        ),
        Audit("PaymentSucceeded", f"{reason} for subscription {sub.external_id}.{_invoice_suffix(ctx)}"),
    ]
    return updates, effects


def _payment_failed(sub: Subscription, target: SubscriptionStatus, ctx: EventContext):
    updates = {
        "failed_payment_attempts": sub.failed_payment_attempts + 1,
        "last_payment_failed_date": ctx.now,
        "last_payment_error": "Payment failed via gateway",
    }
    effects: list[SideEffect] = [
        Notify(
            "Payment Failed",
            "Your payment for subscription has failed. Please update your payment method "
            f"to continue your subscription.{_invoice_suffix(ctx)}",
            NotificationKind.PAYMENT_FAILED,
            Priority.HIGH,
        ),
        Audit("PaymentFailed", f"Payment failed for subscription {sub.external_id}.{_invoice_suffix(ctx)}"),
    ]
    if target is S.TRIAL_EXPIRED:
        updates["trial_end_date"] = ctx.now
        updates["last_payment_error"] = "Trial ended due to payment failure"
        effects += [
            Notify(
                "Trial Expired",
                "Your trial period has expired due to payment failure. "
                "Please add a valid payment method to continue your subscription.",
                NotificationKind.TRIAL_EXPIRED,
                Priority.HIGH,
            ),
            Audit(
                "TrialExpired",
                f"Trial expired for subscription {sub.external_id} due to payment failure.{_invoice_suffix(ctx)}",
            ),
        ]
    return updates, effects


def _payment_action_required(sub: Subscription, target: SubscriptionStatus, ctx: EventContext):
    effects = [
        Notify(
            "Payment Action Required",
            "Your payment requires additional verification. Please complete the authentication "
            f"process to continue your subscription.{_invoice_suffix(ctx)}",
            NotificationKind.PAYMENT_ACTION,
            Priority.HIGH,
        ),
    ]
    return {"last_payment_error": "Payment authentication required"}, effects


def _paused(sub: Subscription, target: SubscriptionStatus, ctx: EventContext):
    return {"paused_date": ctx.now}, [Audit("Paused", f"Subscription {sub.external_id} paused via gateway")]


def _resumed(sub: Subscription, target: SubscriptionStatus, ctx: EventContext):
    return {"resumed_date": ctx.now}, [Audit("Resumed", f"Subscription {sub.external_id} resumed via gateway")]


def _deleted(sub: Subscription, target: SubscriptionStatus, ctx: EventContext):
    return {}, [Audit("Cancelled", f"Subscription {sub.external_id} cancelled via gateway")]


def _past_due(sub: Subscription, target: SubscriptionStatus, ctx: EventContext):
    return {"last_payment_error": "Payment past due via gateway"}, []


def _unpaid(sub: Subscription, target: SubscriptionStatus, ctx: EventContext):
    return {"last_payment_error": "Payment unpaid via gateway"}, []


def _trial_will_end(sub: Subscription, target: SubscriptionStatus, ctx: EventContext):
    ends = f" on {ctx.trial_end:%b %d, %Y}" if ctx.trial_end else " soon"
    effects = [
        Notify(
            "Trial Ending Soon",
            f"Your trial for subscription plan will end{ends}. "
            "Please add a payment method to continue your subscription.",
            NotificationKind.TRIAL_WARNING,
            Priority.HIGH,
        ),
        Audit("TrialEnding", f"Trial ending for subscription {sub.external_id}{ends}"),
    ]
    return {}, effects


def _synced(sub: Subscription, target: SubscriptionStatus, ctx: EventContext):
    updates: dict[str, Any] = {}
    if ctx.next_billing_date is not None:
        updates["next_billing_date"] = ctx.next_billing_date
    if ctx.current_price is not None:
        updates["current_price"] = ctx.current_price
    return updates, []


_Builder = Callable[[Subscription, SubscriptionStatus, EventContext], tuple[dict[str, Any], list[SideEffect]]]

_BUILDERS: dict[SubscriptionEvent, _Builder] = {
    E.PAYMENT_SUCCEEDED: _payment_succeeded,
    E.PAYMENT_FAILED: _payment_failed,
    E.PAYMENT_ACTION_REQUIRED: _payment_action_required,
    E.SUBSCRIPTION_CREATED: _synced,
    E.SUBSCRIPTION_UPDATED: _synced,
    E.SUBSCRIPTION_PAUSED: _paused,
    E.SUBSCRIPTION_RESUMED: _resumed,
    E.SUBSCRIPTION_DELETED: _deleted,
    E.SUBSCRIPTION_PAST_DUE: _past_due,
    E.SUBSCRIPTION_UNPAID: _unpaid,
    E.TRIAL_WILL_END: _trial_will_end,
}


def _check_table(transitions: dict) -> None:
    for (source, kind), target in transitions.items():
        if not isinstance(source, SubscriptionStatus) or not isinstance(kind, SubscriptionEvent):
            raise InvalidTransition(f"Unknown edge {source!r} --{kind!r}-->")
        if kind in GATEWAY_SYNC_EVENTS:
            raise InvalidTransition(f"{kind} follows the gateway status and takes no table edge")
        if target is not None and not isinstance(target, SubscriptionStatus):
            raise InvalidTransition(f"{source} --{kind}--> {target!r}")


class SubscriptionStateMachine:
    def __init__(
        self,
        transitions: dict[tuple[SubscriptionStatus, SubscriptionEvent], SubscriptionStatus | None] | None = None,
    ) -> None:
        self._transitions = TRANSITIONS if transitions is None else transitions
        _check_table(self._transitions)

    def apply(self, subscription: Subscription, kind: SubscriptionEvent, context: EventContext) -> Transition:
        current = subscription.status
        if kind in GATEWAY_SYNC_EVENTS:
            target = map_gateway_status(context.gateway_status)
        elif (current, kind) in self._transitions:
            target = self._transitions[(current, kind)] or current
        else:
            return Transition(previous=current, status=current, applied=False)

        updates, effects = _BUILDERS[kind](subscription, target, context)
        if kind is E.SUBSCRIPTION_DELETED:
            return Transition(current, target, updates, effects, cancel_reason=CANCELLED_VIA_GATEWAY)
        if target != current:
            updates = {"status": target, **updates}
        return Transition(current, target, updates, effects)
