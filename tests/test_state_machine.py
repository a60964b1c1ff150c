from datetime import UTC, datetime
from decimal import Decimal

import pytest
from factories import make_subscription

from gateway_webhooks.exceptions import InvalidTransition
from gateway_webhooks.state_machine import (
    CANCELLED_VIA_GATEWAY,
    GATEWAY_SYNC_EVENTS,
    TRANSITIONS,
    EventContext,
    SubscriptionStateMachine,
    allowed_targets,
)
from gateway_webhooks.states import (
    NotificationKind,
    SubscriptionEvent,
    SubscriptionStatus,
    map_gateway_status,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
CTX = EventContext(now=NOW, invoice_number="INV-001")
machine = SubscriptionStateMachine()


def test_trial_payment_succeeded_activates_and_resets_failures() -> None:
    sub = make_subscription(
        SubscriptionStatus.TRIAL_ACTIVE,
        failed_payment_attempts=2,
        last_payment_error="card declined",
    )
    t = machine.apply(sub, SubscriptionEvent.PAYMENT_SUCCEEDED, CTX)
    assert t.applied
    assert t.status is SubscriptionStatus.ACTIVE
    assert t.updates["status"] is SubscriptionStatus.ACTIVE
    assert t.updates["failed_payment_attempts"] == 0
    assert t.updates["last_payment_error"] is None
    assert t.updates["last_payment_date"] == NOW
    assert [n.kind for n in t.notifications] == [NotificationKind.PAYMENT_SUCCESS]
    assert "Trial converted" in t.audits[0].description


def test_active_payment_succeeded_stays_active_without_status_write() -> None:
    t = machine.apply(make_subscription(SubscriptionStatus.ACTIVE), SubscriptionEvent.PAYMENT_SUCCEEDED, CTX)
    assert t.applied
    assert not t.changed
    assert "status" not in t.updates
    assert t.updates["failed_payment_attempts"] == 0


def test_active_payment_failed_increments_attempts() -> None:
    sub = make_subscription(SubscriptionStatus.ACTIVE, failed_payment_attempts=1)
    t = machine.apply(sub, SubscriptionEvent.PAYMENT_FAILED, CTX)
    assert t.status is SubscriptionStatus.PAYMENT_FAILED
    assert t.updates["failed_payment_attempts"] == 2
    assert t.updates["last_payment_error"] == "Payment failed via gateway"
    assert t.updates["last_payment_failed_date"] == NOW
    assert [n.kind for n in t.notifications] == [NotificationKind.PAYMENT_FAILED]
    assert "INV-001" in t.notifications[0].message


def test_trial_payment_failed_expires_trial() -> None:
    t = machine.apply(make_subscription(SubscriptionStatus.TRIAL_ACTIVE), SubscriptionEvent.PAYMENT_FAILED, CTX)
    assert t.status is SubscriptionStatus.TRIAL_EXPIRED
    assert t.updates["trial_end_date"] == NOW
    assert t.updates["failed_payment_attempts"] == 1
    assert t.updates["last_payment_error"] == "Trial ended due to payment failure"
    assert [n.kind for n in t.notifications] == [NotificationKind.PAYMENT_FAILED, NotificationKind.TRIAL_EXPIRED]
    assert [a.action for a in t.audits] == ["PaymentFailed", "TrialExpired"]


def test_payment_action_required() -> None:
    t = machine.apply(make_subscription(), SubscriptionEvent.PAYMENT_ACTION_REQUIRED, CTX)
    assert t.status is SubscriptionStatus.PAYMENT_ACTION_REQUIRED
    assert t.updates["last_payment_error"] == "Payment authentication required"
    assert t.notifications[0].kind is NotificationKind.PAYMENT_ACTION


def test_pause_and_resume() -> None:
    paused = machine.apply(make_subscription(), SubscriptionEvent.SUBSCRIPTION_PAUSED, CTX)
    assert paused.status is SubscriptionStatus.PAUSED
    assert paused.updates["paused_date"] == NOW

    resumed = machine.apply(
        make_subscription(SubscriptionStatus.PAUSED), SubscriptionEvent.SUBSCRIPTION_RESUMED, CTX
    )
    assert resumed.status is SubscriptionStatus.ACTIVE
    assert resumed.updates["resumed_date"] == NOW


def test_resume_of_active_subscription_is_not_applied() -> None:
    t = machine.apply(make_subscription(), SubscriptionEvent.SUBSCRIPTION_RESUMED, CTX)
    assert not t.applied
    assert t.status is SubscriptionStatus.ACTIVE
    assert t.updates == {}
    assert t.effects == []


def test_deleted_cancels_with_reason() -> None:
    t = machine.apply(make_subscription(SubscriptionStatus.PAYMENT_FAILED), SubscriptionEvent.SUBSCRIPTION_DELETED, CTX)
    assert t.status is SubscriptionStatus.CANCELLED
    assert t.cancel_reason == CANCELLED_VIA_GATEWAY


def test_deleted_on_cancelled_is_not_applied() -> None:
    t = machine.apply(make_subscription(SubscriptionStatus.CANCELLED), SubscriptionEvent.SUBSCRIPTION_DELETED, CTX)
    assert not t.applied
    assert t.cancel_reason is None


@pytest.mark.parametrize(
    ("kind", "error"),
    [
        (SubscriptionEvent.SUBSCRIPTION_PAST_DUE, "Payment past due via gateway"),
        (SubscriptionEvent.SUBSCRIPTION_UNPAID, "Payment unpaid via gateway"),
    ],
)
def test_past_due_and_unpaid_mark_payment_failed(kind: SubscriptionEvent, error: str) -> None:
    t = machine.apply(make_subscription(SubscriptionStatus.TRIAL_ACTIVE), kind, CTX)
    assert t.status is SubscriptionStatus.PAYMENT_FAILED
    assert t.updates["last_payment_error"] == error


def test_trial_will_end_only_notifies() -> None:
    ctx = EventContext(now=NOW, trial_end=datetime(2026, 3, 4, tzinfo=UTC))
    t = machine.apply(make_subscription(SubscriptionStatus.TRIAL_ACTIVE), SubscriptionEvent.TRIAL_WILL_END, ctx)
    assert t.applied
    assert not t.changed
    assert t.updates == {}
    assert t.notifications[0].kind is NotificationKind.TRIAL_WARNING
    assert "Mar 04, 2026" in t.notifications[0].message


def test_updated_syncs_gateway_status_and_billing_fields() -> None:
    ctx = EventContext(
        now=NOW,
        gateway_status="past_due",
        next_billing_date=datetime(2026, 4, 1, tzinfo=UTC),
        current_price=Decimal("49.99"),
    )
    t = machine.apply(make_subscription(), SubscriptionEvent.SUBSCRIPTION_UPDATED, ctx)
    assert t.status is SubscriptionStatus.PAYMENT_FAILED
    assert t.updates == {
        "status": SubscriptionStatus.PAYMENT_FAILED,
        "next_billing_date": datetime(2026, 4, 1, tzinfo=UTC),
        "current_price": Decimal("49.99"),
    }


@pytest.mark.parametrize(
    ("gateway", "local"),
    [
        ("active", SubscriptionStatus.ACTIVE),
        ("canceled", SubscriptionStatus.CANCELLED),
        ("incomplete", SubscriptionStatus.PENDING),
        ("incomplete_expired", SubscriptionStatus.EXPIRED),
        ("past_due", SubscriptionStatus.PAYMENT_FAILED),
        ("trialing", SubscriptionStatus.TRIAL_ACTIVE),
        ("unpaid", SubscriptionStatus.PAYMENT_FAILED),
        ("something_new", SubscriptionStatus.PENDING),
        (None, SubscriptionStatus.PENDING),
    ],
)
def test_map_gateway_status(gateway: str | None, local: SubscriptionStatus) -> None:
    assert map_gateway_status(gateway) is local


@pytest.mark.parametrize("status", list(SubscriptionStatus))
@pytest.mark.parametrize("kind", list(SubscriptionEvent))
def test_every_transition_lands_on_a_table_target(status: SubscriptionStatus, kind: SubscriptionEvent) -> None:
    ctx = EventContext(now=NOW, gateway_status="active")
    t = machine.apply(make_subscription(status), kind, ctx)
    assert isinstance(t.status, SubscriptionStatus)
    if not t.applied:
        assert (status, kind) not in TRANSITIONS
        assert kind not in GATEWAY_SYNC_EVENTS
        assert t.status is status
        return
    assert t.status in allowed_targets(kind)
    assert t.updates.get("status", t.status) is t.status


def test_table_with_unknown_target_is_rejected() -> None:
    with pytest.raises(InvalidTransition):
        SubscriptionStateMachine({(SubscriptionStatus.ACTIVE, SubscriptionEvent.PAYMENT_SUCCEEDED): "Activ"})


def test_table_edge_for_gateway_sync_event_is_rejected() -> None:
    with pytest.raises(InvalidTransition):
        SubscriptionStateMachine(
            {(SubscriptionStatus.PENDING, SubscriptionEvent.SUBSCRIPTION_UPDATED): SubscriptionStatus.ACTIVE}
        )


def test_custom_table_drives_transitions() -> None:
    custom = SubscriptionStateMachine(
        {(SubscriptionStatus.PAUSED, SubscriptionEvent.PAYMENT_SUCCEEDED): SubscriptionStatus.ACTIVE}
    )
    t = custom.apply(make_subscription(SubscriptionStatus.PAUSED), SubscriptionEvent.PAYMENT_SUCCEEDED, CTX)
    assert t.applied
    assert t.status is SubscriptionStatus.ACTIVE
