from enum import StrEnum


class ProcessingStatus(StrEnum):
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class SubscriptionStatus(StrEnum):
    PENDING = "Pending"
    TRIAL_ACTIVE = "TrialActive"
    ACTIVE = "Active"
    PAYMENT_FAILED = "PaymentFailed"
    PAYMENT_ACTION_REQUIRED = "PaymentActionRequired"
    PAUSED = "Paused"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"
    TRIAL_EXPIRED = "TrialExpired"


class BillingStatus(StrEnum):
    PENDING = "Pending"
    UPCOMING = "Upcoming"
    PAID = "Paid"
    FAILED = "Failed"
    REFUNDED = "Refunded"
    CANCELLED = "Cancelled"


class BillingType(StrEnum):
    SUBSCRIPTION = "Subscription"
    REFUND = "Refund"


class NotificationKind(StrEnum):
    PAYMENT_SUCCESS = "PaymentSuccess"
    PAYMENT_FAILED = "PaymentFailed"
    PAYMENT_ACTION = "PaymentAction"
    TRIAL_EXPIRED = "TrialExpired"
    TRIAL_WARNING = "TrialWarning"


class Priority(StrEnum):
    NORMAL = "Normal"
    HIGH = "High"


class SubscriptionEvent(StrEnum):
    """Gateway event kinds the subscription state machine reacts to."""

    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_ACTION_REQUIRED = "payment_action_required"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    SUBSCRIPTION_PAST_DUE = "subscription_past_due"
    SUBSCRIPTION_UNPAID = "subscription_unpaid"
    TRIAL_WILL_END = "trial_will_end"


# Gateway subscription status -> local status. Unknown values fall back to PENDING.
GATEWAY_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete": SubscriptionStatus.PENDING,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
    "past_due": SubscriptionStatus.PAYMENT_FAILED,
    "trialing": SubscriptionStatus.TRIAL_ACTIVE,
    "unpaid": SubscriptionStatus.PAYMENT_FAILED,
    "paused": SubscriptionStatus.PAUSED,
}


def map_gateway_status(status: str | None) -> SubscriptionStatus:
    return GATEWAY_STATUS_MAP.get(status or "", SubscriptionStatus.PENDING)
