from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from gateway_webhooks.states import (
    BillingStatus,
    BillingType,
    ProcessingStatus,
    SubscriptionStatus,
)


def utcnow() -> datetime:
    return datetime.now(UTC)


class EventData(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    object: dict[str, Any] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    """A gateway notification as delivered. Immutable once parsed."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    type: str
    created: int | None = None
    data: EventData = Field(default_factory=EventData)
    received_at: datetime = Field(default_factory=utcnow)

    @property
    def object(self) -> dict[str, Any]:
        return self.data.object

    @property
    def object_id(self) -> str | None:
        return self.data.object.get("id")


@dataclass
class ProcessingRecord:
    event_id: str
    event_type: str
    status: ProcessingStatus
    attempts: int
    last_error: str | None
    created_at: str
    updated_at: str
    processed_at: str | None


@dataclass
class Subscription:
    id: str
    user_id: str
    external_id: str
    status: SubscriptionStatus
    failed_payment_attempts: int = 0
    last_payment_date: datetime | None = None
    last_payment_failed_date: datetime | None = None
    last_payment_error: str | None = None
    next_billing_date: datetime | None = None
    trial_end_date: datetime | None = None
    paused_date: datetime | None = None
    resumed_date: datetime | None = None
    cancelled_date: datetime | None = None
    cancellation_reason: str | None = None
    current_price: Decimal | None = None
    updated_at: datetime | None = None


@dataclass
class BillingRecord:
    id: str
    user_id: str
    amount: Decimal
    currency: str
    status: BillingStatus
    type: BillingType
    subscription_id: str | None = None
    external_invoice_id: str | None = None
    external_payment_intent_id: str | None = None
    external_reference: str | None = None
    parent_id: str | None = None
    invoice_number: str | None = None
    description: str | None = None
    billing_date: datetime | None = None
    due_date: datetime | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class NewBillingRecord:
    user_id: str
    amount: Decimal
    currency: str
    status: BillingStatus
    type: BillingType = BillingType.SUBSCRIPTION
    subscription_id: str | None = None
    external_invoice_id: str | None = None
    external_payment_intent_id: str | None = None
    external_reference: str | None = None
    parent_id: str | None = None
    invoice_number: str | None = None
    description: str | None = None
    billing_date: datetime | None = None
    due_date: datetime | None = None
    error_message: str | None = None


class WebhookResponse(BaseModel):
    event_id: str
    event_type: str
    status: str


class EventStatusResponse(BaseModel):
    event_id: str
    event_type: str
    status: str
    attempts: int
    last_error: str | None
    created_at: str
    updated_at: str
    processed_at: str | None
