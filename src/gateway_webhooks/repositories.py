import uuid
from dataclasses import fields
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Protocol

import aiosqlite

from gateway_webhooks.database import Database
from gateway_webhooks.exceptions import RecordNotFound
from gateway_webhooks.models import BillingRecord, NewBillingRecord, Subscription
from gateway_webhooks.states import BillingStatus, BillingType, SubscriptionStatus


class SubscriptionRepository(Protocol):
    async def find_by_external_id(self, external_id: str) -> Subscription | None: ...

    async def update(self, subscription_id: str, changes: dict[str, Any]) -> Subscription: ...

    async def cancel(self, subscription_id: str, reason: str) -> Subscription: ...


class BillingRepository(Protocol):
    async def find_by_external_invoice_id(self, invoice_id: str) -> BillingRecord | None: ...

    async def find_by_external_payment_intent_id(self, payment_intent_id: str) -> BillingRecord | None: ...

    async def create(self, record: NewBillingRecord) -> tuple[BillingRecord, bool]: ...

    async def update(self, record_id: str, changes: dict[str, Any]) -> BillingRecord: ...


def _now() -> datetime:
    return datetime.now(UTC)


def _to_db(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


_SUBSCRIPTION_COLUMNS = [f.name for f in fields(Subscription)]
_SUBSCRIPTION_DATES = {
    "last_payment_date",
    "last_payment_failed_date",
    "next_billing_date",
    "trial_end_date",
    "paused_date",
    "resumed_date",
    "cancelled_date",
    "updated_at",
}
_SUBSCRIPTION_WRITABLE = set(_SUBSCRIPTION_COLUMNS) - {"id", "user_id", "external_id"}

_BILLING_COLUMNS = [f.name for f in fields(BillingRecord)]
_BILLING_DATES = {"billing_date", "due_date", "created_at", "updated_at"}
_BILLING_WRITABLE = {
    "status",
    "error_message",
    "description",
    "due_date",
    "billing_date",
    "amount",
    "external_payment_intent_id",
    "updated_at",
}


def _row_to_subscription(row: aiosqlite.Row) -> Subscription:
    values = dict(zip(_SUBSCRIPTION_COLUMNS, row, strict=True))
    for name in _SUBSCRIPTION_DATES:
        values[name] = _parse_dt(values[name])
    values["status"] = SubscriptionStatus(values["status"])
    if values["current_price"] is not None:
        values["current_price"] = Decimal(values["current_price"])
    return Subscription(**values)


def _row_to_billing(row: aiosqlite.Row) -> BillingRecord:
    values = dict(zip(_BILLING_COLUMNS, row, strict=True))
    for name in _BILLING_DATES:
        values[name] = _parse_dt(values[name])
    values["status"] = BillingStatus(values["status"])
    values["type"] = BillingType(values["type"])
    values["amount"] = Decimal(values["amount"])
    return BillingRecord(**values)


def _assignments(changes: dict[str, Any], writable: set[str]) -> tuple[str, list[Any]]:
    unknown = set(changes) - writable
    if unknown:
        raise ValueError(f"Not writable: {', '.join(sorted(unknown))}")
    names = sorted(changes)
    return ", ".join(f"{name}=?" for name in names), [_to_db(changes[name]) for name in names]


class SQLiteSubscriptionRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    async def add(self, subscription: Subscription) -> Subscription:
        values = [_to_db(getattr(subscription, name)) for name in _SUBSCRIPTION_COLUMNS]
        async with self._db.transaction() as conn:
            await conn.execute(
                f"INSERT INTO subscriptions({','.join(_SUBSCRIPTION_COLUMNS)}) "
                f"VALUES({','.join('?' * len(_SUBSCRIPTION_COLUMNS))})",
                values,
            )
        return subscription

    async def get(self, subscription_id: str) -> Subscription | None:
        return await self._fetch_one("id", subscription_id)

    async def find_by_external_id(self, external_id: str) -> Subscription | None:
        return await self._fetch_one("external_id", external_id)

    async def update(self, subscription_id: str, changes: dict[str, Any]) -> Subscription:
        changes = {**changes, "updated_at": _now()}
        assignments, values = _assignments(changes, _SUBSCRIPTION_WRITABLE)
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                f"UPDATE subscriptions SET {assignments} WHERE id=?",
                (*values, subscription_id),
            )
        if cursor.rowcount == 0:
            raise RecordNotFound(f"Subscription {subscription_id} not found")
        return await self.get(subscription_id)

    async def cancel(self, subscription_id: str, reason: str) -> Subscription:
        now = _now()
        return await self.update(
            subscription_id,
            {
                "status": SubscriptionStatus.CANCELLED,
                "cancelled_date": now,
                "cancellation_reason": reason,
            },
        )

    async def _fetch_one(self, column: str, value: str) -> Subscription | None:
        async with self._db.conn.execute(
            f"SELECT {','.join(_SUBSCRIPTION_COLUMNS)} FROM subscriptions WHERE {column}=?",
            (value,),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_subscription(row) if row else None


class SQLiteBillingRepository:
    """Billing records keyed by gateway ids.

    ``create`` is create-if-absent: the partial unique indexes on the external
    ids reject a second row, and the existing row is returned instead.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def get(self, record_id: str) -> BillingRecord | None:
        return await self._fetch_one("id", record_id)

    async def find_by_external_invoice_id(self, invoice_id: str) -> BillingRecord | None:
        return await self._fetch_one("external_invoice_id", invoice_id)

    async def find_by_external_payment_intent_id(self, payment_intent_id: str) -> BillingRecord | None:
        return await self._fetch_one("external_payment_intent_id", payment_intent_id)

    async def find_by_external_reference(self, reference: str) -> BillingRecord | None:
        return await self._fetch_one("external_reference", reference)

    async def create(self, record: NewBillingRecord) -> tuple[BillingRecord, bool]:
        now = _now()
        row = BillingRecord(id=str(uuid.uuid4()), created_at=now, updated_at=now, **vars(record))
        values = [_to_db(getattr(row, name)) for name in _BILLING_COLUMNS]
        try:
            async with self._db.transaction() as conn:
                await conn.execute(
                    f"INSERT INTO billing_records({','.join(_BILLING_COLUMNS)}) "
                    f"VALUES({','.join('?' * len(_BILLING_COLUMNS))})",
                    values,
                )
        except aiosqlite.IntegrityError:
            existing = await self._find_existing(record)
            if existing is None:
                raise
            return existing, False
        return await self.get(row.id), True

    async def update(self, record_id: str, changes: dict[str, Any]) -> BillingRecord:
        changes = {**changes, "updated_at": _now()}
        assignments, values = _assignments(changes, _BILLING_WRITABLE)
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                f"UPDATE billing_records SET {assignments} WHERE id=?",
                (*values, record_id),
            )
        if cursor.rowcount == 0:
            raise RecordNotFound(f"Billing record {record_id} not found")
        return await self.get(record_id)

    async def _find_existing(self, record: NewBillingRecord) -> BillingRecord | None:
        if record.external_invoice_id:
            found = await self.find_by_external_invoice_id(record.external_invoice_id)
            if found:
                return found
        if record.external_payment_intent_id:
            found = await self.find_by_external_payment_intent_id(record.external_payment_intent_id)
            if found:
                return found
        if record.external_reference:
            return await self.find_by_external_reference(record.external_reference)
        return None

    async def _fetch_one(self, column: str, value: str) -> BillingRecord | None:
        async with self._db.conn.execute(
            f"SELECT {','.join(_BILLING_COLUMNS)} FROM billing_records WHERE {column}=?",
            (value,),
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_billing(row) if row else None
