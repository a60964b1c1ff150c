from functools import lru_cache

from fastapi import Depends, Request

from gateway_webhooks.config import Settings
from gateway_webhooks.database import Database
from gateway_webhooks.handlers import WebhookHandlers, build_dispatcher
from gateway_webhooks.receiver import WebhookReceiver
from gateway_webhooks.reconciler import BillingReconciler
from gateway_webhooks.repositories import SQLiteBillingRepository, SQLiteSubscriptionRepository
from gateway_webhooks.retry import RetryExecutor, RetryPolicy
from gateway_webhooks.services import SQLiteAuditService, SQLiteNotificationService
from gateway_webhooks.side_effects import SideEffects
from gateway_webhooks.signature import SignatureVerifier
from gateway_webhooks.store import SQLiteIdempotencyStore


@lru_cache
def get_settings() -> Settings:
    return Settings()


def build_receiver(db: Database, settings: Settings) -> WebhookReceiver:
    audit = SQLiteAuditService(db)
    side_effects = SideEffects(SQLiteNotificationService(db), audit)
    handlers = WebhookHandlers(
        subscriptions=SQLiteSubscriptionRepository(db),
        reconciler=BillingReconciler(SQLiteBillingRepository(db)),
        side_effects=side_effects,
    )
    return WebhookReceiver(
        verifier=SignatureVerifier(settings.webhook_secret, settings.signature_tolerance_seconds),
        store=SQLiteIdempotencyStore(db),
        dispatcher=build_dispatcher(handlers),
        retry=RetryExecutor(RetryPolicy.from_settings(settings)),
        audit=audit,
        database=db,
        side_effects=side_effects,
        timeout=settings.processing_timeout_seconds,
    )


async def get_db(request: Request) -> Database:
    return request.app.state.db


async def get_store(
    db: Database = Depends(get_db),
) -> SQLiteIdempotencyStore:
    return SQLiteIdempotencyStore(db)


async def get_receiver(request: Request) -> WebhookReceiver:
    return request.app.state.receiver
