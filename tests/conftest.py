import pytest
from factories import SECRET
from httpx import ASGITransport, AsyncClient

from gateway_webhooks.app import create_app
from gateway_webhooks.config import Settings
from gateway_webhooks.database import Database, open_db
from gateway_webhooks.dependencies import build_receiver, get_db, get_receiver
from gateway_webhooks.handlers import WebhookHandlers, build_dispatcher
from gateway_webhooks.reconciler import BillingReconciler
from gateway_webhooks.repositories import SQLiteBillingRepository, SQLiteSubscriptionRepository
from gateway_webhooks.services import SQLiteAuditService, SQLiteNotificationService
from gateway_webhooks.side_effects import SideEffects


@pytest.fixture
def settings(tmp_path: pytest.TempPathFactory) -> Settings:
    return Settings(
        webhook_secret=SECRET,
        webhook_retry_attempts=3,
        webhook_retry_delay_seconds=0,
        db_path=str(tmp_path / "test.db"),
    )


@pytest.fixture
async def db(settings: Settings):
    conn = await open_db(settings.db_path)
    yield conn
    await conn.close()


@pytest.fixture
def subscriptions(db: Database) -> SQLiteSubscriptionRepository:
    return SQLiteSubscriptionRepository(db)


@pytest.fixture
def billing(db: Database) -> SQLiteBillingRepository:
    return SQLiteBillingRepository(db)


@pytest.fixture
def audit(db: Database) -> SQLiteAuditService:
    return SQLiteAuditService(db)


@pytest.fixture
def notifications(db: Database) -> SQLiteNotificationService:
    return SQLiteNotificationService(db)


@pytest.fixture
def handlers(subscriptions, billing, audit, notifications) -> WebhookHandlers:
    return WebhookHandlers(
        subscriptions=subscriptions,
        reconciler=BillingReconciler(billing),
        side_effects=SideEffects(notifications, audit),
    )


@pytest.fixture
def dispatcher(handlers: WebhookHandlers):
    return build_dispatcher(handlers)


@pytest.fixture
def receiver(db: Database, settings: Settings):
    return build_receiver(db, settings)


@pytest.fixture
async def client(db: Database, settings: Settings, receiver) -> AsyncClient:
    app = create_app(settings)
    app.state.ready = True
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_receiver] = lambda: receiver
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
