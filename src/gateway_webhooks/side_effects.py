import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from contextvars import ContextVar

from gateway_webhooks.metrics import SIDE_EFFECT_ERRORS_TOTAL
from gateway_webhooks.services import AuditService, NotificationService
from gateway_webhooks.state_machine import Audit, Notify, SideEffect

logger = logging.getLogger(__name__)


class SideEffects:
    """Notifications and audit entries emitted after a state change.

    A failure here never fails the webhook event: the state change has
    already been written. Inside ``deferred()`` calls are queued and only
    sent once the block exits without an error, so a handler attempt that
    is rolled back and retried notifies nobody.
    """

    def __init__(self, notifications: NotificationService, audit: AuditService) -> None:
        self._notifications = notifications
        self._audit = audit
        self._pending: ContextVar[list[Callable[[], Awaitable[None]]] | None] = ContextVar(
            f"side_effects_{id(self)}", default=None
        )

    @asynccontextmanager
    async def deferred(self) -> AsyncIterator[None]:
        pending: list[Callable[[], Awaitable[None]]] = []
        token = self._pending.set(pending)
        try:
            yield
        finally:
            self._pending.reset(token)
        for send in pending:
            await send()

    async def notify(self, user_id: str, notice: Notify) -> None:
        await self._submit(lambda: self._send_notification(user_id, notice))

    async def audit(self, entry: Audit, subject_id: str | None) -> None:
        await self._submit(lambda: self._write_audit(entry, subject_id))

    async def run(self, effects: Iterable[SideEffect], user_id: str, subject_id: str | None) -> None:
        for effect in effects:
            if isinstance(effect, Notify):
                await self.notify(user_id, effect)
            else:
                await self.audit(effect, subject_id)

    async def _submit(self, send: Callable[[], Awaitable[None]]) -> None:
        pending = self._pending.get()
        if pending is None:
            await send()
        else:
            pending.append(send)

    async def _send_notification(self, user_id: str, notice: Notify) -> None:
        try:
            await self._notifications.notify(user_id, notice.title, notice.message, notice.kind, notice.priority)
        except Exception:
            SIDE_EFFECT_ERRORS_TOTAL.labels(kind="notification").inc()
            logger.exception("Notification %s for user %s failed", notice.kind, user_id)

    async def _write_audit(self, entry: Audit, subject_id: str | None) -> None:
        try:
            await self._audit.log_action(entry.category, entry.action, subject_id, entry.description)
        except Exception:
            SIDE_EFFECT_ERRORS_TOTAL.labels(kind="audit").inc()
            logger.exception("Audit %s/%s for %s failed", entry.category, entry.action, subject_id)
