import logging
from collections.abc import Awaitable, Callable

from gateway_webhooks.models import WebhookEvent

logger = logging.getLogger(__name__)

Handler = Callable[[WebhookEvent], Awaitable[None]]


class EventDispatcher:
    """Routes an event to the handler registered for its type.

    Unregistered types are accepted and ignored so that new gateway event
    kinds never fail a delivery.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, event_type: str, handler: Handler) -> None:
        if event_type in self._handlers:
            raise ValueError(f"Handler already registered for {event_type}")
        self._handlers[event_type] = handler
        logger.debug("Registered webhook handler for %s", event_type)

    def on(self, event_type: str) -> Callable[[Handler], Handler]:
        def decorator(handler: Handler) -> Handler:
            self.register(event_type, handler)
            return handler

        return decorator

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, event: WebhookEvent) -> bool:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("No handler registered for event type %s (event %s)", event.type, event.id)
            return False
        logger.info("Dispatching %s event %s", event.type, event.id)
        await handler(event)
        return True
