class WebhookError(Exception):
    """Base class for webhook processing errors."""


class WebhookRejected(WebhookError):
    """Delivery refused before any processing; never retried."""


class InvalidSignature(WebhookRejected):
    pass


class Misconfigured(WebhookRejected):
    pass


class InvalidTransition(WebhookError):
    """A handler tried to apply a status change outside the transition table."""


class RecordNotFound(WebhookError):
    pass
