import json
import logging

import stripe
from pydantic import ValidationError

from gateway_webhooks.config import PLACEHOLDER_WEBHOOK_SECRET
from gateway_webhooks.exceptions import InvalidSignature, Misconfigured
from gateway_webhooks.models import WebhookEvent

logger = logging.getLogger(__name__)


class SignatureVerifier:
    def __init__(self, secret: str | None, tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE) -> None:
        self._secret = secret
        self._tolerance = tolerance

    @property
    def configured(self) -> bool:
        return bool(self._secret) and self._secret != PLACEHOLDER_WEBHOOK_SECRET

    def verify(self, payload: bytes, signature: str | None) -> WebhookEvent:
        if not self.configured:
            logger.error("Webhook secret is missing or still set to the placeholder")
            raise Misconfigured("Webhook secret not configured")
        if not signature:
            raise InvalidSignature("Missing signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidSignature("Payload is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(body, signature, self._secret, self._tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning("Webhook signature verification failed: %s", e)
            raise InvalidSignature(str(e)) from e

        try:
            return WebhookEvent.model_validate(json.loads(body))
        except (json.JSONDecodeError, ValidationError) as e:
            raise InvalidSignature("Signed payload is not a gateway event") from e
