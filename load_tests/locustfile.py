"""
Locust load tests for the gateway webhook endpoint.

Run against a local server signing with the same secret:
    WEBHOOK_SECRET=whsec_load_test uv run uvicorn gateway_webhooks.app:create_app --factory --port 8000

Headless benchmark (60 s, 50 users, ramp 10/s):
    WEBHOOK_SECRET=whsec_load_test uv run locust -f load_tests/locustfile.py --headless \
        -u 50 -r 10 --run-time 60s --host http://localhost:8000
"""

import os
import sys
import uuid
from pathlib import Path

from locust import HttpUser, between, task

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "tests"))

from factories import event_payload, sign  # noqa: E402

SECRET = os.environ.get("WEBHOOK_SECRET", "whsec_load_test")


def signed(event_type: str, obj: dict, event_id: str | None = None) -> tuple[bytes, dict]:
    body = event_payload(event_type, obj, event_id)
    return body, {"Stripe-Signature": sign(body, SECRET), "Content-Type": "application/json"}


class GatewayDeliveryUser(HttpUser):
    """Simulates the gateway delivering new, unique invoice events."""

    wait_time = between(0.05, 0.2)
    weight = 3

    @task
    def post_invoice_event(self) -> None:
        invoice_id = f"in_{uuid.uuid4().hex[:12]}"
        body, headers = signed(
            "invoice.finalized",
            {"id": invoice_id, "customer": "cus_load", "amount_due": 4999, "currency": "usd"},
        )
        self.client.post("/webhooks/stripe", data=body, headers=headers, name="/webhooks/stripe [new]")


class RedeliveryUser(HttpUser):
    """Simulates the gateway retrying one event (idempotency path)."""

    wait_time = between(0.1, 0.5)
    weight = 1

    def on_start(self) -> None:
        self._event_id = f"evt_{uuid.uuid4().hex}"

    @task
    def post_duplicate_event(self) -> None:
        body, headers = signed("customer.updated", {"id": "cus_load"}, event_id=self._event_id)
        self.client.post("/webhooks/stripe", data=body, headers=headers, name="/webhooks/stripe [duplicate]")


class StatusCheckUser(HttpUser):
    """Polls the processing status of an event it delivered."""

    wait_time = between(0.1, 0.5)
    weight = 2

    def on_start(self) -> None:
        self._event_id = f"evt_{uuid.uuid4().hex}"
        body, headers = signed("customer.created", {"id": "cus_load"}, event_id=self._event_id)
        self.client.post("/webhooks/stripe", data=body, headers=headers)

    @task
    def get_event_status(self) -> None:
        self.client.get(f"/webhooks/events/{self._event_id}", name="/webhooks/events/[id]")
