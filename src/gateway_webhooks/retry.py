import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from gateway_webhooks.config import Settings
from gateway_webhooks.metrics import RETRY_ATTEMPTS_TOTAL

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(settings.webhook_retry_attempts, settings.webhook_retry_delay_seconds)


class RetryExecutor:
    """Runs a coroutine function up to ``max_attempts`` times in a row.

    Retries happen inside one delivery only, sleeping ``delay_seconds``
    between attempts. The exception of the last attempt propagates unchanged.
    """

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy

    async def run(self, fn: Callable[[], Awaitable[T]], label: str = "handler") -> T:
        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                return await fn()
            except Exception as e:
                RETRY_ATTEMPTS_TOTAL.inc()
                if attempt == self.policy.max_attempts:
                    logger.error(
                        "%s failed on final attempt %d/%d: %s",
                        label,
                        attempt,
                        self.policy.max_attempts,
                        e,
                    )
                    raise
                logger.warning(
                    "%s failed on attempt %d/%d, retrying in %ss: %s",
                    label,
                    attempt,
                    self.policy.max_attempts,
                    self.policy.delay_seconds,
                    e,
                )
                await asyncio.sleep(self.policy.delay_seconds)
        raise AssertionError("unreachable")
