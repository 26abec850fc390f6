import logging
from collections import defaultdict
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

DEPOSIT_CONFIRMED = "deposit.confirmed"
PAYOUT_COMPLETED = "payout.completed"
PAYOUT_FAILED = "payout.failed"
SECURITY = "security"

EVENT_KINDS = (DEPOSIT_CONFIRMED, PAYOUT_COMPLETED, PAYOUT_FAILED, SECURITY)

Handler = Callable[[dict], Awaitable[None]]


class EventBus:
    """In-process fan-out of committed facts to the storefront layer."""

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, kind: str, handler: Handler) -> None:
        if kind not in EVENT_KINDS:
            raise ValueError(f"unknown event kind: {kind}")
        self._handlers[kind].append(handler)

    async def publish(self, kind: str, payload: dict) -> None:
        for handler in list(self._handlers.get(kind, ())):
            try:
                await handler(payload)
            except Exception:
                logger.exception(f"event handler for {kind} failed")
