"""In-process publish/subscribe for domain events."""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from isp_support.logging_config import get_logger

logger = get_logger("event_bus")

TICKET_CREATED = "ticket.created"
LEAD_QUALIFIED = "lead.qualified"

Handler = Callable[["Event"], Awaitable[None]]


@dataclass
class Event:
    name: str
    payload: dict[str, Any] = field(default_factory=dict)


class EventBus:
    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, name: str, handler: Handler) -> None:
        self._handlers[name].append(handler)

    async def publish(self, name: str, /, **payload) -> None:
        """Run subscribers in order. Subscriber errors propagate to the publisher."""
        event = Event(name=name, payload=payload)
        handlers = self._handlers.get(name, [])
        logger.debug(f"Publishing {name} to {len(handlers)} handler(s)")
        for handler in handlers:
            await handler(event)
