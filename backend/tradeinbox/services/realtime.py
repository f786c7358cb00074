"""
TradeInbox Backend — Realtime Fan-out
=======================================

What:  In-process publish/subscribe of inbox mutations, scoped per artisan, and
       InboxFeed, the reference client-side consumer that applies streamed
       events to a local list.
Why:   The inbox screen must reflect classification progress (new →
       classifying → classified) without polling.
How:   InboxItemStore publishes an InboxEvent after every committed mutation.
       Each subscriber owns a bounded asyncio.Queue; the WebSocket route drains
       its queue and pushes events as JSON.
Who:   InboxItemStore (publish), WS /api/inbox/stream (subscribe), clients.

Event flow:
    commit ──▶ InboxEventBus.publish ──▶ queue(artisan A, socket 1) ──▶ WS
                                     └─▶ queue(artisan A, socket 2) ──▶ WS
    Artisan B's subscribers never see artisan A's events.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from tradeinbox.schemas.inbox import InboxItemResponse

logger = logging.getLogger(__name__)

EVENT_INSERT = "insert"
EVENT_UPDATE = "update"
EVENT_DELETE = "delete"


@dataclass
class InboxEvent:
    """
    One committed mutation. `item` is the serialized row (None for deletes).
    """

    type: str
    artisan_id: uuid.UUID
    item_id: uuid.UUID
    item: Optional[Dict[str, Any]] = None

    @classmethod
    def from_row(cls, event_type: str, row: Any) -> "InboxEvent":
        payload = None
        if event_type != EVENT_DELETE:
            payload = InboxItemResponse.model_validate(row).model_dump(mode="json")
        return cls(type=event_type, artisan_id=row.artisan_id, item_id=row.id, item=payload)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "artisan_id": str(self.artisan_id),
            "item_id": str(self.item_id),
            "item": self.item,
        }

    @classmethod
    def from_dict(cls, message: Dict[str, Any]) -> "InboxEvent":
        """Inverse of to_dict(), for messages read off the WebSocket."""
        return cls(
            type=message["type"],
            artisan_id=uuid.UUID(message["artisan_id"]),
            item_id=uuid.UUID(message["item_id"]),
            item=message.get("item"),
        )


class Subscription:
    """A single subscriber's queue. Use as an async context manager."""

    def __init__(self, bus: "InboxEventBus", artisan_id: uuid.UUID, max_queue: int):
        self.bus = bus
        self.artisan_id = artisan_id
        self.queue: "asyncio.Queue[InboxEvent]" = asyncio.Queue(maxsize=max_queue)

    async def get(self) -> InboxEvent:
        return await self.queue.get()

    def close(self) -> None:
        self.bus.unsubscribe(self)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class InboxEventBus:
    """
    Per-artisan fan-out of InboxEvents.

    publish() never blocks. A subscriber whose queue is full loses its oldest
    event; the client resynchronizes with GET /api/inbox on reconnect.
    """

    def __init__(self, max_queue: int = 100):
        self.max_queue = max_queue
        self._subscribers: Dict[uuid.UUID, Set[Subscription]] = defaultdict(set)

    def subscribe(self, artisan_id: uuid.UUID) -> Subscription:
        subscription = Subscription(self, artisan_id, self.max_queue)
        self._subscribers[artisan_id].add(subscription)
        logger.debug("Realtime subscriber added for artisan %s", artisan_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.artisan_id)
        if not subscribers:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.artisan_id]

    def subscriber_count(self, artisan_id: uuid.UUID) -> int:
        return len(self._subscribers.get(artisan_id, ()))

    def publish(self, event: InboxEvent) -> None:
        for subscription in list(self._subscribers.get(event.artisan_id, ())):
            queue = subscription.queue
            if queue.full():
                queue.get_nowait()
                logger.warning(
                    "Realtime queue full for artisan %s, dropping oldest event",
                    event.artisan_id,
                )
            queue.put_nowait(event)


@dataclass
class InboxFeed:
    """
    Reference consumer for WS /api/inbox/stream.

    The server never uses it. It defines how a client keeps an artisan's inbox
    current: seed `items` from GET /api/inbox, then feed every stream message
    to apply_message().

    insert → prepend; update → replace in place (position kept, no re-sort);
    delete → remove. Events for unknown ids are ignored on update/delete.
    """

    items: List[Dict[str, Any]] = field(default_factory=list)

    def apply(self, event: InboxEvent) -> None:
        item_id = str(event.item_id)
        if event.type == EVENT_INSERT and event.item is not None:
            self.items.insert(0, event.item)
        elif event.type == EVENT_UPDATE and event.item is not None:
            for index, existing in enumerate(self.items):
                if str(existing.get("id")) == item_id:
                    self.items[index] = event.item
                    break
        elif event.type == EVENT_DELETE:
            self.items = [i for i in self.items if str(i.get("id")) != item_id]

    def apply_message(self, message: Dict[str, Any]) -> None:
        self.apply(InboxEvent.from_dict(message))

    @property
    def ids(self) -> List[str]:
        return [str(i.get("id")) for i in self.items]
