"""
TradeInbox Backend — Inbox Item Store
=======================================

What:  All reads and writes of inbox_items, plus artisan lookups.
Why:   The status machine is only safe if every status change is an atomic
       conditional update on the expected source status. Funnelling writes
       through one place makes that rule hold everywhere, and lets every
       committed mutation be fanned out exactly once.
How:   Each write opens its own short transaction from the injected session
       factory:
           UPDATE inbox_items SET status = :target, ...
           WHERE id = :id AND status IN (:expected)
       rowcount == 0 means another worker got there first. After commit the
       fresh row is published on the InboxEventBus.
Who:   IntakeGateway, ClassificationOrchestrator, RoutingEngine, inbox routes.
"""

import logging
import uuid
from typing import Any, Iterable, List, Optional, Union

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tradeinbox.exceptions import DatabaseError, NotFoundError
from tradeinbox.models.inbox_item import InboxItem, InboxStatus, is_allowed_transition
from tradeinbox.models.records import Artisan
from tradeinbox.services.realtime import (
    EVENT_DELETE,
    EVENT_INSERT,
    EVENT_UPDATE,
    InboxEvent,
    InboxEventBus,
)

logger = logging.getLogger(__name__)

StatusLike = Union[str, InboxStatus]


def _status_value(status: StatusLike) -> str:
    return status.value if isinstance(status, InboxStatus) else str(status)


class InboxItemStore:
    """
    Persistence gateway for inbox items.

    Every method raises DatabaseError for unexpected SQLAlchemy failures; the
    original error is logged, never returned to the client.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_bus: InboxEventBus,
    ):
        self.session_factory = session_factory
        self.event_bus = event_bus

    # ── Events ────────────────────────────────────────────────────────────

    def publish(self, event_type: str, item: InboxItem) -> None:
        """Fan out a committed mutation. Only call after the commit succeeded."""
        self.event_bus.publish(InboxEvent.from_row(event_type, item))

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get(self, item_id: uuid.UUID) -> InboxItem:
        try:
            async with self.session_factory() as session:
                item = await session.get(InboxItem, item_id)
        except SQLAlchemyError as e:
            logger.error("Database error fetching inbox item %s: %s", item_id, str(e))
            raise DatabaseError(context={"inbox_item_id": str(item_id)})
        if item is None:
            raise NotFoundError(resource="inbox item", resource_id=str(item_id))
        return item

    async def list_items(
        self,
        artisan_id: uuid.UUID,
        status: Optional[StatusLike] = None,
        limit: int = 50,
    ) -> List[InboxItem]:
        """Newest first, backed by idx_inbox_items_artisan_created."""
        query = select(InboxItem).where(InboxItem.artisan_id == artisan_id)
        if status is not None:
            query = query.where(InboxItem.status == _status_value(status))
        query = query.order_by(InboxItem.created_at.desc()).limit(limit)
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error("Database error listing inbox for %s: %s", artisan_id, str(e), exc_info=True)
            raise DatabaseError(context={"artisan_id": str(artisan_id)})

    async def get_artisan(self, artisan_id: uuid.UUID) -> Optional[Artisan]:
        try:
            async with self.session_factory() as session:
                return await session.get(Artisan, artisan_id)
        except SQLAlchemyError as e:
            logger.error("Database error fetching artisan %s: %s", artisan_id, str(e))
            raise DatabaseError(context={"artisan_id": str(artisan_id)})

    async def find_artisan_by_inbox_email(self, email: str) -> Optional[Artisan]:
        query = select(Artisan).where(func.lower(Artisan.inbox_email) == email.lower())
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                return result.scalars().first()
        except SQLAlchemyError as e:
            logger.error("Database error resolving inbox email: %s", str(e))
            raise DatabaseError()

    # ── Writes ────────────────────────────────────────────────────────────

    async def create(self, **fields: Any) -> InboxItem:
        """Insert a new item at status 'new' and publish an insert event."""
        fields["status"] = InboxStatus.NEW.value
        item = InboxItem(**fields)
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(item)
        except SQLAlchemyError as e:
            logger.error("Database error creating inbox item: %s", str(e), exc_info=True)
            raise DatabaseError(context={"artisan_id": str(fields.get("artisan_id"))})

        logger.info(
            "Inbox item created: %s (source=%s, file_type=%s)",
            item.id,
            item.source,
            item.file_type,
        )
        self.publish(EVENT_INSERT, item)
        return item

    async def transition(
        self,
        item_id: uuid.UUID,
        expected: Union[StatusLike, Iterable[StatusLike]],
        target: StatusLike,
        **fields: Any,
    ) -> Optional[InboxItem]:
        """
        Atomically move an item from one of `expected` to `target`.

        Returns:
            The updated row, or None when the item was not in an expected
            status (lost race, or already moved on).

        Raises:
            ValueError: an expected → target pair is not an edge of the machine.
        """
        if isinstance(expected, (str, InboxStatus)):
            expected = [expected]
        expected_values = [_status_value(s) for s in expected]
        target_value = _status_value(target)
        for source in expected_values:
            if not is_allowed_transition(source, target_value):
                raise ValueError(f"Transition {source} → {target_value} is not allowed")

        statement = (
            update(InboxItem)
            .where(InboxItem.id == item_id, InboxItem.status.in_(expected_values))
            .values(status=target_value, **fields)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(statement)
                    if result.rowcount == 0:
                        return None
                    item = await session.get(InboxItem, item_id, populate_existing=True)
        except SQLAlchemyError as e:
            logger.error(
                "Database error moving inbox item %s to %s: %s", item_id, target_value, str(e)
            )
            raise DatabaseError(context={"inbox_item_id": str(item_id)})

        logger.info("Inbox item %s: %s → %s", item_id, "|".join(expected_values), target_value)
        self.publish(EVENT_UPDATE, item)
        return item

    async def update_fields(
        self,
        item_id: uuid.UUID,
        expected_status: StatusLike,
        **fields: Any,
    ) -> Optional[InboxItem]:
        """
        Update non-status columns while the item is still in `expected_status`.

        Used to persist intermediate results (e.g. the audio transcript) without
        leaving the current status. Returns None if the status moved meanwhile.
        """
        status_value = _status_value(expected_status)
        statement = (
            update(InboxItem)
            .where(InboxItem.id == item_id, InboxItem.status == status_value)
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(statement)
                    if result.rowcount == 0:
                        return None
                    item = await session.get(InboxItem, item_id, populate_existing=True)
        except SQLAlchemyError as e:
            logger.error("Database error updating inbox item %s: %s", item_id, str(e))
            raise DatabaseError(context={"inbox_item_id": str(item_id)})

        self.publish(EVENT_UPDATE, item)
        return item

    async def delete(self, item: InboxItem) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(delete(InboxItem).where(InboxItem.id == item.id))
        except SQLAlchemyError as e:
            logger.error("Database error deleting inbox item %s: %s", item.id, str(e))
            raise DatabaseError(context={"inbox_item_id": str(item.id)})

        logger.info("Inbox item deleted: %s", item.id)
        self.publish(EVENT_DELETE, item)
