"""
TradeInbox Backend — Routing Engine
=====================================

What:  Materializes a classified inbox item into its downstream record and marks
       the item as routed.
Why:   Classification only says what an artifact is; routing turns it into
       something the artisan works with: a draft job, an invoice to review, a
       client card, an expense.
How:   One transaction per route:
           1. UPDATE inbox_items SET status='routed' WHERE id=:id AND status=:expected
              (rowcount 0 → AlreadyRoutedError, the transaction is rolled back)
           2. INSERT (or upsert) the downstream record
           3. UPDATE inbox_items SET routed_to_table, routed_to_id
           4. COMMIT
       Step 1 takes the row lock first, so of two concurrent routes of the same
       item exactly one commits; the other sees rowcount 0.
Who:   POST /api/inbox/{id}/route.

Routing table:
    classification    record                      routed_to_table
    ──────────────    ─────────────────────────   ────────────────
    job               draft Job                   jobs
    invoice_passive   InvoicePassive (review)     invoices_passive
    client_info       Client (upsert)             clients
    receipt           Expense                     expenses
    other             nothing                     null

Failure handling:
    A failed insert rolls the whole transaction back. The item stays
    'classified' with its classification data intact, and error_message plus
    failed_stage='routing' record the failure. Routing it again takes the
    same classified → routed edge and clears both fields.

    A forced re-route of a 'routed' item is not a status change: the claim
    matches status='routed' and only the reference and routed_at move.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tradeinbox.exceptions import (
    AlreadyRoutedError,
    InvalidStateError,
    RoutingFailedError,
)
from tradeinbox.models.inbox_item import (
    Classification,
    FailedStage,
    FileType,
    InboxItem,
    InboxStatus,
    utcnow,
)
from tradeinbox.models.records import Client, Expense, InvoicePassive, Job
from tradeinbox.services.inbox_store import InboxItemStore
from tradeinbox.services.realtime import EVENT_UPDATE

logger = logging.getLogger(__name__)

DEFAULT_JOB_TITLE = "Nuovo lavoro da inbox"
DEFAULT_CLIENT_NAME = "Nuovo cliente"
DEFAULT_INVOICE_CATEGORY = "altro"


@dataclass
class RouteOutcome:
    item: InboxItem
    classification: Classification
    routed_to_table: Optional[str]
    routed_to_id: Optional[uuid.UUID]


# ── Field helpers ─────────────────────────────────────────────────────────

def _text(data: Dict[str, Any], *keys: str) -> Optional[str]:
    """First non-blank string value among `keys`, stripped."""
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        value = str(value).strip()
        if value:
            return value
    return None


def _amount(value: Any) -> Optional[Decimal]:
    """
    Parses money amounts as models write them: 1234.5, "1234,50", "1.234,50 €".
    Unparseable values become None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        raw = str(value)
    else:
        raw = str(value).replace("€", "").replace("EUR", "").replace(" ", "").strip()
        if "," in raw and "." in raw:
            raw = raw.replace(".", "").replace(",", ".")
        elif "," in raw:
            raw = raw.replace(",", ".")
    if not raw:
        return None
    try:
        amount = Decimal(raw)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount.quantize(Decimal("0.01"))


def _date(value: Any) -> Optional[str]:
    text = str(value).strip() if value is not None else ""
    return text[:10] or None


def _materials(value: Any) -> Optional[List[str]]:
    if isinstance(value, list):
        return [str(v) for v in value if v is not None and str(v).strip()] or None
    if isinstance(value, str) and value.strip():
        return [part.strip() for part in value.split(",") if part.strip()]
    return None


class RoutingEngine:
    """Routes classified inbox items into jobs, invoices, clients and expenses."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: InboxItemStore,
    ):
        self.session_factory = session_factory
        self.store = store

    async def route_item(
        self,
        item_id: uuid.UUID,
        override_classification: Optional[Classification] = None,
        override_data: Optional[Dict[str, Any]] = None,
        force: bool = False,
    ) -> RouteOutcome:
        """
        Route one item.

        Args:
            override_classification: replaces the AI classification for this route.
            override_data:           replaces the AI extracted data (no merge).
            force:                   allow routing an already routed item again;
                                     a new record is created, the old one stays.

        Raises:
            NotFoundError:      no such item.
            InvalidStateError:  item neither classified nor (with force) routed.
            AlreadyRoutedError: item already routed without force, or a
                                concurrent route won.
            RoutingFailedError: the downstream insert failed; the item stays
                                'classified' with failed_stage='routing'.
        """
        item = await self.store.get(item_id)
        expected = self._expected_status(item, force)

        classification = override_classification or (
            Classification(item.classification) if item.classification else None
        )
        if classification is None:
            raise InvalidStateError(
                message="Item has no classification to route on",
                current_status=item.status,
            )
        data = override_data if override_data is not None else (item.ai_extracted_data or {})

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    claimed = await session.execute(
                        update(InboxItem)
                        .where(InboxItem.id == item_id, InboxItem.status == expected.value)
                        .values(
                            status=InboxStatus.ROUTED.value,
                            routed_at=utcnow(),
                            error_message=None,
                            failed_stage=None,
                            user_override_classification=(
                                override_classification.value if override_classification else None
                            ),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if claimed.rowcount == 0:
                        raise AlreadyRoutedError(item_id=str(item_id))

                    table, record_id = await self._materialize(session, item, classification, data)
                    await session.execute(
                        update(InboxItem)
                        .where(InboxItem.id == item_id)
                        .values(routed_to_table=table, routed_to_id=record_id)
                        .execution_options(synchronize_session=False)
                    )
                    routed = await session.get(InboxItem, item_id, populate_existing=True)
        except AlreadyRoutedError:
            logger.info("Inbox item %s lost a routing race or is already routed", item_id)
            raise
        except Exception as e:
            logger.error(
                "Routing of inbox item %s as %s failed: %s",
                item_id,
                classification.value,
                str(e),
                exc_info=True,
            )
            await self._record_failure(item_id, expected)
            raise RoutingFailedError(
                context={"inbox_item_id": str(item_id), "classification": classification.value}
            )

        logger.info(
            "Inbox item %s routed as %s → %s/%s",
            item_id,
            classification.value,
            table,
            record_id,
        )
        self.store.publish(EVENT_UPDATE, routed)
        return RouteOutcome(
            item=routed,
            classification=classification,
            routed_to_table=table,
            routed_to_id=record_id,
        )

    # ── State checks ──────────────────────────────────────────────────────

    @staticmethod
    def _expected_status(item: InboxItem, force: bool) -> InboxStatus:
        status = InboxStatus(item.status)
        if status == InboxStatus.CLASSIFIED:
            return status
        if status == InboxStatus.ROUTED:
            if force:
                return status
            raise AlreadyRoutedError(item_id=str(item.id))
        raise InvalidStateError(
            message="Only classified items can be routed",
            current_status=item.status,
        )

    async def _record_failure(self, item_id: uuid.UUID, expected: InboxStatus) -> None:
        message = RoutingFailedError().message
        if expected == InboxStatus.CLASSIFIED:
            await self.store.update_fields(
                item_id,
                InboxStatus.CLASSIFIED,
                error_message=message,
                failed_stage=FailedStage.ROUTING.value,
            )
        # A forced re-route keeps the item routed to its previous record

    # ── Materializers ─────────────────────────────────────────────────────

    async def _materialize(
        self,
        session: AsyncSession,
        item: InboxItem,
        classification: Classification,
        data: Dict[str, Any],
    ) -> Tuple[Optional[str], Optional[uuid.UUID]]:
        if classification == Classification.JOB:
            return "jobs", await self._create_job(session, item, data)
        if classification == Classification.INVOICE_PASSIVE:
            return "invoices_passive", await self._create_invoice(session, item, data)
        if classification == Classification.CLIENT_INFO:
            return "clients", await self._upsert_client(session, item, data)
        if classification == Classification.RECEIPT:
            return "expenses", await self._create_expense(session, item, data)
        return None, None

    async def _find_client(
        self,
        session: AsyncSession,
        artisan_id: uuid.UUID,
        phone: Optional[str],
        email: Optional[str],
    ) -> Optional[Client]:
        """Exact match on phone or on email. None if neither given."""
        conditions = []
        if phone:
            conditions.append(Client.phone == phone)
        if email:
            conditions.append(Client.email == email)
        if not conditions:
            return None
        result = await session.execute(
            select(Client)
            .where(Client.artisan_id == artisan_id, or_(*conditions))
            .order_by(Client.created_at)
            .limit(1)
        )
        return result.scalars().first()

    async def _create_job(self, session: AsyncSession, item: InboxItem, data: Dict[str, Any]) -> uuid.UUID:
        client = await self._find_client(
            session,
            item.artisan_id,
            _text(data, "client_phone", "phone"),
            _text(data, "client_email", "email"),
        )
        job = Job(
            artisan_id=item.artisan_id,
            client_id=client.id if client else None,
            title=(_text(data, "title") or item.ai_summary or DEFAULT_JOB_TITLE)[:255],
            description=_text(data, "description") or item.raw_text or "",
            photos=[item.file_url] if item.file_type == FileType.IMAGE.value and item.file_url else [],
            ai_extracted_data={
                "work_type": _text(data, "work_type", "title"),
                "materials": _materials(data.get("materials")),
                "urgency": _text(data, "urgency"),
                "notes": item.ai_summary or None,
            },
            status="draft",
            source_inbox_item_id=item.id,
        )
        session.add(job)
        await session.flush()
        return job.id

    async def _create_invoice(self, session: AsyncSession, item: InboxItem, data: Dict[str, Any]) -> uuid.UUID:
        invoice = InvoicePassive(
            artisan_id=item.artisan_id,
            supplier_name=_text(data, "supplier_name"),
            invoice_number=_text(data, "invoice_number"),
            category=_text(data, "category") or DEFAULT_INVOICE_CATEGORY,
            subtotal=_amount(data.get("subtotal")),
            vat_amount=_amount(data.get("vat_amount")),
            total=_amount(data.get("total")),
            issue_date=_date(data.get("issue_date")),
            original_file_url=item.file_url,
            ai_extracted_data=data,
            notes=item.ai_summary or None,
            needs_review=True,
            source_inbox_item_id=item.id,
        )
        session.add(invoice)
        await session.flush()
        return invoice.id

    async def _upsert_client(self, session: AsyncSession, item: InboxItem, data: Dict[str, Any]) -> uuid.UUID:
        name = _text(data, "name")
        phone = _text(data, "phone")
        email = _text(data, "email")
        address = _text(data, "address")

        existing = await self._find_client(session, item.artisan_id, phone, email)
        if existing is not None:
            # Fill blanks only; never overwrite what the artisan already has
            if phone and not existing.phone:
                existing.phone = phone
            if email and not existing.email:
                existing.email = email
            if address and not existing.address:
                existing.address = address
            if item.ai_summary and not existing.notes:
                existing.notes = item.ai_summary
            await session.flush()
            logger.info("Matched existing client %s for inbox item %s", existing.id, item.id)
            return existing.id

        client = Client(
            artisan_id=item.artisan_id,
            name=name or DEFAULT_CLIENT_NAME,
            phone=phone,
            email=email,
            address=address,
            notes=item.ai_summary or None,
            source_inbox_item_id=item.id,
        )
        session.add(client)
        await session.flush()
        return client.id

    async def _create_expense(self, session: AsyncSession, item: InboxItem, data: Dict[str, Any]) -> uuid.UUID:
        expense = Expense(
            artisan_id=item.artisan_id,
            supplier_name=_text(data, "supplier_name"),
            total=_amount(data.get("total")),
            expense_date=_date(data.get("date") or data.get("expense_date")),
            description=_text(data, "description") or item.ai_summary or None,
            receipt_file_url=item.file_url,
            ai_extracted_data=data,
            source_inbox_item_id=item.id,
        )
        session.add(expense)
        await session.flush()
        return expense.id
