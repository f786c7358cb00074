"""
TradeInbox Backend — Artisan and Downstream Record Models
===========================================================

What:  The account that owns inbox items (Artisan) and the domain records the
       Routing Engine materializes: Client, Job, InvoicePassive, Expense.
Why:   Routing writes into these tables in the same transaction that flips the
       inbox item to `routed`, so they live in the same metadata.
Who:   RoutingEngine (writes), IntakeGateway (artisan lookup), Alembic.

Only the columns the inbox pipeline reads or writes are modelled here. Every
record created from the inbox keeps `source_inbox_item_id` so a record can be
traced back to the artifact it came from.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from tradeinbox.database import Base
from tradeinbox.models.inbox_item import JSONType, utcnow


class Artisan(Base):
    """A tradesperson's account. `trade` feeds the classifier context."""

    __tablename__ = "artisans"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    business_name: Mapped[str] = mapped_column(String(255), nullable=False)
    # e.g. idraulico, elettricista, muratore
    trade: Mapped[str] = mapped_column(String(50), nullable=False, default="altro")
    # Dedicated inbound address; forwarded emails are matched on it (lower-case)
    inbox_email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    artisan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("artisans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_inbox_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Job(Base):
    """A unit of work for a client. Inbox routing always creates it as a draft."""

    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    artisan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("artisans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("clients.id", ondelete="SET NULL"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    photos: Mapped[Optional[List[str]]] = mapped_column(JSONType, nullable=True)
    # work_type, materials, urgency, notes
    ai_extracted_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    source_inbox_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class InvoicePassive(Base):
    """
    A supplier invoice received by the artisan (an expense).

    Created from the inbox as a placeholder: the AI figures are a starting point
    and `needs_review` stays true until the artisan completes the record.
    """

    __tablename__ = "invoices_passive"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    artisan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("artisans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    supplier_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    invoice_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="altro")
    subtotal: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    vat_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    total: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    issue_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    original_file_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_extracted_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    source_inbox_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Expense(Base):
    """A receipt or small expense note."""

    __tablename__ = "expenses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    artisan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("artisans.id", ondelete="CASCADE"), nullable=False, index=True
    )
    supplier_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    total: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    expense_date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    receipt_file_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_extracted_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    source_inbox_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
