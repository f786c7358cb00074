"""
TradeInbox Backend — Inbox Item SQLAlchemy Model
==================================================

What:  ORM model for the `inbox_items` table plus the wire vocabularies
       (source, file type, classification, status) and the status machine.
Why:   The inbox item row is the single serialization point of the pipeline:
       every stage moves it forward with a conditional update on `status`.
Who:   InboxItemStore (all writes), RoutingEngine, Alembic.

Status Machine:
    new ──▶ classifying ──▶ classified ──▶ routed
     ▲           │               │
     │           ▼               │
     └──────── error ◀───────────┘

    error → new is the only way back, and it only happens through an explicit
    retry. Nothing in the service retries on its own.

    A failed route leaves the item 'classified' with error_message and
    failed_stage='routing', so routing it again is the plain
    classified → routed edge. A forced re-route keeps the item 'routed' and
    only re-points routed_to_table/routed_to_id, which is not a status change.

Table Design:
    - file_url is required iff file_type != 'text' (check constraint)
    - confidence only exists alongside a classification, always in [0, 1]
    - ai_extracted_data is an opaque JSON object; it is replaced, never merged
    - (artisan_id, created_at) index backs the newest-first inbox list query
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Mapping, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from tradeinbox.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InboxSource(str, enum.Enum):
    MANUAL = "manual"
    EMAIL = "email"
    WHATSAPP = "whatsapp"


class FileType(str, enum.Enum):
    IMAGE = "image"
    PDF = "pdf"
    AUDIO = "audio"
    TEXT = "text"
    DOCUMENT = "document"

    @classmethod
    def from_content_type(cls, content_type: Optional[str]) -> "FileType":
        """Maps a MIME type to the coarse file type stored on the item."""
        ct = (content_type or "").lower().split(";")[0].strip()
        if ct.startswith("image/"):
            return cls.IMAGE
        if ct == "application/pdf":
            return cls.PDF
        if ct.startswith("audio/"):
            return cls.AUDIO
        return cls.DOCUMENT


class Classification(str, enum.Enum):
    JOB = "job"
    INVOICE_PASSIVE = "invoice_passive"
    CLIENT_INFO = "client_info"
    RECEIPT = "receipt"
    OTHER = "other"


class InboxStatus(str, enum.Enum):
    NEW = "new"
    CLASSIFYING = "classifying"
    CLASSIFIED = "classified"
    ROUTED = "routed"
    ERROR = "error"


class FailedStage(str, enum.Enum):
    CLASSIFICATION = "classification"
    ROUTING = "routing"


# Every edge the pipeline is allowed to take. routed is terminal.
ALLOWED_TRANSITIONS: Mapping[InboxStatus, FrozenSet[InboxStatus]] = {
    InboxStatus.NEW: frozenset({InboxStatus.CLASSIFYING}),
    InboxStatus.CLASSIFYING: frozenset({InboxStatus.CLASSIFIED, InboxStatus.ERROR}),
    InboxStatus.CLASSIFIED: frozenset({InboxStatus.ROUTED, InboxStatus.ERROR}),
    InboxStatus.ROUTED: frozenset(),
    InboxStatus.ERROR: frozenset({InboxStatus.NEW}),
}


def is_allowed_transition(current: str, target: str) -> bool:
    """True when the status machine has an edge current → target."""
    return InboxStatus(target) in ALLOWED_TRANSITIONS[InboxStatus(current)]


class InboxItem(Base):
    """
    One ingested artifact, pending or having completed classification/routing.

    Lifecycle:
        1. Created by the Intake Gateway (status='new')
        2. Claimed by the Classification Orchestrator ('classifying')
        3. 'classified' with summary/extracted data, or 'error' with a message
        4. Routed into a job/invoice/client/expense ('routed'); a failed
           route stays 'classified' with failed_stage='routing'
        5. Deleted by the owner (artifact removed from the object store first)
    """

    __tablename__ = "inbox_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    artisan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("artisans.id", ondelete="CASCADE"),
        nullable=False,
    )

    # ── Origin ────────────────────────────────────────────────────────────
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    # Email address or WhatsApp number of whoever sent the artifact
    source_sender: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source_subject: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    file_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_type: Mapped[str] = mapped_column(String(20), nullable=False)
    file_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    raw_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # ── Classification result ─────────────────────────────────────────────
    classification: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    ai_summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_extracted_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    classified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # ── Lifecycle ─────────────────────────────────────────────────────────
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=InboxStatus.NEW.value,
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Which stage produced error_message: 'classification' (status error) or
    # 'routing' (status still classified)
    failed_stage: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    routed_to_table: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    routed_to_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    routed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    user_override_classification: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('new', 'classifying', 'classified', 'routed', 'error')",
            name="ck_inbox_items_status",
        ),
        CheckConstraint(
            "(file_type = 'text' AND file_url IS NULL) "
            "OR (file_type <> 'text' AND file_url IS NOT NULL)",
            name="ck_inbox_items_file_url_matches_type",
        ),
        CheckConstraint(
            "confidence IS NULL OR (classification IS NOT NULL "
            "AND confidence >= 0 AND confidence <= 1)",
            name="ck_inbox_items_confidence",
        ),
        CheckConstraint(
            "routed_to_id IS NULL OR status = 'routed'",
            name="ck_inbox_items_routed_reference",
        ),
        # Backward index scans serve ORDER BY created_at DESC
        Index("idx_inbox_items_artisan_created", "artisan_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<InboxItem(id={self.id}, status='{self.status}', "
            f"classification='{self.classification}')>"
        )
