"""Create artisans, downstream record and inbox tables

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00

What:  Creates artisans, clients, jobs, invoices_passive, expenses and
       inbox_items.
How:   PostgreSQL UUID keys (gen_random_uuid()), JSONB payload columns,
       TIMESTAMP WITH TIME ZONE. inbox_items carries the check constraints
       that keep file_url, confidence and the routed reference consistent.

Rollback: downgrade() drops every table (destructive).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _created_at_column() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.TIMESTAMP(timezone=True),
        server_default=sa.text("CURRENT_TIMESTAMP"),
        nullable=False,
    )


def _artisan_fk_column() -> sa.Column:
    return sa.Column(
        "artisan_id",
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey("artisans.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    # ── artisans ──────────────────────────────────────────────────────────
    op.create_table(
        "artisans",
        _id_column(),
        sa.Column("business_name", sa.String(255), nullable=False),
        sa.Column("trade", sa.String(50), nullable=False, server_default=sa.text("'altro'")),
        sa.Column(
            "inbox_email",
            sa.String(255),
            nullable=True,
            comment="Dedicated inbound address, matched lower-case by the email webhook",
        ),
        _created_at_column(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("inbox_email", name="uq_artisans_inbox_email"),
    )

    # ── clients ───────────────────────────────────────────────────────────
    op.create_table(
        "clients",
        _id_column(),
        _artisan_fk_column(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("source_inbox_item_id", postgresql.UUID(as_uuid=True), nullable=True),
        _created_at_column(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_clients_artisan_id", "clients", ["artisan_id"])

    # ── jobs ──────────────────────────────────────────────────────────────
    op.create_table(
        "jobs",
        _id_column(),
        _artisan_fk_column(),
        sa.Column(
            "client_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("clients.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("photos", postgresql.JSONB(), nullable=True),
        sa.Column("ai_extracted_data", postgresql.JSONB(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'draft'")),
        sa.Column("source_inbox_item_id", postgresql.UUID(as_uuid=True), nullable=True),
        _created_at_column(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_jobs_artisan_id", "jobs", ["artisan_id"])

    # ── invoices_passive ──────────────────────────────────────────────────
    op.create_table(
        "invoices_passive",
        _id_column(),
        _artisan_fk_column(),
        sa.Column("supplier_name", sa.String(255), nullable=True),
        sa.Column("invoice_number", sa.String(100), nullable=True),
        sa.Column("category", sa.String(50), nullable=False, server_default=sa.text("'altro'")),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=True),
        sa.Column("vat_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("total", sa.Numeric(12, 2), nullable=True),
        sa.Column("issue_date", sa.String(10), nullable=True, comment="YYYY-MM-DD"),
        sa.Column("original_file_url", sa.Text(), nullable=True),
        sa.Column("ai_extracted_data", postgresql.JSONB(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("source_inbox_item_id", postgresql.UUID(as_uuid=True), nullable=True),
        _created_at_column(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_invoices_passive_artisan_id", "invoices_passive", ["artisan_id"])

    # ── expenses ──────────────────────────────────────────────────────────
    op.create_table(
        "expenses",
        _id_column(),
        _artisan_fk_column(),
        sa.Column("supplier_name", sa.String(255), nullable=True),
        sa.Column("total", sa.Numeric(12, 2), nullable=True),
        sa.Column("expense_date", sa.String(10), nullable=True, comment="YYYY-MM-DD"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("receipt_file_url", sa.Text(), nullable=True),
        sa.Column("ai_extracted_data", postgresql.JSONB(), nullable=True),
        sa.Column("source_inbox_item_id", postgresql.UUID(as_uuid=True), nullable=True),
        _created_at_column(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_expenses_artisan_id", "expenses", ["artisan_id"])

    # ── inbox_items ───────────────────────────────────────────────────────
    op.create_table(
        "inbox_items",
        _id_column(),
        _artisan_fk_column(),
        sa.Column("source", sa.String(20), nullable=False, comment="manual, email, whatsapp"),
        sa.Column("source_sender", sa.String(255), nullable=True),
        sa.Column("source_subject", sa.String(500), nullable=True),
        sa.Column("file_url", sa.Text(), nullable=True),
        sa.Column(
            "file_type",
            sa.String(20),
            nullable=False,
            comment="image, pdf, audio, text, document",
        ),
        sa.Column("file_name", sa.String(255), nullable=True),
        sa.Column("raw_text", sa.Text(), nullable=True),
        sa.Column("classification", sa.String(30), nullable=True),
        sa.Column("ai_summary", sa.Text(), nullable=True),
        sa.Column("ai_extracted_data", postgresql.JSONB(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("classified_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "status",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'new'"),
            comment="new, classifying, classified, routed, error",
        ),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("failed_stage", sa.String(20), nullable=True, comment="classification, routing"),
        sa.Column("routed_to_table", sa.String(50), nullable=True),
        sa.Column("routed_to_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("routed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("user_override_classification", sa.String(30), nullable=True),
        _created_at_column(),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "source IN ('manual', 'email', 'whatsapp')",
            name="ck_inbox_items_source",
        ),
        sa.CheckConstraint(
            "file_type IN ('image', 'pdf', 'audio', 'text', 'document')",
            name="ck_inbox_items_file_type",
        ),
        sa.CheckConstraint(
            "status IN ('new', 'classifying', 'classified', 'routed', 'error')",
            name="ck_inbox_items_status",
        ),
        sa.CheckConstraint(
            "classification IS NULL OR classification IN "
            "('job', 'invoice_passive', 'client_info', 'receipt', 'other')",
            name="ck_inbox_items_classification",
        ),
        sa.CheckConstraint(
            "(file_type = 'text' AND file_url IS NULL) "
            "OR (file_type <> 'text' AND file_url IS NOT NULL)",
            name="ck_inbox_items_file_url_matches_type",
        ),
        sa.CheckConstraint(
            "confidence IS NULL OR (classification IS NOT NULL "
            "AND confidence >= 0 AND confidence <= 1)",
            name="ck_inbox_items_confidence",
        ),
        sa.CheckConstraint(
            "routed_to_id IS NULL OR status = 'routed'",
            name="ck_inbox_items_routed_reference",
        ),
    )

    # Newest-first inbox list per artisan
    op.create_index(
        "idx_inbox_items_artisan_created",
        "inbox_items",
        ["artisan_id", sa.text("created_at DESC")],
    )


def downgrade() -> None:
    op.drop_index("idx_inbox_items_artisan_created", table_name="inbox_items")
    op.drop_table("inbox_items")
    op.drop_index("ix_expenses_artisan_id", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("ix_invoices_passive_artisan_id", table_name="invoices_passive")
    op.drop_table("invoices_passive")
    op.drop_index("ix_jobs_artisan_id", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("ix_clients_artisan_id", table_name="clients")
    op.drop_table("clients")
    op.drop_table("artisans")
