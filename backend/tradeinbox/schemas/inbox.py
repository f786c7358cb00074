"""
TradeInbox Backend — Pydantic Request/Response Schemas
========================================================

What:  Pydantic models defining the API contract and the AI classifier contract.
Why:   Strict input validation, automatic serialization, OpenAPI doc generation.
How:   FastAPI uses these models to validate request bodies and serialize
       responses. The realtime fan-out serializes inbox items with the same
       InboxItemResponse, so HTTP clients and stream subscribers see one shape.
Who:   Route handlers, the realtime event bus, the AI response parser.

Design Decision:
    Schemas are separate from SQLAlchemy models because the wire vocabulary
    (status, classification) is a contract with mobile clients and webhooks,
    while the table layout is free to change underneath it.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from tradeinbox.models.inbox_item import Classification


# ══════════════════════════════════════════════════════════════════════════
# Response Models: what the API returns to clients
# ══════════════════════════════════════════════════════════════════════════


class InboxItemResponse(BaseModel):
    """
    What:  Full representation of an inbox item.
    Who:   GET /api/inbox/{id}, list entries, realtime stream payloads.
    """
    id: uuid.UUID = Field(description="Unique inbox item identifier")
    artisan_id: uuid.UUID
    source: str = Field(description="manual, email or whatsapp")
    source_sender: Optional[str] = Field(default=None, description="Email address or phone number")
    source_subject: Optional[str] = None
    file_url: Optional[str] = Field(default=None, description="Null for text items")
    file_type: str = Field(description="image, pdf, audio, text or document")
    file_name: Optional[str] = None
    raw_text: Optional[str] = Field(
        default=None,
        description="Body text, or the transcript once an audio item is classified",
    )
    classification: Optional[str] = None
    ai_summary: Optional[str] = None
    ai_extracted_data: Optional[Dict[str, Any]] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    classified_at: Optional[datetime] = None
    status: str = Field(description="new, classifying, classified, routed or error")
    error_message: Optional[str] = None
    failed_stage: Optional[str] = None
    routed_to_table: Optional[str] = None
    routed_to_id: Optional[uuid.UUID] = None
    routed_at: Optional[datetime] = None
    user_override_classification: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class InboxListResponse(BaseModel):
    """Newest-first page of an artisan's inbox."""
    items: List[InboxItemResponse]
    count: int = Field(description="Number of items in this response")


class UploadResponse(BaseModel):
    """Returned by POST /api/inbox/upload with HTTP 201 Created."""
    id: uuid.UUID = Field(description="ID of the created inbox item")


class ClassifyResponse(BaseModel):
    """
    What:  Outcome of a classification run.

    `claimed` is false when another worker already held the item; in that case
    the item is returned as-is and nothing was done.
    """
    id: uuid.UUID
    claimed: bool
    status: str
    classification: Optional[str] = None
    confidence: Optional[float] = None
    error_message: Optional[str] = None


class RouteResponse(BaseModel):
    """
    What:  Where a routed item ended up.

    routed_to_table / routed_to_id are null for the `other` classification.
    """
    id: uuid.UUID
    classification: str
    status: str
    routed_to_table: Optional[str] = None
    routed_to_id: Optional[uuid.UUID] = None


class WebhookResponse(BaseModel):
    """Response of the email and WhatsApp webhooks; created may be zero."""
    created: int
    items: List[uuid.UUID]


# ══════════════════════════════════════════════════════════════════════════
# Request Models: what the client sends
# ══════════════════════════════════════════════════════════════════════════


class RouteRequest(BaseModel):
    """
    Body of POST /api/inbox/{id}/route.

    Overrides fully replace the AI output: override_data is used as the
    extracted data as-is, never merged with what the classifier produced.
    """
    override_classification: Optional[Classification] = None
    override_data: Optional[Dict[str, Any]] = None
    force: bool = Field(
        default=False,
        description="Route an already routed item again, creating a new record",
    )


# ══════════════════════════════════════════════════════════════════════════
# AI Contract: the validated shape of a classifier answer
# ══════════════════════════════════════════════════════════════════════════


class ClassificationResult(BaseModel):
    """
    A classifier answer after normalization.

    Produced only by tradeinbox.services.ai_response.parse_classification, which
    maps unknown tags to `other` and clamps confidence before validation.
    """
    classification: Classification
    confidence: float = Field(ge=0.0, le=1.0)
    summary: str = ""
    extracted_data: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}


# ══════════════════════════════════════════════════════════════════════════
# Error / Health Models
# ══════════════════════════════════════════════════════════════════════════


class ErrorResponse(BaseModel):
    """
    What:  Standardized error response format for all API errors.

    Example:
        {
            "error": "invalid_state",
            "message": "Only items in error can be retried",
            "details": {"current_status": "classified"},
            "request_id": "550e8400-e29b-41d4-a716-446655440000"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """
    What:  Health check response showing service and dependency status.
    Who:   Returned by GET /health for monitoring and load balancer checks.
    """
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    database: str = Field(description="Database connectivity: connected, disconnected")
    classifier: str = Field(description="Classifier status: available, unavailable, circuit_open")
    transcription_providers: List[str] = Field(
        description="Configured transcription providers in fallback order"
    )
    uptime_seconds: float = Field(description="Seconds since service started")
