"""
TradeInbox Backend — Inbound Webhook Routes
=============================================

What:  Receivers for forwarded emails (Resend inbound) and WhatsApp messages
       (Twilio).
Why:   Artisans forward supplier invoices by email and send voice notes or
       photos over WhatsApp; both must land in the same inbox as app uploads.
How:   Parse the provider's body, hand it to the IntakeGateway, answer with
       the ids of the created items. Attachment-level failures are skipped
       inside the gateway, so a delivery with one bad attachment still gets
       a 200 with the items that did make it.
Who:   Resend and Twilio (outside the rate limiter).

Twilio posts application/x-www-form-urlencoded; JSON is accepted too so the
same endpoint can be driven by test tools and relays.
"""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from tradeinbox.dependencies import ServiceContainer, get_services
from tradeinbox.exceptions import ValidationError
from tradeinbox.schemas.inbox import ErrorResponse, WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


async def _read_payload(request: Request) -> Dict[str, Any]:
    """Form or JSON body as a plain dict. An unparseable body reads as empty."""
    content_type = request.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}

    body = await request.body()
    if not body:
        return {}
    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("Webhook body is not valid JSON, treating it as empty")
        return {}
    return payload if isinstance(payload, dict) else {}


@router.post(
    "/whatsapp",
    response_model=WebhookResponse,
    responses={
        400: {"description": "No artisan could be resolved", "model": ErrorResponse},
        404: {"description": "Resolved artisan does not exist", "model": ErrorResponse},
    },
    summary="Inbound WhatsApp message",
)
async def whatsapp_webhook(
    request: Request,
    artisan_id: Optional[str] = Query(None, alias="artisanId"),
    services: ServiceContainer = Depends(get_services),
) -> WebhookResponse:
    payload = await _read_payload(request)
    created = await services.intake.normalize_whatsapp_webhook(payload, query_artisan_id=artisan_id)
    return WebhookResponse(created=len(created), items=created)


@router.post(
    "/email",
    response_model=WebhookResponse,
    responses={
        400: {"description": "No recipient address", "model": ErrorResponse},
        404: {"description": "No artisan owns the recipient address", "model": ErrorResponse},
    },
    summary="Inbound email (forwarded invoices and receipts)",
)
async def email_webhook(
    request: Request,
    services: ServiceContainer = Depends(get_services),
) -> WebhookResponse:
    payload = await _read_payload(request)
    # Resend wraps the message in {"type": ..., "data": {...}}
    if isinstance(payload.get("data"), dict) and "to" not in payload:
        payload = payload["data"]
    if not payload:
        raise ValidationError(message="Empty email payload", field="body")
    created = await services.intake.normalize_email_webhook(payload)
    return WebhookResponse(created=len(created), items=created)
