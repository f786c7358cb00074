"""
TradeInbox Backend — Inbox Route Handlers
===========================================

What:  The app-facing inbox API: upload, list, detail, classify, retry, route,
       delete, and the realtime WebSocket stream.
Why:   The mobile app's inbox screen is built entirely on these endpoints.
How:   Thin handlers. Each one pulls the ServiceContainer from app.state and
       delegates to the gateway, orchestrator or routing engine; errors are
       formatted by the global exception handlers in main.py.
Who:   The mobile app (HTTP + WebSocket).

Endpoints:
    POST   /api/inbox/upload            → 201 {id}
    GET    /api/inbox?artisan_id=...    → newest first
    GET    /api/inbox/{id}
    POST   /api/inbox/{id}/classify     → claim + classify a `new` item
    POST   /api/inbox/{id}/retry        → error → new → classify
    POST   /api/inbox/{id}/route        → materialize the downstream record
    DELETE /api/inbox/{id}              → 204
    WS     /api/inbox/stream?artisan_id=...
"""

import asyncio
import logging
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile, WebSocket
from starlette.websockets import WebSocketDisconnect

from tradeinbox.dependencies import ServiceContainer, get_services
from tradeinbox.exceptions import ValidationError
from tradeinbox.models.inbox_item import InboxStatus
from tradeinbox.schemas.inbox import (
    ClassifyResponse,
    ErrorResponse,
    InboxItemResponse,
    InboxListResponse,
    RouteRequest,
    RouteResponse,
    UploadResponse,
)
from tradeinbox.services.classification_service import ClassificationOutcome
from tradeinbox.services.realtime import Subscription

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Inbox"])


def _classify_response(outcome: ClassificationOutcome) -> ClassifyResponse:
    item = outcome.item
    return ClassifyResponse(
        id=item.id,
        claimed=outcome.claimed,
        status=item.status,
        classification=item.classification,
        confidence=item.confidence,
        error_message=item.error_message,
    )


# ══════════════════════════════════════════════════════════════════════════
# Intake
# ══════════════════════════════════════════════════════════════════════════

@router.post(
    "/inbox/upload",
    status_code=201,
    response_model=UploadResponse,
    responses={
        400: {"description": "Invalid input or file too large", "model": ErrorResponse},
        404: {"description": "Unknown artisan", "model": ErrorResponse},
        502: {"description": "The file could not be stored", "model": ErrorResponse},
    },
    summary="Upload a photo, PDF, voice note or text",
)
async def upload_item(
    artisan_id: str = Form(..., description="Owner of the new inbox item"),
    file_type: str = Form(..., description="image, pdf, audio, text or document"),
    file: Optional[UploadFile] = File(None),
    file_uri: Optional[str] = Form(None, description="Already stored object or http(s) URL"),
    file_name: Optional[str] = Form(None),
    raw_text: Optional[str] = Form(None),
    mime_type: Optional[str] = Form(None),
    services: ServiceContainer = Depends(get_services),
) -> UploadResponse:
    """
    Create one inbox item; classification starts in the background.

    The item is returned as `new`. Progress arrives over the realtime stream.
    """
    try:
        owner = uuid.UUID(artisan_id)
    except ValueError:
        raise ValidationError(message="artisan_id must be a UUID", field="artisan_id")

    content: Optional[bytes] = None
    if file is not None:
        try:
            content = await file.read()
        finally:
            await file.close()
        file_name = file_name or file.filename
        mime_type = mime_type or file.content_type

    logger.info(
        "Upload for artisan %s: file_type=%s, size=%s",
        owner,
        file_type,
        len(content) if content is not None else "-",
    )

    item = await services.intake.normalize_manual_upload(
        artisan_id=owner,
        file_type=file_type,
        content=content or None,
        file_uri=file_uri,
        file_name=file_name,
        raw_text=raw_text,
        mime_type=mime_type,
    )
    return UploadResponse(id=item.id)


# ══════════════════════════════════════════════════════════════════════════
# Queries
# ══════════════════════════════════════════════════════════════════════════

@router.get(
    "/inbox",
    response_model=InboxListResponse,
    summary="List an artisan's inbox, newest first",
)
async def list_inbox(
    artisan_id: uuid.UUID = Query(...),
    status: Optional[InboxStatus] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    services: ServiceContainer = Depends(get_services),
) -> InboxListResponse:
    items = await services.store.list_items(artisan_id, status=status, limit=limit)
    return InboxListResponse(
        items=[InboxItemResponse.model_validate(i) for i in items],
        count=len(items),
    )


@router.get(
    "/inbox/{item_id}",
    response_model=InboxItemResponse,
    responses={404: {"description": "Inbox item not found", "model": ErrorResponse}},
    summary="Get one inbox item",
)
async def get_item(
    item_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
) -> InboxItemResponse:
    item = await services.store.get(item_id)
    return InboxItemResponse.model_validate(item)


# ══════════════════════════════════════════════════════════════════════════
# State machine operations
# ══════════════════════════════════════════════════════════════════════════

@router.post(
    "/inbox/{item_id}/classify",
    response_model=ClassifyResponse,
    responses={404: {"description": "Inbox item not found", "model": ErrorResponse}},
    summary="Classify a new item now",
)
async def classify_item(
    item_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
) -> ClassifyResponse:
    """
    Runs classification synchronously. If another run already claimed the
    item, `claimed` is false and the item is returned unchanged.
    """
    outcome = await services.orchestrator.classify_item(item_id)
    return _classify_response(outcome)


@router.post(
    "/inbox/{item_id}/retry",
    response_model=ClassifyResponse,
    responses={
        404: {"description": "Inbox item not found", "model": ErrorResponse},
        409: {"description": "Item is not in error", "model": ErrorResponse},
    },
    summary="Retry classification of a failed item",
)
async def retry_item(
    item_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
) -> ClassifyResponse:
    outcome = await services.orchestrator.retry_classify(item_id)
    return _classify_response(outcome)


@router.post(
    "/inbox/{item_id}/route",
    response_model=RouteResponse,
    responses={
        404: {"description": "Inbox item not found", "model": ErrorResponse},
        409: {"description": "Not classified, or already routed", "model": ErrorResponse},
        502: {"description": "Downstream record could not be created", "model": ErrorResponse},
    },
    summary="Route a classified item into a job, invoice, client or expense",
)
async def route_item(
    item_id: uuid.UUID,
    body: Optional[RouteRequest] = None,
    services: ServiceContainer = Depends(get_services),
) -> RouteResponse:
    body = body or RouteRequest()
    outcome = await services.routing.route_item(
        item_id,
        override_classification=body.override_classification,
        override_data=body.override_data,
        force=body.force,
    )
    return RouteResponse(
        id=outcome.item.id,
        classification=outcome.classification.value,
        status=outcome.item.status,
        routed_to_table=outcome.routed_to_table,
        routed_to_id=outcome.routed_to_id,
    )


@router.delete(
    "/inbox/{item_id}",
    status_code=204,
    responses={404: {"description": "Inbox item not found", "model": ErrorResponse}},
    summary="Delete an inbox item and its stored file",
)
async def delete_item(
    item_id: uuid.UUID,
    services: ServiceContainer = Depends(get_services),
) -> Response:
    await services.intake.delete_item(item_id)
    return Response(status_code=204)


# ══════════════════════════════════════════════════════════════════════════
# Realtime stream
# ══════════════════════════════════════════════════════════════════════════

async def _forward_events(websocket: Any, subscription: Subscription) -> None:
    while True:
        event = await subscription.get()
        await websocket.send_json(event.to_dict())


async def _wait_for_disconnect(websocket: Any) -> None:
    while True:
        message = await websocket.receive()
        if message.get("type") == "websocket.disconnect":
            return


async def stream_events(websocket: Any, subscription: Subscription) -> None:
    """
    Push `subscription`'s events to `websocket` until the client goes away.

    Incoming client messages are read and ignored; reading them is what
    notices the disconnect while no events are flowing.
    """
    sender = asyncio.create_task(_forward_events(websocket, subscription))
    receiver = asyncio.create_task(_wait_for_disconnect(websocket))
    done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    for task in done:
        error = task.exception()
        if error is not None and not isinstance(error, WebSocketDisconnect):
            raise error


@router.websocket("/inbox/stream")
async def inbox_stream(websocket: WebSocket, artisan_id: uuid.UUID) -> None:
    services: ServiceContainer = websocket.app.state.services
    artisan = await services.store.get_artisan(artisan_id)
    if artisan is None:
        await websocket.close(code=1008, reason="Unknown artisan")
        return

    await websocket.accept()
    logger.info("Realtime stream opened for artisan %s", artisan_id)
    async with services.event_bus.subscribe(artisan_id) as subscription:
        await stream_events(websocket, subscription)
    logger.info("Realtime stream closed for artisan %s", artisan_id)
