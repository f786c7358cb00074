"""
TradeInbox Backend — Stored File Route
========================================

What:  GET /api/files/{path} serves artifacts kept by LocalObjectStore.
Why:   file_url values on inbox items point here; the app shows photos and
       PDFs and plays voice notes from these URLs.
"""

import logging
import mimetypes

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse

from tradeinbox.dependencies import ServiceContainer, get_services
from tradeinbox.exceptions import NotFoundError
from tradeinbox.schemas.inbox import ErrorResponse
from tradeinbox.services.object_store import LocalObjectStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Files"])


@router.get(
    "/files/{file_path:path}",
    response_class=FileResponse,
    responses={404: {"description": "File not found", "model": ErrorResponse}},
    summary="Download a stored artifact",
)
async def get_file(
    file_path: str,
    services: ServiceContainer = Depends(get_services),
) -> FileResponse:
    store = services.object_store
    if not isinstance(store, LocalObjectStore):
        raise NotFoundError(resource="file", resource_id=file_path)

    target = store.open_path(file_path)
    media_type, _ = mimetypes.guess_type(target.name)
    return FileResponse(target, media_type=media_type or "application/octet-stream")
