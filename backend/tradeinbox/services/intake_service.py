"""
TradeInbox Backend — Intake Gateway
=====================================

What:  Normalizes the three inbound channels (manual upload, forwarded email,
       WhatsApp) into inbox items and triggers their classification.
Why:   Whatever the channel, an artifact must end up as exactly one `new` inbox
       item pointing at exactly one stored object, owned by the right artisan.
How:   Each channel builds IngestionRequests, and every request goes through
       the same _ingest path:
           store artifact (if any) → insert item (status='new') → dispatch
Who:   POST /api/inbox/upload, POST /api/webhooks/email,
       POST /api/webhooks/whatsapp.

Failure isolation:
    Manual upload:  one artifact, so a storage failure propagates to the caller.
    Email/WhatsApp: attachments are processed one after another; any failure
                    of one attachment (decode, download, storage, insert) skips
                    that attachment only and the others are still ingested.
    An insert failure after the artifact was stored removes the artifact.
"""

import base64
import binascii
import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

import httpx

from tradeinbox.exceptions import (
    ArtisanNotFoundError,
    MediaFetchError,
    NotFoundError,
    ProviderError,
    TradeInboxError,
    ValidationError,
)
from tradeinbox.models.inbox_item import FileType, InboxItem, InboxSource
from tradeinbox.models.records import Artisan
from tradeinbox.services.classification_service import Dispatch
from tradeinbox.services.inbox_store import InboxItemStore
from tradeinbox.services.object_store import ObjectStore, build_storage_path, extension_for

logger = logging.getLogger(__name__)

_EMAIL_ADDRESS = re.compile(r"[\w.+-]+@[\w.-]+")


@dataclass
class IngestionRequest:
    """
    One artifact in canonical form, whatever channel it came from.

    `content` is None for text items (and for manual uploads referencing an
    already stored object via `file_url`).
    """

    artisan_id: uuid.UUID
    source: InboxSource
    file_type: FileType
    sender: Optional[str] = None
    subject: Optional[str] = None
    file_name: Optional[str] = None
    raw_text: Optional[str] = None
    content: Optional[bytes] = None
    content_type: Optional[str] = None
    file_url: Optional[str] = None
    index: int = 0


class MediaFetcher:
    """
    Downloads inbound media referenced by URL (WhatsApp MediaUrlN).

    One attempt per URL, bounded by `timeout`. HTTP Basic auth is sent only
    when both the account SID and the auth token are configured.
    """

    def __init__(
        self,
        account_sid: str = "",
        auth_token: str = "",
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.auth = httpx.BasicAuth(account_sid, auth_token) if account_sid and auth_token else None
        self._client = http_client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def fetch(self, url: str) -> bytes:
        try:
            if self.auth is not None:
                response = await self._client.get(url, auth=self.auth)
            else:
                response = await self._client.get(url)
        except httpx.HTTPError as e:
            raise MediaFetchError(context={"url": url, "error": str(e) or type(e).__name__})
        if response.status_code >= 400:
            raise MediaFetchError(context={"url": url, "status": response.status_code})
        return response.content

    async def aclose(self) -> None:
        await self._client.aclose()


def _parse_uuid(value: Any) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _field(payload: Mapping[str, Any], *names: str) -> str:
    for name in names:
        value = payload.get(name)
        if value not in (None, ""):
            return str(value)
    return ""


class IntakeGateway:
    """
    Entry point of the pipeline.

    `dispatch` is called with each new item's id; in the app it schedules a
    background classification task.
    """

    def __init__(
        self,
        store: InboxItemStore,
        object_store: ObjectStore,
        dispatch: Dispatch,
        media_fetcher: MediaFetcher,
        max_file_size: int = 26_214_400,
        default_whatsapp_artisan_id: Optional[str] = None,
    ):
        self.store = store
        self.object_store = object_store
        self.dispatch = dispatch
        self.media_fetcher = media_fetcher
        self.max_file_size = max_file_size
        self.default_whatsapp_artisan_id = default_whatsapp_artisan_id

    # ══════════════════════════════════════════════════════════════════════
    # Manual upload
    # ══════════════════════════════════════════════════════════════════════

    async def normalize_manual_upload(
        self,
        artisan_id: uuid.UUID,
        file_type: str,
        content: Optional[bytes] = None,
        file_uri: Optional[str] = None,
        file_name: Optional[str] = None,
        raw_text: Optional[str] = None,
        mime_type: Optional[str] = None,
    ) -> InboxItem:
        """
        Create one item from the app's upload form.

        `file_uri` may reference an object already in the store (returned by an
        earlier put) or an http(s) URL to download once.

        Raises:
            ValidationError: unknown file type, missing content for a non-text
                             item, missing text for a text item, file too large.
            NotFoundError:   unknown artisan.
            ProviderError:   the artifact could not be fetched or stored.
        """
        try:
            kind = FileType(file_type)
        except ValueError:
            raise ValidationError(
                message=f"Unknown file type '{file_type}'",
                field="file_type",
                context={"allowed": [t.value for t in FileType]},
            )

        raw_text = raw_text.strip() if raw_text and raw_text.strip() else None
        file_url: Optional[str] = None

        if kind == FileType.TEXT:
            if raw_text is None:
                raise ValidationError(message="Text items need raw_text", field="raw_text")
            content = None
        elif not content:
            if not file_uri:
                raise ValidationError(
                    message=f"A file or file_uri is required for {kind.value} items",
                    field="file",
                )
            if self.object_store.path_for_url(file_uri) is not None:
                file_url = file_uri
            elif file_uri.startswith(("http://", "https://")):
                content = await self.media_fetcher.fetch(file_uri)
            else:
                raise ValidationError(message="file_uri must be an http(s) URL", field="file_uri")

        if content is not None:
            self._check_size(len(content), field="file")

        artisan = await self.store.get_artisan(artisan_id)
        if artisan is None:
            raise NotFoundError(resource="artisan", resource_id=str(artisan_id))

        item = await self._ingest(IngestionRequest(
            artisan_id=artisan.id,
            source=InboxSource.MANUAL,
            file_type=kind,
            file_name=file_name,
            raw_text=raw_text,
            content=content,
            content_type=mime_type,
            file_url=file_url,
        ))
        return item

    def _check_size(self, size: int, field: str) -> None:
        if size > self.max_file_size:
            max_mb = self.max_file_size / (1024 * 1024)
            raise ValidationError(
                message=f"File size ({size / (1024 * 1024):.1f}MB) exceeds maximum of {max_mb:.0f}MB.",
                field=field,
                context={"max_size_mb": max_mb, "actual_size": size},
            )

    # ══════════════════════════════════════════════════════════════════════
    # Email (Resend inbound webhook)
    # ══════════════════════════════════════════════════════════════════════

    async def normalize_email_webhook(self, payload: Mapping[str, Any]) -> List[uuid.UUID]:
        """
        Create items from a forwarded email.

        Each attachment becomes one item. With no attachments declared, the
        text (or html) body becomes one text item.

        Raises:
            ValidationError:      no recipient address.
            ArtisanNotFoundError: no artisan owns the recipient address.
        """
        artisan = await self._resolve_email_artisan(payload.get("to"))

        sender = _field(payload, "from") or None
        subject = _field(payload, "subject") or None
        text = _field(payload, "text")
        html = _field(payload, "html")
        attachments = payload.get("attachments") or []
        if not isinstance(attachments, list):
            attachments = []

        created: List[uuid.UUID] = []
        for index, attachment in enumerate(attachments):
            request = self._email_attachment_request(
                artisan, attachment, index, sender, subject, text or None
            )
            if request is None:
                continue
            item = await self._ingest_isolated(request)
            if item is not None:
                created.append(item.id)

        if not attachments and (text or html):
            item = await self._ingest(IngestionRequest(
                artisan_id=artisan.id,
                source=InboxSource.EMAIL,
                file_type=FileType.TEXT,
                sender=sender,
                subject=subject,
                raw_text=text or html,
            ))
            created.append(item.id)

        logger.info("Email webhook for artisan %s created %d item(s)", artisan.id, len(created))
        return created

    async def _resolve_email_artisan(self, recipient: Any) -> Artisan:
        candidates = recipient if isinstance(recipient, list) else [recipient]
        addresses = []
        for candidate in candidates:
            if not candidate:
                continue
            match = _EMAIL_ADDRESS.search(str(candidate))
            addresses.append((match.group(0) if match else str(candidate)).strip().lower())

        if not addresses:
            raise ValidationError(message="No recipient address", field="to")

        for address in addresses:
            artisan = await self.store.find_artisan_by_inbox_email(address)
            if artisan is not None:
                return artisan

        raise ArtisanNotFoundError(
            artisan_id=addresses[0],
            reason="No artisan found for this email address",
        )

    def _email_attachment_request(
        self,
        artisan: Artisan,
        attachment: Any,
        index: int,
        sender: Optional[str],
        subject: Optional[str],
        body: Optional[str],
    ) -> Optional[IngestionRequest]:
        if not isinstance(attachment, dict):
            logger.warning("Skipping email attachment %d: not an object", index)
            return None
        file_name = attachment.get("filename") or None
        content_type = attachment.get("content_type") or attachment.get("contentType") or ""
        try:
            content = base64.b64decode(attachment.get("content") or "", validate=False)
        except (binascii.Error, ValueError, TypeError) as e:
            logger.warning("Skipping email attachment %d (%s): undecodable: %s", index, file_name, e)
            return None
        if not content:
            logger.warning("Skipping email attachment %d (%s): empty", index, file_name)
            return None
        if len(content) > self.max_file_size:
            logger.warning("Skipping email attachment %d (%s): %d bytes exceeds limit",
                           index, file_name, len(content))
            return None
        return IngestionRequest(
            artisan_id=artisan.id,
            source=InboxSource.EMAIL,
            file_type=FileType.from_content_type(content_type),
            sender=sender,
            subject=subject,
            file_name=file_name,
            raw_text=body,
            content=content,
            content_type=content_type or "application/octet-stream",
            index=index,
        )

    # ══════════════════════════════════════════════════════════════════════
    # WhatsApp (Twilio inbound webhook)
    # ══════════════════════════════════════════════════════════════════════

    async def normalize_whatsapp_webhook(
        self,
        payload: Mapping[str, Any],
        query_artisan_id: Optional[str] = None,
    ) -> List[uuid.UUID]:
        """
        Create items from a WhatsApp message.

        Artisan resolution order: payload artisanId/artisan_id, then the query
        parameter, then the configured default.

        Raises:
            ArtisanNotFoundError: nothing resolved (artisan_id None) or the
                                  resolved id does not exist.
        """
        artisan = await self._resolve_whatsapp_artisan(payload, query_artisan_id)

        sender = _field(payload, "From", "from") or None
        body = _field(payload, "Body", "body").strip()
        try:
            num_media = int(_field(payload, "NumMedia", "numMedia") or 0)
        except ValueError:
            num_media = 0

        created: List[uuid.UUID] = []
        for index in range(max(num_media, 0)):
            media_url = _field(payload, f"MediaUrl{index}", f"mediaUrl{index}")
            if not media_url:
                continue
            content_type = _field(
                payload, f"MediaContentType{index}", f"mediaContentType{index}"
            ) or "application/octet-stream"

            try:
                content = await self.media_fetcher.fetch(media_url)
            except MediaFetchError as e:
                logger.warning("Skipping WhatsApp media %d: %s %s", index, e.message, e.context)
                continue
            if len(content) > self.max_file_size:
                logger.warning("Skipping WhatsApp media %d: %d bytes exceeds limit", index, len(content))
                continue

            extension = extension_for(None, content_type)
            item = await self._ingest_isolated(IngestionRequest(
                artisan_id=artisan.id,
                source=InboxSource.WHATSAPP,
                file_type=FileType.from_content_type(content_type),
                sender=sender,
                file_name=f"whatsapp_{int(time.time() * 1000)}_{index}.{extension}",
                raw_text=body or None,
                content=content,
                content_type=content_type,
                index=index,
            ))
            if item is not None:
                created.append(item.id)

        if not created and body:
            item = await self._ingest(IngestionRequest(
                artisan_id=artisan.id,
                source=InboxSource.WHATSAPP,
                file_type=FileType.TEXT,
                sender=sender,
                raw_text=body,
            ))
            created.append(item.id)

        logger.info("WhatsApp webhook for artisan %s created %d item(s)", artisan.id, len(created))
        return created

    async def _resolve_whatsapp_artisan(
        self,
        payload: Mapping[str, Any],
        query_artisan_id: Optional[str],
    ) -> Artisan:
        raw_id = (
            _field(payload, "artisanId", "artisan_id")
            or (query_artisan_id or "").strip()
            or (self.default_whatsapp_artisan_id or "")
        )
        if not raw_id:
            raise ArtisanNotFoundError(
                reason=(
                    "artisanId missing. Provide artisanId in payload/query "
                    "or set WHATSAPP_DEFAULT_ARTISAN_ID."
                ),
            )

        artisan_id = _parse_uuid(raw_id)
        artisan = await self.store.get_artisan(artisan_id) if artisan_id else None
        if artisan is None:
            raise ArtisanNotFoundError(
                artisan_id=raw_id,
                reason="Artisan not found for provided artisanId",
            )
        return artisan

    # ══════════════════════════════════════════════════════════════════════
    # Common ingest path
    # ══════════════════════════════════════════════════════════════════════

    async def _ingest(self, request: IngestionRequest) -> InboxItem:
        """
        Store the artifact (if any), insert the item, dispatch classification.

        If the insert fails, the artifact just written is removed again so no
        object is left without an inbox item.
        """
        file_url = request.file_url
        stored_path: Optional[str] = None
        if request.content is not None:
            stored_path = build_storage_path(
                str(request.artisan_id),
                request.source.value,
                request.index,
                extension_for(request.file_name, request.content_type),
            )
            file_url = await self.object_store.put(
                stored_path,
                request.content,
                request.content_type or "application/octet-stream",
            )

        try:
            item = await self.store.create(
                artisan_id=request.artisan_id,
                source=request.source.value,
                source_sender=request.sender,
                source_subject=request.subject,
                file_url=file_url if request.file_type != FileType.TEXT else None,
                file_type=request.file_type.value,
                file_name=request.file_name,
                raw_text=request.raw_text,
            )
        except TradeInboxError:
            if stored_path is not None:
                await self._discard_artifact(stored_path)
            raise

        try:
            await self.dispatch(item.id)
        except Exception as e:
            # The item stays 'new' and can be classified on demand
            logger.warning("Could not dispatch classification for %s: %s", item.id, str(e))
        return item

    async def _discard_artifact(self, path: str) -> None:
        try:
            await self.object_store.remove(path)
        except ProviderError as e:
            logger.warning("Could not remove orphaned artifact %s: %s", path, e.message)

    async def _ingest_isolated(self, request: IngestionRequest) -> Optional[InboxItem]:
        """
        _ingest for one attachment of a multi-attachment message.

        Any application error (storage or database) skips this attachment
        only; the caller moves on to the next one.
        """
        try:
            return await self._ingest(request)
        except TradeInboxError as e:
            logger.warning(
                "Skipping %s attachment %d (%s): %s: %s",
                request.source.value,
                request.index,
                request.file_name,
                type(e).__name__,
                e.message,
            )
            return None

    # ══════════════════════════════════════════════════════════════════════
    # Removal
    # ══════════════════════════════════════════════════════════════════════

    async def delete_item(self, item_id: uuid.UUID) -> None:
        """
        Delete an item and its stored artifact.

        Routed records keep their source_inbox_item_id reference; the item
        itself is gone afterwards.

        Raises:
            NotFoundError: no such item.
        """
        item = await self.store.get(item_id)
        if item.file_url:
            path = self.object_store.path_for_url(item.file_url)
            if path is not None:
                try:
                    await self.object_store.remove(path)
                except ProviderError as e:
                    logger.warning("Could not remove artifact of %s: %s", item_id, e.message)
        await self.store.delete(item)

    async def aclose(self) -> None:
        await self.media_fetcher.aclose()
