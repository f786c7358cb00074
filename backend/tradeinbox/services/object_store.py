"""
TradeInbox Backend — Object Store Client
==========================================

What:  Write-once artifact storage: put, get, remove, plus URL ↔ path mapping.
Why:   Every non-text inbox item points at an artifact (photo, PDF, voice note,
       email attachment) stored here; classification reads it back as vision
       input or as audio for transcription.
How:   ObjectStore is the abstract interface. LocalObjectStore keeps artifacts
       under STORAGE_ROOT with async file I/O (aiofiles) and exposes them under
       STORAGE_PUBLIC_BASE_URL, served by GET /api/files/{path}.
Who:   IntakeGateway (put), ClassificationOrchestrator (get), InboxItemStore
       delete (remove), files route (resolve).

Storage Layout:
    storage/
    └── <artisan_id>/
        ├── manual_1718000000000_3f9a1c2e_0.jpg
        ├── email_1718000000500_b41d7e09_0.pdf
        └── whatsapp_1718000001000_c0e58a71_1.ogg

    Keys are "{artisan_id}/{channel}_{timestamp_ms}_{nonce}_{index}.{ext}". A key is
    written at most once: a second put on the same key fails instead of
    overwriting the first artifact.
"""

import logging
import os
import re
import time
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union
from urllib.parse import unquote, urlparse

import aiofiles

from tradeinbox.exceptions import NotFoundError, ObjectStoreError, ValidationError

logger = logging.getLogger(__name__)

# Extensions for the content types the channels commonly deliver. Anything else
# falls back to the MIME subtype.
CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/heic": "heic",
    "image/webp": "webp",
    "application/pdf": "pdf",
    "audio/ogg": "ogg",
    "audio/mpeg": "mp3",
    "audio/mp4": "m4a",
    "audio/m4a": "m4a",
    "audio/x-m4a": "m4a",
    "audio/wav": "wav",
    "audio/webm": "webm",
}

_SAFE_EXTENSION = re.compile(r"^[a-z0-9]{1,10}$")


def extension_for(file_name: Optional[str], content_type: Optional[str]) -> str:
    """
    Picks the file extension for a stored artifact.

    The file name's suffix wins; otherwise the content type decides. Returns
    "bin" when neither yields a usable extension.
    """
    if file_name:
        suffix = Path(file_name).suffix.lstrip(".").lower()
        if _SAFE_EXTENSION.match(suffix):
            return suffix
    ct = (content_type or "").lower().split(";")[0].strip()
    if ct in CONTENT_TYPE_EXTENSIONS:
        return CONTENT_TYPE_EXTENSIONS[ct]
    subtype = ct.split("/")[-1] if "/" in ct else ""
    if _SAFE_EXTENSION.match(subtype):
        return subtype
    return "bin"


def build_storage_path(
    artisan_id: str,
    channel: str,
    index: int,
    extension: str,
    timestamp_ms: Optional[int] = None,
    nonce: Optional[str] = None,
) -> str:
    """
    Object key for one artifact:
    "{artisan_id}/{channel}_{timestamp_ms}_{nonce}_{index}.{ext}".

    `index` is the attachment position within the inbound message. `nonce` is
    random per call, so two messages received in the same millisecond never
    share a key.
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    if nonce is None:
        nonce = uuid.uuid4().hex[:8]
    return f"{artisan_id}/{channel}_{timestamp_ms}_{nonce}_{index}.{extension}"


class ObjectStore(ABC):
    """
    Abstract artifact store.

    Contract:
        - put() never overwrites; a colliding key raises ObjectStoreError
        - get() accepts the URL returned by put()
        - every failure is an ObjectStoreError (a ProviderError)
    """

    @abstractmethod
    async def put(self, path: str, data: bytes, content_type: str) -> str:
        """Stores `data` under `path` and returns its public URL."""
        ...

    @abstractmethod
    async def get(self, url: str) -> bytes:
        """Reads back the artifact behind a URL returned by put()."""
        ...

    @abstractmethod
    async def remove(self, path: str) -> None:
        """Deletes an artifact. Removing a missing key is not an error."""
        ...

    @abstractmethod
    def url_for(self, path: str) -> str:
        ...

    @abstractmethod
    def path_for_url(self, url: str) -> Optional[str]:
        """Inverse of url_for(); None when the URL is not one of ours."""
        ...


class LocalObjectStore(ObjectStore):
    """
    Filesystem-backed object store.

    Artifacts are written with mode "xb" (exclusive create), so the write-once
    rule is enforced by the filesystem rather than by a racy exists() check.
    """

    def __init__(self, storage_root: Union[str, Path], public_base_url: str = "/api/files"):
        self.storage_root = Path(storage_root).resolve()
        self.storage_root.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")
        logger.info("LocalObjectStore initialized with storage_root=%s", self.storage_root)

    # ── Path handling ─────────────────────────────────────────────────────

    def resolve(self, path: str) -> Path:
        """
        Absolute filesystem path for an object key.

        Raises ValidationError when the key escapes the storage root
        (e.g. "../../etc/passwd").
        """
        full_path = (self.storage_root / path).resolve()
        if full_path != self.storage_root and self.storage_root not in full_path.parents:
            raise ValidationError(message="Invalid file path", field="path")
        return full_path

    def url_for(self, path: str) -> str:
        return f"{self.public_base_url}/{path}"

    def path_for_url(self, url: str) -> Optional[str]:
        url_path = unquote(urlparse(url).path)
        base_path = urlparse(self.public_base_url).path
        prefix = f"{base_path}/"
        if not url_path.startswith(prefix):
            return None
        return url_path[len(prefix):] or None

    # ── Operations ────────────────────────────────────────────────────────

    async def put(self, path: str, data: bytes, content_type: str) -> str:
        target = self.resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(target, "xb") as f:
                await f.write(data)
        except FileExistsError:
            logger.error("Refusing to overwrite existing object: %s", path)
            raise ObjectStoreError(
                message="An object with this key already exists",
                context={"path": path},
            )
        except OSError as e:
            logger.error("Failed to store object at %s: %s", path, str(e))
            raise ObjectStoreError(
                message="Failed to store the uploaded file",
                context={"path": path, "os_error": str(e)},
            )

        logger.info("Object stored: %s (%d bytes, %s)", path, len(data), content_type)
        return self.url_for(path)

    async def get(self, url: str) -> bytes:
        path = self.path_for_url(url)
        if path is None:
            raise ObjectStoreError(
                message="File URL does not belong to this store",
                context={"url": url},
            )
        target = self.resolve(path)
        try:
            async with aiofiles.open(target, "rb") as f:
                return await f.read()
        except FileNotFoundError:
            raise ObjectStoreError(message="Stored file is missing", context={"path": path})
        except OSError as e:
            logger.error("Failed to read object %s: %s", path, str(e))
            raise ObjectStoreError(
                message="Failed to read the stored file",
                context={"path": path, "os_error": str(e)},
            )

    async def remove(self, path: str) -> None:
        target = self.resolve(path)
        try:
            os.remove(target)
            logger.info("Object removed: %s", path)
        except FileNotFoundError:
            logger.debug("Remove: object already gone: %s", path)
        except OSError as e:
            logger.error("Failed to remove object %s: %s", path, str(e))
            raise ObjectStoreError(
                message="Failed to delete the stored file",
                context={"path": path, "os_error": str(e)},
            )

    def open_path(self, path: str) -> Path:
        """Existing file for `path`, for the files route. NotFoundError if absent."""
        target = self.resolve(path)
        if not target.is_file():
            raise NotFoundError(resource="file", resource_id=path)
        return target
