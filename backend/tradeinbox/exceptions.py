"""
TradeInbox Backend — Custom Exception Hierarchy
=================================================

What:  Application-specific exceptions for the inbox pipeline.
Why:   Targeted handling with the right HTTP status and a user-safe message.
How:   Each exception carries a message and an optional context dict.
       Global exception handlers (registered in main.py) turn them into
       structured JSON error responses.
Who:   Raised by services and middleware; caught by global handlers.

Exception Hierarchy:
    TradeInboxError (base)
    ├── ValidationError            → 400 Bad Request (client can fix)
    ├── NotFoundError              → 404 Not Found
    │   └── ArtisanNotFoundError   → 404 (400 when no artisan id was resolved at all)
    ├── InvalidStateError          → 409 Conflict (wrong status for the operation)
    │   └── AlreadyRoutedError     → 409 Conflict
    ├── ProviderError              → 502 Bad Gateway (generic message)
    │   ├── ObjectStoreError
    │   ├── MediaFetchError        (inbound media download failed)
    │   ├── TranscriptionFailedError
    │   ├── ClassifierError
    │   │   └── ParseError         (malformed AI response)
    │   └── RoutingFailedError     (downstream record insert failed)
    ├── CircuitBreakerOpenError    → 503 Service Unavailable
    ├── DatabaseError              → 500 Internal Server Error
    └── RateLimitExceededError     → 429 Too Many Requests

Provider errors raised inside the classification/routing pipeline are
recorded on the inbox item (status=error + message) before they reach a
caller, so the HTTP layer only ever reports a generic failure signal.
"""

from typing import Any, Dict, Optional


class TradeInboxError(Exception):
    """
    Base exception for all TradeInbox application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned to client)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(TradeInboxError):
    """
    Raised when client input fails validation.

    When:    Missing file for a non-text item, unknown file type, size exceeded,
             missing recipient on an email webhook.
    HTTP:    400 Bad Request. No state is changed.
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class NotFoundError(TradeInboxError):
    """Raised when a requested inbox item, artisan, or file does not exist."""

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class ArtisanNotFoundError(NotFoundError):
    """
    Raised when an inbound artifact cannot be attributed to an artisan.

    Two flavours:
        artisan_id is None  → nothing resolved (payload, query, default all empty)
        artisan_id is set   → an id was resolved but no such artisan exists
    """

    def __init__(
        self,
        artisan_id: Optional[str] = None,
        reason: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(resource="artisan", resource_id=artisan_id, context=context)
        self.artisan_id = artisan_id
        if reason:
            self.message = reason


class InvalidStateError(TradeInboxError):
    """
    Raised when an operation is not allowed from the item's current status.

    Example: retry_classify on a `classified` item, routing a `new` item.
    HTTP:    409 Conflict
    """

    def __init__(
        self,
        message: str = "Operation not allowed in the current state",
        current_status: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if current_status:
            ctx["current_status"] = current_status
        super().__init__(message=message, context=ctx)
        self.current_status = current_status


class AlreadyRoutedError(InvalidStateError):
    """Raised when routing an item that is already routed (without force) or lost a routing race."""

    def __init__(self, item_id: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        if item_id:
            ctx["inbox_item_id"] = item_id
        super().__init__(
            message="Inbox item has already been routed. Pass force=true to route it again.",
            current_status="routed",
            context=ctx,
        )


class ProviderError(TradeInboxError):
    """
    Raised when an external collaborator fails.

    Covers the object store, transcription providers, the AI classifier and
    downstream record creation. Inside the pipeline these are recorded on the
    inbox item; the message stored there is `message`.
    """

    def __init__(
        self,
        message: str = "An upstream service failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ObjectStoreError(ProviderError):
    """Could not write, read, or delete an artifact in the object store."""

    def __init__(
        self,
        message: str = "Object storage operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class MediaFetchError(ProviderError):
    """An inbound attachment (e.g. WhatsApp media) could not be downloaded."""

    def __init__(
        self,
        message: str = "Could not download the attachment",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class TranscriptionFailedError(ProviderError):
    """
    Every transcription provider failed or returned an empty transcript.

    `last_error` holds the error text of the last provider tried.
    """

    def __init__(self, last_error: str = "No provider configured", context: Optional[Dict[str, Any]] = None):
        super().__init__(message=f"Audio transcription failed. {last_error}", context=context)
        self.last_error = last_error


class ClassifierError(ProviderError):
    """The AI classifier call itself failed (network, quota, safety block)."""

    def __init__(
        self,
        message: str = "AI classification service failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ParseError(ClassifierError):
    """The AI classifier answered, but not with the expected structure."""

    def __init__(
        self,
        message: str = "invalid AI response",
        raw_response: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
        self.raw_response = raw_response


class RoutingFailedError(ProviderError):
    """A downstream record (job, invoice, client, expense) could not be created."""

    def __init__(
        self,
        message: str = "Could not create the downstream record",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class CircuitBreakerOpenError(TradeInboxError):
    """
    Raised when the classifier circuit breaker is OPEN.

    How circuit breaker works:
        CLOSED (normal) → failures increment counter
        → After N failures → OPEN (reject all calls for recovery_time seconds)
        → After recovery_time → HALF-OPEN (allow one test call)
        → If test succeeds → CLOSED; if it fails → OPEN again
    """

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"AI service is temporarily unavailable due to repeated failures. "
            f"Try again in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, context=ctx)
        self.recovery_time = recovery_time


class DatabaseError(TradeInboxError):
    """
    Raised when database operations fail unexpectedly.

    The message returned to the client is always generic; details are logged
    server-side only.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class RateLimitExceededError(TradeInboxError):
    """Raised when a client exceeds the per-IP request rate limit."""

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds before making more requests."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after
