"""
TradeInbox Backend — Classification Orchestrator
==================================================

What:  Drives one inbox item through new → classifying → classified | error,
       and the explicit error → new retry.
Why:   Classification touches three unreliable collaborators (object store,
       transcription providers, AI model). The orchestrator makes sure every
       run ends in a definite state with a readable error message, and that
       concurrent triggers never classify the same item twice.
Who:   ClassificationDispatcher (after intake), POST /api/inbox/{id}/classify,
       POST /api/inbox/{id}/retry.

Orchestration Flow (classify_item):
    ┌─────────┐   ┌────────────┐   ┌──────────┐   ┌────────────┐   ┌──────────┐
    │  Claim  │──▶│ Transcribe │──▶│ Context  │──▶│  Classify  │──▶│  Parse   │
    │ new→cls │   │ (audio)    │   │ (+media) │   │  (Gemini)  │   │ → result │
    └─────────┘   └────────────┘   └──────────┘   └────────────┘   └──────────┘
         │               │                              │               │
    lost race:       failure                        failure         invalid
    no-op           ──────────────── status=error, error_message ─────────┘

    There is no automatic retry anywhere in this flow. An item in `error`
    only moves again when someone calls retry_classify().
"""

import asyncio
import logging
import mimetypes
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Set

from tradeinbox.exceptions import InvalidStateError, TradeInboxError
from tradeinbox.models.inbox_item import FailedStage, FileType, InboxItem, InboxStatus, utcnow
from tradeinbox.services.ai_response import parse_classification
from tradeinbox.services.inbox_store import InboxItemStore
from tradeinbox.services.llm_base import AnalysisContext, Classifier
from tradeinbox.services.object_store import ObjectStore
from tradeinbox.services.transcription import TranscriptionService

logger = logging.getLogger(__name__)

NO_CONTENT_MESSAGE = "no content to analyze"
UNEXPECTED_FAILURE_MESSAGE = "unexpected error during classification"

# Fire-and-forget trigger handed to the intake gateway
Dispatch = Callable[[uuid.UUID], Awaitable[None]]


@dataclass
class ClassificationOutcome:
    """`claimed` is False when another run already held the item."""

    item: InboxItem
    claimed: bool


class _StopClassification(Exception):
    """Ends a run early with a message to record on the item."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ClassificationOrchestrator:
    """
    The classification state machine.

    Collaborators are injected at construction; nothing here reads settings.
    """

    def __init__(
        self,
        store: InboxItemStore,
        object_store: ObjectStore,
        transcription: TranscriptionService,
        classifier: Classifier,
    ):
        self.store = store
        self.object_store = object_store
        self.transcription = transcription
        self.classifier = classifier

    async def classify_item(self, item_id: uuid.UUID) -> ClassificationOutcome:
        """
        Classify one item.

        Returns:
            ClassificationOutcome with the item's final row. Failures of the
            providers are recorded on the item (status='error'), not raised.

        Raises:
            NotFoundError: no such item.
        """
        # Raises NotFoundError before any state change
        await self.store.get(item_id)

        item = await self.store.transition(item_id, InboxStatus.NEW, InboxStatus.CLASSIFYING)
        if item is None:
            logger.info("Inbox item %s not claimable (already taken), skipping", item_id)
            return ClassificationOutcome(item=await self.store.get(item_id), claimed=False)

        try:
            item = await self._run(item)
        except _StopClassification as stop:
            item = await self._fail(item, stop.message)
        except TradeInboxError as e:
            logger.warning("Classification of %s failed: %s", item_id, e.message)
            item = await self._fail(item, e.message)
        except Exception as e:
            logger.error(
                "Unexpected error classifying %s: %s", item_id, str(e), exc_info=True
            )
            item = await self._fail(item, UNEXPECTED_FAILURE_MESSAGE)

        return ClassificationOutcome(item=item, claimed=True)

    async def retry_classify(self, item_id: uuid.UUID) -> ClassificationOutcome:
        """
        Explicit recovery: error → new (clearing the error), then classify again.

        Raises:
            NotFoundError: no such item.
            InvalidStateError: the item is not in `error`.
        """
        item = await self.store.get(item_id)
        if item.status != InboxStatus.ERROR.value:
            raise InvalidStateError(
                message="Only items in error can be retried",
                current_status=item.status,
            )

        reset = await self.store.transition(
            item_id,
            InboxStatus.ERROR,
            InboxStatus.NEW,
            error_message=None,
            failed_stage=None,
        )
        if reset is None:
            current = await self.store.get(item_id)
            raise InvalidStateError(
                message="Only items in error can be retried",
                current_status=current.status,
            )

        logger.info("Retrying classification of inbox item %s", item_id)
        return await self.classify_item(item_id)

    # ── Pipeline steps ────────────────────────────────────────────────────

    async def _run(self, item: InboxItem) -> InboxItem:
        raw_text = item.raw_text

        # ── Step 1: Transcribe voice notes ────────────────────────────────
        if item.file_type == FileType.AUDIO.value and item.file_url:
            audio = await self.object_store.get(item.file_url)
            transcript = await self.transcription.transcribe(audio, item.file_url)
            updated = await self.store.update_fields(
                item.id, InboxStatus.CLASSIFYING, raw_text=transcript
            )
            if updated is not None:
                item = updated
            raw_text = transcript

        # ── Step 2: Build the analysis context ────────────────────────────
        context = await self._build_context(item, raw_text)
        if not context.has_content:
            raise _StopClassification(NO_CONTENT_MESSAGE)

        # ── Step 3: Ask the model, parse strictly ─────────────────────────
        raw_answer = await self.classifier.classify(context)
        result = parse_classification(raw_answer)

        # ── Step 4: Overwrite every classification field ──────────────────
        classified = await self.store.transition(
            item.id,
            InboxStatus.CLASSIFYING,
            InboxStatus.CLASSIFIED,
            classification=result.classification.value,
            ai_summary=result.summary,
            ai_extracted_data=result.extracted_data,
            confidence=result.confidence,
            classified_at=utcnow(),
            error_message=None,
            failed_stage=None,
        )
        if classified is None:
            logger.warning("Inbox item %s left 'classifying' during classification", item.id)
            return await self.store.get(item.id)

        logger.info(
            "Inbox item %s classified as %s (confidence=%.2f)",
            item.id,
            result.classification.value,
            result.confidence,
        )
        return classified

    async def _build_context(self, item: InboxItem, raw_text: Optional[str]) -> AnalysisContext:
        artisan = await self.store.get_artisan(item.artisan_id)
        context = AnalysisContext(
            raw_text=raw_text,
            file_name=item.file_name,
            trade=artisan.trade if artisan else None,
            source=item.source,
            sender=item.source_sender,
            subject=item.source_subject,
        )
        if item.file_type in (FileType.IMAGE.value, FileType.PDF.value) and item.file_url:
            context.media = await self.object_store.get(item.file_url)
            context.media_mime_type = _media_mime_type(item)
        return context

    async def _fail(self, item: InboxItem, message: str) -> InboxItem:
        failed = await self.store.transition(
            item.id,
            InboxStatus.CLASSIFYING,
            InboxStatus.ERROR,
            error_message=message,
            failed_stage=FailedStage.CLASSIFICATION.value,
        )
        if failed is None:
            return await self.store.get(item.id)
        return failed


def _media_mime_type(item: InboxItem) -> str:
    if item.file_type == FileType.PDF.value:
        return "application/pdf"
    guessed, _ = mimetypes.guess_type(item.file_name or item.file_url or "")
    if guessed and guessed.startswith("image/"):
        return guessed
    return "image/jpeg"


class ClassificationDispatcher:
    """
    Runs classification in background tasks after intake.

    Strong references to running tasks are kept until they finish, and
    drain() awaits the ones still running at shutdown.
    """

    def __init__(self, orchestrator: ClassificationOrchestrator):
        self.orchestrator = orchestrator
        self._tasks: Set["asyncio.Task[None]"] = set()

    async def __call__(self, item_id: uuid.UUID) -> None:
        task = asyncio.create_task(self._classify(item_id), name=f"classify-{item_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _classify(self, item_id: uuid.UUID) -> None:
        try:
            await self.orchestrator.classify_item(item_id)
        except TradeInboxError as e:
            logger.warning("Background classification of %s aborted: %s", item_id, e.message)
        except Exception as e:
            logger.error(
                "Background classification of %s crashed: %s", item_id, str(e), exc_info=True
            )

    async def drain(self) -> None:
        if self._tasks:
            logger.info("Waiting for %d classification task(s) to finish", len(self._tasks))
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
