"""
TradeInbox Backend — Service Assembly & FastAPI Dependencies
==============================================================

What:  Builds the pipeline's object graph from Settings, and exposes the pieces
       to route handlers through FastAPI's dependency injection.
Why:   Credentials and limits are read once and passed to each component at
       construction. Tests build the same container around SQLite, an
       in-memory object store and scripted providers.
How:   build_services(settings) → ServiceContainer, stored on app.state by
       create_app(). Route handlers declare Depends(get_services) (or one of
       the narrower getters).

Object graph:
    InboxEventBus ─▶ InboxItemStore ─┬─▶ ClassificationOrchestrator ─▶ ClassificationDispatcher
                                     ├─▶ RoutingEngine                          │
                                     └─▶ IntakeGateway ◀──── dispatch ──────────┘
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tradeinbox.config import Settings
from tradeinbox.database import build_engine, build_session_factory
from tradeinbox.services.classification_service import (
    ClassificationDispatcher,
    ClassificationOrchestrator,
    Dispatch,
)
from tradeinbox.services.gemini_service import GeminiClassifier
from tradeinbox.services.inbox_store import InboxItemStore
from tradeinbox.services.intake_service import IntakeGateway, MediaFetcher
from tradeinbox.services.llm_base import Classifier
from tradeinbox.services.object_store import LocalObjectStore, ObjectStore
from tradeinbox.services.realtime import InboxEventBus
from tradeinbox.services.routing_service import RoutingEngine
from tradeinbox.services.transcription import TranscriptionService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Everything the HTTP layer needs, built once per application."""

    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    event_bus: InboxEventBus
    store: InboxItemStore
    object_store: ObjectStore
    transcription: TranscriptionService
    classifier: Classifier
    orchestrator: ClassificationOrchestrator
    dispatcher: Optional[ClassificationDispatcher]
    routing: RoutingEngine
    intake: IntakeGateway

    async def aclose(self) -> None:
        """Drain background classification, then release clients and pool."""
        if self.dispatcher is not None:
            await self.dispatcher.drain()
        await self.intake.aclose()
        await self.transcription.aclose()
        await self.engine.dispose()


def build_services(
    settings: Settings,
    engine: Optional[AsyncEngine] = None,
    object_store: Optional[ObjectStore] = None,
    transcription: Optional[TranscriptionService] = None,
    classifier: Optional[Classifier] = None,
    media_fetcher: Optional[MediaFetcher] = None,
    dispatch: Optional[Dispatch] = None,
) -> ServiceContainer:
    """
    Assemble the pipeline.

    Every keyword argument replaces the component built from settings; tests
    use them to inject doubles. Without `dispatch`, classification after intake
    runs on a ClassificationDispatcher (background tasks).
    """
    engine = engine or build_engine(settings.database_url)
    session_factory = build_session_factory(engine)
    event_bus = InboxEventBus()
    store = InboxItemStore(session_factory, event_bus)

    object_store = object_store or LocalObjectStore(
        settings.storage_root,
        public_base_url=settings.storage_public_base_url,
    )
    transcription = transcription or TranscriptionService.from_credentials(
        groq_api_key=settings.groq_api_key,
        deepgram_api_key=settings.deepgram_api_key,
        openai_api_key=settings.openai_api_key,
        language=settings.transcription_language,
        timeout=settings.transcription_timeout,
    )
    classifier = classifier or GeminiClassifier(
        api_key=settings.gemini_api_key,
        model_name=settings.gemini_model,
        timeout=settings.gemini_timeout,
        failure_threshold=settings.cb_failure_threshold,
        recovery_timeout=settings.cb_recovery_timeout,
    )
    media_fetcher = media_fetcher or MediaFetcher(
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        timeout=settings.media_fetch_timeout,
    )

    orchestrator = ClassificationOrchestrator(store, object_store, transcription, classifier)
    dispatcher: Optional[ClassificationDispatcher] = None
    if dispatch is None:
        dispatcher = ClassificationDispatcher(orchestrator)
        dispatch = dispatcher

    intake = IntakeGateway(
        store=store,
        object_store=object_store,
        dispatch=dispatch,
        media_fetcher=media_fetcher,
        max_file_size=settings.max_file_size,
        default_whatsapp_artisan_id=settings.whatsapp_default_artisan_id,
    )
    routing = RoutingEngine(session_factory, store)

    logger.info(
        "Services built (transcription chain=%s, classifier=%s)",
        transcription.provider_names,
        type(classifier).__name__,
    )
    return ServiceContainer(
        engine=engine,
        session_factory=session_factory,
        event_bus=event_bus,
        store=store,
        object_store=object_store,
        transcription=transcription,
        classifier=classifier,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
        routing=routing,
        intake=intake,
    )


# ── FastAPI dependencies ──────────────────────────────────────────────────

def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services
