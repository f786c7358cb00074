"""
TradeInbox Backend — Test Configuration (conftest.py)
======================================================

What:  Shared pytest fixtures for the entire test suite.
Why:   State-machine and concurrency properties only mean something against a
       real database, so tests run on a fresh SQLite file per test (aiosqlite)
       while every external provider is replaced by a double.
How:   The ServiceContainer is assembled with build_services() exactly as in
       production, with the doubles injected through its keyword arguments.

Fixture Hierarchy (all function-scoped):
    engine ─▶ session_factory
    artisan, other_artisan        rows in `artisans`
    object_store                  InMemoryObjectStore
    classifier                    ScriptedClassifier (answers queued per test)
    transcription                 TranscriptionService with no providers
    media_routes ─▶ media_fetcher MediaFetcher on an httpx MockTransport
    dispatch                      RecordingDispatch (no background tasks)
    services ─▶ app ─▶ client     httpx AsyncClient over ASGITransport
"""

import os
import tempfile
from typing import Any, Callable, Dict, List

# Override settings BEFORE any tradeinbox import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["GEMINI_API_KEY"] = "test-key-not-real"
os.environ["STORAGE_ROOT"] = tempfile.mkdtemp(prefix="tradeinbox_test_")
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["WHATSAPP_DEFAULT_ARTISAN_ID"] = ""
os.environ["TWILIO_ACCOUNT_SID"] = ""
os.environ["TWILIO_AUTH_TOKEN"] = ""

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine

from tradeinbox.config import settings
from tradeinbox.database import Base, build_session_factory
from tradeinbox.dependencies import build_services
from tradeinbox.main import create_app
from tradeinbox.models.inbox_item import InboxItem, InboxSource
from tradeinbox.models.records import Artisan
from tradeinbox.services.intake_service import MediaFetcher
from tradeinbox.services.transcription import TranscriptionService
from doubles import InMemoryObjectStore, RecordingDispatch, ScriptedClassifier


# ══════════════════════════════════════════════════════════════════════════
# Database Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def engine(tmp_path):
    """A fresh SQLite database file with every table created."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'inbox.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


async def _add_artisan(session_factory, **fields) -> Artisan:
    artisan = Artisan(**fields)
    async with session_factory() as session:
        async with session.begin():
            session.add(artisan)
    return artisan


@pytest_asyncio.fixture
async def artisan(session_factory) -> Artisan:
    return await _add_artisan(
        session_factory,
        business_name="Idraulica Rossi",
        trade="idraulico",
        inbox_email="rossi@inbox.tradeinbox.it",
    )


@pytest_asyncio.fixture
async def other_artisan(session_factory) -> Artisan:
    return await _add_artisan(
        session_factory,
        business_name="Elettrica Bianchi",
        trade="elettricista",
        inbox_email="bianchi@inbox.tradeinbox.it",
    )


# ══════════════════════════════════════════════════════════════════════════
# Provider Doubles
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def object_store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def classifier() -> ScriptedClassifier:
    return ScriptedClassifier()


@pytest.fixture
def transcription() -> TranscriptionService:
    """No providers configured: audio items fail with 'No provider configured'."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    return TranscriptionService([], http_client=client)


@pytest.fixture
def media_routes() -> Dict[str, httpx.Response]:
    """URL → response served to the MediaFetcher. Unknown URLs answer 404."""
    return {}


@pytest.fixture
def media_requests() -> List[httpx.Request]:
    return []


@pytest.fixture
def media_fetcher(media_routes, media_requests) -> MediaFetcher:
    def handler(request: httpx.Request) -> httpx.Response:
        media_requests.append(request)
        return media_routes.get(str(request.url), httpx.Response(404))

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MediaFetcher(http_client=client)


@pytest.fixture
def dispatch() -> RecordingDispatch:
    return RecordingDispatch()


# ══════════════════════════════════════════════════════════════════════════
# Service Container & HTTP Client
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def services(engine, object_store, transcription, classifier, media_fetcher, dispatch):
    container = build_services(
        settings,
        engine=engine,
        object_store=object_store,
        transcription=transcription,
        classifier=classifier,
        media_fetcher=media_fetcher,
        dispatch=dispatch,
    )
    yield container
    await container.aclose()


@pytest.fixture
def make_item(services, artisan) -> Callable:
    """Factory inserting an inbox item (status 'new') for `artisan`."""

    async def _make(**fields: Any) -> InboxItem:
        fields.setdefault("artisan_id", artisan.id)
        fields.setdefault("source", InboxSource.MANUAL.value)
        fields.setdefault("file_type", "text")
        if fields["file_type"] == "text":
            fields.setdefault("raw_text", "Il cliente Verdi chiede di riparare la caldaia")
        return await services.store.create(**fields)

    return _make


@pytest.fixture
def app(services):
    return create_app(container=services)


@pytest_asyncio.fixture
async def client(app):
    """
    HTTPX AsyncClient bound to the app in-process (no network, no lifespan).
    """
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def sample_image_bytes() -> bytes:
    """Smallest valid JPEG: SOI + JFIF header + EOI."""
    return (
        b'\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00'
        b'\xff\xd9'
    )
