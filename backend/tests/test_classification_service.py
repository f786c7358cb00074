"""
TradeInbox Backend — Classification Orchestrator Tests
========================================================

What:  Tests for the classification state machine against a real SQLite
       database, with scripted classifier and transcription doubles.

What we test:
    ✅ new → classifying → classified with every field written
    ✅ Two concurrent claims: exactly one classifies
    ✅ Audio: transcript persisted as raw_text before classification
    ✅ No content → error "no content to analyze"
    ✅ Classifier / parse failures → error with message, no retry
    ✅ retry_classify only from error, and fully overwrites old results
    ✅ Vision input for images and PDFs
    ✅ ClassificationDispatcher runs in the background and drains
"""

import asyncio
import uuid

import httpx
import pytest

from tradeinbox.exceptions import ClassifierError, InvalidStateError, NotFoundError
from tradeinbox.models.inbox_item import InboxStatus
from tradeinbox.services.classification_service import (
    NO_CONTENT_MESSAGE,
    ClassificationDispatcher,
    ClassificationOrchestrator,
)
from tradeinbox.services.transcription import DeepgramProvider, GroqWhisperProvider, TranscriptionService
from doubles import classifier_answer


class TestClassifyItem:
    """Tests for classify_item()."""

    @pytest.mark.asyncio
    async def test_text_item_is_classified(self, services, make_item, classifier):
        item = await make_item()
        classifier.queue(classifier_answer(
            "job", 0.87, "Riparare caldaia del signor Verdi", {"title": "Caldaia Verdi"}
        ))

        outcome = await services.orchestrator.classify_item(item.id)

        assert outcome.claimed is True
        stored = await services.store.get(item.id)
        assert stored.status == "classified"
        assert stored.classification == "job"
        assert stored.confidence == pytest.approx(0.87)
        assert stored.ai_summary == "Riparare caldaia del signor Verdi"
        assert stored.ai_extracted_data == {"title": "Caldaia Verdi"}
        assert stored.classified_at is not None
        assert stored.error_message is None

    @pytest.mark.asyncio
    async def test_artisan_trade_reaches_the_classifier(self, services, make_item, classifier):
        item = await make_item()

        await services.orchestrator.classify_item(item.id)

        assert classifier.contexts[0].trade == "idraulico"
        assert "caldaia" in classifier.contexts[0].raw_text

    @pytest.mark.asyncio
    async def test_concurrent_claims_classify_once(self, services, make_item, classifier):
        item = await make_item()

        outcomes = await asyncio.gather(
            services.orchestrator.classify_item(item.id),
            services.orchestrator.classify_item(item.id),
        )

        assert sorted(o.claimed for o in outcomes) == [False, True]
        assert len(classifier.contexts) == 1
        assert (await services.store.get(item.id)).status == "classified"

    @pytest.mark.asyncio
    async def test_already_classified_item_is_not_claimed(self, services, make_item, classifier):
        item = await make_item()
        await services.orchestrator.classify_item(item.id)

        outcome = await services.orchestrator.classify_item(item.id)

        assert outcome.claimed is False
        assert outcome.item.status == "classified"
        assert len(classifier.contexts) == 1

    @pytest.mark.asyncio
    async def test_unknown_item_raises(self, services):
        with pytest.raises(NotFoundError):
            await services.orchestrator.classify_item(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_no_content_is_an_error(self, services, make_item, classifier):
        item = await make_item(raw_text="   ")

        outcome = await services.orchestrator.classify_item(item.id)

        assert outcome.item.status == "error"
        assert outcome.item.error_message == NO_CONTENT_MESSAGE
        assert outcome.item.failed_stage == "classification"
        assert classifier.contexts == []

    @pytest.mark.asyncio
    async def test_classifier_failure_is_recorded(self, services, make_item, classifier):
        item = await make_item()
        classifier.queue(ClassifierError(message="AI classification failed"))

        outcome = await services.orchestrator.classify_item(item.id)

        assert outcome.item.status == "error"
        assert outcome.item.error_message == "AI classification failed"
        assert len(classifier.contexts) == 1

    @pytest.mark.asyncio
    async def test_invalid_ai_response_is_recorded(self, services, make_item, classifier):
        item = await make_item()
        classifier.queue("Mi dispiace, non posso aiutarti")

        outcome = await services.orchestrator.classify_item(item.id)

        assert outcome.item.status == "error"
        assert outcome.item.error_message == "invalid AI response"

    @pytest.mark.asyncio
    async def test_unexpected_exception_gets_generic_message(self, services, make_item, classifier):
        item = await make_item()
        classifier.queue(RuntimeError("boom"))

        outcome = await services.orchestrator.classify_item(item.id)

        assert outcome.item.status == "error"
        assert "boom" not in outcome.item.error_message

    @pytest.mark.asyncio
    async def test_image_is_sent_as_vision_input(self, services, make_item, classifier, object_store):
        url = await object_store.put("a/manual_1_0.png", b"png-bytes", "image/png")
        item = await make_item(file_type="image", file_url=url, file_name="lavello.png")

        await services.orchestrator.classify_item(item.id)

        context = classifier.contexts[0]
        assert context.media == b"png-bytes"
        assert context.media_mime_type == "image/png"

    @pytest.mark.asyncio
    async def test_missing_artifact_is_an_error(self, services, make_item, classifier):
        item = await make_item(file_type="pdf", file_url="memory://store/a/gone.pdf")

        outcome = await services.orchestrator.classify_item(item.id)

        assert outcome.item.status == "error"
        assert outcome.item.error_message == "Stored file is missing"


class TestAudioItems:
    """Audio items are transcribed before classification."""

    @pytest.fixture
    def transcription(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "api.groq.com":
                return httpx.Response(503, json={"error": {"message": "unavailable"}})
            return httpx.Response(200, json={
                "results": {"channels": [{"alternatives": [{"transcript": "taglio piastrelle bagno"}]}]}
            })

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return TranscriptionService(
            [GroqWhisperProvider("g"), DeepgramProvider("d")], http_client=client
        )

    @pytest.mark.asyncio
    async def test_transcript_from_fallback_provider_is_classified(
        self, services, make_item, classifier, object_store
    ):
        url = await object_store.put("a/whatsapp_1_0.ogg", b"ogg-bytes", "audio/ogg")
        item = await make_item(source="whatsapp", file_type="audio", file_url=url)

        outcome = await services.orchestrator.classify_item(item.id)

        assert classifier.contexts[0].raw_text == "taglio piastrelle bagno"
        assert classifier.contexts[0].media is None
        assert outcome.item.raw_text == "taglio piastrelle bagno"
        assert outcome.item.status == "classified"

    @pytest.mark.asyncio
    async def test_transcript_survives_classifier_failure(
        self, services, make_item, classifier, object_store
    ):
        url = await object_store.put("a/manual_1_0.m4a", b"m4a", "audio/m4a")
        item = await make_item(file_type="audio", file_url=url)
        classifier.queue(ClassifierError())

        outcome = await services.orchestrator.classify_item(item.id)

        assert outcome.item.status == "error"
        assert outcome.item.raw_text == "taglio piastrelle bagno"


class TestAudioWithoutProviders:

    @pytest.mark.asyncio
    async def test_all_providers_failing_records_error(self, services, make_item, object_store, classifier):
        url = await object_store.put("a/manual_1_0.m4a", b"m4a", "audio/m4a")
        item = await make_item(file_type="audio", file_url=url)

        outcome = await services.orchestrator.classify_item(item.id)

        assert outcome.item.status == "error"
        assert "No provider configured" in outcome.item.error_message
        assert classifier.contexts == []


class TestRetryClassify:
    """Tests for the explicit error → new recovery."""

    @pytest.mark.asyncio
    async def test_retry_requires_error_status(self, services, make_item):
        item = await make_item()

        with pytest.raises(InvalidStateError):
            await services.orchestrator.retry_classify(item.id)

        assert (await services.store.get(item.id)).status == "new"

    @pytest.mark.asyncio
    async def test_retry_reclassifies_and_clears_error(self, services, make_item, classifier):
        item = await make_item()
        classifier.queue(ClassifierError(), classifier_answer("receipt", 0.6, "Scontrino ferramenta"))
        await services.orchestrator.classify_item(item.id)

        outcome = await services.orchestrator.retry_classify(item.id)

        assert outcome.claimed is True
        assert outcome.item.status == "classified"
        assert outcome.item.classification == "receipt"
        assert outcome.item.error_message is None
        assert outcome.item.failed_stage is None

    @pytest.mark.asyncio
    async def test_retry_overwrites_previous_results(self, services, make_item, classifier):
        """A successful retry replaces summary, data and confidence entirely."""
        item = await make_item()
        classifier.queue(classifier_answer("job", 0.9, "Prima analisi", {"title": "A", "urgency": "alta"}))
        await services.orchestrator.classify_item(item.id)
        # Push the item to error by hand along classified → error
        await services.store.transition(
            item.id, InboxStatus.CLASSIFIED, InboxStatus.ERROR, error_message="x"
        )
        classifier.queue(classifier_answer("other", 0.3, "Seconda analisi", {"description": "B"}))

        outcome = await services.orchestrator.retry_classify(item.id)

        assert outcome.item.classification == "other"
        assert outcome.item.ai_summary == "Seconda analisi"
        assert outcome.item.ai_extracted_data == {"description": "B"}
        assert outcome.item.confidence == pytest.approx(0.3)

    @pytest.mark.asyncio
    async def test_classifier_is_not_retried_automatically(self, services, make_item, classifier):
        item = await make_item()
        classifier.queue(ClassifierError(), ClassifierError(), ClassifierError())

        await services.orchestrator.classify_item(item.id)

        assert len(classifier.contexts) == 1
        assert (await services.store.get(item.id)).status == "error"


class TestClassificationDispatcher:

    @pytest.mark.asyncio
    async def test_dispatch_runs_in_background_and_drains(self, services, make_item, classifier):
        dispatcher = ClassificationDispatcher(services.orchestrator)
        item = await make_item()

        await dispatcher(item.id)
        await dispatcher.drain()

        assert dispatcher.pending == 0
        assert (await services.store.get(item.id)).status == "classified"

    @pytest.mark.asyncio
    async def test_dispatch_failure_is_contained(self, services):
        dispatcher = ClassificationDispatcher(services.orchestrator)

        await dispatcher(uuid.uuid4())
        await dispatcher.drain()

        assert dispatcher.pending == 0

    def test_orchestrator_type(self, services):
        assert isinstance(services.orchestrator, ClassificationOrchestrator)
