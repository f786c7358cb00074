"""
TradeInbox Backend — Routing Engine Tests
===========================================

What:  Tests for routing classified items into downstream records, against a
       real SQLite database.

What we test:
    ✅ job / invoice_passive / client_info / receipt create the right record
    ✅ other → routed with no record and a null reference
    ✅ Only classified items can be routed
    ✅ Two concurrent routes: exactly one succeeds
    ✅ force=True re-routes and creates a second record
    ✅ Downstream failure keeps the item classified (failed_stage=routing), repeat routing recovers
    ✅ The status machine has exactly the six pipeline edges
    ✅ Client upsert never blanks existing phone/email
    ✅ Overrides replace the AI output without touching `classification`
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from tradeinbox.exceptions import AlreadyRoutedError, InvalidStateError, RoutingFailedError
from tradeinbox.models.inbox_item import (
    ALLOWED_TRANSITIONS,
    Classification,
    InboxStatus,
    is_allowed_transition,
    utcnow,
)
from tradeinbox.models.records import Client, Expense, InvoicePassive, Job
from tradeinbox.services.routing_service import RoutingEngine, _amount


@pytest.fixture
def classified_item(services, make_item):
    """Factory: a `classified` item with the given classification and data."""

    async def _make(classification: str = "job", data=None, **fields):
        item = await make_item(**fields)
        await services.store.transition(item.id, InboxStatus.NEW, InboxStatus.CLASSIFYING)
        return await services.store.transition(
            item.id,
            InboxStatus.CLASSIFYING,
            InboxStatus.CLASSIFIED,
            classification=classification,
            ai_summary="Sintesi AI",
            ai_extracted_data=data if data is not None else {},
            confidence=0.8,
            classified_at=utcnow(),
        )

    return _make


async def count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestRouteByClassification:
    """One test per routing target."""

    @pytest.mark.asyncio
    async def test_job(self, services, session_factory, classified_item, object_store):
        url = await object_store.put("a/manual_1_0.jpg", b"jpg", "image/jpeg")
        item = await classified_item(
            "job",
            {"title": "Sostituzione boiler", "materials": "boiler 80L, raccordi", "urgency": "alta"},
            file_type="image",
            file_url=url,
        )

        outcome = await services.routing.route_item(item.id)

        assert outcome.routed_to_table == "jobs"
        assert outcome.item.status == "routed"
        assert outcome.item.routed_to_id == outcome.routed_to_id
        assert outcome.item.routed_at is not None
        async with session_factory() as session:
            job = await session.get(Job, outcome.routed_to_id)
        assert job.title == "Sostituzione boiler"
        assert job.status == "draft"
        assert job.photos == [url]
        assert job.ai_extracted_data["materials"] == ["boiler 80L", "raccordi"]
        assert job.ai_extracted_data["urgency"] == "alta"
        assert job.source_inbox_item_id == item.id

    @pytest.mark.asyncio
    async def test_job_links_existing_client_by_phone(self, services, session_factory, classified_item, artisan):
        async with session_factory() as session:
            async with session.begin():
                client = Client(artisan_id=artisan.id, name="Mario Verdi", phone="+393331234567")
                session.add(client)
        item = await classified_item("job", {"title": "Caldaia", "client_phone": "+393331234567"})

        outcome = await services.routing.route_item(item.id)

        async with session_factory() as session:
            job = await session.get(Job, outcome.routed_to_id)
        assert job.client_id == client.id

    @pytest.mark.asyncio
    async def test_invoice(self, services, session_factory, classified_item):
        item = await classified_item(
            "invoice_passive",
            {
                "supplier_name": "Edilmarket Srl",
                "invoice_number": "2024/118",
                "subtotal": "100,00",
                "vat_amount": "22,00",
                "total": "1.122,00 €",
                "issue_date": "2024-03-05T00:00:00",
            },
        )

        outcome = await services.routing.route_item(item.id)

        assert outcome.routed_to_table == "invoices_passive"
        async with session_factory() as session:
            invoice = await session.get(InvoicePassive, outcome.routed_to_id)
        assert invoice.supplier_name == "Edilmarket Srl"
        assert invoice.total == Decimal("1122.00")
        assert invoice.issue_date == "2024-03-05"
        assert invoice.needs_review is True

    @pytest.mark.asyncio
    async def test_receipt(self, services, session_factory, classified_item):
        item = await classified_item("receipt", {"supplier_name": "Ferramenta Neri", "total": 12.5})

        outcome = await services.routing.route_item(item.id)

        assert outcome.routed_to_table == "expenses"
        async with session_factory() as session:
            expense = await session.get(Expense, outcome.routed_to_id)
        assert expense.total == Decimal("12.50")

    @pytest.mark.asyncio
    async def test_other_routes_without_record(self, services, session_factory, classified_item):
        item = await classified_item("other", {"description": "Pubblicità"})

        outcome = await services.routing.route_item(item.id)

        assert outcome.item.status == "routed"
        assert outcome.routed_to_table is None
        assert outcome.routed_to_id is None
        assert outcome.item.routed_to_id is None
        for model in (Job, InvoicePassive, Client, Expense):
            assert await count(session_factory, model) == 0


class TestClientUpsert:

    @pytest.mark.asyncio
    async def test_new_client(self, services, session_factory, classified_item):
        item = await classified_item(
            "client_info", {"name": "Anna Neri", "phone": "+39 333 000 1111", "address": "Via Roma 1"}
        )

        outcome = await services.routing.route_item(item.id)

        async with session_factory() as session:
            client = await session.get(Client, outcome.routed_to_id)
        assert client.name == "Anna Neri"
        assert client.address == "Via Roma 1"

    @pytest.mark.asyncio
    async def test_match_by_email_never_blanks_fields(self, services, session_factory, classified_item, artisan):
        async with session_factory() as session:
            async with session.begin():
                existing = Client(
                    artisan_id=artisan.id,
                    name="Anna Neri",
                    phone="+393330001111",
                    email="anna@example.it",
                )
                session.add(existing)
        item = await classified_item(
            "client_info", {"name": "Anna", "phone": "", "email": "anna@example.it", "address": "Via Po 2"}
        )

        outcome = await services.routing.route_item(item.id)

        assert outcome.routed_to_id == existing.id
        async with session_factory() as session:
            client = await session.get(Client, existing.id)
        assert client.phone == "+393330001111"
        assert client.email == "anna@example.it"
        assert client.address == "Via Po 2"
        assert await count(session_factory, Client) == 1

    @pytest.mark.asyncio
    async def test_email_match_is_exact(self, services, session_factory, classified_item, artisan):
        async with session_factory() as session:
            async with session.begin():
                existing = Client(artisan_id=artisan.id, name="Anna Neri", email="anna@example.it")
                session.add(existing)
        item = await classified_item("client_info", {"name": "Anna", "email": "ANNA@example.it"})

        outcome = await services.routing.route_item(item.id)

        assert outcome.routed_to_id != existing.id
        assert await count(session_factory, Client) == 2


class TestRoutingStateRules:

    @pytest.mark.asyncio
    async def test_new_item_cannot_be_routed(self, services, make_item):
        item = await make_item()

        with pytest.raises(InvalidStateError):
            await services.routing.route_item(item.id)

    @pytest.mark.asyncio
    async def test_already_routed_without_force(self, services, classified_item):
        item = await classified_item("other")
        await services.routing.route_item(item.id)

        with pytest.raises(AlreadyRoutedError):
            await services.routing.route_item(item.id)

    @pytest.mark.asyncio
    async def test_force_creates_a_second_record(self, services, session_factory, classified_item):
        item = await classified_item("receipt", {"total": "5"})
        first = await services.routing.route_item(item.id)

        second = await services.routing.route_item(item.id, force=True)

        assert second.routed_to_id != first.routed_to_id
        assert await count(session_factory, Expense) == 2

    @pytest.mark.asyncio
    async def test_concurrent_routes_create_one_record(self, services, session_factory, classified_item):
        item = await classified_item("job", {"title": "Caldaia"})

        results = await asyncio.gather(
            services.routing.route_item(item.id),
            services.routing.route_item(item.id),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1 and isinstance(failures[0], AlreadyRoutedError)
        assert await count(session_factory, Job) == 1

    @pytest.mark.asyncio
    async def test_override_replaces_ai_output(self, services, session_factory, classified_item):
        item = await classified_item("other", {"description": "?"})

        outcome = await services.routing.route_item(
            item.id,
            override_classification=Classification.RECEIPT,
            override_data={"supplier_name": "Bar Sport", "total": "3,50"},
        )

        assert outcome.routed_to_table == "expenses"
        assert outcome.item.classification == "other"
        assert outcome.item.user_override_classification == "receipt"
        async with session_factory() as session:
            expense = await session.get(Expense, outcome.routed_to_id)
        assert expense.ai_extracted_data == {"supplier_name": "Bar Sport", "total": "3,50"}


class TestRoutingFailure:

    @pytest.mark.asyncio
    async def test_failure_keeps_item_classified_then_reroute_succeeds(
        self, services, session_factory, classified_item, monkeypatch
    ):
        item = await classified_item("job", {"title": "Caldaia"})

        async def broken(self, session, item, data):
            raise SQLAlchemyError("insert failed")

        monkeypatch.setattr(RoutingEngine, "_create_job", broken)
        with pytest.raises(RoutingFailedError):
            await services.routing.route_item(item.id)

        failed = await services.store.get(item.id)
        assert failed.status == "classified"
        assert failed.classification == "job"
        assert failed.failed_stage == "routing"
        assert failed.error_message == "Could not create the downstream record"
        assert failed.routed_to_id is None
        assert await count(session_factory, Job) == 0

        monkeypatch.undo()
        outcome = await services.routing.route_item(item.id)

        assert outcome.item.status == "routed"
        assert outcome.item.error_message is None
        assert outcome.item.failed_stage is None
        assert await count(session_factory, Job) == 1

    @pytest.mark.asyncio
    async def test_classification_error_cannot_be_routed(self, services, make_item, classifier):
        from tradeinbox.exceptions import ClassifierError

        item = await make_item()
        classifier.queue(ClassifierError())
        await services.orchestrator.classify_item(item.id)

        with pytest.raises(InvalidStateError):
            await services.routing.route_item(item.id)

    @pytest.mark.asyncio
    async def test_failed_forced_reroute_keeps_previous_reference(
        self, services, session_factory, classified_item, monkeypatch
    ):
        item = await classified_item("job", {"title": "Caldaia"})
        first = await services.routing.route_item(item.id)

        async def broken(self, session, item, data):
            raise SQLAlchemyError("insert failed")

        monkeypatch.setattr(RoutingEngine, "_create_job", broken)
        with pytest.raises(RoutingFailedError):
            await services.routing.route_item(item.id, force=True)

        current = await services.store.get(item.id)
        assert current.status == "routed"
        assert current.routed_to_id == first.routed_to_id
        assert await count(session_factory, Job) == 1


class TestStatusMachine:
    """The item lifecycle allows exactly six edges and nothing else."""

    PIPELINE_EDGES = {
        ("new", "classifying"),
        ("classifying", "classified"),
        ("classifying", "error"),
        ("classified", "routed"),
        ("classified", "error"),
        ("error", "new"),
    }

    def test_transition_table_is_exactly_the_pipeline_edges(self):
        edges = {
            (source.value, target.value)
            for source, targets in ALLOWED_TRANSITIONS.items()
            for target in targets
        }

        assert edges == self.PIPELINE_EDGES

    def test_every_status_pair_is_checked(self):
        for source in InboxStatus:
            for target in InboxStatus:
                expected = (source.value, target.value) in self.PIPELINE_EDGES
                assert is_allowed_transition(source.value, target.value) is expected

    @pytest.mark.asyncio
    async def test_store_rejects_edges_outside_the_machine(self, services, make_item):
        item = await make_item()

        with pytest.raises(ValueError):
            await services.store.transition(item.id, InboxStatus.ERROR, InboxStatus.ROUTED)
        with pytest.raises(ValueError):
            await services.store.transition(item.id, InboxStatus.ROUTED, InboxStatus.ROUTED)

        assert (await services.store.get(item.id)).status == "new"


class TestAmountParsing:

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("1.234,50", Decimal("1234.50")),
            ("1234,5", Decimal("1234.50")),
            (99, Decimal("99.00")),
            ("€ 12,00", Decimal("12.00")),
            ("n/d", None),
            (None, None),
            (True, None),
        ],
    )
    def test_amount(self, raw, expected):
        assert _amount(raw) == expected
