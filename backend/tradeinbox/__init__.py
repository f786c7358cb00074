"""
TradeInbox Backend — Application Package Initializer
======================================================

What: The artisan inbox service: intake, AI classification, routing.
Who:  Imported by uvicorn (tradeinbox.main:app), Alembic and pytest.

Architecture Note:

    ┌─────────────────────────────────────┐
    │   Routes (HTTP, webhooks, stream)   │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │   Services (pipeline)               │  ← intake → classify → route
    ├─────────────────────────────────────┤
    │   Models & Schemas (Data)           │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │   Database / Object Store           │  ← async SQLAlchemy, aiofiles
    └─────────────────────────────────────┘

    Services are assembled once by tradeinbox.dependencies.build_services()
    and handed to the routes through app.state; nothing below the routes reads
    configuration on its own.
"""

__version__ = "1.0.0"
