# Services package init
"""
TradeInbox Backend — Services Layer
=====================================

What:  The inbox pipeline, between the routes (HTTP) and the database.
How:   Every service receives its collaborators and credentials at
       construction; tradeinbox.dependencies.build_services() wires them.

Service Inventory:
    - IntakeGateway:              upload / email / WhatsApp → inbox items
    - ObjectStore (abstract):     write-once artifact storage
      LocalObjectStore:           aiofiles-backed implementation
    - TranscriptionService:       Groq → Deepgram → OpenAI fallback chain
    - Classifier (abstract):      AI classifier interface
      GeminiClassifier:           Google Gemini, guarded by a CircuitBreaker
    - ClassificationOrchestrator: new → classifying → classified | error
    - RoutingEngine:              classified → routed (job, invoice, client, expense)
    - InboxItemStore:             conditional status updates + event publishing
    - InboxEventBus / InboxFeed:  realtime fan-out per artisan
"""
