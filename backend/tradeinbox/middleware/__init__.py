# Middleware package init
"""
TradeInbox Backend — Middleware Package
=========================================

What:  Cross-cutting concerns applied to every HTTP request.

Middleware Chain (order matters!):
    Request → [Rate Limit] → [Request ID] → [Logging] → [GZip] → [CORS] → Route

    Rate limiting runs first so abusive clients are rejected before any work.
    Webhooks, health checks and the WebSocket stream are not rate limited:
    provider retries and long-lived sockets would otherwise trip the limit.
"""
