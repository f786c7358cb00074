"""
TradeInbox Backend — API Routes Package
=========================================

What:  HTTP and WebSocket handlers.
How:   One module per resource. Handlers stay thin: extract input, call the
       service from the ServiceContainer, shape the response. Business logic
       lives in tradeinbox.services.

Route Inventory:
    - inbox.py:     /api/inbox/* (upload, list, detail, classify, retry,
                    route, delete) and WS /api/inbox/stream
    - webhooks.py:  POST /api/webhooks/email, POST /api/webhooks/whatsapp
    - files.py:     GET  /api/files/{path}
    - health.py:    GET  /health
"""
