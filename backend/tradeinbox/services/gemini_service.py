"""
TradeInbox Backend — Google Gemini Classifier
===============================================

What:  Concrete Classifier using Google Gemini in JSON response mode.
Why:   One multimodal call covers typed text, transcribed voice notes, photos
       of a job site and scanned supplier invoices.
How:   Sends the system prompt, the textual context and (for images/PDFs) the
       artifact bytes inline to Gemini, guarded by a circuit breaker.
Who:   Built once by build_services(); called by ClassificationOrchestrator.

Resilience Strategy:
    - No retries: a failed call is recorded on the inbox item and the artisan
      decides whether to retry (POST /api/inbox/{id}/retry).
    - Circuit breaker: after N consecutive failures calls are rejected
      instantly until the recovery timeout elapses.
    - Per-call timeout passed through request_options.
"""

import logging
import time
import uuid
from typing import Any, List, Optional

import google.generativeai as genai

from tradeinbox.exceptions import CircuitBreakerOpenError, ClassifierError
from tradeinbox.services.llm_base import AnalysisContext, Classifier

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker Implementation
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Fails fast while the classifier provider is down.

    State Machine:
        CLOSED    → failures counted; at `failure_threshold` → OPEN
        OPEN      → every call raises CircuitBreakerOpenError
                    → after `recovery_timeout` seconds → HALF_OPEN
        HALF_OPEN → one probe call; success → CLOSED, failure → OPEN

    Not thread-safe. A uvicorn worker runs one event loop, which is enough.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None

    def can_execute(self) -> bool:
        """
        True when a call may proceed.

        Raises:
            CircuitBreakerOpenError while OPEN and the recovery timeout has not elapsed.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = time.time() - (self.last_failure_time or 0)
            if elapsed >= self.recovery_timeout:
                logger.info(
                    "Circuit breaker transitioning to HALF_OPEN after %.1fs",
                    elapsed,
                )
                self.state = self.HALF_OPEN
                return True
            remaining = int(self.recovery_timeout - elapsed)
            raise CircuitBreakerOpenError(recovery_time=remaining)

        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker transitioning to CLOSED (service recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker returning to OPEN (probe call failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker OPENING after %d consecutive failures",
                self.failure_count,
            )
            self.state = self.OPEN


# ══════════════════════════════════════════════════════════════════════════
# Gemini Classifier
# ══════════════════════════════════════════════════════════════════════════

class GeminiClassifier(Classifier):
    """
    Gemini implementation of the inbox classifier.

    Error Handling Chain:
        circuit open → CircuitBreakerOpenError (no call made)
        call fails / blocked / times out → record failure → ClassifierError
        call succeeds → record success → raw JSON text returned
    """

    # Artisans work in Italian, so summaries are requested in Italian.
    SYSTEM_PROMPT = """Sei l'assistente di un artigiano italiano. Ricevi foto, documenti,
note vocali trascritte ed email e devi smistarli.

1. CLASSIFICA il contenuto in una sola categoria:
   - "job": un lavoro da eseguire (riparazione, installazione, sopralluogo)
   - "invoice_passive": una fattura ricevuta da un fornitore
   - "client_info": dati di un cliente (nome, telefono, email, indirizzo)
   - "receipt": uno scontrino o una ricevuta di spesa
   - "other": tutto il resto

2. ESTRAI i dati utili secondo la categoria:
   - job: title, description, materials (lista), urgency, client_phone, client_email
   - invoice_passive: supplier_name, invoice_number, subtotal, vat_amount, total,
     category, issue_date (YYYY-MM-DD)
   - client_info: name, phone, email, address
   - receipt: supplier_name, total, date (YYYY-MM-DD), description
   - other: description

3. RIASSUMI in una o due frasi in italiano.

Rispondi solo con un oggetto JSON:
{"classification": "...", "confidence": 0.0-1.0, "extracted_data": {...}, "summary": "..."}"""

    def __init__(
        self,
        api_key: str,
        model_name: str = "gemini-1.5-flash",
        timeout: int = 60,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
    ):
        # The SDK keeps auth in module-level state
        if api_key and api_key != "your_gemini_api_key_here":
            genai.configure(api_key=api_key)

        self.model_name = model_name
        self.timeout = timeout
        self.model = genai.GenerativeModel(
            model_name,
            system_instruction=self.SYSTEM_PROMPT,
            generation_config={"response_mime_type": "application/json"},
        )
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
        )

        logger.info(
            "GeminiClassifier initialized with model=%s, "
            "circuit_breaker(threshold=%d, recovery=%ds)",
            model_name,
            failure_threshold,
            recovery_timeout,
        )

    @staticmethod
    def build_parts(context: AnalysisContext) -> List[Any]:
        """
        Content parts for one request: optional inline media, then text blocks.
        """
        parts: List[Any] = []
        if context.media is not None:
            parts.append({
                "mime_type": context.media_mime_type or "application/octet-stream",
                "data": context.media,
            })

        lines = []
        if context.trade:
            lines.append(f"Mestiere dell'artigiano: {context.trade}")
        if context.file_name:
            lines.append(f"Nome file: {context.file_name}")
        if context.raw_text:
            lines.append(f"Contenuto:\n{context.raw_text}")
        if context.source == "email":
            if context.sender:
                lines.append(f"Da: {context.sender}")
            if context.subject:
                lines.append(f"Oggetto: {context.subject}")
        elif context.sender:
            lines.append(f"Mittente: {context.sender}")

        lines.append("Classifica il contenuto e rispondi con il JSON richiesto.")
        parts.append("\n\n".join(lines))
        return parts

    async def classify(self, context: AnalysisContext) -> str:
        request_id = str(uuid.uuid4())[:8]

        self.circuit_breaker.can_execute()  # Raises CircuitBreakerOpenError if open

        start_time = time.time()
        try:
            response = await self.model.generate_content_async(
                self.build_parts(context),
                request_options={"timeout": self.timeout},
            )
            # .text raises ValueError when the answer was blocked or empty
            raw = response.text or ""
        except Exception as e:
            self.circuit_breaker.record_failure()
            logger.error(
                "[%s] Gemini classification failed after %.0fms: %s",
                request_id,
                (time.time() - start_time) * 1000,
                str(e),
            )
            raise ClassifierError(
                message="AI classification failed",
                context={"request_id": request_id, "error_type": type(e).__name__},
            )

        self.circuit_breaker.record_success()
        logger.info(
            "[%s] Gemini classification completed in %.0fms (%d chars, vision=%s)",
            request_id,
            (time.time() - start_time) * 1000,
            len(raw),
            context.media is not None,
        )
        return raw

    async def health_check(self) -> bool:
        """
        Lists models to verify API key and connectivity (no token cost).
        """
        try:
            model_names = [m.name for m in genai.list_models()]
            target = f"models/{self.model_name}"
            if target not in model_names:
                logger.warning("Configured model %s not found in available models", target)
            return True
        except Exception as e:
            logger.warning("Gemini health check failed: %s", str(e))
            return False
