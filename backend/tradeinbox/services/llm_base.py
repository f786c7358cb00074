"""
TradeInbox Backend — Abstract Classifier Interface
====================================================

What:  The contract for AI classifiers plus the analysis context they receive.
Why:   The orchestrator only needs "context in, raw JSON text out". Keeping the
       provider behind an interface lets tests script answers and lets the
       deployment swap Gemini for another vision model without touching the
       state machine.
How:   Concrete implementations inherit from Classifier and implement
       classify() and health_check().
Who:   ClassificationOrchestrator.

Design Decision:
    classify() returns the model's raw text rather than a parsed result. Parsing
    lives in ai_response.parse_classification so that every provider gets the
    same tolerance rules (unknown tag → other, clamped confidence).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class AnalysisContext:
    """
    Everything the classifier sees about one inbox item.

    media/media_mime_type are set for image and PDF items only (vision input).
    """

    raw_text: Optional[str] = None
    file_name: Optional[str] = None
    trade: Optional[str] = None
    source: Optional[str] = None
    sender: Optional[str] = None
    subject: Optional[str] = None
    media: Optional[bytes] = None
    media_mime_type: Optional[str] = None

    @property
    def has_content(self) -> bool:
        return bool((self.raw_text or "").strip()) or self.media is not None


class Classifier(ABC):
    """
    Abstract interface for AI inbox classification.

    Contract:
        - classify() returns the model's raw answer, expected to contain a JSON
          object with classification, confidence, extracted_data, summary
        - provider failures are raised as ClassifierError
        - a classifier never retries on its own
    """

    @abstractmethod
    async def classify(self, context: AnalysisContext) -> str:
        """
        Ask the model to classify one item.

        Raises:
            ClassifierError: the provider call failed.
            CircuitBreakerOpenError: too many recent failures; call rejected.
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Lightweight reachability check (does NOT consume generation quota)."""
        ...
