"""
TradeInbox Backend — AI Response Parser
=========================================

What:  Turns the classifier's raw text answer into a ClassificationResult.
Why:   Models occasionally wrap JSON in prose or code fences, invent categories,
       or report confidence outside [0, 1]. The pipeline only ever sees a
       validated result or a ParseError.
How:   1. Take the outermost {...} block of the answer
       2. json.loads it; anything but a JSON object is a ParseError
       3. Normalize: unknown classification → "other", confidence clamped,
          non-object extracted_data → {}
       4. Validate into the strict pydantic model
"""

import json
import logging
import math
import re
from typing import Any, Dict

from pydantic import ValidationError as PydanticValidationError

from tradeinbox.exceptions import ParseError
from tradeinbox.models.inbox_item import Classification
from tradeinbox.schemas.inbox import ClassificationResult

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")
_KNOWN_TAGS = {c.value for c in Classification}


def clamp_confidence(value: Any) -> float:
    """Coerces a reported confidence into [0.0, 1.0]; unusable values become 0.0."""
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(confidence):
        return 0.0
    return min(1.0, max(0.0, confidence))


def normalize_classification(tag: Any) -> Classification:
    """Known tags map to themselves (case-insensitive); everything else is OTHER."""
    if isinstance(tag, str) and tag.strip().lower() in _KNOWN_TAGS:
        return Classification(tag.strip().lower())
    if tag is not None:
        logger.warning("Unknown classification tag from AI: %r, using 'other'", tag)
    return Classification.OTHER


def parse_classification(raw_text: str) -> ClassificationResult:
    """
    Parse a classifier answer.

    Raises:
        ParseError: the answer holds no JSON object, or it fails validation.
    """
    match = _JSON_OBJECT.search(raw_text or "")
    candidate = match.group(0) if match else (raw_text or "")
    try:
        payload = json.loads(candidate)
    except (json.JSONDecodeError, TypeError):
        logger.warning("AI response is not valid JSON (%d chars)", len(raw_text or ""))
        raise ParseError(raw_response=raw_text)

    if not isinstance(payload, dict):
        raise ParseError(raw_response=raw_text)

    extracted = payload.get("extracted_data")
    normalized: Dict[str, Any] = {
        "classification": normalize_classification(payload.get("classification")),
        "confidence": clamp_confidence(payload.get("confidence", 0.0)),
        "summary": str(payload.get("summary") or ""),
        "extracted_data": extracted if isinstance(extracted, dict) else {},
    }

    try:
        return ClassificationResult.model_validate(normalized)
    except PydanticValidationError:
        raise ParseError(raw_response=raw_text)
