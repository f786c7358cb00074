"""
TradeInbox Backend — AI Response Parser Unit Tests
====================================================

What:  Tests for parse_classification(), the strict reader of classifier answers.

What we test:
    ✅ Valid JSON → ClassificationResult
    ✅ JSON wrapped in prose or code fences is still found
    ✅ Unknown classification tag → other
    ✅ Confidence clamped into [0, 1]
    ✅ No JSON object / non-object JSON → ParseError("invalid AI response")
"""

import pytest

from tradeinbox.exceptions import ParseError
from tradeinbox.models.inbox_item import Classification
from tradeinbox.services.ai_response import clamp_confidence, parse_classification


class TestParseClassification:

    def test_valid_answer(self):
        result = parse_classification(
            '{"classification": "invoice_passive", "confidence": 0.92, '
            '"summary": "Fattura Edilmarket", "extracted_data": {"total": "122,00"}}'
        )

        assert result.classification == Classification.INVOICE_PASSIVE
        assert result.confidence == pytest.approx(0.92)
        assert result.summary == "Fattura Edilmarket"
        assert result.extracted_data == {"total": "122,00"}

    def test_json_inside_code_fence(self):
        result = parse_classification(
            'Ecco il risultato:\n```json\n{"classification": "receipt", "confidence": 0.7}\n```'
        )

        assert result.classification == Classification.RECEIPT
        assert result.summary == ""
        assert result.extracted_data == {}

    def test_unknown_tag_becomes_other(self):
        result = parse_classification('{"classification": "quote_request", "confidence": 0.5}')
        assert result.classification == Classification.OTHER

    def test_tag_is_case_insensitive(self):
        result = parse_classification('{"classification": "JOB", "confidence": 0.5}')
        assert result.classification == Classification.JOB

    def test_non_object_extracted_data_is_dropped(self):
        result = parse_classification(
            '{"classification": "job", "confidence": 0.5, "extracted_data": ["a", "b"]}'
        )
        assert result.extracted_data == {}

    @pytest.mark.parametrize("raw", ["", "nessun json qui", '{"classification": ', "[1, 2]"])
    def test_invalid_answers_raise(self, raw):
        with pytest.raises(ParseError) as exc_info:
            parse_classification(raw)
        assert exc_info.value.message == "invalid AI response"


class TestClampConfidence:

    @pytest.mark.parametrize(
        "value, expected",
        [(1.7, 1.0), (-0.2, 0.0), ("0.4", 0.4), (None, 0.0), ("alta", 0.0), (float("nan"), 0.0)],
    )
    def test_clamp(self, value, expected):
        assert clamp_confidence(value) == pytest.approx(expected)
