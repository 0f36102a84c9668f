import json

import pytest

from errors import IntentParseError
from intent_classifier import SUMMARY_MAX_RESULTS, CohereIntentClassifier, extract_json_object
from models import QueryIntent
from tests.conftest import FakeCohereClient


def classifier(*replies):
    return CohereIntentClassifier(model="command-r", client=FakeCohereClient(replies))


@pytest.mark.parametrize("text, expected", [
    ("How many files do I have?", True),
    ("show me invoices from march", True),
    ("hello", True),
    ("is it done?", True),
    ("ok cool", False),
    ("for the records", False),
    ("k", False),
    ("", False),
])
async def test_is_query_supported(text, expected):
    assert await classifier().is_query_supported(text) is expected


async def test_parse_query_reads_json():
    reply = json.dumps({
        "intent": "aggregate",
        "confidence": 0.82,
        "entities": {"vendor": "OpenAI", "date_range": {"start": "2024-01-01", "end": "2024-03-31"}},
        "aggregation": {"type": "sum", "field": "total_amount"},
    })
    c = classifier(reply)

    parsed = await c.parse_query("How much did we spend on OpenAI in Q1?", {"tenant_id": "t1"})

    assert parsed.intent is QueryIntent.AGGREGATE
    assert parsed.confidence == 0.82
    assert parsed.entities == {"vendor": "OpenAI", "date_range": {"start": "2024-01-01", "end": "2024-03-31"}}
    assert parsed.aggregation == {"type": "sum", "field": "total_amount"}
    assert parsed.sorting is None
    assert parsed.original_text == "How much did we spend on OpenAI in Q1?"
    assert c.client.calls[0]["message"] == "How much did we spend on OpenAI in Q1?"


async def test_parse_query_tolerates_code_fences():
    c = classifier('Sure!\n```json\n{"intent": "count", "confidence": 0.9}\n```')

    parsed = await c.parse_query("how many files", {})

    assert parsed.intent is QueryIntent.COUNT
    assert parsed.entities == {}


async def test_unrecognised_intent_becomes_unknown():
    parsed = await classifier('{"intent": "weather", "confidence": 0.4}').parse_query("rain?", {})
    assert parsed.intent is QueryIntent.UNKNOWN


@pytest.mark.parametrize("reply", [
    "I am not sure what you mean.",
    '{"intent": "count", "confidence": }',
    '{"intent": "count", "confidence": 1.5}',
    '{"intent": "list", "confidence": 0.8, "entities": {"limit": 0}}',
])
async def test_invalid_output_raises_parse_error(reply):
    with pytest.raises(IntentParseError):
        await classifier(reply).parse_query("list files", {})


async def test_api_failure_propagates():
    with pytest.raises(RuntimeError):
        await classifier(RuntimeError("cohere unavailable")).parse_query("list files", {})


async def test_summary_truncates_results():
    c = classifier("  You have 25 files.  ")
    rows = [{"id": f"f{i}"} for i in range(25)]

    summary = await c.generate_summary("list my files", {"type": "list", "data": rows, "total_count": 25})

    assert summary == "You have 25 files."
    message = c.client.calls[0]["message"]
    assert "Total results: 25" in message
    assert f'"f{SUMMARY_MAX_RESULTS - 1}"' in message
    assert f'"f{SUMMARY_MAX_RESULTS}"' not in message


async def test_empty_summary_raises():
    with pytest.raises(ValueError):
        await classifier("   ").generate_summary("how many", {"type": "count", "data": 3})


def test_extract_json_object_without_braces():
    with pytest.raises(IntentParseError):
        extract_json_object("no json here")
