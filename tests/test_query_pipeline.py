import pytest

from errors import ErrorCode, IntentParseError
from models import ParsedQuery, Platform, QueryIntent, QueryResult
from query_pipeline import QueryPipeline, result_count
from responses import (
    CASUAL_TEXT, FINANCIAL_TEXT, GREETING_TEXT, HELP_TEXT, UNKNOWN_TEXT, UnifiedResponseGenerator
)
from tests.conftest import StubClassifier, StubExecutor


class RecordingStore:
    def __init__(self, fail=False):
        self.fail = fail
        self.analytics = []

    async def record_query_analytics(self, **kwargs):
        if self.fail:
            raise RuntimeError("analytics table missing")
        self.analytics.append(kwargs)


def pipeline(classifier, executor=None, store=None):
    return QueryPipeline(classifier, executor or StubExecutor(), UnifiedResponseGenerator(), store=store)


async def run(p, text="How many files do I have?", platform=Platform.WHATSAPP):
    return await p.process(text, "tenant-1", "user-1", platform, stored_message_id="msg-1")


@pytest.mark.parametrize("intent, expected_text", [
    (QueryIntent.GREETING, GREETING_TEXT),
    (QueryIntent.HELP, HELP_TEXT),
    (QueryIntent.CASUAL, CASUAL_TEXT),
    (QueryIntent.FINANCIAL, FINANCIAL_TEXT),
    (QueryIntent.UNKNOWN, UNKNOWN_TEXT),
])
async def test_conversational_intents_never_reach_executor(intent, expected_text):
    executor = StubExecutor()
    classifier = StubClassifier(parsed=ParsedQuery(intent=intent, confidence=0.9))

    outcome = await run(pipeline(classifier, executor), "hi there")

    assert executor.calls == []
    assert classifier.summary_calls == []
    assert outcome.response.metadata.response_text == expected_text
    assert outcome.response.metadata.query_id.startswith("conv-")
    assert outcome.response.is_conversational


async def test_financial_with_vendor():
    classifier = StubClassifier(parsed=ParsedQuery(
        intent=QueryIntent.FINANCIAL, confidence=0.8, entities={"vendor": "OpenAI"}
    ))

    outcome = await run(pipeline(classifier), "what about OpenAI money")

    assert outcome.response.metadata.response_text == (
        'I can help you find financial documents! Try asking "Show me invoices from OpenAI" '
        'or "List receipts from OpenAI".'
    )


async def test_data_query_builds_response():
    executor = StubExecutor(QueryResult(data=[{"id": "f1"}, {"id": "f2"}], total_count=25,
                                        execution_time_ms=7))
    classifier = StubClassifier(parsed=ParsedQuery(intent=QueryIntent.LIST, confidence=0.85))
    store = RecordingStore()

    outcome = await run(pipeline(classifier, executor, store))

    response = outcome.response
    assert response.results.type == "list"
    assert response.metadata.total_count == 25
    assert response.metadata.processing_time_ms >= 7
    assert response.metadata.response_text is None
    assert "Show me the next page" in response.suggestions
    assert outcome.result_count == 25
    assert store.analytics[0]["intent"] == "list"
    assert store.analytics[0]["stored_id"] == "msg-1"
    assert store.analytics[0]["result_count"] == 25
    assert store.analytics[0]["error"] is None


async def test_summary_becomes_response_text():
    classifier = StubClassifier(summary="You have 3 files, all processed.")

    outcome = await run(pipeline(classifier))

    assert outcome.response.metadata.response_text == "You have 3 files, all processed."
    assert classifier.summary_calls[0][1]["type"] == "count"


async def test_summary_and_analytics_failures_are_tolerated():
    classifier = StubClassifier(summary_error=RuntimeError("cohere unavailable"))

    outcome = await run(pipeline(classifier, store=RecordingStore(fail=True)))

    assert not outcome.response.is_error
    assert outcome.response.results.data == 3
    assert outcome.response.metadata.response_text is None


@pytest.mark.parametrize("error, code", [
    (TimeoutError("Query timed out after 30s"), ErrorCode.TIMEOUT),
    (RuntimeError("permission denied for relation files"), ErrorCode.PERMISSION_DENIED),
    (RuntimeError("could not open connection"), ErrorCode.DATABASE_ERROR),
    (RuntimeError("no results for filter"), ErrorCode.NO_DATA_FOUND),
    (RuntimeError("boom"), ErrorCode.EXECUTION_FAILED),
])
async def test_executor_errors_are_classified(error, code):
    store = RecordingStore()

    outcome = await run(pipeline(StubClassifier(), StubExecutor(error=error), store))

    response = outcome.response
    assert response.metadata.error_code == code.value
    assert response.metadata.query_id.startswith("error-")
    assert response.intent is QueryIntent.UNKNOWN
    assert response.metadata.confidence == 0.0
    assert response.metadata.response_text.startswith("❌ ")
    assert "💡 *Suggestions:*" in response.metadata.response_text
    assert store.analytics[0]["error"].startswith(code.value)


async def test_error_carried_in_result_is_raised():
    executor = StubExecutor(QueryResult(data=None, error="Database error: disk I/O error"))

    outcome = await run(pipeline(StubClassifier(), executor))

    assert outcome.response.metadata.error_code == ErrorCode.DATABASE_ERROR.value


async def test_parse_failure_includes_example_questions():
    classifier = StubClassifier(parse_error=IntentParseError("Could not parse classifier output"))
    executor = StubExecutor()

    outcome = await run(pipeline(classifier, executor))

    text = outcome.response.metadata.response_text
    assert text.startswith("❌ I couldn't understand your question")
    assert "*Example questions:*\n• How many files do I have?" in text
    assert executor.calls == []
    assert outcome.parsed_query is None


@pytest.mark.parametrize("result, expected", [
    (None, 0),
    (QueryResult(data=None), 0),
    (QueryResult(data=12), 12),
    (QueryResult(data=[1, 2], total_count=40), 40),
    (QueryResult(data=[1, 2]), 2),
    (QueryResult(data={"value": 5}), 1),
])
def test_result_count(result, expected):
    assert result_count(result) == expected
