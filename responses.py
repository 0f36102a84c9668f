"""
Builds platform-agnostic UnifiedResponse objects from query results,
conversational intents and classified errors
"""

import time
import uuid
from typing import Any, Dict, List, Optional

from errors import NLQError, create_error_response_text
from models import (
    ParsedQuery, Platform, QueryIntent, QueryResult, ResponseAction,
    ResponseMetadata, ResponseResults, UnifiedResponse
)

LIST_PAGE_SIZE = 10

# === Conversational replies ===

GREETING_TEXT = (
    "Hi there! I'm here to help you manage your files and documents. You can ask me things like "
    "'How many unprocessed files do I have?' or 'Show me invoices from this month'."
)
HELP_TEXT = (
    "I can help you with:\n"
    "• How many files are pending?\n"
    "• Show me invoices from OpenAI\n"
    "• What's the total of my receipts this month?\n"
    "• List failed file uploads"
)
CASUAL_TEXT = (
    "I'm designed to help with your files and documents. Is there something specific you'd "
    "like to find or check on your files?"
)
FINANCIAL_VENDOR_TEXT = (
    'I can help you find financial documents! Try asking "Show me invoices from {vendor}" '
    'or "List receipts from {vendor}".'
)
FINANCIAL_TEXT = (
    "I can help you find financial documents like invoices and receipts. Try asking for specific "
    "vendors or date ranges, like 'Show me invoices from this month'."
)
UNKNOWN_TEXT = (
    "I'm not sure I understand. I can help you find files, check document status, or search for "
    "invoices and receipts. What would you like to look for?"
)

def conversational_text(parsed: ParsedQuery) -> str:
    if parsed.intent is QueryIntent.GREETING:
        return GREETING_TEXT
    if parsed.intent is QueryIntent.HELP:
        return HELP_TEXT
    if parsed.intent is QueryIntent.CASUAL:
        return CASUAL_TEXT
    if parsed.intent is QueryIntent.FINANCIAL:
        vendor = parsed.entities.get("vendor")
        return FINANCIAL_VENDOR_TEXT.format(vendor=vendor) if vendor else FINANCIAL_TEXT
    return UNKNOWN_TEXT

# === Result shaping ===

def result_type_for(intent: QueryIntent) -> str:
    if intent is QueryIntent.COUNT:
        return "count"
    if intent in (QueryIntent.LIST, QueryIntent.SEARCH):
        return "list"
    if intent is QueryIntent.AGGREGATE:
        return "aggregate"
    return "summary"

def visualization_for(intent: QueryIntent, data: Any) -> Optional[Dict[str, Any]]:
    if intent is QueryIntent.COUNT:
        return {"type": "number", "config": {"label": "Files"}}
    if intent in (QueryIntent.LIST, QueryIntent.SEARCH):
        return {"type": "list", "config": {"columns": ["fileName", "status", "createdAt"],
                                            "page_size": LIST_PAGE_SIZE}}
    if intent is QueryIntent.AGGREGATE:
        if isinstance(data, list):
            return {"type": "chart", "config": {"chart_type": "bar", "x": "group", "y": "value"}}
        return {"type": "number", "config": {"label": "Total"}}
    if intent is QueryIntent.STATUS:
        return {"type": "chart", "config": {"chart_type": "pie", "label": "status", "value": "count"}}
    return None

def suggestions_for(intent: QueryIntent, result: QueryResult) -> List[str]:
    if intent is QueryIntent.COUNT:
        return ["Show me the list of these files", "Which files failed processing?"]
    if intent is QueryIntent.LIST:
        suggestions = []
        if (result.total_count or 0) > 20:
            suggestions.append("Show me the next page")
        return suggestions + ["Filter by failed status", "Show only invoices"]
    if intent is QueryIntent.SEARCH:
        return ["Narrow down by date", "Show high confidence results only"]
    if intent is QueryIntent.AGGREGATE:
        return ["Break down by vendor", "Show monthly trend"]
    if intent is QueryIntent.STATUS:
        return ["Show failed files", "Retry failed processing"]
    return []

def failed_count(data: Any) -> int:
    if not isinstance(data, list):
        return 0
    return sum(item.get("count", 0) for item in data if item.get("status") == "failed")

def actions_for(intent: QueryIntent, data: Any, platform: Platform) -> List[ResponseAction]:
    actions = []
    if intent in (QueryIntent.LIST, QueryIntent.SEARCH) and isinstance(data, list) and data:
        actions.append(ResponseAction("View details", "view_file", {"file_id": data[0].get("id")}))
        if len(data) > 1:
            actions.append(ResponseAction("Export list", "export_list", {"format": "csv"}))
    if intent is QueryIntent.COUNT and isinstance(data, int) and data > 0:
        actions.append(ResponseAction("Show list", "show_list"))
    if intent is QueryIntent.STATUS and failed_count(data) > 0:
        actions.append(ResponseAction("Retry failed", "retry_failed"))
    if platform is Platform.WHATSAPP:
        actions.append(ResponseAction("Help", "show_help"))
    return actions

def describe_filters(parsed: ParsedQuery) -> List[str]:
    entities = parsed.entities
    filters = []
    for key, label in (("status", "status"), ("document_type", "type"), ("source", "source")):
        if entities.get(key):
            filters.append(f"{label}: {', '.join(entities[key])}")
    if entities.get("vendor"):
        filters.append(f"vendor: {entities['vendor']}")
    date_range = entities.get("date_range") or {}
    if date_range.get("start"):
        filters.append(f"from {date_range['start']}")
    if date_range.get("end"):
        filters.append(f"until {date_range['end']}")
    if entities.get("search_term"):
        filters.append(f"matching '{entities['search_term']}'")
    return filters

def _now_ms() -> int:
    return int(time.time() * 1000)

class UnifiedResponseGenerator:
    """Turns pipeline outcomes into UnifiedResponse objects"""

    def generate(self, query_text: str, parsed: ParsedQuery, result: QueryResult,
                 platform: Platform, processing_time_ms: int = 0) -> UnifiedResponse:
        """Response for an executed data query"""
        intent = parsed.intent
        return UnifiedResponse(
            query=query_text,
            intent=intent,
            results=ResponseResults(
                type=result_type_for(intent),
                data=result.data,
                visualization=visualization_for(intent, result.data),
            ),
            metadata=ResponseMetadata(
                processing_time_ms=processing_time_ms + result.execution_time_ms,
                confidence=result.confidence,
                query_id=str(uuid.uuid4()),
                filters_applied=describe_filters(parsed),
                total_count=result.total_count,
            ),
            suggestions=suggestions_for(intent, result),
            actions=actions_for(intent, result.data, platform),
        )

    def conversational(self, query_text: str, parsed: ParsedQuery,
                       processing_time_ms: int = 0) -> UnifiedResponse:
        """Canned reply for greeting / casual / financial / help / unknown"""
        return UnifiedResponse(
            query=query_text,
            intent=parsed.intent,
            results=ResponseResults(type="summary", data=None),
            metadata=ResponseMetadata(
                processing_time_ms=processing_time_ms,
                confidence=parsed.confidence,
                query_id=f"conv-{_now_ms()}",
                response_text=conversational_text(parsed),
            ),
        )

    def error(self, query_text: str, error: NLQError, processing_time_ms: int = 0) -> UnifiedResponse:
        return UnifiedResponse(
            query=query_text,
            intent=QueryIntent.UNKNOWN,
            results=ResponseResults(type="summary", data=None),
            metadata=ResponseMetadata(
                processing_time_ms=processing_time_ms,
                confidence=0.0,
                query_id=f"error-{_now_ms()}",
                response_text=create_error_response_text(error),
                error_code=error.code.value,
                suggestions=list(error.suggestions),
            ),
        )
