"""
Intent classification with Cohere

- is_query_supported: cheap regex check used at store time and for routing
- parse_query: LLM call returning a ParsedQuery (JSON, validated with pydantic)
- generate_summary: best-effort natural-language answer over structured results
"""

import json
import re
from datetime import date
from typing import Any, Dict, List, Literal, Optional

import cohere
from pydantic import BaseModel, Field, ValidationError

from errors import IntentParseError
from models import ParsedQuery, QueryIntent
from monitoring import logger, metrics_collector

SUMMARY_MAX_RESULTS = 10

QUERY_PATTERNS = [re.compile(p) for p in (
    r"\b(how many|how much|number of|count|total|sum|average|avg)\b",
    r"\b(show|list|find|search|look for|get|give me|display)\b",
    r"\b(what|which|where|when|who|any)\b",
    r"\b(status|pending|processed|unprocessed|failed|completed)\b",
    r"\b(invoices?|receipts?|documents?|files?|uploads?|statements?|bills?)\b",
    r"\b(vendor|supplier|spent|spend|paid|amount)\b",
    # Conversational openers still go through intent parsing
    r"^(hi|hello|hey|hiya|good (morning|afternoon|evening)|thanks|thank you)\b",
    r"\b(help|commands)\b",
)]

QUERY_PARSER_PREAMBLE = """You translate questions about a company's uploaded files and financial documents into JSON.
Today's date is {today}.

Respond with a single JSON object and nothing else:
{{
  "intent": one of "count", "list", "search", "aggregate", "status", "greeting", "casual", "financial", "help", "unknown",
  "confidence": number between 0 and 1,
  "entities": {{
    "status": optional list of "pending", "processing", "completed", "failed",
    "source": optional list of "whatsapp", "slack", "email", "upload",
    "document_type": optional list of "invoice", "receipt", "statement", "other",
    "vendor": optional string,
    "date_range": optional {{"start": "YYYY-MM-DD", "end": "YYYY-MM-DD"}},
    "search_term": optional string,
    "limit": optional integer
  }},
  "aggregation": optional {{"type": "sum"|"avg"|"min"|"max"|"count", "field": "total_amount"|"size", "group_by": optional "status"|"source"|"document_type"|"vendor"}},
  "sorting": optional {{"field": "created_at"|"total_amount"|"file_name", "direction": "asc"|"desc"}}
}}

Use "greeting" for hellos, "help" when the user asks what you can do, "casual" for small talk,
"financial" for vague money questions without a concrete data request, and "unknown" when unsure."""

SUMMARY_PREAMBLE = """You answer questions about a user's files using only the data provided.
Reply in two or three short sentences suitable for a chat message. Do not invent numbers."""

class DateRangeSchema(BaseModel):
    start: Optional[date] = None
    end: Optional[date] = None

class EntitiesSchema(BaseModel):
    status: Optional[List[str]] = None
    source: Optional[List[str]] = None
    document_type: Optional[List[str]] = None
    vendor: Optional[str] = None
    date_range: Optional[DateRangeSchema] = None
    search_term: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1, le=100)

class AggregationSchema(BaseModel):
    type: Literal["sum", "avg", "min", "max", "count"]
    field: Optional[str] = None
    group_by: Optional[str] = None

class SortingSchema(BaseModel):
    field: str
    direction: Literal["asc", "desc"] = "desc"

class ParsedQuerySchema(BaseModel):
    intent: QueryIntent
    confidence: float = Field(ge=0.0, le=1.0)
    entities: EntitiesSchema = EntitiesSchema()
    aggregation: Optional[AggregationSchema] = None
    sorting: Optional[SortingSchema] = None

def extract_json_object(raw: str) -> Dict[str, Any]:
    """Pull the JSON object out of an LLM reply, tolerating code fences and chatter"""
    start = raw.find("{")
    end = raw.rfind("}")
    if start == -1 or end <= start:
        raise IntentParseError("Could not parse classifier output: no JSON object found")
    try:
        return json.loads(raw[start:end + 1])
    except json.JSONDecodeError as e:
        raise IntentParseError(f"Could not parse classifier output: {e}") from e

def to_parsed_query(data: Dict[str, Any], text: str) -> ParsedQuery:
    """Validate raw classifier JSON into a ParsedQuery"""
    if data.get("intent") not in {intent.value for intent in QueryIntent}:
        data = {**data, "intent": QueryIntent.UNKNOWN.value}
    try:
        schema = ParsedQuerySchema.model_validate(data)
    except ValidationError as e:
        raise IntentParseError(f"Classifier returned an invalid query structure: {e.error_count()} errors") from e

    return ParsedQuery(
        intent=schema.intent,
        confidence=schema.confidence,
        entities=schema.entities.model_dump(exclude_none=True, mode="json"),
        aggregation=schema.aggregation.model_dump(exclude_none=True) if schema.aggregation else None,
        sorting=schema.sorting.model_dump() if schema.sorting else None,
        original_text=text,
    )

class CohereIntentClassifier:
    """Intent classifier backed by Cohere chat"""

    def __init__(self, api_key: Optional[str] = None, model: str = "command-r",
                 client: Optional[Any] = None):
        self.model = model
        self.client = client or cohere.AsyncClient(api_key=api_key)

    async def is_query_supported(self, text: str) -> bool:
        normalized = (text or "").strip().lower()
        if len(normalized) < 2:
            return False
        if normalized.endswith("?"):
            return True
        return any(pattern.search(normalized) for pattern in QUERY_PATTERNS)

    async def parse_query(self, text: str, context: Dict[str, Any]) -> ParsedQuery:
        try:
            response = await self.client.chat(
                model=self.model,
                message=text,
                preamble=QUERY_PARSER_PREAMBLE.format(today=date.today().isoformat()),
                temperature=0.1,
            )
        except Exception:
            metrics_collector.record_cohere_api_call(self.model, "parse_query", "error")
            raise
        metrics_collector.record_cohere_api_call(self.model, "parse_query", "success")

        parsed = to_parsed_query(extract_json_object(response.text or ""), text)
        logger.info(
            "query_parsed",
            tenant_id=context.get("tenant_id"),
            platform=context.get("platform"),
            intent=parsed.intent.value,
            confidence=parsed.confidence,
        )
        return parsed

    async def generate_summary(self, query: str, results: Dict[str, Any]) -> str:
        data = results.get("data")
        if isinstance(data, list):
            data = data[:SUMMARY_MAX_RESULTS]
        message = (
            f"Question: {query}\n"
            f"Result type: {results.get('type')}\n"
            f"Total results: {results.get('total_count', 'unknown')}\n"
            f"Data (JSON): {json.dumps(data, default=str)}"
        )

        try:
            response = await self.client.chat(
                model=self.model,
                message=message,
                preamble=SUMMARY_PREAMBLE,
                temperature=0.3,
                max_tokens=300,
            )
        except Exception:
            metrics_collector.record_cohere_api_call(self.model, "generate_summary", "error")
            raise
        metrics_collector.record_cohere_api_call(self.model, "generate_summary", "success")

        summary = (response.text or "").strip()
        if not summary:
            raise ValueError("Summary generation returned no text")
        return summary
