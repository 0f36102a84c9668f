"""
Query pipeline: classifier -> (conversational reply | executor -> response generator)
with a best-effort LLM summary, best-effort analytics and error classification
"""

import time
from dataclasses import dataclass
from typing import Optional

from errors import NLQError, QueryExecutionError
from models import ParsedQuery, Platform, QueryResult, UnifiedResponse
from monitoring import logger, metrics_collector, MetricsCollector
from responses import UnifiedResponseGenerator

@dataclass
class QueryOutcome:
    response: UnifiedResponse
    parsed_query: Optional[ParsedQuery] = None
    result_count: int = 0

def result_count(result: Optional[QueryResult]) -> int:
    if result is None or result.data is None:
        return 0
    if isinstance(result.data, int) and not isinstance(result.data, bool):
        return result.data
    if result.total_count is not None:
        return result.total_count
    if isinstance(result.data, list):
        return len(result.data)
    return 1

class QueryPipeline:
    """Answers one natural-language message for a tenant"""

    def __init__(self, classifier, executor, generator: UnifiedResponseGenerator,
                 store=None, metrics: MetricsCollector = metrics_collector):
        self.classifier = classifier
        self.executor = executor
        self.generator = generator
        self.store = store
        self.metrics = metrics

    async def process(self, text: str, tenant_id: str, user_id: Optional[str], platform: Platform,
                      stored_message_id: Optional[str] = None) -> QueryOutcome:
        start = time.perf_counter()

        def elapsed_ms() -> int:
            return int((time.perf_counter() - start) * 1000)

        tracking_id = self.metrics.start_query(tenant_id, platform.value)
        parsed: Optional[ParsedQuery] = None
        result: Optional[QueryResult] = None

        try:
            parsed = await self.classifier.parse_query(
                text, {"tenant_id": tenant_id, "user_id": user_id, "platform": platform.value}
            )
            self.metrics.update_query_metrics(tracking_id, intent=parsed.intent.value,
                                              confidence_score=parsed.confidence)

            if parsed.is_conversational:
                response = self.generator.conversational(text, parsed, elapsed_ms())
                self.metrics.finish_query(tracking_id, status="conversational")
                await self._record_analytics(stored_message_id, tenant_id, platform, parsed, None, elapsed_ms())
                return QueryOutcome(response=response, parsed_query=parsed)

            result = await self.executor.execute(parsed, tenant_id)
            if result.error:
                raise QueryExecutionError(result.error)

            response = self.generator.generate(text, parsed, result, platform, elapsed_ms())
        except Exception as e:
            error = NLQError.from_error(e)
            logger.warning("query_failed", tenant_id=tenant_id, platform=platform.value,
                           error_code=error.code.value, detail=error.detail)
            self.metrics.finish_query(tracking_id, status="error", error_message=error.detail)
            await self._record_analytics(stored_message_id, tenant_id, platform, parsed, result,
                                         elapsed_ms(), error=f"{error.code.value}: {error.detail}")
            return QueryOutcome(response=self.generator.error(text, error, elapsed_ms()),
                                parsed_query=parsed)

        await self._add_summary(text, response, result)

        count = result_count(result)
        self.metrics.update_query_metrics(tracking_id, result_count=count)
        self.metrics.finish_query(tracking_id, status="success")
        await self._record_analytics(stored_message_id, tenant_id, platform, parsed, result,
                                     result.execution_time_ms)
        return QueryOutcome(response=response, parsed_query=parsed, result_count=count)

    async def _add_summary(self, text: str, response: UnifiedResponse, result: QueryResult):
        """Attach an LLM summary as response_text; the templated response stands if this fails"""
        try:
            summary = await self.classifier.generate_summary(text, {
                "type": response.results.type,
                "data": result.data,
                "total_count": result.total_count,
            })
        except Exception as e:
            logger.warning("summary_generation_failed", error=str(e))
            return
        response.metadata.response_text = summary

    async def _record_analytics(self, stored_message_id: Optional[str], tenant_id: str,
                                platform: Platform, parsed: Optional[ParsedQuery],
                                result: Optional[QueryResult], execution_time_ms: int,
                                error: Optional[str] = None):
        if self.store is None:
            return
        try:
            await self.store.record_query_analytics(
                stored_id=stored_message_id,
                tenant_id=tenant_id,
                platform=platform.value,
                intent=parsed.intent.value if parsed else "unknown",
                entities=parsed.entities if parsed else None,
                execution_time_ms=execution_time_ms,
                result_count=result_count(result),
                error=error,
            )
        except Exception as e:
            logger.warning("analytics_record_failed", tenant_id=tenant_id, error=str(e))
