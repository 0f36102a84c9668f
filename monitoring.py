"""
Monitoring and Metrics Module for the message router
Implements Prometheus metrics and structured logging
"""

import logging
import time
import uuid
import structlog
from typing import Dict, Optional
from dataclasses import dataclass
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

def configure_logging(level: str = "INFO"):
    """Route stdlib logging (and therefore structlog) to stdout at the given level"""
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))

# === Prometheus Metrics ===

# Business metrics
messages_received_total = Counter(
    'messages_received_total',
    'Inbound messages routed, by envelope kind',
    ['platform', 'kind']
)

queries_total = Counter(
    'nlq_queries_total',
    'Natural-language queries processed',
    ['platform', 'intent', 'status']
)

file_uploads_total = Counter(
    'file_uploads_total',
    'Attachment uploads to the blob store',
    ['platform', 'status']
)

duplicate_deliveries_total = Counter(
    'duplicate_deliveries_total',
    'Webhook deliveries recognised as retries of a stored message',
    ['platform']
)

webhook_rejections_total = Counter(
    'webhook_rejections_total',
    'Webhook requests rejected before processing',
    ['platform', 'reason']
)

# Technical metrics
llm_api_calls_total = Counter(
    'cohere_api_calls_total',
    'Total Cohere API calls',
    ['model', 'operation', 'status']
)

outbound_messages_total = Counter(
    'outbound_messages_total',
    'Replies sent through platform APIs',
    ['platform', 'status']
)

query_processing_duration_seconds = Histogram(
    'query_processing_duration_seconds',
    'Time to process a query end-to-end',
    buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0]
)

# === Metrics Collection Classes ===

@dataclass
class QueryMetrics:
    """Metrics for a single query"""
    tenant_id: str
    platform: str
    start_time: float
    intent: str = 'unknown'
    end_time: Optional[float] = None
    status: str = 'processing'  # 'success', 'error', 'conversational'
    response_time: Optional[float] = None
    result_count: int = 0
    confidence_score: Optional[float] = None
    error_message: Optional[str] = None

    def finish(self, status: str = 'success', error_message: Optional[str] = None):
        """Mark query as finished and record metrics"""
        self.end_time = time.time()
        self.response_time = self.end_time - self.start_time
        self.status = status
        self.error_message = error_message

        queries_total.labels(
            platform=self.platform,
            intent=self.intent,
            status=status
        ).inc()

        if self.response_time:
            query_processing_duration_seconds.observe(self.response_time)

        logger.info(
            "query_completed",
            tenant_id=self.tenant_id,
            platform=self.platform,
            intent=self.intent,
            status=status,
            response_time=self.response_time,
            result_count=self.result_count,
            confidence_score=self.confidence_score,
            error_message=error_message
        )

# === Metrics Collection Functions ===

class MetricsCollector:
    """Centralized metrics collection and management"""

    def __init__(self):
        self.active_queries: Dict[str, QueryMetrics] = {}

    def start_query(self, tenant_id: str, platform: str) -> str:
        """Start tracking a query and return a tracking id"""
        tracking_id = f"{tenant_id}_{uuid.uuid4().hex}"
        self.active_queries[tracking_id] = QueryMetrics(
            tenant_id=tenant_id,
            platform=platform,
            start_time=time.time()
        )
        logger.debug("query_started", tracking_id=tracking_id, tenant_id=tenant_id, platform=platform)
        return tracking_id

    def update_query_metrics(self, tracking_id: str, **kwargs):
        """Update query metrics with intent, counts or confidence"""
        if tracking_id in self.active_queries:
            metrics = self.active_queries[tracking_id]
            for key, value in kwargs.items():
                if hasattr(metrics, key):
                    setattr(metrics, key, value)

    def finish_query(self, tracking_id: str, status: str = 'success', error_message: Optional[str] = None):
        """Finish tracking a query"""
        metrics = self.active_queries.pop(tracking_id, None)
        if metrics:
            metrics.finish(status, error_message)

    def record_message(self, platform: str, kind: str):
        messages_received_total.labels(platform=platform, kind=kind).inc()

    def record_duplicate(self, platform: str):
        duplicate_deliveries_total.labels(platform=platform).inc()

    def record_file_upload(self, platform: str, success: bool):
        file_uploads_total.labels(platform=platform, status='success' if success else 'error').inc()

    def record_outbound_message(self, platform: str, ok: bool):
        outbound_messages_total.labels(platform=platform, status='success' if ok else 'error').inc()

    def record_webhook_rejection(self, platform: str, reason: str):
        webhook_rejections_total.labels(platform=platform, reason=reason).inc()

    def record_cohere_api_call(self, model: str, operation: str, status: str):
        """Record Cohere API usage"""
        llm_api_calls_total.labels(
            model=model,
            operation=operation,
            status=status
        ).inc()

        logger.info(
            "cohere_api_call",
            model=model,
            operation=operation,
            status=status
        )

# Shared collector; prometheus registries are process-global anyway
metrics_collector = MetricsCollector()

# === Prometheus Endpoint ===

def get_metrics_response() -> Response:
    """Generate Prometheus metrics response"""
    metrics_data = generate_latest()
    return Response(
        content=metrics_data,
        media_type=CONTENT_TYPE_LATEST
    )

# === Utility Functions ===

def log_identity_event(platform: str, event_type: str, **kwargs):
    """Log identity and tenant-context events"""
    logger.info(
        "identity_event",
        platform=platform,
        event_type=event_type,
        **kwargs
    )

def log_security_event(platform: str, event_type: str, severity: str = "info", **kwargs):
    """Log security-related events"""
    logger.warning(
        "security_event",
        platform=platform,
        event_type=event_type,
        severity=severity,
        **kwargs
    )
